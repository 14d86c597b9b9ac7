# ridebooking/crud.py
import logging
from typing import List, Optional, Tuple
from fastapi import Request
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from . import audit
from .auth import hash_password, verify_password, generate_reset_token, hash_reset_token
from .errors import Conflict, NotFound, ValidationError, Unauthorized, InvalidState
from .models import User, Role, AdminActionType, TargetType, utcnow

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("first_name", "last_name", "phone", "department", "default_pickup", "default_drop")
ADMIN_UPDATE_FIELDS = PROFILE_FIELDS + ("role", "is_active")


def _plain(value):
    return getattr(value, "value", value)


def _user_snapshot(user: User, fields) -> dict:
    return {field: _plain(getattr(user, field)) for field in fields}


# ==============================
# Users (with Authentication)
# ==============================
def create_user(
    db: Session,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    phone: str,
    department: str,
    employee_id: str,
    role: Role = Role.USER,
) -> User:
    """Create a new user with hashed password."""
    email = email.strip().lower()
    employee_id = employee_id.strip().upper()

    if get_user_by_email(db, email):
        raise Conflict("User with this email already exists")
    if db.query(User).filter(User.employee_id == employee_id).first():
        raise Conflict("User with this employee ID already exists")

    user = User(
        email=email,
        hashed_password=hash_password(password),
        first_name=first_name,
        last_name=last_name,
        phone=phone,
        department=_plain(department),
        employee_id=employee_id,
        role=Role(role).value,
        is_active=True,
    )

    db.add(user)
    try:
        db.commit()
        db.refresh(user)
    except IntegrityError:
        db.rollback()
        raise Conflict("Email or employee ID already exists")

    logger.info("[DB] Added user: %s, employee id: %s, role: %s", user.email, user.employee_id, user.role)
    return user


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    """Get user by email."""
    return db.query(User).filter(User.email == email.strip().lower()).first()


def get_user(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise NotFound("User not found")
    return user


def update_last_login(db: Session, user: User) -> None:
    """Update user's last login timestamp."""
    user.last_login = utcnow()
    db.commit()


def list_users(
    db: Session,
    role: Optional[Role] = None,
    department: Optional[str] = None,
    is_active: Optional[bool] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[User], int]:
    """List users newest first. Returns (users, total)."""
    query = db.query(User)
    if role is not None:
        query = query.filter(User.role == Role(role).value)
    if department is not None:
        query = query.filter(User.department == _plain(department))
    if is_active is not None:
        query = query.filter(User.is_active == is_active)

    total = query.count()
    users = (
        query.order_by(User.created_at.desc(), User.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return users, total


# ==============================
# Self-service
# ==============================
def update_profile(db: Session, user: User, fields: dict) -> User:
    """Apply profile changes. Email, employee id, role and password are not editable here."""
    for field in PROFILE_FIELDS:
        if fields.get(field) is not None:
            setattr(user, field, _plain(fields[field]))
    db.commit()
    db.refresh(user)
    return user


def change_password(db: Session, user: User, current_password: str, new_password: str) -> None:
    if not verify_password(current_password, user.hashed_password):
        raise Unauthorized("Incorrect current password")
    if current_password == new_password:
        raise ValidationError.for_field(
            "new_password", "New password must be different from current password"
        )

    user.hashed_password = hash_password(new_password)
    db.commit()
    logger.info("[DB] Password changed for user %s", user.id)


def request_password_reset(db: Session, email: str) -> Optional[str]:
    """
    Issue a reset token for the account with this email.

    Returns the raw token, or None when no active account matches. Callers
    should not reveal which of the two happened.
    """
    user = get_user_by_email(db, email)
    if user is None or not user.is_active:
        return None

    token, token_hash, expires = generate_reset_token()
    user.reset_token_hash = token_hash
    user.reset_token_expires = expires
    db.commit()
    logger.info("[DB] Password reset requested for user %s", user.id)
    return token


def reset_password(db: Session, token: str, new_password: str) -> User:
    user = (
        db.query(User)
        .filter(
            User.reset_token_hash == hash_reset_token(token),
            User.reset_token_expires > utcnow(),
        )
        .first()
    )
    if user is None:
        raise ValidationError("Invalid or expired reset token")

    user.hashed_password = hash_password(new_password)
    user.reset_token_hash = None
    user.reset_token_expires = None
    db.commit()
    db.refresh(user)
    return user


# ==============================
# Administration
# ==============================
def admin_create_user(db: Session, admin: User, data: dict, request: Optional[Request] = None) -> User:
    user = create_user(db, **data)
    audit.log_action(
        db,
        admin_id=admin.id,
        action=AdminActionType.CREATE_USER,
        target_type=TargetType.USER,
        target_id=user.id,
        details={"email": user.email, "role": user.role},
        request=request,
    )
    return user


def admin_update_user(
    db: Session,
    admin: User,
    user_id: int,
    fields: dict,
    request: Optional[Request] = None,
) -> User:
    user = get_user(db, user_id)
    changed = [f for f in ADMIN_UPDATE_FIELDS if fields.get(f) is not None]
    if not changed:
        raise ValidationError("No updatable fields supplied")
    if user.id == admin.id and (
        fields.get("is_active") is False or fields.get("role") not in (None, Role.ADMIN, Role.ADMIN.value)
    ):
        raise InvalidState("Admins cannot demote or deactivate themselves")

    previous = _user_snapshot(user, changed)
    for field in changed:
        setattr(user, field, _plain(fields[field]))
    db.commit()
    db.refresh(user)

    audit.log_action(
        db,
        admin_id=admin.id,
        action=AdminActionType.UPDATE_USER,
        target_type=TargetType.USER,
        target_id=user.id,
        details={"fields": changed},
        previous_value=previous,
        new_value=_user_snapshot(user, changed),
        request=request,
    )
    return user


def set_user_active(
    db: Session,
    admin: User,
    user_id: int,
    active: bool,
    request: Optional[Request] = None,
) -> User:
    """Soft-activate or soft-deactivate an account. Users are never deleted."""
    user = get_user(db, user_id)
    if user.id == admin.id and not active:
        raise InvalidState("Admins cannot deactivate themselves")

    previous = {"is_active": user.is_active}
    user.is_active = active
    db.commit()
    db.refresh(user)

    audit.log_action(
        db,
        admin_id=admin.id,
        action=AdminActionType.ACTIVATE_USER if active else AdminActionType.DEACTIVATE_USER,
        target_type=TargetType.USER,
        target_id=user.id,
        details={"email": user.email},
        previous_value=previous,
        new_value={"is_active": user.is_active},
        request=request,
    )
    return user
