# ridebooking/auth.py
import hashlib
import logging
import os
import secrets
from datetime import timedelta
from typing import Optional, Tuple
import bcrypt
from jose import JWTError, jwt
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from dotenv import load_dotenv
from .db import get_db
from .errors import Unauthorized, Forbidden
from .models import User, Role, utcnow

load_dotenv()

logger = logging.getLogger(__name__)

# Configuration
SECRET_KEY = os.getenv("SECRET_KEY", "fallback-key-for-dev-only")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))
RESET_TOKEN_EXPIRE_MINUTES = int(os.getenv("RESET_TOKEN_EXPIRE_MINUTES", 10))

# HTTP Bearer scheme for token extraction; a missing header is reported as 401 below
security = HTTPBearer(auto_error=False)


# =======================================================
# PASSWORD HASHING FUNCTIONS (Using bcrypt directly)
# =======================================================
def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    pwd_bytes = password.encode('utf-8')
    salt = bcrypt.gensalt()
    hashed_password = bcrypt.hashpw(password=pwd_bytes, salt=salt)
    return hashed_password.decode('utf-8')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plain password against its hash."""
    password_byte_enc = plain_password.encode('utf-8')

    if isinstance(hashed_password, str):
        hashed_password = hashed_password.encode('utf-8')

    return bcrypt.checkpw(password=password_byte_enc, hashed_password=hashed_password)


# =======================================================
# PASSWORD RESET TOKENS
# =======================================================
def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def generate_reset_token() -> Tuple[str, str, object]:
    """
    Create a one-time password reset token.

    Returns the raw token (handed to the user), its SHA-256 hash (stored) and
    the expiry timestamp.
    """
    token = secrets.token_hex(32)
    expires = utcnow() + timedelta(minutes=RESET_TOKEN_EXPIRE_MINUTES)
    return token, hash_reset_token(token), expires


# =======================================================
# JWT TOKEN FUNCTIONS
# =======================================================
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token."""
    to_encode = data.copy()
    if expires_delta:
        expire = utcnow() + expires_delta
    else:
        expire = utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def decode_token(token: str) -> Optional[dict]:
    """Decode and verify a JWT token. Returns None for any invalid token."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        return payload
    except JWTError:
        return None


def create_user_token(user: User) -> str:
    """Create an access token for a user."""
    return create_access_token(
        data={
            "sub": str(user.id),
            "role": user.role,
            "employee_id": user.employee_id,
        },
        expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )


# =======================================================
# AUTHENTICATION DEPENDENCIES
# =======================================================
def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """
    Dependency to get the current authenticated user from JWT token.

    Fails with Unauthorized when the token is missing, malformed or expired,
    or when it no longer maps to an active user. The resolved user is also
    attached to `request.state.user`.
    """
    if credentials is None:
        raise Unauthorized()

    payload = decode_token(credentials.credentials)
    if payload is None:
        raise Unauthorized("Token is invalid")

    subject = payload.get("sub")
    try:
        user_id = int(subject)
    except (TypeError, ValueError):
        raise Unauthorized("Token is invalid")

    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise Unauthorized("Token is invalid - user not found")

    if not user.is_active:
        raise Unauthorized("Account is deactivated")

    request.state.user = user
    return user


# =======================================================
# ROLE-BASED ACCESS CONTROL
# =======================================================
class RoleChecker:
    """
    Dependency class to check if user has required role(s).
    Usage: Depends(RoleChecker([Role.ADMIN]))
    """
    def __init__(self, allowed_roles: list):
        self.allowed_roles = [Role(r).value for r in allowed_roles]

    def __call__(self, current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in self.allowed_roles:
            raise Forbidden(
                f"Access denied. Required roles: {', '.join(self.allowed_roles)}"
            )
        return current_user


require_admin = RoleChecker([Role.ADMIN])
require_user = RoleChecker([Role.USER])


def require_owner_or_admin(caller: User, owner_id: int, message: str = "Access denied") -> None:
    """Allow admins everywhere and everyone else only on their own resources."""
    if caller.is_admin:
        return
    if caller.id != owner_id:
        raise Forbidden(message)


def require_owner(caller: User, owner_id: int, message: str = "Access denied") -> None:
    if caller.id != owner_id:
        raise Forbidden(message)


# =======================================================
# AUTHENTICATION HELPER FUNCTIONS
# =======================================================
def authenticate_user(db: Session, email: str, password: str) -> Optional[User]:
    """Authenticate a user by email and password."""
    user = db.query(User).filter(User.email == email.lower()).first()
    if not user:
        logger.info("[AUTH] Login attempt for unknown email")
        return None
    if not verify_password(password, user.hashed_password):
        logger.warning("[AUTH] Failed login for user %s", user.id)
        return None
    return user
