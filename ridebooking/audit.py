# ridebooking/audit.py
"""
Audit recorder for administrative actions.

Records are append-only: this module only ever inserts and reads AdminAction
rows. Logging is best-effort; a failed write is reported in the application
log and never undoes the business operation that triggered it.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple, List
from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload
from . import models
from .models import AdminAction, AdminActionType, TargetType, RideStatus, utcnow
from .schemas import as_naive_utc

logger = logging.getLogger(__name__)

UNTARGETED_TYPES = (TargetType.SYSTEM.value, TargetType.ANALYTICS.value)


def log_action(
    db: Session,
    admin_id: int,
    action: AdminActionType,
    target_type: TargetType,
    target_id=None,
    details: Optional[dict] = None,
    reason: Optional[str] = None,
    previous_value=None,
    new_value=None,
    request: Optional[Request] = None,
    success: bool = True,
    error_message: Optional[str] = None,
) -> Optional[AdminAction]:
    """Append an audit record. Returns None if the record could not be written."""
    action = AdminActionType(action).value
    target_type = TargetType(target_type).value

    if target_id is None and target_type not in UNTARGETED_TYPES:
        logger.error("[AUDIT] %s on %s rejected: target id is required", action, target_type)
        return None

    record = AdminAction(
        admin_id=admin_id,
        action=action,
        target_type=target_type,
        target_id=str(target_id) if target_id is not None else None,
        details=details or {},
        reason=reason,
        previous_value=previous_value,
        new_value=new_value,
        ip_address=request.client.host if request is not None and request.client else None,
        user_agent=request.headers.get("user-agent") if request is not None else None,
        success=success,
        error_message=error_message,
    )

    db.add(record)
    try:
        db.commit()
        db.refresh(record)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("[AUDIT] Failed to record %s by admin %s", action, admin_id)
        return None

    logger.info("[AUDIT] %s by admin %s on %s:%s", action, admin_id, target_type, record.target_id)
    return record


def query_actions(
    db: Session,
    admin_id: Optional[int] = None,
    action: Optional[AdminActionType] = None,
    target_type: Optional[TargetType] = None,
    target_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[AdminAction], int]:
    """Page through the audit trail, newest first. Returns (records, total)."""
    start_date, end_date = as_naive_utc(start_date), as_naive_utc(end_date)
    query = db.query(AdminAction)

    if admin_id is not None:
        query = query.filter(AdminAction.admin_id == admin_id)
    if action is not None:
        query = query.filter(AdminAction.action == AdminActionType(action).value)
    if target_type is not None:
        query = query.filter(AdminAction.target_type == TargetType(target_type).value)
    if target_id is not None:
        query = query.filter(AdminAction.target_id == str(target_id))
    if start_date is not None:
        query = query.filter(AdminAction.created_at >= start_date)
    if end_date is not None:
        query = query.filter(AdminAction.created_at <= end_date)

    total = query.count()
    records = (
        query.options(joinedload(AdminAction.admin))
        .order_by(AdminAction.created_at.desc(), AdminAction.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return records, total


# =======================================================
# DASHBOARD ACTIVITY FEED
# =======================================================
ACTION_DESCRIPTIONS = {
    AdminActionType.APPROVE_RIDE.value: "approved a ride request",
    AdminActionType.REJECT_RIDE.value: "rejected a ride request",
    AdminActionType.CANCEL_RIDE.value: "cancelled a ride",
    AdminActionType.ASSIGN_DRIVER.value: "assigned a driver to a ride",
    AdminActionType.CREATE_USER.value: "created a new user account",
    AdminActionType.UPDATE_USER.value: "updated user information",
    AdminActionType.DEACTIVATE_USER.value: "deactivated a user account",
    AdminActionType.ACTIVATE_USER.value: "activated a user account",
}

RIDE_ACTIVITY = {
    RideStatus.APPROVED.value: ("ride_approved", "was approved"),
    RideStatus.REJECTED.value: ("ride_rejected", "was rejected"),
    RideStatus.IN_PROGRESS.value: ("ride_started", "has started"),
    RideStatus.COMPLETED.value: ("ride_completed", "was completed"),
}


def recent_activity(db: Session, hours: int = 24, limit: int = 10) -> List[dict]:
    """Merge recent ride status changes and admin actions into one feed, newest first."""
    since = utcnow() - timedelta(hours=hours)

    rides = (
        db.query(models.Ride)
        .options(joinedload(models.Ride.user))
        .filter(
            models.Ride.status.in_(list(RIDE_ACTIVITY)),
            models.Ride.updated_at >= since,
        )
        .order_by(models.Ride.updated_at.desc())
        .limit(limit)
        .all()
    )
    actions = (
        db.query(AdminAction)
        .options(joinedload(AdminAction.admin))
        .filter(AdminAction.created_at >= since)
        .order_by(AdminAction.created_at.desc())
        .limit(limit)
        .all()
    )

    activities = []
    for ride in rides:
        kind, verb = RIDE_ACTIVITY[ride.status]
        activities.append({
            "id": ride.id,
            "type": kind,
            "description": f"{ride.user.full_name}'s ride to {ride.drop} {verb}",
            "timestamp": ride.updated_at,
            "data": {
                "ride_id": ride.id,
                "user_id": ride.user_id,
                "drop": ride.drop,
                "status": ride.status,
            },
        })
    for action in actions:
        summary = ACTION_DESCRIPTIONS.get(action.action, "performed an admin action")
        activities.append({
            "id": action.id,
            "type": action.action,
            "description": f"{action.admin.full_name} {summary}",
            "timestamp": action.created_at,
            "data": {
                "admin_id": action.admin_id,
                "target_type": action.target_type,
                "target_id": action.target_id,
                "details": action.details,
            },
        })

    activities.sort(key=lambda a: a["timestamp"], reverse=True)
    return activities[:limit]
