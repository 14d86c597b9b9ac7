# ridebooking/rides.py
"""
Ride lifecycle manager.

Every transition re-reads the ride, checks its preconditions, and then writes
with a conditional UPDATE guarded on the current status. If another request
moved the ride first, the guarded update matches no row and the caller gets
InvalidState instead of silently overwriting the other transition.
"""
import logging
import random
from datetime import datetime
from typing import Iterable, List, Optional, Tuple
from fastapi import Request
from sqlalchemy.orm import Session, joinedload
from . import audit
from .auth import require_owner, require_owner_or_admin
from .errors import ValidationError, NotFound, InvalidState
from .models import Ride, RideStatus, User, AdminActionType, TargetType, utcnow
from .schemas import MAX_LOCATION_LENGTH, MAX_REASON_LENGTH, as_naive_utc

logger = logging.getLogger(__name__)

# Placeholder fare range until a pricing service exists
MIN_ESTIMATED_FARE = 100
MAX_ESTIMATED_FARE = 400

CANCELLABLE = (RideStatus.PENDING, RideStatus.APPROVED)
COMPLETABLE = (RideStatus.APPROVED, RideStatus.IN_PROGRESS)
DRIVER_ASSIGNABLE = (RideStatus.APPROVED,)


# ==============================
# Helpers
# ==============================
def estimate_fare(pickup: str, drop: str) -> float:
    return float(random.randint(MIN_ESTIMATED_FARE, MAX_ESTIMATED_FARE))


def _check_future(schedule_time: datetime) -> None:
    if schedule_time <= utcnow():
        raise ValidationError.for_field("schedule_time", "Schedule time must be in the future")


def _check_location(field: str, value: Optional[str]) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError.for_field(field, f"{field.capitalize()} location is required")
    if len(value) > MAX_LOCATION_LENGTH:
        raise ValidationError.for_field(
            field, f"{field.capitalize()} location cannot exceed {MAX_LOCATION_LENGTH} characters"
        )
    return value


def _check_reason(field: str, value: Optional[str], label: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError.for_field(field, f"{label} reason is required")
    if len(value) > MAX_REASON_LENGTH:
        raise ValidationError.for_field(
            field, f"{label} reason cannot exceed {MAX_REASON_LENGTH} characters"
        )
    return value


def _snapshot(ride: Ride) -> dict:
    return {"status": ride.status}


def get_ride_or_404(db: Session, ride_id: int) -> Ride:
    ride = (
        db.query(Ride)
        .options(joinedload(Ride.user))
        .filter(Ride.id == ride_id)
        .first()
    )
    if ride is None:
        raise NotFound("Ride not found")
    return ride


def _transition(
    db: Session,
    ride: Ride,
    allowed: Iterable[RideStatus],
    values: dict,
    message: str,
) -> Ride:
    """Apply `values` to the ride only if its stored status is still in `allowed`."""
    allowed = [RideStatus(s).value for s in allowed]
    if ride.status not in allowed:
        raise InvalidState(message)

    values[Ride.updated_at] = utcnow()
    matched = (
        db.query(Ride)
        .filter(Ride.id == ride.id, Ride.status.in_(allowed))
        .update(values, synchronize_session=False)
    )
    if matched == 0:
        db.rollback()
        raise InvalidState(message)

    db.commit()
    db.refresh(ride)
    return ride


# ==============================
# Owner operations
# ==============================
def create_ride(
    db: Session,
    owner: User,
    pickup: str,
    drop: str,
    schedule_time: datetime,
) -> Ride:
    """Create a pending ride for `owner`."""
    pickup = _check_location("pickup", pickup)
    drop = _check_location("drop", drop)
    _check_future(schedule_time)

    ride = Ride(
        user_id=owner.id,
        pickup=pickup,
        drop=drop,
        schedule_time=schedule_time,
        status=RideStatus.PENDING.value,
        estimated_fare=estimate_fare(pickup, drop),
    )
    db.add(ride)
    db.commit()
    db.refresh(ride)
    logger.info("[RIDE] Created ride %s for user %s", ride.id, owner.id)
    return ride


def get_ride(db: Session, ride_id: int, caller: User) -> Ride:
    ride = get_ride_or_404(db, ride_id)
    require_owner_or_admin(caller, ride.user_id, "Not authorized to access this ride")
    return ride


def edit_ride(db: Session, ride_id: int, caller: User, fields: dict) -> Ride:
    """Change pickup, drop or schedule time of a pending ride owned by `caller`."""
    ride = get_ride_or_404(db, ride_id)
    require_owner(caller, ride.user_id, "Not authorized to update this ride")
    if not ride.can_be_modified():
        raise InvalidState("Ride cannot be modified. Only pending rides can be updated.")

    values = {}
    if fields.get("pickup") is not None:
        values[Ride.pickup] = _check_location("pickup", fields["pickup"])
    if fields.get("drop") is not None:
        values[Ride.drop] = _check_location("drop", fields["drop"])
    if fields.get("schedule_time") is not None:
        _check_future(fields["schedule_time"])
        values[Ride.schedule_time] = fields["schedule_time"]
    if not values:
        raise ValidationError("No updatable fields supplied")

    ride = _transition(
        db, ride, [RideStatus.PENDING], values,
        "Ride cannot be modified. Only pending rides can be updated.",
    )
    logger.info("[RIDE] Ride %s edited by owner %s", ride.id, caller.id)
    return ride


def cancel_ride(
    db: Session,
    ride_id: int,
    caller: User,
    reason: Optional[str] = None,
    request: Optional[Request] = None,
) -> Ride:
    """
    Cancel a pending or approved ride.

    Owners may cancel their own rides; the reason defaults to
    "Cancelled by user". Admins may cancel anyone's ride but must give a
    reason, and that cancellation is recorded in the audit trail.
    """
    ride = get_ride_or_404(db, ride_id)
    require_owner_or_admin(caller, ride.user_id, "Not authorized to cancel this ride")

    override = caller.is_admin and caller.id != ride.user_id
    if override:
        reason = _check_reason("reason", reason, "Cancellation")
    else:
        reason = (reason or "").strip()[:MAX_REASON_LENGTH] or "Cancelled by user"
    previous = _snapshot(ride)

    ride = _transition(
        db, ride, CANCELLABLE,
        {
            Ride.status: RideStatus.CANCELLED.value,
            Ride.cancelled_by: caller.id,
            Ride.cancelled_at: utcnow(),
            Ride.cancellation_reason: reason,
        },
        "Ride cannot be cancelled. Only pending or approved rides can be cancelled.",
    )
    logger.info("[RIDE] Ride %s cancelled by user %s", ride.id, caller.id)

    if override:
        audit.log_action(
            db,
            admin_id=caller.id,
            action=AdminActionType.CANCEL_RIDE,
            target_type=TargetType.RIDE,
            target_id=ride.id,
            details={"ride_id": ride.id, "user_id": ride.user_id},
            reason=reason,
            previous_value=previous,
            new_value=_snapshot(ride),
            request=request,
        )
    return ride


def attach_feedback(
    db: Session,
    ride_id: int,
    caller: User,
    rating: int,
    comment: Optional[str] = None,
) -> Ride:
    """Record the owner's rating of a completed ride. Feedback can be given once."""
    if rating is None or not 1 <= rating <= 5:
        raise ValidationError.for_field("rating", "Rating must be between 1 and 5")

    ride = get_ride_or_404(db, ride_id)
    require_owner(caller, ride.user_id, "Not authorized to provide feedback for this ride")
    if ride.status != RideStatus.COMPLETED.value:
        raise InvalidState("Feedback can only be provided for completed rides")
    if ride.feedback_rating is not None:
        raise InvalidState("Feedback has already been submitted for this ride")

    matched = (
        db.query(Ride)
        .filter(
            Ride.id == ride.id,
            Ride.status == RideStatus.COMPLETED.value,
            Ride.feedback_rating.is_(None),
        )
        .update(
            {
                Ride.feedback_rating: rating,
                Ride.feedback_comment: (comment or "").strip(),
                Ride.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    if matched == 0:
        db.rollback()
        raise InvalidState("Feedback has already been submitted for this ride")
    db.commit()
    db.refresh(ride)
    return ride


def list_rides(
    db: Session,
    caller: User,
    owner_id: Optional[int] = None,
    status: Optional[RideStatus] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    department: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[Ride], int]:
    """
    Page through rides newest first. Returns (rides, total).

    Non-admin callers only ever see their own rides, whatever owner filter
    they ask for.
    """
    if not caller.is_admin:
        owner_id = caller.id

    start_date, end_date = as_naive_utc(start_date), as_naive_utc(end_date)

    query = db.query(Ride)
    if owner_id is not None:
        query = query.filter(Ride.user_id == owner_id)
    if status is not None:
        query = query.filter(Ride.status == RideStatus(status).value)
    if start_date is not None:
        query = query.filter(Ride.schedule_time >= start_date)
    if end_date is not None:
        query = query.filter(Ride.schedule_time <= end_date)
    if department is not None:
        query = query.join(Ride.user).filter(User.department == department)

    total = query.count()
    rides = (
        query.options(joinedload(Ride.user))
        .order_by(Ride.created_at.desc(), Ride.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return rides, total


# ==============================
# Admin operations
# ==============================
def _driver_values(driver: Optional[dict]) -> dict:
    if not driver:
        return {}
    return {
        Ride.driver_name: driver.get("name"),
        Ride.driver_phone: driver.get("phone"),
        Ride.driver_vehicle: driver.get("vehicle"),
        Ride.driver_rating: driver.get("rating"),
    }


def approve_ride(
    db: Session,
    ride_id: int,
    admin: User,
    driver: Optional[dict] = None,
    comments: Optional[str] = None,
    request: Optional[Request] = None,
) -> Ride:
    ride = get_ride_or_404(db, ride_id)
    previous = _snapshot(ride)

    values = {
        Ride.status: RideStatus.APPROVED.value,
        Ride.approved_by: admin.id,
        Ride.approved_at: utcnow(),
        Ride.admin_comments: comments or "",
    }
    values.update(_driver_values(driver))
    ride = _transition(db, ride, [RideStatus.PENDING], values, "Can only approve pending rides")
    logger.info("[RIDE] Ride %s approved by admin %s", ride.id, admin.id)

    audit.log_action(
        db,
        admin_id=admin.id,
        action=AdminActionType.APPROVE_RIDE,
        target_type=TargetType.RIDE,
        target_id=ride.id,
        details={"ride_id": ride.id, "user_id": ride.user_id, "comments": comments, "driver": driver},
        previous_value=previous,
        new_value=_snapshot(ride),
        request=request,
    )
    return ride


def reject_ride(
    db: Session,
    ride_id: int,
    admin: User,
    reason: Optional[str],
    comments: Optional[str] = None,
    request: Optional[Request] = None,
) -> Ride:
    ride = get_ride_or_404(db, ride_id)
    if ride.status != RideStatus.PENDING.value:
        raise InvalidState("Can only reject pending rides")
    reason = _check_reason("reason", reason, "Rejection")
    previous = _snapshot(ride)

    ride = _transition(
        db, ride, [RideStatus.PENDING],
        {
            Ride.status: RideStatus.REJECTED.value,
            Ride.rejected_by: admin.id,
            Ride.rejected_at: utcnow(),
            Ride.rejection_reason: reason,
            Ride.admin_comments: comments or "",
        },
        "Can only reject pending rides",
    )
    logger.info("[RIDE] Ride %s rejected by admin %s", ride.id, admin.id)

    audit.log_action(
        db,
        admin_id=admin.id,
        action=AdminActionType.REJECT_RIDE,
        target_type=TargetType.RIDE,
        target_id=ride.id,
        details={"ride_id": ride.id, "user_id": ride.user_id, "comments": comments},
        reason=reason,
        previous_value=previous,
        new_value=_snapshot(ride),
        request=request,
    )
    return ride


def assign_driver(
    db: Session,
    ride_id: int,
    admin: User,
    driver: dict,
    request: Optional[Request] = None,
) -> Ride:
    ride = get_ride_or_404(db, ride_id)
    previous = {"driver_name": ride.driver_name, "driver_vehicle": ride.driver_vehicle}

    ride = _transition(
        db, ride, DRIVER_ASSIGNABLE, _driver_values(driver),
        "Drivers can only be assigned to approved rides",
    )
    logger.info("[RIDE] Driver %s assigned to ride %s", ride.driver_name, ride.id)

    audit.log_action(
        db,
        admin_id=admin.id,
        action=AdminActionType.ASSIGN_DRIVER,
        target_type=TargetType.RIDE,
        target_id=ride.id,
        details={"ride_id": ride.id, "driver": driver},
        previous_value=previous,
        new_value={"driver_name": ride.driver_name, "driver_vehicle": ride.driver_vehicle},
        request=request,
    )
    return ride


def start_ride(
    db: Session,
    ride_id: int,
    admin: User,
    request: Optional[Request] = None,
) -> Ride:
    ride = get_ride_or_404(db, ride_id)
    previous = _snapshot(ride)

    ride = _transition(
        db, ride, [RideStatus.APPROVED],
        {Ride.status: RideStatus.IN_PROGRESS.value, Ride.started_at: utcnow()},
        "Only approved rides can be started",
    )
    logger.info("[RIDE] Ride %s started", ride.id)

    audit.log_action(
        db,
        admin_id=admin.id,
        action=AdminActionType.START_RIDE,
        target_type=TargetType.RIDE,
        target_id=ride.id,
        details={"ride_id": ride.id},
        previous_value=previous,
        new_value=_snapshot(ride),
        request=request,
    )
    return ride


def complete_ride(
    db: Session,
    ride_id: int,
    admin: User,
    actual_fare: Optional[float] = None,
    request: Optional[Request] = None,
) -> Ride:
    if actual_fare is not None and actual_fare < 0:
        raise ValidationError.for_field("actual_fare", "Actual fare cannot be negative")

    ride = get_ride_or_404(db, ride_id)
    previous = _snapshot(ride)

    values = {Ride.status: RideStatus.COMPLETED.value, Ride.completed_at: utcnow()}
    if actual_fare is not None:
        values[Ride.actual_fare] = actual_fare
    ride = _transition(
        db, ride, COMPLETABLE, values,
        "Only approved or in-progress rides can be completed",
    )
    logger.info("[RIDE] Ride %s completed", ride.id)

    audit.log_action(
        db,
        admin_id=admin.id,
        action=AdminActionType.COMPLETE_RIDE,
        target_type=TargetType.RIDE,
        target_id=ride.id,
        details={"ride_id": ride.id, "actual_fare": actual_fare},
        previous_value=previous,
        new_value=_snapshot(ride),
        request=request,
    )
    return ride
