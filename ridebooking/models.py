import enum
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Float, Text, JSON, ForeignKey
)
from sqlalchemy.orm import relationship
from .db import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =======================================================
# ENUMERATIONS
# =======================================================
class Role(str, enum.Enum):
    USER = "user"
    ADMIN = "admin"


class Department(str, enum.Enum):
    ENGINEERING = "Engineering"
    MARKETING = "Marketing"
    SALES = "Sales"
    OPERATIONS = "Operations"
    HR = "HR"
    FINANCE = "Finance"
    LEGAL = "Legal"
    CUSTOMER_SUPPORT = "Customer Support"


class RideStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AdminActionType(str, enum.Enum):
    APPROVE_RIDE = "approve_ride"
    REJECT_RIDE = "reject_ride"
    CANCEL_RIDE = "cancel_ride"
    ASSIGN_DRIVER = "assign_driver"
    START_RIDE = "start_ride"
    COMPLETE_RIDE = "complete_ride"
    CREATE_USER = "create_user"
    UPDATE_USER = "update_user"
    DELETE_USER = "delete_user"
    DEACTIVATE_USER = "deactivate_user"
    ACTIVATE_USER = "activate_user"
    VIEW_ANALYTICS = "view_analytics"
    EXPORT_DATA = "export_data"


class TargetType(str, enum.Enum):
    RIDE = "ride"
    USER = "user"
    SYSTEM = "system"
    ANALYTICS = "analytics"


# =======================================================
# USER MODEL (with Authentication)
# =======================================================
class User(Base):
    """
    SQLAlchemy model for 'users' table with authentication fields.
    """
    __tablename__ = "users"
    __table_args__ = {"extend_existing": True}

    id = Column(Integer, primary_key=True, index=True)
    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    employee_id = Column(String(20), unique=True, index=True, nullable=False)
    phone = Column(String(20), nullable=False)
    department = Column(String(50), index=True, nullable=False)

    # Authentication fields
    hashed_password = Column(String(255), nullable=False)
    role = Column(String(20), default=Role.USER.value, index=True)
    is_active = Column(Boolean, default=True, index=True)
    last_login = Column(DateTime, nullable=True)
    reset_token_hash = Column(String(64), nullable=True, index=True)
    reset_token_expires = Column(DateTime, nullable=True)

    # Preferences
    default_pickup = Column(String(200), default="")
    default_drop = Column(String(200), default="")

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    rides = relationship("Ride", back_populates="user", foreign_keys="Ride.user_id")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value


# =======================================================
# RIDE MODEL
# =======================================================
class Ride(Base):
    """
    SQLAlchemy model for 'rides' table.

    Driver and feedback sub-records are flattened into prefixed columns and
    re-nested by the output schema.
    """
    __tablename__ = "rides"
    __table_args__ = {"extend_existing": True}

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    pickup = Column("pickup_location", String(200), nullable=False)
    drop = Column("drop_location", String(200), nullable=False)
    schedule_time = Column(DateTime, nullable=False, index=True)
    status = Column(String(20), default=RideStatus.PENDING.value, index=True)

    estimated_fare = Column(Float, default=0)
    actual_fare = Column(Float, nullable=True)

    driver_name = Column(String(100), nullable=True)
    driver_phone = Column(String(20), nullable=True)
    driver_vehicle = Column(String(100), nullable=True)
    driver_rating = Column(Float, nullable=True)

    # Admin approval tracking
    approved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejected_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejection_reason = Column(String(500), nullable=True)
    admin_comments = Column(String(500), nullable=True)

    # Cancellation tracking
    cancelled_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(500), nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    feedback_rating = Column(Integer, nullable=True)
    feedback_comment = Column(String(1000), nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="rides", foreign_keys=[user_id])

    def can_be_modified(self) -> bool:
        return self.status == RideStatus.PENDING.value


# =======================================================
# ADMIN ACTION MODEL (append-only audit trail)
# =======================================================
class AdminAction(Base):
    """
    SQLAlchemy model for the admin audit trail. Rows are only ever inserted.
    """
    __tablename__ = "admin_actions"
    __table_args__ = {"extend_existing": True}

    id = Column(Integer, primary_key=True, index=True)
    admin_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    action = Column(String(50), nullable=False, index=True)
    target_type = Column(String(20), nullable=False, index=True)
    target_id = Column(String(64), nullable=True, index=True)
    details = Column(JSON, default=dict)
    reason = Column(String(1000), nullable=True)
    previous_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    success = Column(Boolean, default=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)

    admin = relationship("User", foreign_keys=[admin_id])
