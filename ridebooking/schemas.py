# ridebooking/schemas.py
import re
from datetime import datetime, timezone
from typing import Any, Optional
from pydantic import BaseModel, EmailStr, Field, ValidationInfo, field_validator
from .models import Department, Role, RideStatus, AdminActionType, TargetType

NAME_RE = re.compile(r"^[A-Za-z\s]+$")
PHONE_RE = re.compile(r"^\+?[1-9]\d{0,15}$")
EMPLOYEE_ID_RE = re.compile(r"^[A-Z0-9]+$")

MAX_LOCATION_LENGTH = 200
MAX_REASON_LENGTH = 500


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize an incoming timestamp to the naive-UTC form stored in the database."""
    if value is not None and value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def check_password_strength(value: str) -> str:
    if len(value) < 6:
        raise ValueError("Password must be at least 6 characters long")
    if not (re.search(r"[a-z]", value) and re.search(r"[A-Z]", value) and re.search(r"\d", value)):
        raise ValueError(
            "Password must contain at least one uppercase letter, one lowercase letter, and one number"
        )
    return value


def check_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    value = value.strip()
    if not 2 <= len(value) <= 50:
        raise ValueError("Name must be between 2 and 50 characters")
    if not NAME_RE.match(value):
        raise ValueError("Name can only contain letters and spaces")
    return value


def check_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    value = value.replace(" ", "")
    if not PHONE_RE.match(value):
        raise ValueError("Please provide a valid phone number")
    return value


def check_location(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    value = value.strip()
    if not value:
        raise ValueError("Location is required")
    if len(value) > MAX_LOCATION_LENGTH:
        raise ValueError(f"Location cannot exceed {MAX_LOCATION_LENGTH} characters")
    return value


# =======================================================
# AUTHENTICATION SCHEMAS
# =======================================================
class UserRegister(BaseModel):
    """Schema for user registration."""
    first_name: str
    last_name: str
    email: EmailStr
    password: str
    phone: str
    department: Department
    employee_id: str

    @field_validator("first_name", "last_name")
    @classmethod
    def valid_name(cls, v: str) -> str:
        return check_name(v)

    @field_validator("phone")
    @classmethod
    def valid_phone(cls, v: str) -> str:
        return check_phone(v)

    @field_validator("password")
    @classmethod
    def strong_password(cls, v: str) -> str:
        return check_password_strength(v)

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.lower()

    @field_validator("employee_id")
    @classmethod
    def valid_employee_id(cls, v: str) -> str:
        v = v.strip().upper()
        if not 3 <= len(v) <= 20:
            raise ValueError("Employee ID must be between 3 and 20 characters")
        if not EMPLOYEE_ID_RE.match(v):
            raise ValueError("Employee ID can only contain letters and numbers")
        return v


class UserCreate(UserRegister):
    """Schema for creating a user (admin only)."""
    role: Role = Role.USER


class UserLogin(BaseModel):
    """Schema for user login."""
    email: EmailStr
    password: str = Field(..., min_length=1)


class ProfileUpdate(BaseModel):
    """Fields a user may change on their own profile."""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    department: Optional[Department] = None
    default_pickup: Optional[str] = Field(None, max_length=MAX_LOCATION_LENGTH)
    default_drop: Optional[str] = Field(None, max_length=MAX_LOCATION_LENGTH)

    @field_validator("first_name", "last_name")
    @classmethod
    def valid_name(cls, v: Optional[str]) -> Optional[str]:
        return check_name(v)

    @field_validator("phone")
    @classmethod
    def valid_phone(cls, v: Optional[str]) -> Optional[str]:
        return check_phone(v)


class UserUpdate(ProfileUpdate):
    """Schema for admin updates to a user."""
    role: Optional[Role] = None
    is_active: Optional[bool] = None


class PasswordChange(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str
    confirm_password: str

    @field_validator("new_password")
    @classmethod
    def strong_password(cls, v: str) -> str:
        return check_password_strength(v)

    @field_validator("confirm_password")
    @classmethod
    def passwords_match(cls, v: str, info: ValidationInfo) -> str:
        if "new_password" in info.data and v != info.data["new_password"]:
            raise ValueError("Password confirmation does not match password")
        return v


class ForgotPassword(BaseModel):
    email: EmailStr


class PasswordReset(BaseModel):
    password: str

    @field_validator("password")
    @classmethod
    def strong_password(cls, v: str) -> str:
        return check_password_strength(v)


# =======================================================
# USER SCHEMAS
# =======================================================
class UserSummary(BaseModel):
    """Compact user reference embedded in ride and audit output."""
    id: int
    first_name: str
    last_name: str
    email: str
    employee_id: str
    department: str

    class Config:
        from_attributes = True


class UserOut(UserSummary):
    """Schema for user output. Credentials are never part of it."""
    phone: str
    role: Role
    is_active: bool
    full_name: str
    default_pickup: Optional[str] = None
    default_drop: Optional[str] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# =======================================================
# RIDE SCHEMAS
# =======================================================
class DriverInfo(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    phone: str
    vehicle: str = Field(..., min_length=2, max_length=100)
    rating: Optional[float] = Field(None, ge=1, le=5)

    @field_validator("phone")
    @classmethod
    def valid_phone(cls, v: str) -> str:
        return check_phone(v)


class FeedbackInfo(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field("", max_length=1000)


class RideCreate(BaseModel):
    pickup: str
    drop: str
    schedule_time: datetime

    @field_validator("pickup", "drop")
    @classmethod
    def valid_location(cls, v: str) -> str:
        return check_location(v)

    @field_validator("schedule_time")
    @classmethod
    def normalize_time(cls, v: datetime) -> datetime:
        return as_naive_utc(v)


class RideUpdate(BaseModel):
    """Only these fields may change, and only while the ride is pending."""
    pickup: Optional[str] = None
    drop: Optional[str] = None
    schedule_time: Optional[datetime] = None

    @field_validator("pickup", "drop")
    @classmethod
    def valid_location(cls, v: Optional[str]) -> Optional[str]:
        return check_location(v)

    @field_validator("schedule_time")
    @classmethod
    def normalize_time(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(v)


class RideCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)


class RideApprove(BaseModel):
    driver: Optional[DriverInfo] = None
    comments: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)


class RideReject(BaseModel):
    reason: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)
    comments: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)


class RideComplete(BaseModel):
    actual_fare: Optional[float] = Field(None, ge=0)


class RideOut(BaseModel):
    id: int
    user_id: int
    user: Optional[UserSummary] = None
    pickup: str
    drop: str
    schedule_time: datetime
    status: RideStatus
    estimated_fare: Optional[float] = None
    actual_fare: Optional[float] = None
    driver: Optional[DriverInfo] = None
    approved_by: Optional[int] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[int] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    admin_comments: Optional[str] = None
    cancelled_by: Optional[int] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    feedback: Optional[FeedbackInfo] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_ride(cls, ride) -> "RideOut":
        driver = None
        if ride.driver_name:
            driver = DriverInfo.model_construct(
                name=ride.driver_name,
                phone=ride.driver_phone,
                vehicle=ride.driver_vehicle,
                rating=ride.driver_rating,
            )
        feedback = None
        if ride.feedback_rating is not None:
            feedback = FeedbackInfo(rating=ride.feedback_rating, comment=ride.feedback_comment or "")
        return cls(
            id=ride.id,
            user_id=ride.user_id,
            user=UserSummary.model_validate(ride.user) if ride.user is not None else None,
            pickup=ride.pickup,
            drop=ride.drop,
            schedule_time=ride.schedule_time,
            status=ride.status,
            estimated_fare=ride.estimated_fare,
            actual_fare=ride.actual_fare,
            driver=driver,
            approved_by=ride.approved_by,
            approved_at=ride.approved_at,
            rejected_by=ride.rejected_by,
            rejected_at=ride.rejected_at,
            rejection_reason=ride.rejection_reason,
            admin_comments=ride.admin_comments,
            cancelled_by=ride.cancelled_by,
            cancelled_at=ride.cancelled_at,
            cancellation_reason=ride.cancellation_reason,
            started_at=ride.started_at,
            completed_at=ride.completed_at,
            feedback=feedback,
            created_at=ride.created_at,
            updated_at=ride.updated_at,
        )


# =======================================================
# AUDIT SCHEMAS
# =======================================================
class AdminActionOut(BaseModel):
    id: int
    admin_id: int
    admin: Optional[UserSummary] = None
    action: AdminActionType
    target_type: TargetType
    target_id: Optional[str] = None
    details: Optional[Any] = None
    reason: Optional[str] = None
    previous_value: Optional[Any] = None
    new_value: Optional[Any] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool
    error_message: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int
