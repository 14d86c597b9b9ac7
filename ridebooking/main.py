# ridebooking/main.py
import os
import logging
import datetime
from typing import Optional
from fastapi import FastAPI, Depends, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
from dotenv import load_dotenv

# Rate limiting imports
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from . import db
from . import analytics
from . import audit
from . import auth
from . import crud
from . import rides
from .errors import AppError, ServerError, Unauthorized
from .models import User, Department, Role, RideStatus, AdminActionType, TargetType
from .schemas import (
    UserRegister, UserCreate, UserLogin, UserOut, ProfileUpdate, UserUpdate,
    PasswordChange, ForgotPassword, PasswordReset,
    RideCreate, RideUpdate, RideCancel, RideApprove, RideReject, RideComplete,
    RideOut, DriverInfo, FeedbackInfo, AdminActionOut, Pagination, MAX_REASON_LENGTH,
)

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
EXPOSE_RESET_TOKEN = os.getenv("EXPOSE_RESET_TOKEN", "false").lower() == "true"
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Initialize FastAPI app
app = FastAPI(title="Corporate Ride Booking API", version="1.0.0")

# Initialize rate limiter
limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)
app.state.limiter = limiter

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =======================================================
# RESPONSE ENVELOPE AND ERROR HANDLERS
# =======================================================
def ok(message: str, data=None, **extra) -> dict:
    """Build the standard success envelope."""
    body = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body


def fail(status_code: int, message: str, errors=None, headers=None) -> JSONResponse:
    content = {"success": False, "message": message}
    if errors:
        content["errors"] = errors
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content), headers=headers)


def paginate(page: int, limit: int, total: int) -> dict:
    return Pagination(page=page, limit=limit, total=total, pages=-(-total // limit)).model_dump()


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthorized) else None
    return fail(exc.status_code, exc.message, exc.errors, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path"))
        message = str(err.get("msg", "Invalid value")).removeprefix("Value error, ")
        errors.append({"field": field, "message": message})
    return fail(status.HTTP_400_BAD_REQUEST, "Validation failed", errors)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return fail(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return fail(status.HTTP_429_TOO_MANY_REQUESTS, f"Too many requests: {exc.detail}")


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("[DB] Database error on %s %s", request.method, request.url.path)
    return fail(ServerError.status_code, "Database error, please retry the request")


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("[APP] Unhandled error on %s %s", request.method, request.url.path)
    return fail(ServerError.status_code, ServerError.default_message)


# =======================================================
# STARTUP AND SHUTDOWN EVENTS
# =======================================================
@app.on_event("startup")
def startup_event():
    """Initialize database on application startup."""
    db.initialize_database()
    logger.info("[APP] Application started successfully")


@app.on_event("shutdown")
def shutdown_event():
    """Cleanup on application shutdown."""
    db.close_database()
    logger.info("[APP] Application shutdown complete")


# =======================================================
# HEALTH CHECK
# =======================================================
@app.get("/health")
def health_check():
    """Health check endpoint for monitoring."""
    db_healthy = db.check_database_health()

    return {
        "success": db_healthy,
        "status": "healthy" if db_healthy else "unhealthy",
        "database": {
            "type": db.DATABASE_TYPE,
            "healthy": db_healthy
        },
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat()
    }


# =======================================================
# AUTHENTICATION ENDPOINTS WITH RATE LIMITING
# =======================================================
@app.post("/api/auth/register", status_code=status.HTTP_201_CREATED)
@limiter.limit("5/hour")
def register_user(
    request: Request,
    user_data: UserRegister,
    session: Session = Depends(db.get_db)
):
    """Register a new employee account with the `user` role."""
    user = crud.create_user(session, role=Role.USER, **user_data.model_dump())
    token = auth.create_user_token(user)
    return ok(
        "User registered successfully",
        {"token": token, "token_type": "bearer", "user": UserOut.model_validate(user)},
    )


@app.post("/api/auth/login")
@limiter.limit("5/minute")
def login_user(
    request: Request,
    login_data: UserLogin,
    session: Session = Depends(db.get_db)
):
    """
    Login user and return JWT token.
    Rate limited to prevent brute force attacks.
    """
    user = auth.authenticate_user(session, login_data.email, login_data.password)
    if not user:
        raise Unauthorized("Incorrect email or password")
    if not user.is_active:
        raise Unauthorized("Account is deactivated")

    crud.update_last_login(session, user)
    token = auth.create_user_token(user)
    return ok(
        "Login successful",
        {"token": token, "token_type": "bearer", "user": UserOut.model_validate(user)},
    )


@app.get("/api/auth/me")
def get_current_user_info(current_user: User = Depends(auth.get_current_user)):
    """Get current authenticated user information."""
    return ok("User retrieved successfully", {"user": UserOut.model_validate(current_user)})


@app.put("/api/auth/profile")
def update_own_profile(
    payload: ProfileUpdate,
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.get_current_user)
):
    user = crud.update_profile(session, current_user, payload.model_dump(exclude_unset=True))
    return ok("Profile updated successfully", {"user": UserOut.model_validate(user)})


# =======================================================
# PASSWORD MANAGEMENT
# =======================================================
@app.put("/api/auth/change-password")
@limiter.limit("3/hour")
def change_own_password(
    request: Request,
    payload: PasswordChange,
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.get_current_user)
):
    """User endpoint to change their own password."""
    crud.change_password(session, current_user, payload.current_password, payload.new_password)
    return ok("Password changed successfully")


@app.post("/api/auth/forgot-password")
@limiter.limit("3/hour")
def forgot_password(
    request: Request,
    payload: ForgotPassword,
    session: Session = Depends(db.get_db)
):
    """Issue a reset token. The response is the same whether or not the email exists."""
    token = crud.request_password_reset(session, payload.email)
    data = {"reset_token": token} if EXPOSE_RESET_TOKEN and token else None
    return ok("If the account exists, password reset instructions have been sent", data)


@app.put("/api/auth/reset-password/{reset_token}")
def reset_password(
    reset_token: str,
    payload: PasswordReset,
    session: Session = Depends(db.get_db)
):
    user = crud.reset_password(session, reset_token, payload.password)
    return ok("Password reset successful", {"token": auth.create_user_token(user)})


# =======================================================
# RIDES (OWNER)
# =======================================================
@app.post("/api/rides", status_code=status.HTTP_201_CREATED)
def create_ride(
    payload: RideCreate,
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.require_user)
):
    """Book a ride. Only employees book; admins decide on bookings."""
    ride = rides.create_ride(session, current_user, payload.pickup, payload.drop, payload.schedule_time)
    return ok("Ride request created successfully", {"ride": RideOut.from_ride(ride)})


@app.get("/api/rides")
def list_own_rides(
    status_filter: Optional[RideStatus] = Query(None, alias="status"),
    start_date: Optional[datetime.datetime] = None,
    end_date: Optional[datetime.datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.get_current_user)
):
    """List the caller's own rides, newest first."""
    found, total = rides.list_rides(
        session, current_user,
        owner_id=current_user.id,
        status=status_filter,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    return ok(
        "Rides retrieved successfully",
        {"rides": [RideOut.from_ride(r) for r in found], "pagination": paginate(page, limit, total)},
    )


@app.get("/api/rides/{ride_id}")
def get_ride(
    ride_id: int,
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.get_current_user)
):
    ride = rides.get_ride(session, ride_id, current_user)
    return ok("Ride retrieved successfully", {"ride": RideOut.from_ride(ride)})


@app.put("/api/rides/{ride_id}")
def update_ride(
    ride_id: int,
    payload: RideUpdate,
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.get_current_user)
):
    ride = rides.edit_ride(session, ride_id, current_user, payload.model_dump(exclude_unset=True))
    return ok("Ride updated successfully", {"ride": RideOut.from_ride(ride)})


@app.delete("/api/rides/{ride_id}")
def delete_ride(
    request: Request,
    ride_id: int,
    reason: Optional[str] = Query(None, max_length=MAX_REASON_LENGTH),
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.get_current_user)
):
    """Cancel a ride. Rides are kept as history, never removed."""
    ride = rides.cancel_ride(session, ride_id, current_user, reason, request=request)
    return ok("Ride cancelled successfully", {"ride": RideOut.from_ride(ride)})


@app.patch("/api/rides/{ride_id}/cancel")
def cancel_ride(
    request: Request,
    ride_id: int,
    payload: Optional[RideCancel] = None,
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.get_current_user)
):
    reason = payload.reason if payload else None
    ride = rides.cancel_ride(session, ride_id, current_user, reason, request=request)
    return ok("Ride cancelled successfully", {"ride": RideOut.from_ride(ride)})


@app.post("/api/rides/{ride_id}/feedback")
def submit_feedback(
    ride_id: int,
    payload: FeedbackInfo,
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.get_current_user)
):
    ride = rides.attach_feedback(session, ride_id, current_user, payload.rating, payload.comment)
    return ok("Feedback submitted successfully", {"ride": RideOut.from_ride(ride)})


# =======================================================
# RIDE ADMINISTRATION (ADMIN ONLY)
# =======================================================
@app.get("/api/admin/rides")
def list_all_rides(
    status_filter: Optional[RideStatus] = Query(None, alias="status"),
    user_id: Optional[int] = None,
    department: Optional[Department] = None,
    start_date: Optional[datetime.datetime] = None,
    end_date: Optional[datetime.datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.require_admin)
):
    found, total = rides.list_rides(
        session, current_user,
        owner_id=user_id,
        status=status_filter,
        start_date=start_date,
        end_date=end_date,
        department=department.value if department else None,
        page=page,
        limit=limit,
    )
    return ok(
        "Rides retrieved successfully",
        {"rides": [RideOut.from_ride(r) for r in found], "pagination": paginate(page, limit, total)},
    )


@app.api_route("/api/admin/rides/{ride_id}/approve", methods=["PUT", "PATCH"])
def approve_ride(
    request: Request,
    ride_id: int,
    payload: Optional[RideApprove] = None,
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.require_admin)
):
    payload = payload or RideApprove()
    ride = rides.approve_ride(
        session, ride_id, current_user,
        driver=payload.driver.model_dump() if payload.driver else None,
        comments=payload.comments,
        request=request,
    )
    return ok("Ride approved successfully", {"ride": RideOut.from_ride(ride)})


@app.api_route("/api/admin/rides/{ride_id}/reject", methods=["PUT", "PATCH"])
def reject_ride(
    request: Request,
    ride_id: int,
    payload: Optional[RideReject] = None,
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.require_admin)
):
    payload = payload or RideReject()
    ride = rides.reject_ride(
        session, ride_id, current_user, payload.reason, payload.comments, request=request
    )
    return ok("Ride rejected successfully", {"ride": RideOut.from_ride(ride)})


@app.put("/api/admin/rides/{ride_id}/cancel")
def admin_cancel_ride(
    request: Request,
    ride_id: int,
    payload: RideCancel,
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.require_admin)
):
    ride = rides.cancel_ride(session, ride_id, current_user, payload.reason, request=request)
    return ok("Ride cancelled successfully", {"ride": RideOut.from_ride(ride)})


@app.put("/api/admin/rides/{ride_id}/driver")
def assign_driver(
    request: Request,
    ride_id: int,
    payload: DriverInfo,
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.require_admin)
):
    ride = rides.assign_driver(session, ride_id, current_user, payload.model_dump(), request=request)
    return ok("Driver assigned successfully", {"ride": RideOut.from_ride(ride)})


@app.put("/api/admin/rides/{ride_id}/start")
def start_ride(
    request: Request,
    ride_id: int,
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.require_admin)
):
    ride = rides.start_ride(session, ride_id, current_user, request=request)
    return ok("Ride started", {"ride": RideOut.from_ride(ride)})


@app.put("/api/admin/rides/{ride_id}/complete")
def complete_ride(
    request: Request,
    ride_id: int,
    payload: Optional[RideComplete] = None,
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.require_admin)
):
    actual_fare = payload.actual_fare if payload else None
    ride = rides.complete_ride(session, ride_id, current_user, actual_fare, request=request)
    return ok("Ride completed", {"ride": RideOut.from_ride(ride)})


# =======================================================
# ANALYTICS, EXPORT AND AUDIT TRAIL (ADMIN ONLY)
# =======================================================
@app.get("/api/admin/analytics")
def get_analytics(
    request: Request,
    start_date: Optional[datetime.datetime] = None,
    end_date: Optional[datetime.datetime] = None,
    department: Optional[Department] = None,
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.require_admin)
):
    result = analytics.ride_analytics(
        session, start_date, end_date, department.value if department else None
    )
    audit.log_action(
        session,
        admin_id=current_user.id,
        action=AdminActionType.VIEW_ANALYTICS,
        target_type=TargetType.ANALYTICS,
        details={
            "start_date": start_date.isoformat() if start_date else None,
            "end_date": end_date.isoformat() if end_date else None,
            "department": department.value if department else None,
        },
        request=request,
    )
    return ok("Analytics retrieved successfully", result)


@app.get("/api/admin/export/rides")
def export_rides(
    request: Request,
    status_filter: Optional[RideStatus] = Query(None, alias="status"),
    department: Optional[Department] = None,
    start_date: Optional[datetime.datetime] = None,
    end_date: Optional[datetime.datetime] = None,
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.require_admin)
):
    """Download the filtered rides as CSV."""
    csv_text = analytics.export_rides_csv(
        session, start_date, end_date,
        department.value if department else None,
        status_filter,
    )
    audit.log_action(
        session,
        admin_id=current_user.id,
        action=AdminActionType.EXPORT_DATA,
        target_type=TargetType.SYSTEM,
        details={"export": "rides", "status": status_filter.value if status_filter else None},
        request=request,
    )
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=rides.csv"},
    )


@app.get("/api/admin/actions")
def get_admin_actions(
    admin_id: Optional[int] = None,
    action: Optional[AdminActionType] = None,
    target_type: Optional[TargetType] = None,
    target_id: Optional[str] = None,
    start_date: Optional[datetime.datetime] = None,
    end_date: Optional[datetime.datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.require_admin)
):
    """Paginated audit trail, newest first."""
    records, total = audit.query_actions(
        session,
        admin_id=admin_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    return ok(
        "Admin actions retrieved successfully",
        {
            "actions": [AdminActionOut.model_validate(r) for r in records],
            "pagination": paginate(page, limit, total),
        },
    )


@app.get("/api/admin/recent-activity")
def get_recent_activity(
    hours: int = Query(24, ge=1, le=24 * 30),
    limit: int = Query(10, ge=1, le=100),
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.require_admin)
):
    activities = audit.recent_activity(session, hours=hours, limit=limit)
    return ok("Recent activity retrieved successfully", {"activities": activities, "total": len(activities)})


# =======================================================
# USER MANAGEMENT
# =======================================================
@app.post("/api/users", status_code=status.HTTP_201_CREATED)
def add_user_admin(
    request: Request,
    payload: UserCreate,
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.require_admin)
):
    """Admin endpoint to create new users."""
    user = crud.admin_create_user(session, current_user, payload.model_dump(), request=request)
    return ok("User created successfully", {"user": UserOut.model_validate(user)})


@app.get("/api/users")
def get_all_users(
    role: Optional[Role] = None,
    department: Optional[Department] = None,
    is_active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.require_admin)
):
    """Admin endpoint to list all users."""
    users, total = crud.list_users(session, role, department, is_active, page, limit)
    return ok(
        "Users retrieved successfully",
        {"users": [UserOut.model_validate(u) for u in users], "pagination": paginate(page, limit, total)},
    )


@app.get("/api/users/{user_id}")
def get_user_by_id(
    user_id: int,
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.get_current_user)
):
    auth.require_owner_or_admin(current_user, user_id, "Not authorized to access this resource")
    user = crud.get_user(session, user_id)
    return ok("User retrieved successfully", {"user": UserOut.model_validate(user)})


@app.put("/api/users/{user_id}")
def update_user_admin(
    request: Request,
    user_id: int,
    payload: UserUpdate,
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.require_admin)
):
    user = crud.admin_update_user(
        session, current_user, user_id, payload.model_dump(exclude_unset=True), request=request
    )
    return ok("User updated successfully", {"user": UserOut.model_validate(user)})


@app.patch("/api/users/{user_id}/deactivate")
def deactivate_user(
    request: Request,
    user_id: int,
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.require_admin)
):
    user = crud.set_user_active(session, current_user, user_id, False, request=request)
    return ok("User deactivated successfully", {"user": UserOut.model_validate(user)})


@app.patch("/api/users/{user_id}/activate")
def activate_user(
    request: Request,
    user_id: int,
    session: Session = Depends(db.get_db),
    current_user: User = Depends(auth.require_admin)
):
    user = crud.set_user_active(session, current_user, user_id, True, request=request)
    return ok("User activated successfully", {"user": UserOut.model_validate(user)})
