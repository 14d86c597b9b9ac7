# ridebooking/analytics.py
"""Aggregate ride statistics and CSV export for the admin dashboard."""
import logging
from datetime import datetime
from typing import Optional
import pandas as pd
from sqlalchemy.orm import Session
from .models import Ride, User, Role, RideStatus
from .schemas import as_naive_utc

logger = logging.getLogger(__name__)

RIDE_COLUMNS = [
    "id", "user_id", "employee_id", "department", "pickup", "drop",
    "schedule_time", "status", "estimated_fare", "actual_fare",
    "driver_name", "approved_by", "rejection_reason", "cancellation_reason",
    "created_at",
]

EMPTY_FARES = {"total_fare": 0.0, "avg_fare": 0.0, "max_fare": 0.0, "min_fare": 0.0}


def rides_frame(
    db: Session,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    department: Optional[str] = None,
    status: Optional[RideStatus] = None,
    date_field: str = "created_at",
) -> pd.DataFrame:
    """Load matching rides, joined with their owner's department, into a DataFrame."""
    column = getattr(Ride, date_field)
    start_date, end_date = as_naive_utc(start_date), as_naive_utc(end_date)
    query = db.query(
        Ride.id, Ride.user_id, User.employee_id, User.department,
        Ride.pickup, Ride.drop, Ride.schedule_time, Ride.status,
        Ride.estimated_fare, Ride.actual_fare, Ride.driver_name,
        Ride.approved_by, Ride.rejection_reason, Ride.cancellation_reason,
        Ride.created_at,
    ).join(User, Ride.user_id == User.id)

    if start_date is not None:
        query = query.filter(column >= start_date)
    if end_date is not None:
        query = query.filter(column <= end_date)
    if department is not None:
        query = query.filter(User.department == getattr(department, "value", department))
    if status is not None:
        query = query.filter(Ride.status == RideStatus(status).value)

    return pd.DataFrame([tuple(row) for row in query.all()], columns=RIDE_COLUMNS)


def _round(value) -> float:
    return round(float(value), 2) if pd.notna(value) else 0.0


def ride_analytics(
    db: Session,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    department: Optional[str] = None,
) -> dict:
    df = rides_frame(db, start_date, end_date, department)
    counts = df["status"].value_counts()
    total = int(len(df))
    approved = int(counts.get(RideStatus.APPROVED.value, 0))

    summary = {
        "total_rides": total,
        **{f"{s.value}_rides": int(counts.get(s.value, 0)) for s in RideStatus},
        "total_users": db.query(User).filter(User.role != Role.ADMIN.value).count(),
        "approval_rate": round(approved / total * 100, 2) if total else 0,
    }

    departments = []
    monthly = []
    fares = dict(EMPTY_FARES)
    if total:
        by_department = (
            df.groupby("department")["estimated_fare"]
            .agg(["count", "sum", "mean"])
            .sort_values("count", ascending=False)
        )
        departments = [
            {
                "department": name,
                "total_rides": int(row["count"]),
                "total_fare": _round(row["sum"]),
                "avg_fare": _round(row["mean"]),
            }
            for name, row in by_department.iterrows()
        ]

        created = pd.to_datetime(df["created_at"])
        by_month = (
            df.assign(year=created.dt.year, month=created.dt.month)
            .groupby(["year", "month", "status"])["estimated_fare"]
            .agg(["count", "sum"])
            .sort_index(ascending=[False, False, True])
        )
        monthly = [
            {
                "year": int(year),
                "month": int(month),
                "status": status,
                "count": int(row["count"]),
                "total_fare": _round(row["sum"]),
            }
            for (year, month, status), row in by_month.iterrows()
        ]

        billable = df[df["status"].isin([RideStatus.APPROVED.value, RideStatus.COMPLETED.value])]
        if not billable.empty:
            fare = billable["estimated_fare"]
            fares = {
                "total_fare": _round(fare.sum()),
                "avg_fare": _round(fare.mean()),
                "max_fare": _round(fare.max()),
                "min_fare": _round(fare.min()),
            }

    logger.info("[ANALYTICS] Computed analytics over %s rides", total)
    return {
        "summary": summary,
        "department_analytics": departments,
        "monthly_analytics": monthly,
        "fare_analytics": fares,
    }


def export_rides_csv(
    db: Session,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    department: Optional[str] = None,
    status: Optional[RideStatus] = None,
) -> str:
    """Render the filtered rides (by schedule time) as CSV text."""
    df = rides_frame(db, start_date, end_date, department, status, date_field="schedule_time")
    df = df.sort_values("created_at", ascending=False)
    return df.to_csv(index=False)
