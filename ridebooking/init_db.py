# ridebooking/init_db.py
"""
Create the schema and seed an admin account.

    python -m ridebooking.init_db [--reset]

Credentials come from ADMIN_EMAIL / ADMIN_PASSWORD / ADMIN_EMPLOYEE_ID.
"""
import os
import sys
import logging
from sqlalchemy.orm import Session
from dotenv import load_dotenv
from . import models  # noqa: F401  (registers the tables on Base)
from .auth import hash_password
from .db import Base, engine, SessionLocal
from .models import User, Role, Department

load_dotenv()

logger = logging.getLogger(__name__)


def seed_admin(db: Session) -> User:
    """Create the bootstrap admin account unless one with that email exists."""
    email = os.getenv("ADMIN_EMAIL", "admin@company.com").lower()
    admin = db.query(User).filter(User.email == email).first()
    if admin:
        logger.info("Admin user %s already exists", email)
        return admin

    admin = User(
        email=email,
        hashed_password=hash_password(os.getenv("ADMIN_PASSWORD", "Admin123")),
        first_name="System",
        last_name="Administrator",
        employee_id=os.getenv("ADMIN_EMPLOYEE_ID", "ADMIN001").upper(),
        phone="+10000000000",
        department=Department.OPERATIONS.value,
        role=Role.ADMIN.value,
        is_active=True,
    )
    db.add(admin)
    db.commit()
    db.refresh(admin)
    logger.info("Admin user created. Email: %s", email)
    return admin


def init_db(reset: bool = False):
    if reset:
        logger.info("Dropping all tables...")
        Base.metadata.drop_all(bind=engine)

    logger.info("Creating all tables...")
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        seed_admin(db)
        logger.info("Database initialization complete!")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    init_db(reset="--reset" in sys.argv)
