# ridebooking/db.py
"""
Engine, session factory and declarative base.

DATABASE_URL picks the backend: PostgreSQL or MySQL get a pooled engine,
anything else is treated as SQLite (local runs and the test suite).
"""
import os
import logging
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./rides.db")

DATABASE_TYPES = {"postgresql": "PostgreSQL", "mysql": "MySQL", "sqlite": "SQLite"}
DATABASE_TYPE = next(
    (name for prefix, name in DATABASE_TYPES.items() if DATABASE_URL.startswith(prefix)),
    "unknown",
)


def _sqlite_engine(url: str):
    # one shared connection, so in-memory databases survive across sessions
    sqlite_engine = create_engine(
        url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(sqlite_engine, "connect")
    def enable_foreign_keys(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return sqlite_engine


if DATABASE_TYPE in ("PostgreSQL", "MySQL"):
    engine = create_engine(
        DATABASE_URL,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
    )
else:
    engine = _sqlite_engine(DATABASE_URL)
logger.info("[DB] Using %s database", DATABASE_TYPE)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency yielding a session that is closed after the request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def initialize_database():
    """Create missing tables. Runs at application startup."""
    from . import models  # noqa: F401  (registers the tables on Base)

    try:
        Base.metadata.create_all(bind=engine)
    except Exception:
        logger.exception("[DB] Error initializing database")
        raise
    logger.info("[DB] Database tables created/verified")


def close_database():
    engine.dispose()
    logger.info("[DB] Database connections closed")


def check_database_health() -> bool:
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("[DB] Health check failed: %s", e)
        return False
    return True
