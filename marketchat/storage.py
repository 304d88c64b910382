import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, Iterator, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import (
    DisconnectionError,
    InterfaceError,
    OperationalError,
    ProgrammingError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from marketchat.config import settings
from marketchat.errors import StoreUnavailable, StoreUnreachable

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to be shared by the
# FastAPI worker threads; other drivers do not accept the argument
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

CORE_TABLES = ("chat_conversations", "chat_messages", "notifications")

# Driver messages that mean the schema was never applied
_MISSING_SCHEMA_MARKERS = (
    "no such table",
    "does not exist",
    "undefined table",
    "no such column",
)


def utc_now() -> str:
    """
    Current server time as a fixed-width ISO-8601 UTC string.

    Microsecond precision and a fixed width keep lexicographic order equal
    to chronological order, which the message ordering relies on.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {engine.url.render_as_string(hide_password=True)}")
    try:
        # Import models to register them with Base.metadata
        from marketchat import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> Optional[str]:
    """
    Check if the database is reachable and the chat schema is applied.

    Returns:
        None if healthy, otherwise a short reason string.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        existing = set(inspect(engine).get_table_names())
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return "Database not reachable"

    missing = [name for name in CORE_TABLES if name not in existing]
    if missing:
        logger.error(f"Database schema not applied, missing tables: {missing}")
        return f"Database schema not applied: missing {', '.join(missing)}"
    logger.debug("Database health check passed")
    return None


def _is_missing_schema(exc: SQLAlchemyError) -> bool:
    orig = getattr(exc, "orig", None)
    # 42P01 is PostgreSQL's undefined_table
    if getattr(orig, "pgcode", None) == "42P01":
        return True
    message = str(orig if orig is not None else exc).lower()
    return any(marker in message for marker in _MISSING_SCHEMA_MARKERS)


@contextmanager
def translate_store_errors(db: Optional[Session] = None) -> Iterator[None]:
    """
    Map driver-level failures onto StoreUnavailable / StoreUnreachable.

    IntegrityError passes through untouched; the registry reads it as a
    lost creation race. The session, when given, is rolled back before the
    translated error propagates.
    """
    try:
        yield
    except ProgrammingError as e:
        _rollback(db)
        logger.error(f"Store misconfigured: {e}")
        raise StoreUnavailable("Chat system not configured. Please run database setup.") from e
    except OperationalError as e:
        _rollback(db)
        if _is_missing_schema(e):
            logger.error(f"Store schema missing: {e}")
            raise StoreUnavailable("Chat system not configured. Please run database setup.") from e
        logger.warning(f"Store unreachable: {e}")
        raise StoreUnreachable("Chat service temporarily unavailable") from e
    except (InterfaceError, DisconnectionError, PoolTimeoutError) as e:
        _rollback(db)
        logger.warning(f"Store unreachable: {e}")
        raise StoreUnreachable("Chat service temporarily unavailable") from e


def _rollback(db: Optional[Session]) -> None:
    if db is None:
        return
    try:
        db.rollback()
    except SQLAlchemyError as e:
        logger.warning(f"Rollback after store failure also failed: {e}")
