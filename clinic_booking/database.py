import logging
import time
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from clinic_booking.config import (
    DATABASE_URL,
    DB_LOG_SLOW_QUERIES,
    DB_MAX_OVERFLOW,
    DB_POOL_RECYCLE,
    DB_POOL_SIZE,
    DB_POOL_TIMEOUT,
    DB_SLOW_QUERY_THRESHOLD,
    TRANSACTION_RETRY_ATTEMPTS,
)
from clinic_booking.core.exceptions import TransientStoreConflictError

logger = logging.getLogger(__name__)

Base = declarative_base()


def build_engine(url: str):
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    else:
        engine = create_engine(
            url,
            pool_pre_ping=True,
            pool_recycle=DB_POOL_RECYCLE,
            pool_size=DB_POOL_SIZE,
            max_overflow=DB_MAX_OVERFLOW,
            pool_timeout=DB_POOL_TIMEOUT,
        )

    if DB_LOG_SLOW_QUERIES:

        @event.listens_for(engine, "before_cursor_execute")
        def before_cursor_execute(conn, _cursor, statement, _parameters, context, _executemany):
            conn.info.setdefault("query_start_time", []).append(time.time())

        @event.listens_for(engine, "after_cursor_execute")
        def after_cursor_execute(conn, _cursor, statement, _parameters, context, _executemany):
            total = time.time() - conn.info["query_start_time"].pop(-1)
            if total > DB_SLOW_QUERY_THRESHOLD:
                logger.warning(f"Slow query ({total:.2f}s): {statement[:200]}...")

    return engine


engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None):
    # Importing the models registers their tables on Base.metadata
    from clinic_booking.models import booking, notification, queue, schedule, service, user  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session):
    """Run a unit of work and commit it, rolling back on any error.

    Lock timeouts, serialization failures and unique violations on the slot
    lock rows are turned into TransientStoreConflictError so callers can retry.
    """
    try:
        yield db
        db.commit()
    except (OperationalError, IntegrityError) as e:
        db.rollback()
        logger.warning(f"Transaction aborted by the store: {e.orig}")
        raise TransientStoreConflictError(
            "The slot is being modified by another request, please retry",
            {"store_error": str(e.orig)},
        ) from e
    except Exception:
        db.rollback()
        raise


def retry_on_conflict(operation, attempts: int = TRANSACTION_RETRY_ATTEMPTS):
    """Call ``operation`` until it stops losing slot races, at most ``attempts`` times."""
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except TransientStoreConflictError:
            if attempt == attempts:
                logger.error(f"Giving up after {attempts} conflicting attempts")
                raise
            logger.warning(f"Transient store conflict, retrying ({attempt}/{attempts})")
