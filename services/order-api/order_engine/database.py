import time
from contextlib import contextmanager
from datetime import datetime, timezone

import structlog
from sqlalchemy import create_engine, event
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool

from . import config
from .errors import ConcurrencyConflictError

logger = structlog.get_logger(__name__)

Base = declarative_base()

# SQLSTATE serialization_failure / deadlock_detected
_TRANSIENT_PGCODES = {"40001", "40P01"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def make_engine(url: str, **kwargs):
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True, **kwargs)

    kwargs.setdefault("connect_args", {"check_same_thread": False})
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs.setdefault("poolclass", StaticPool)
    engine = create_engine(url, **kwargs)

    # SQLite has no row locks: take the write lock when the transaction starts
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


engine = make_engine(config.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


@contextmanager
def session_scope(factory=None):
    db = (factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, StaleDataError):
        return True
    if isinstance(exc, DBAPIError):
        orig = exc.orig
        if getattr(orig, "pgcode", None) in _TRANSIENT_PGCODES:
            return True
        return "database is locked" in str(orig)
    return False


def run_in_transaction(db, fn, *args, attempts: int = None, backoff: float = None, **kwargs):
    """Run ``fn(db, *args, **kwargs)`` as one transaction.

    Commits on success and rolls back on any error. Transient contention is
    retried from scratch on a fresh transaction, up to ``attempts`` times.
    """
    attempts = attempts or config.TX_MAX_ATTEMPTS
    backoff = config.TX_RETRY_BACKOFF_SEC if backoff is None else backoff

    for attempt in range(1, attempts + 1):
        try:
            result = fn(db, *args, **kwargs)
            db.commit()
            return result
        except Exception as e:
            db.rollback()
            if not is_transient(e):
                raise
            logger.warning("transaction conflict", operation=fn.__name__, attempt=attempt, error=str(e))
            if attempt == attempts:
                raise ConcurrencyConflictError(
                    f"{fn.__name__} gave up after {attempts} attempts: {e}"
                ) from e
            time.sleep(backoff * attempt)
