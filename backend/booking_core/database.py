from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from booking_core.core.config import settings
import os
import logging
from contextlib import contextmanager

logger = logging.getLogger(__name__)

if os.getenv("PYTEST_RUN") == "1":
    SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"
else:
    SQLALCHEMY_DATABASE_URL = settings.SQLALCHEMY_DATABASE_URL


def _install_sqlite_hooks(engine: Engine, busy_timeout_ms: int) -> None:
    """Make SQLite transactions behave like row-locked writers.

    pysqlite defers BEGIN until the first DML statement, so two transactions
    could both read an empty slot before either writes. Taking the write lock
    up front with BEGIN IMMEDIATE makes the second writer wait (up to the busy
    timeout) until the first commits or rolls back, then re-read.
    """

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):  # type: ignore[no-redef]
        # Hand transaction control to the "begin" hook below
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        try:
            # WAL improves read concurrency; NORMAL reduces fsync pressure.
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)};")
        finally:
            cursor.close()

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):  # type: ignore[no-redef]
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(url: str, **kwargs) -> Engine:
    """Build an engine with the pool/pragma setup used by the API."""
    is_sqlite = url.startswith("sqlite")
    pool_kwargs = {
        # Avoid stale idle connections causing first-hit failures after inactivity
        "pool_pre_ping": True,
    }
    if is_sqlite:
        connect_args = {
            "check_same_thread": False,
            "timeout": max(settings.DB_LOCK_TIMEOUT_MS, 1) / 1000.0,
        }
    else:
        connect_args = {}
        pool_kwargs.update({
            "pool_size": int(os.getenv("DB_POOL_SIZE") or 6),
            "max_overflow": int(os.getenv("DB_MAX_OVERFLOW") or 6),
            "pool_recycle": int(os.getenv("DB_POOL_RECYCLE") or 300),
            "pool_timeout": float(os.getenv("DB_POOL_TIMEOUT") or 5.0),
        })
    pool_kwargs.update(kwargs)
    engine = create_engine(url, connect_args=connect_args, **pool_kwargs)
    if is_sqlite:
        _install_sqlite_hooks(engine, settings.DB_LOCK_TIMEOUT_MS)
    return engine


engine = create_db_engine(SQLALCHEMY_DATABASE_URL)
# Committed rows stay loaded so responses never reopen a transaction;
# locking reads pass populate_existing to see other sessions' writes.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

Base = declarative_base()


# Dependency
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# ─── Simple context manager for ad‑hoc DB sessions (workers, scripts) ────────
@contextmanager
def get_db_session():
    """Provide a short‑lived SessionLocal with guaranteed close.

    Use in places where FastAPI Depends is unavailable (background side
    effects, CLI scripts) so connections are promptly returned to the pool.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
