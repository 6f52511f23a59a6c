import logging
import os
import re
import ssl
import time
import urllib.parse
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from core.config import DATABASE_URL as _CONFIGURED_DATABASE_URL, TESTING
from core.errors import Conflict, Internal, MessagingError

logger = logging.getLogger(__name__)

DATABASE_URL = _CONFIGURED_DATABASE_URL

if not DATABASE_URL:
    if TESTING:
        # In testing environment, use SQLite in-memory database as fallback
        DATABASE_URL = "sqlite:///:memory:"
        logger.warning("Using in-memory SQLite database for testing")
    else:
        raise ValueError("DATABASE_URL environment variable is not set")

ssl_mode = None

# Only apply PostgreSQL-specific modifications if we're actually using PostgreSQL
if not DATABASE_URL.startswith("sqlite"):
    # If using Heroku/Vercel, convert the postgres:// URL to postgresql://
    if DATABASE_URL.startswith("postgres://"):
        DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

    parsed = urllib.parse.urlparse(DATABASE_URL)
    query_params = urllib.parse.parse_qs(parsed.query)
    ssl_mode = query_params.get("sslmode", [None])[0]

    # Modify URL to use pg8000 instead of psycopg2
    if "postgresql" in DATABASE_URL and "+" not in DATABASE_URL.split("://", 1)[0]:
        pattern = r"postgresql://([^:]+):([^@]+)@([^:/]+):?(\d*)/?([^?]*)"
        match = re.match(pattern, DATABASE_URL)

        if match:
            username, password, host, port, dbname = match.groups()
            if not port:
                port = "5432"
            # Reconstruct URL with pg8000 driver (without URL-level SSL params)
            DATABASE_URL = (
                f"postgresql+pg8000://{username}:{password}@{host}:{port}/{dbname}"
            )


def build_engine(url: str):
    """Create an engine with the pool/SSL settings appropriate for ``url``."""
    if url.startswith("sqlite"):
        kwargs = {"echo": False, "connect_args": {"check_same_thread": False}}
        if ":memory:" in url:
            # One shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
        sqlite_engine = create_engine(url, **kwargs)
        _enable_sqlite_foreign_keys(sqlite_engine)
        return sqlite_engine

    connect_args = {}
    if ssl_mode == "disable" or TESTING:
        pass
    elif ssl_mode == "require" or not ssl_mode:
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
        connect_args["ssl_context"] = ssl_context

    return create_engine(
        url,
        pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "20")),
        pool_timeout=int(os.getenv("DB_POOL_TIMEOUT_SECONDS", "30")),
        pool_pre_ping=True,
        echo=False,
        pool_recycle=int(os.getenv("DB_POOL_RECYCLE_SECONDS", "300")),
        # Conversation mutations rely on at least read-committed isolation
        isolation_level="READ COMMITTED",
        connect_args=connect_args,
    )


def _enable_sqlite_foreign_keys(_engine):
    # SQLite ignores ON DELETE CASCADE unless the pragma is on for each connection
    @event.listens_for(_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def install_slow_query_logging(_engine):
    threshold_ms = float(os.getenv("SLOW_DB_QUERY_THRESHOLD_MS", "200"))
    if threshold_ms <= 0:
        return

    slow_logger = logging.getLogger("db.slow_query")

    @event.listens_for(_engine, "before_cursor_execute")
    def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        context._query_start_time = time.perf_counter()

    @event.listens_for(_engine, "after_cursor_execute")
    def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        start = getattr(context, "_query_start_time", None)
        if start is None:
            return
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        if elapsed_ms < threshold_ms:
            return

        stmt = " ".join(str(statement).split())
        if len(stmt) > 500:
            stmt = stmt[:500] + "…"
        params_repr = repr(parameters)
        if len(params_repr) > 500:
            params_repr = params_repr[:500] + "…"

        slow_logger.warning(
            "SLOW_DB_QUERY | ms=%.1f | stmt=%s | params=%s",
            elapsed_ms,
            stmt,
            params_repr,
        )


engine = build_engine(DATABASE_URL)
install_slow_query_logging(engine)

# Create SessionLocal class
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create Base class
Base = declarative_base()


def get_db():
    """Dependency to get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()



@contextmanager
def atomic(db, *, action: str):
    """Run the block as one transaction on ``db``.

    Commits when the block finishes; rolls back on any exception. Domain errors
    pass through untouched, unique/foreign-key violations become ``Conflict``
    and any other store failure becomes ``Internal``.
    """
    try:
        yield db
        db.commit()
    except MessagingError:
        db.rollback()
        raise
    except IntegrityError as exc:
        db.rollback()
        logger.warning("Integrity violation during %s: %s", action, exc.orig)
        raise Conflict(f"Conflicting data while trying to {action}")
    except SQLAlchemyError:
        db.rollback()
        logger.error("Store failure during %s", action, exc_info=True)
        raise Internal(f"Failed to {action}")
    except BaseException:
        db.rollback()
        raise
