import os
import socket
from contextlib import closing

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from importhub.core.config import settings

_engine = None


def _report_connection_failure(database_url: str, exc: Exception) -> None:
    """Print high-signal diagnostics when the application cannot reach the database."""
    print(f"Warning: Could not connect to database: {exc}")
    print("The application will start but imports will fail until the connection succeeds.")

    try:
        url = make_url(database_url)
    except Exception as parse_error:  # pragma: no cover
        print(f"  Unable to parse DATABASE_URL ({parse_error}); skipping detailed diagnostics.")
        return

    if url.get_backend_name() == "sqlite":
        print(f"    SQLite database: {url.database}")
        return

    masked_url = url._replace(password="***" if url.password else None)
    print("  Database connection settings:")
    print(f"    Dialect: {masked_url.get_backend_name()} (driver: {masked_url.get_driver_name() or 'default'})")
    print(f"    Host: {masked_url.host or 'localhost'}")
    print(f"    Port: {masked_url.port or '(default)'}")
    print(f"    Database: {masked_url.database}")
    print(f"    Username: {masked_url.username}")
    print(f"    SKIP_DB_INIT: {os.getenv('SKIP_DB_INIT')!r}")

    host = masked_url.host or "localhost"
    port = masked_url.port or 5432

    try:
        with closing(socket.create_connection((host, port), timeout=2)):
            print(f"    Socket check: ✅ Able to reach {host}:{port}")
    except OSError as socket_err:
        print(f"    Socket check: ❌ Unable to reach {host}:{port} ({socket_err})")


def build_engine(database_url: str) -> Engine:
    """Create an engine; SQLite files get thread-friendly connect args for the worker pools."""
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        _serialize_sqlite_writers(engine)
        return engine
    return create_engine(database_url, pool_pre_ping=True)


def _serialize_sqlite_writers(engine: Engine) -> None:
    """
    Take the SQLite write lock when a transaction starts. Deferred transactions
    that read and then write can fail with "database is locked" without waiting
    when several persistence threads share one file.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def get_engine():
    global _engine
    if _engine is None:
        try:
            _engine = build_engine(settings.database_url)
            # Test connection eagerly so failures surface immediately.
            with _engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            _report_connection_failure(settings.database_url, e)
            # Create the engine anyway so callers can proceed (may still fail later).
            _engine = build_engine(settings.database_url)
    return _engine


Base = declarative_base()


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create all tables known to the ORM metadata."""
    # Import for side effects so every model is registered on Base.metadata.
    from importhub.db import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
