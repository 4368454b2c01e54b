"""
Database configuration and session management
"""
import logging
import threading
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import DateTime, create_engine, event
from sqlalchemy.dialects import mysql
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import Settings, get_settings, set_settings
from .dialects import Dialect, dialect_for

logger = logging.getLogger("tasktrack.db")

# Naive UTC timestamps; MySQL needs an explicit fractional-seconds precision
UTCDateTime = DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql", "mariadb")

Base = declarative_base()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)

engine: Optional[Engine] = None
dialect: Optional[Dialect] = None

_configure_lock = threading.Lock()


def _sqlite_on_connect(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    try:
        # cascades on task_runs deletion rely on this
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.execute("PRAGMA journal_mode=WAL")
    finally:
        cursor.close()


def _search_path_listener(schema: str):
    def _on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute(f'SET search_path TO "{schema}", public')
        finally:
            cursor.close()
    return _on_connect


def configure(settings: Optional[Settings] = None) -> Engine:
    """Create the engine and bind the session factory for this process"""
    global engine, dialect
    with _configure_lock:
        settings = settings or get_settings()
        set_settings(settings)
        url = settings.database_url

        if engine is not None:
            engine.dispose()

        if url.startswith("sqlite"):
            new_engine = create_engine(
                url,
                echo=settings.echo_sql,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
            event.listen(new_engine, "connect", _sqlite_on_connect)
        else:
            new_engine = create_engine(
                url,
                echo=settings.echo_sql,
                pool_pre_ping=True,
                pool_size=10,
                max_overflow=20,
            )
            if settings.db_schema and new_engine.dialect.name == "postgresql":
                event.listen(new_engine, "connect", _search_path_listener(settings.db_schema))

        engine = new_engine
        dialect = dialect_for(new_engine.dialect.name)
        SessionLocal.configure(bind=new_engine)
        logger.info("database configured", extra={"component": "db", "backend": dialect.name})
        return new_engine


def get_engine() -> Engine:
    if engine is None:
        configure()
    return engine


def get_dialect() -> Dialect:
    if dialect is None:
        configure()
    return dialect


def init_db():
    """Create tables (idempotent) and recreate the views"""
    # Make sure all models are imported so Base.metadata is populated
    import tasktrack.models  # noqa: F401

    eng = get_engine()
    settings = get_settings()
    with eng.begin() as conn:
        if settings.db_schema and eng.dialect.name == "postgresql":
            conn.exec_driver_sql(f'CREATE SCHEMA IF NOT EXISTS "{settings.db_schema}"')
        Base.metadata.create_all(bind=conn)
        for statement in get_dialect().view_statements():
            conn.exec_driver_sql(statement)
    logger.info("Database tables and views created successfully", extra={"component": "db"})


def dispose():
    """Drop pooled connections so the next checkout opens fresh ones"""
    if engine is not None:
        engine.dispose()


# Dependency to get database session
def get_db():
    get_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope():
    get_engine()
    s = SessionLocal()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
