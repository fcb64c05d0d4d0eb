"""
Database connection management.

Builds the SQLAlchemy engine and session factory used by the persistent
session store. PostgreSQL gets a pooled engine; SQLite (the local default)
gets a single-file engine that can be shared across threads.
"""
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool
from core.config import settings
import logging

logger = logging.getLogger(__name__)

Base = declarative_base()


def build_engine(database_url: str = None) -> Engine:
    """Create an engine for the given URL (defaults to settings.DATABASE_URL)."""
    url = database_url or settings.DATABASE_URL
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            echo=settings.DEBUG,
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=settings.DB_POOL_SIZE,  # Number of connections to maintain
        max_overflow=settings.DB_MAX_OVERFLOW,  # Additional connections beyond pool_size
        pool_timeout=settings.DB_POOL_TIMEOUT,  # Seconds to wait for connection
        pool_recycle=settings.DB_POOL_RECYCLE,  # Recycle connections after this many seconds
        pool_pre_ping=True,  # Verify connections before using
        echo=settings.DEBUG,  # Log SQL queries in debug mode
    )


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=bind,
        expire_on_commit=False,  # Prevent lazy loading issues
    )


engine = build_engine()

SessionLocal = build_session_factory(engine)


def init_db(bind: Engine = None) -> None:
    """Create all tables that do not exist yet."""
    import models  # noqa: F401  (registers tables on Base.metadata)

    Base.metadata.create_all(bind=bind or engine)


def check_db_connection(bind: Engine = None) -> bool:
    """True when a trivial query succeeds on the engine."""
    try:
        with (bind or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Database unreachable at {(bind or engine).url.render_as_string(hide_password=True)}: {e}")
        return False
    return True
