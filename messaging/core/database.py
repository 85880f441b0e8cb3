"""
Database connection and session management.
"""
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from messaging.core.config import get_settings
from messaging.core.logging import get_logger, log_extra

logger = get_logger(__name__)

Base = declarative_base()

# Engine and session factory (initialized lazily)
_engine = None
_SessionLocal = None


def _ensure_sqlite_directory(database_url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    db_path = database_url.replace("sqlite:///", "")
    if not db_path or db_path == ":memory:":
        return
    if db_path.startswith("./"):
        db_path = db_path[2:]
    db_dir = Path(db_path).parent
    if db_dir and not db_dir.exists():
        db_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Created database directory", **log_extra(directory=str(db_dir)))


def enable_sqlite_foreign_keys(engine: Engine) -> None:
    """SQLite ignores foreign keys unless asked on every connection."""

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def get_engine():
    """Get or create the database engine."""
    global _engine
    if _engine is None:
        settings = get_settings()

        connect_args = {}
        is_sqlite = settings.database_url.startswith("sqlite")
        if is_sqlite:
            connect_args["check_same_thread"] = False
            _ensure_sqlite_directory(settings.database_url)

        _engine = create_engine(
            settings.database_url,
            connect_args=connect_args,
            echo=settings.debug,
            pool_pre_ping=True,
        )
        if is_sqlite:
            enable_sqlite_foreign_keys(_engine)

        logger.info("Database engine created", **log_extra(database_url=settings.database_url))

    return _engine


def get_session_factory():
    """Get or create the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=get_engine()
        )
    return _SessionLocal


def get_db() -> Generator[Session, None, None]:
    """Dependency to get database session."""
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Initialize database tables."""
    from messaging.models import message, user  # noqa: F401 - Import to register models

    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")
