"""SQLModel engine singleton, schema initialization and health check."""
import logging
from datetime import datetime

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, select

from erpwms.config import get_settings

logger = logging.getLogger(__name__)

_engine = None


class DatabaseInitError(RuntimeError):
    """Raised when the status database cannot be created or reached."""


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        connect_args = {}
        if settings.database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        _engine = create_engine(settings.database_url, connect_args=connect_args)
    return _engine


def init_database(engine, scope: str) -> None:
    """Create tables, apply migrations and record the first initialization.

    Safe to call on every start.

    Raises:
        DatabaseInitError: if the schema cannot be created or migrated.
    """
    # Import all models so metadata is populated before create_all
    from erpwms.models import sync  # noqa: F401
    from erpwms.db.migrations import run_migrations
    from erpwms.models.sync import IntegrationLog

    try:
        SQLModel.metadata.create_all(engine)
        run_migrations(engine)
        with Session(engine) as s:
            seeded = s.exec(
                select(IntegrationLog).where(
                    IntegrationLog.scope == scope,
                    IntegrationLog.operation == "DatabaseInitialization",
                )
            ).first()
            if seeded is None:
                s.add(IntegrationLog(
                    level="Information",
                    scope=scope,
                    operation="DatabaseInitialization",
                    message=f"Status database initialized for {scope}",
                    timestamp=datetime.utcnow(),
                ))
                s.commit()
    except SQLAlchemyError as exc:
        raise DatabaseInitError(f"Failed to initialize database: {exc}") from exc

    logger.info("Database initialized for company %s", scope)


def verify_database_health(engine) -> bool:
    """Return True if the database answers a trivial query."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as exc:
        logger.error("Database health check failed: %s", exc)
        return False
