import sqlite3

import structlog
from sqlmodel import create_engine, SQLModel
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from app.core.config import settings

logger = structlog.get_logger(__name__)


def build_engine(database_url: str) -> Engine:
    """
    Create an engine with a bounded connection pool.

    In-memory SQLite shares a single connection (StaticPool). Everything else
    gets a fixed-size queue pool without overflow so concurrent report queries
    cannot exhaust the database.
    """
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {"connect_timeout": 10}
    return create_engine(
        database_url,
        echo=False,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=0,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=settings.DB_POOL_RECYCLE,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        connect_args=connect_args,
    )


engine = build_engine(settings.DATABASE_URL)


@event.listens_for(Engine, "connect")
def set_connection_pragmas(dbapi_connection, connection_record):
    """Enforce foreign keys and a lock wait on SQLite, a statement timeout elsewhere."""
    cursor = dbapi_connection.cursor()
    try:
        if isinstance(dbapi_connection, sqlite3.Connection):
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=5000")
        else:
            cursor.execute("SET statement_timeout = '30s'")
    except Exception as e:
        logger.warning("Could not set connection parameters", error=str(e))
    finally:
        cursor.close()


def create_db_and_tables(bind: Engine | None = None):
    # Register table metadata before create_all
    import app.models  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)
