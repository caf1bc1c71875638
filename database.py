"""
Database Configuration and Session Management
============================================

Engine construction, the session factory and table creation for the escrow
settlement engine. PostgreSQL in production, SQLite for local runs and tests.
"""

import logging
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """Create an engine tuned for the target backend"""
    url = database_url or Config.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    if url.startswith("sqlite"):
        sqlite_engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(sqlite_engine, "connect")
        def _configure_sqlite_connection(dbapi_connection, connection_record):
            # Hand transaction control to SQLAlchemy so SAVEPOINTs behave
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(sqlite_engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN")

        return sqlite_engine

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=30,
        echo=echo,
        connect_args={
            "connect_timeout": 10,
            "application_name": "escrow_settlement_engine",
        },
    )


def build_session_factory(bind: Engine) -> sessionmaker:
    # expire_on_commit=False keeps returned rows readable after the unit of work closes
    return sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


engine = build_engine(echo=Config.DATABASE_ECHO)
SessionLocal = build_session_factory(engine)


def create_tables(bind: Optional[Engine] = None):
    """Create all database tables if they don't exist"""
    target = bind or engine
    logger.info("🏗️ Creating database tables (if they don't exist)...")
    Base.metadata.create_all(bind=target)
    logger.info("✅ Database tables ready")


def get_session() -> Session:
    """Get a new database session"""
    return SessionLocal()


@contextmanager
def managed_session(session_factory: Optional[sessionmaker] = None):
    """Sync context manager for database sessions"""
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()
