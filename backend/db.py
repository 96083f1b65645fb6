import os
import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker

from models import Base

logger = logging.getLogger(__name__)


def get_engine(database_url: str):
    """Create the SQLAlchemy engine for the queue store.

    SQLite URLs get their parent directory created and a busy timeout, so the
    status surface and the poll worker can share the file.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        db_path = database_url.split("///", 1)[-1]
        directory = os.path.dirname(db_path)
        if directory and db_path != ":memory:":
            os.makedirs(directory, exist_ok=True)
        connect_args = {"check_same_thread": False, "timeout": 30}

    engine = create_engine(
        database_url,
        connect_args=connect_args,
        pool_pre_ping=True,
        pool_recycle=3600
    )

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

    return engine


def init_database(engine):
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(engine)
    logger.info(f"Database initialized ({engine.dialect.name})")


def check_database(engine) -> bool:
    """Readiness check: True when a trivial query succeeds."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database readiness check failed: {e}")
        return False


@contextmanager
def get_session(engine):
    """Context manager for database sessions"""
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
