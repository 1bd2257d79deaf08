"""Database connection and session management."""

from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from .config import settings
from .models import Base


def create_db_engine(database_url: str) -> Engine:
    """Create an engine with pool settings suited to the backend."""
    if database_url.startswith("sqlite"):
        # Threads share the file; wait on the writer lock instead of failing fast
        return create_engine(
            database_url,
            echo=settings.db_echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    return create_engine(
        database_url,
        echo=settings.db_echo,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )


def create_session_factory(bind: Engine) -> sessionmaker:
    """Session factory whose objects stay readable after the session closes."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


# Create engine
engine = create_db_engine(settings.database_url)

# Session factory
SessionLocal = create_session_factory(engine)


def init_db(bind: Optional[Engine] = None) -> None:
    """Initialize database tables."""
    Base.metadata.create_all(bind=bind or engine)


def drop_db(bind: Optional[Engine] = None) -> None:
    """Drop all database tables. Use with caution!"""
    Base.metadata.drop_all(bind=bind or engine)


@contextmanager
def get_db(factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """Get a database session with automatic cleanup.

    Commits on success. Any error rolls back and propagates unmodified.
    """
    db = (factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
