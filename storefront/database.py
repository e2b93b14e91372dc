"""
Database configuration and session management for the storefront service.

The engine and session factory are built from a URL and handed to the
application at startup; request handlers receive a session through the
``get_db`` dependency and core operations take that session explicitly.
"""
from contextlib import contextmanager
from typing import Iterator

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Base class for declarative models
Base = declarative_base()


def build_engine(database_url: str) -> Engine:
    """
    Create a SQLAlchemy engine for the given URL.

    In-memory SQLite databases share a single connection so every session
    sees the same tables (used by the test suite).
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


def build_session_factory(engine: Engine) -> sessionmaker:
    """Create the session factory bound to ``engine``."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db(request: Request) -> Iterator[Session]:
    """
    Dependency function that provides a database session.

    Yields:
        Session: SQLAlchemy database session

    Usage:
        Use as a FastAPI dependency to inject database sessions into route handlers.
    """
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """
    Run a block as one unit of work: commit on success, roll back on any error.

    Helpers called inside the block must only flush, never commit.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
