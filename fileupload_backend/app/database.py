"""Database configuration and session management.

This module defines the SQLAlchemy engine and session maker.  It reads
configuration from environment variables with sensible defaults, and
exports a dependency that yields a database session per request.  The
upload lifecycle listeners are attached to ``SessionLocal`` at startup
(see ``app.main``).
"""
import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

def get_database_url() -> str:
    """
    Always use a stable absolute path for the SQLite DB:
    <repo_root>/fileupload_backend/fileupload.db

    This prevents accidental creation of multiple fileupload.db files
    when uvicorn is started from different working directories.
    """
    app_dir = os.path.dirname(os.path.abspath(__file__))            # .../fileupload_backend/app
    backend_dir = os.path.abspath(os.path.join(app_dir, ".."))      # .../fileupload_backend
    db_path = os.path.join(backend_dir, "fileupload.db")

    return os.getenv("DATABASE_URL", f"sqlite:///{db_path}")

def make_engine(url: str):
    # For SQLite, we need check_same_thread=False because FastAPI runs
    # each request in a separate thread.
    connect_args = {}
    if url.startswith("sqlite"):  # pragma: no cover
        connect_args = {"check_same_thread": False}
    return create_engine(url, connect_args=connect_args)

DATABASE_URL = get_database_url()
engine = make_engine(DATABASE_URL)

class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

# Create a configured "Session" class
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

def get_db():
    """FastAPI dependency that provides a database session per request.

    Yields a SQLAlchemy session and ensures it is closed after the request
    is complete, even if an exception occurs.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
