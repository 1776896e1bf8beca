"""
File Upload Backend Package

This package contains the FastAPI application, the SQLAlchemy models and
the upload lifecycle that names, stores and cleans up files attached to
those models.
"""

from .main import app  # noqa: F401
