"""Database package providing SQLAlchemy base definitions and session helpers."""

from .base import Base  # noqa: F401
from .session import create_schema, get_async_engine, get_session_maker  # noqa: F401
from . import models  # noqa: F401

__all__ = ["Base", "create_schema", "get_async_engine", "get_session_maker", "models"]
