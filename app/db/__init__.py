"""Database utilities."""

from app.db.base import Base
from app.db.session import async_session_maker, engine, get_db, session_scope

__all__ = ["Base", "async_session_maker", "engine", "get_db", "session_scope"]
