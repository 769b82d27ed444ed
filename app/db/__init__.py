"""
Database Module
===============

Provides database session management and base model.
"""

from app.db.base import Base
from app.db.session import close_db, get_db, init_db, session_scope

__all__ = ["Base", "get_db", "init_db", "close_db", "session_scope"]
