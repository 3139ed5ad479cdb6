"""
Database Module
===============

Provides database session management and base model.
"""

from openrevenue.db.base import Base
from openrevenue.db.session import get_db, get_lazy_db, init_db, close_db, LazyDB

__all__ = ["Base", "get_db", "get_lazy_db", "init_db", "close_db", "LazyDB"]
