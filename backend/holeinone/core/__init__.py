"""
Hole-in-One Engine - Core Package
=================================

Lifecycle engine, models, and schemas.
"""

from holeinone.core.config import settings
from holeinone.core.database import Base, get_db, get_db_session

__all__ = ["Base", "get_db", "get_db_session", "settings"]
