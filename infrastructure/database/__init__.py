# infrastructure/database/__init__.py
"""
🗄️ DATABASE

Export everything the rest of the application needs.
"""

from infrastructure.database.base import (
    Base,
    engine,
    async_session_maker,
    get_db_session,
    init_db,
    close_db,
)

__all__ = [
    "Base",
    "engine",
    "async_session_maker",
    "get_db_session",
    "init_db",
    "close_db",
]
