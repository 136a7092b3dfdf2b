"""Database package for filehub.

This package provides:
- The Log model (collected client and server logs)
- Asynchronous session management
- Bulk insert and aggregate queries for logs
"""

from filehub.app.db.base import Base
from filehub.app.db.models import Log
from filehub.app.db.async_session import (
    close_async_engine,
    get_db,
    get_async_engine,
    get_async_session,
    get_async_session_maker,
    init_async_db,
)
from filehub.app.db.crud import (
    count_logs_by_level,
    delete_old_logs,
    list_logs,
    save_logs_bulk,
)

__all__ = [
    "Base",
    "Log",
    "close_async_engine",
    "get_async_engine",
    "get_async_session",
    "get_async_session_maker",
    "init_async_db",
    "get_db",
    "count_logs_by_level",
    "delete_old_logs",
    "list_logs",
    "save_logs_bulk",
]
