"""Database dependencies for FastAPI dependency injection.

Usage:
    from filehub.app.db.dependencies import SessionDep

    @router.get("/api/logs")
    async def list_logs(session: SessionDep):
        ...
"""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from filehub.app.db.async_session import get_db

SessionDep = Annotated[AsyncSession, Depends(get_db)]

__all__ = ["SessionDep", "get_db"]
