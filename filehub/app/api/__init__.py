"""API endpoints package for filehub."""

from filehub.app.api.logs import router as logs_router

__all__ = [
    "logs_router",
]
