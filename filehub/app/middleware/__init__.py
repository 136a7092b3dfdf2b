"""Middleware components for filehub."""

from filehub.app.middleware.rate_limit import (
    RateLimitConfig,
    RateLimitMiddleware,
    get_client_ip,
)
from filehub.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "RateLimitConfig",
    "RateLimitMiddleware",
    "RequestIdMiddleware",
    "get_client_ip",
    "get_request_id",
]
