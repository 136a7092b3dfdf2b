"""Services package for filehub.

This package provides:
- Sliding window rate limiting over the counter store
- Batched persistence of collected logs
"""

from filehub.app.services.log_batcher import LogBatcher, LogEntry, format_log_entry
from filehub.app.services.rate_limit import (
    RateLimitResult,
    SlidingWindowRateLimiter,
    check_rate_limit,
    get_rate_limiter,
    reset_rate_limiter,
)

__all__ = [
    "LogBatcher",
    "LogEntry",
    "format_log_entry",
    "RateLimitResult",
    "SlidingWindowRateLimiter",
    "check_rate_limit",
    "get_rate_limiter",
    "reset_rate_limiter",
]
