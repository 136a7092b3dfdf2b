"""Rate limiting middleware.

Governs inbound requests with the sliding window engine: resolves an
identifier, consults the limiter, emits the standard quota headers and
rejects with 429 once the window is full. With ``skip_successful_requests``
or ``skip_failed_requests`` an admission is provisionally recorded and
retracted after the response if its status qualifies it as free.
"""

import inspect
import json
import uuid
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from filehub.app.core.config import settings
from filehub.app.core.logging import get_log_context, get_logger
from filehub.app.services.rate_limit import (
    RateLimitResult,
    SlidingWindowRateLimiter,
    get_rate_limiter,
)

logger = get_logger(__name__)

ROLLBACK_KEY_PREFIX = "ratelimit:request:"
ROLLBACK_TTL_SECONDS = 60  # Must outlive the downstream handler
DEFAULT_MESSAGE = "Rate limit exceeded. Please try again later."

# Checked in priority order
CLIENT_IP_HEADERS = (
    "cf-connecting-ip",     # Cloudflare
    "x-real-ip",            # Nginx proxy
    "x-forwarded-for",      # Standard proxy, first hop only
    "x-client-ip",          # Some proxies
    "true-client-ip",       # Cloudflare Enterprise
    "x-cluster-client-ip",  # Some load balancers
)

KeyGenerator = Callable[[Request], str]
LimitHandler = Callable[[Request], Union[Response, Awaitable[Response]]]


def get_client_ip(request: Request) -> str:
    """Extract the client IP from proxy headers or the connection.

    Args:
        request: Incoming request

    Returns:
        Client IP, or "unknown" when nothing identifies the client
    """
    for header in CLIENT_IP_HEADERS:
        value = request.headers.get(header)
        if value:
            if header == "x-forwarded-for":
                return value.split(",")[0].strip()
            return value

    remote_addr = request.headers.get("remote-addr")
    if remote_addr:
        return remote_addr
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def default_key_generator(request: Request) -> str:
    """Identify callers by IP and path."""
    return f"{get_client_ip(request)}:{request.url.path}"


def upload_key_generator(request: Request) -> str:
    return f"upload:{get_client_ip(request)}"


def rollback_key(request_id: str) -> str:
    return f"{ROLLBACK_KEY_PREFIX}{request_id}"


@dataclass
class RateLimitConfig:
    """Configuration of one rate limiting middleware instance."""
    window_ms: int = 60000
    max_requests: int = 100
    key_generator: KeyGenerator = default_key_generator
    skip_successful_requests: bool = False
    skip_failed_requests: bool = False
    whitelist: Sequence[str] = ()
    standard_headers: bool = True
    message: Optional[str] = None
    handler: Optional[LimitHandler] = None
    # Path prefixes this limiter governs; None governs every request
    paths: Optional[Sequence[str]] = None

    def applies_to(self, path: str) -> bool:
        if self.paths is None:
            return True
        return any(path.startswith(prefix) for prefix in self.paths)

    @property
    def tracks_outcome(self) -> bool:
        return self.skip_successful_requests or self.skip_failed_requests

    def skips(self, status_code: int) -> bool:
        """Whether a response with ``status_code`` should not count."""
        if self.skip_successful_requests and status_code < 400:
            return True
        if self.skip_failed_requests and status_code >= 400:
            return True
        return False


def rate_limit_preset(name: str) -> dict[str, int]:
    """Window and limit for a named endpoint class.

    ``default`` and ``upload`` follow settings; ``api`` and ``auth`` are fixed.
    """
    presets = {
        "default": {
            "window_ms": settings.rate_limit_window_ms,
            "max_requests": settings.rate_limit_max_requests,
        },
        "upload": {
            "window_ms": settings.rate_limit_window_ms,
            "max_requests": settings.upload_rate_limit_max_requests,
        },
        "api": {"window_ms": 60000, "max_requests": 60},
        "auth": {"window_ms": 900000, "max_requests": 5},  # 15 minutes
    }
    try:
        return presets[name]
    except KeyError:
        raise ValueError(f"Unknown rate limit preset: {name}") from None


def rate_limit_config(**overrides: Any) -> RateLimitConfig:
    """Default configuration merged with ``overrides``."""
    base = RateLimitConfig(
        whitelist=tuple(settings.rate_limit_whitelist),
        **rate_limit_preset("default"),
    )
    return replace(base, **overrides)


def ip_rate_limit_config(max_requests: int, window_ms: int, **overrides: Any) -> RateLimitConfig:
    """Limit by client IP only, regardless of path."""
    return rate_limit_config(
        max_requests=max_requests,
        window_ms=window_ms,
        key_generator=get_client_ip,
        **overrides,
    )


def upload_rate_limit_config(**overrides: Any) -> RateLimitConfig:
    """Stricter limit shared by every upload-class endpoint of one client."""
    options = {**rate_limit_preset("upload"), "key_generator": upload_key_generator}
    options.update(overrides)
    return rate_limit_config(**options)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce sliding window rate limits on requests.

    Example:
        app.add_middleware(
            RateLimitMiddleware,
            config=upload_rate_limit_config(paths=("/api/upload",)),
        )
    """

    def __init__(
        self,
        app,
        config: Optional[RateLimitConfig] = None,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        **overrides: Any,
    ):
        super().__init__(app)
        base = config or RateLimitConfig()
        self.config = replace(base, **overrides) if overrides else base
        self._limiter = limiter

    @property
    def limiter(self) -> SlidingWindowRateLimiter:
        return self._limiter if self._limiter is not None else get_rate_limiter()

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        config = self.config
        if not config.applies_to(request.url.path):
            return await call_next(request)

        try:
            admission = await self._admit(request)
        except Exception as e:
            # Fail open: the request proceeds ungoverned
            logger.error(
                f"Rate limiter error: {e}",
                extra=get_log_context(request_id=getattr(request.state, "request_id", None)),
            )
            return await call_next(request)

        if admission is None:
            return await call_next(request)

        identifier, result, request_id = admission
        reset_seconds = result.retry_after_seconds(self.limiter.now())

        if not result.allowed:
            return await self._reject(request, identifier, result, reset_seconds)

        response = await call_next(request)

        if config.standard_headers:
            response.headers["X-RateLimit-Limit"] = str(config.max_requests)
            response.headers["X-RateLimit-Remaining"] = str(result.remaining)
            response.headers["X-RateLimit-Reset"] = str(reset_seconds)

        if config.tracks_outcome and result.member_id:
            await self._settle(request_id, identifier, response.status_code)

        return response

    async def _admit(self, request: Request) -> Optional[tuple[str, RateLimitResult, str]]:
        """Consult the limiter. Returns None for whitelisted clients."""
        config = self.config
        if config.whitelist and get_client_ip(request) in config.whitelist:
            return None

        identifier = config.key_generator(request)
        result = await self.limiter.check(identifier, config.max_requests, config.window_ms)

        request_id = uuid.uuid4().hex
        request.state.rate_limit_request_id = request_id

        if config.tracks_outcome and result.member_id:
            record = {
                "identifier": identifier,
                "timestamp": result.timestamp,
                "member_id": result.member_id,
                "key": result.key,
            }
            await self.limiter.store.setex(
                rollback_key(request_id), ROLLBACK_TTL_SECONDS, json.dumps(record)
            )

        return identifier, result, request_id

    async def _reject(
        self,
        request: Request,
        identifier: str,
        result: RateLimitResult,
        reset_seconds: int,
    ) -> Response:
        config = self.config
        logger.warning(
            "Rate limit exceeded",
            extra=get_log_context(
                request_id=getattr(request.state, "request_id", None),
                identifier=identifier,
                client_ip=get_client_ip(request),
                path=request.url.path,
                method=request.method,
            ),
        )

        headers: dict[str, str] = {}
        if config.standard_headers:
            headers = {
                "X-RateLimit-Limit": str(config.max_requests),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(reset_seconds),
                "Retry-After": str(reset_seconds),
            }

        if config.handler is not None:
            response = config.handler(request)
            if inspect.isawaitable(response):
                response = await response
            response.headers.update(headers)
            return response

        return JSONResponse(
            status_code=429,
            content={
                "error": "Too Many Requests",
                "message": config.message or DEFAULT_MESSAGE,
                "retryAfter": reset_seconds,
            },
            headers=headers,
        )

    async def _settle(self, request_id: str, identifier: str, status_code: int) -> None:
        """Roll back a free admission and drop its rollback record.

        Best effort: a failure here only leaves the caller over-counted.
        """
        store = self.limiter.store
        try:
            if self.config.skips(status_code):
                raw = await store.get(rollback_key(request_id))
                if raw is None:
                    return
                info = json.loads(raw)
                key, member_id = info.get("key"), info.get("member_id")
                if key and member_id:
                    await self.limiter.rollback(key, member_id)
                    logger.debug(
                        "Rate limit admission rolled back",
                        extra=get_log_context(identifier=identifier, status_code=status_code),
                    )
            await store.delete(rollback_key(request_id))
        except Exception as e:
            logger.warning(
                f"Failed to rollback rate limit entry: {e}",
                extra=get_log_context(identifier=identifier),
            )
