"""Custom exceptions for the filehub application."""


class FilehubException(Exception):
    """Base class for filehub exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500
    error: str = "internal_error"

    def __init__(self, message: str = "Filehub error"):
        self.message = message
        super().__init__(message)


class StoreUnavailableError(FilehubException):
    """Raised when the shared counter store cannot be reached.

    The rate limiter and cache recover from this locally; it only
    surfaces from explicit store operations such as cache invalidation.
    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503
    error = "store_unavailable"

    def __init__(self, operation: str, detail: str | None = None):
        self.operation = operation
        message = f"Counter store unavailable during {operation}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class CacheSerializationError(FilehubException):
    """Raised when a value cannot be encoded for the cache."""
    status_code = 500
    error = "cache_serialization_error"

    def __init__(self, key: str, detail: str | None = None):
        self.key = key
        message = f"Cannot serialize cache value for key {key}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class DatabaseDisabledError(FilehubException):
    """Raised when a route needs the log database but LOG_TO_DATABASE is off."""
    status_code = 503
    error = "database_disabled"

    def __init__(self, message: str = "Log storage is disabled (LOG_TO_DATABASE=false)"):
        super().__init__(message)
