"""Log collection and log viewer API.

Clients post their log lines here; they are queued on the application's
LogBatcher and written in bulk. Aggregate statistics are served through the
read-through cache and evicted whenever logs are deleted.
"""

from datetime import datetime
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from filehub.app.core.cache import cache, invalidate_cache
from filehub.app.core.config import settings
from filehub.app.db.crud import count_logs_by_level, delete_old_logs, list_logs
from filehub.app.db.dependencies import SessionDep
from filehub.app.middleware.rate_limit import get_client_ip
from filehub.app.middleware.request_id import get_request_id
from filehub.app.services.log_batcher import LogBatcher

router = APIRouter(prefix="/api/logs", tags=["logs"])

LogLevel = Literal["trace", "debug", "info", "warn", "error", "fatal"]
LogSource = Literal["client", "server", "api", "worker"]

STATS_CACHE_KEY = "logs:stats:by_level"
STATS_CACHE_PATTERN = "logs:stats:*"


class _CamelModel(BaseModel):
    # Browser clients send camelCase
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ClientLogIn(_CamelModel):
    """One log line reported by a browser client."""

    level: LogLevel = "info"
    message: str = Field(..., min_length=1, max_length=10000)
    event: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    path: Optional[str] = None
    client_timestamp: Optional[datetime] = None
    error: Optional[dict[str, Any]] = None
    context: dict[str, Any] = Field(default_factory=dict)
    metadata: Optional[dict[str, Any]] = None


class ClientLogBatch(_CamelModel):
    logs: list[ClientLogIn] = Field(..., min_length=1, max_length=100)


class LogOut(_CamelModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

    id: str
    level: str
    message: str
    source: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    request_id: Optional[str] = None
    path: Optional[str] = None
    status_code: Optional[int] = None
    event: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime


class LogPage(_CamelModel):
    logs: list[LogOut]
    total: int
    limit: int
    offset: int


class LogStats(BaseModel):
    by_level: dict[str, int]
    total: int


def get_log_batcher(request: Request) -> LogBatcher:
    return request.app.state.log_batcher


@router.post("", status_code=202)
async def ingest_logs(
    batch: ClientLogBatch,
    request: Request,
    batcher: LogBatcher = Depends(get_log_batcher),
) -> dict[str, int]:
    """Queue client log lines for batched persistence."""
    ip_address = get_client_ip(request)
    user_agent = request.headers.get("user-agent")
    request_id = get_request_id(request)

    for item in batch.logs:
        data = item.model_dump(exclude={"level", "message", "context"}, exclude_none=True)
        data.update(item.context)
        data.update(ip_address=ip_address, user_agent=user_agent, request_id=request_id)
        batcher.log(item.level, item.message, data, source="client")

    return {"accepted": len(batch.logs)}


@router.get("", response_model=LogPage, response_model_by_alias=True)
async def get_logs(
    session: SessionDep,
    level: Optional[LogLevel] = None,
    source: Optional[LogSource] = None,
    user_id: Optional[str] = Query(default=None, alias="userId"),
    search: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
) -> LogPage:
    rows, total = await list_logs(
        session,
        level=level,
        source=source,
        user_id=user_id,
        search=search,
        limit=limit,
        offset=offset,
    )
    return LogPage(
        logs=[LogOut.model_validate(row) for row in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=LogStats)
async def get_log_stats(session: SessionDep) -> LogStats:
    """Per-level counts, cached for ``cache_stats_ttl`` seconds."""

    async def load_stats() -> LogStats:
        by_level = await count_logs_by_level(session)
        return LogStats(by_level=by_level, total=sum(by_level.values()))

    return await cache(
        STATS_CACHE_KEY,
        load_stats,
        settings.cache_stats_ttl,
        value_type=LogStats,
    )


@router.delete("")
async def delete_logs(
    session: SessionDep,
    older_than_days: int = Query(..., ge=1, le=365, alias="olderThanDays"),
    level: Optional[LogLevel] = None,
    source: Optional[LogSource] = None,
) -> dict[str, int]:
    """Delete old logs and evict every cached log statistic."""
    deleted = await delete_old_logs(session, older_than_days, level=level, source=source)
    evicted = await invalidate_cache(STATS_CACHE_PATTERN)
    return {"deleted": deleted, "evicted": evicted}
