import pytest
from pydantic import ValidationError

from filehub.app.core.config import Settings


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ('["http://localhost:5173"]', ["http://localhost:5173"]),
        ("http://a.example, http://b.example", ["http://a.example", "http://b.example"]),
        ("*", ["*"]),
        ("[]", []),
        ("", []),
    ],
)
def test_cors_origins_parsing_variants(monkeypatch, raw: str, expected: list[str]) -> None:
    monkeypatch.setenv("CORS_ORIGINS", raw)

    settings = Settings(_env_file=None)
    assert settings.cors_origins == expected


def test_rate_limit_whitelist(monkeypatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_WHITELIST", "127.0.0.1 10.0.0.5")

    settings = Settings(_env_file=None)
    assert settings.rate_limit_whitelist == ["127.0.0.1", "10.0.0.5"]


def test_redis_url_assembled(monkeypatch) -> None:
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.setenv("REDIS_HOST", "cache.internal")
    monkeypatch.setenv("REDIS_PASSWORD", "s3cret")
    monkeypatch.setenv("REDIS_DB", "2")
    monkeypatch.setenv("REDIS_TLS", "true")

    settings = Settings(_env_file=None)
    assert settings.redis_url == "rediss://:s3cret@cache.internal:6379/2"


def test_redis_url_override(monkeypatch) -> None:
    monkeypatch.setenv("REDIS_URL", "redis://other:6380/1")

    settings = Settings(_env_file=None)
    assert settings.redis_url == "redis://other:6380/1"


def test_defaults(monkeypatch) -> None:
    for name in ("RATE_LIMIT_WINDOW_MS", "RATE_LIMIT_MAX_REQUESTS", "RATE_LIMIT_FAIL_CLOSED"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings(_env_file=None)
    assert settings.rate_limit_window_ms == 60000
    assert settings.rate_limit_max_requests == 100
    assert settings.rate_limit_fail_closed is False
    assert settings.cache_default_ttl == 3600


@pytest.mark.parametrize("name", ["RATE_LIMIT_MAX_REQUESTS", "RATE_LIMIT_WINDOW_MS"])
def test_rate_limit_values_must_be_positive(monkeypatch, name: str) -> None:
    monkeypatch.setenv(name, "0")

    with pytest.raises(ValidationError):
        Settings(_env_file=None)
