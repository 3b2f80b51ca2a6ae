from __future__ import annotations

import pytest
from pydantic import ValidationError

from imgedge.common.settings import CACHE_MAX_ENTRIES, MAX_UPLOAD_BYTES, ORIGIN_TIMEOUT_SECONDS, EdgeProxySettings


def test_settings_defaults(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("IMGEDGE_ORIGIN_URL", "https://transform.example.com")
    settings = EdgeProxySettings()

    assert settings.origin_url == "https://transform.example.com"
    assert settings.origin_timeout_seconds == ORIGIN_TIMEOUT_SECONDS == 30.0
    assert settings.max_upload_bytes == MAX_UPLOAD_BYTES == 10 * 1024 * 1024
    assert settings.cache_backend == "memory"


def test_settings_read_environment(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("IMGEDGE_ORIGIN_URL", "http://origin.internal:8080")
    monkeypatch.setenv("IMGEDGE_CACHE_BACKEND", "redis")
    monkeypatch.setenv("IMGEDGE_REDIS_URL", "redis://localhost:6379/0")
    monkeypatch.setenv("IMGEDGE_CACHE_MAX_ENTRIES", "")
    monkeypatch.setenv("IMGEDGE_METRICS_TOKEN", "metrics-secret")

    settings = EdgeProxySettings()

    assert settings.cache_backend == "redis"
    assert settings.cache_max_entries == CACHE_MAX_ENTRIES == 1024
    assert settings.metrics_token.get_secret_value() == "metrics-secret"


@pytest.mark.parametrize("origin_url", ["", "origin.test", "ftp://origin.test", "/relative"])
def test_settings_require_absolute_http_origin(origin_url: str) -> None:
    with pytest.raises(ValidationError):
        EdgeProxySettings(origin_url=origin_url)


def test_settings_require_redis_url_for_redis_backend() -> None:
    with pytest.raises(ValidationError):
        EdgeProxySettings(origin_url="http://origin.test", cache_backend="redis")


def test_settings_require_s3_endpoint_with_bucket() -> None:
    with pytest.raises(ValidationError):
        EdgeProxySettings(origin_url="http://origin.test", s3_bucket="images")


def test_settings_reject_non_positive_limits() -> None:
    with pytest.raises(ValidationError):
        EdgeProxySettings(origin_url="http://origin.test", max_upload_bytes=0)
    with pytest.raises(ValidationError):
        EdgeProxySettings(origin_url="http://origin.test", origin_timeout_seconds=-1)
    with pytest.raises(ValidationError):
        EdgeProxySettings(origin_url="http://origin.test", cache_max_entries=0)


def test_settings_are_frozen() -> None:
    settings = EdgeProxySettings(origin_url="http://origin.test")
    with pytest.raises(ValidationError):
        settings.origin_url = "http://evil.test"
