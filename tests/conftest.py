from __future__ import annotations

from pathlib import Path

import pytest

from imgedge.common.settings import EdgeProxySettings


ORIGIN_URL = "http://origin.test"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def make_settings(tmp_path: Path):
    def _make(**overrides) -> EdgeProxySettings:
        values = {
            "origin_url": ORIGIN_URL,
            "storage_path": tmp_path / "images",
            "cache_backend": "memory",
        }
        values.update(overrides)
        return EdgeProxySettings(**values)

    return _make
