"""Shared fixtures for chaincase tests."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from chaincase.foundation.config import clear_settings_cache


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Isolate each test from CHAINCASE_* environment and cached settings."""
    for var in (
        "CHAINCASE_DEBUG", "CHAINCASE_BATCH_MAX_CONCURRENCY", "CHAINCASE_LOG_LEVEL",
        "CHAINCASE_LOG_CHUNKS", "CHAINCASE_RETRY_MAX_ATTEMPTS",
    ):
        monkeypatch.delenv(var, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()
