from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from keygate.services.api_keys import ApiKeyRecord, FileApiKeyStore


@pytest.fixture
def anyio_backend() -> str:
    """Force anyio-based tests to run with asyncio backend only."""

    return "asyncio"


class FrozenClock:
    """Callable clock that tests can move by hand."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def file_store(tmp_path: Path) -> FileApiKeyStore:
    return FileApiKeyStore(tmp_path / "api_keys.jsonl")


def make_record(**overrides: object) -> ApiKeyRecord:
    values: dict[str, object] = {
        "id": "key-1",
        "key": "api_testkey0000000000000000000001",
        "name": "test",
        "permissions": ["read"],
        "usage": 0,
        "usage_limit": 10,
        "rate_limit_window": "monthly",
        "rate_limit_reset_at": datetime(2025, 7, 1, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return ApiKeyRecord(**values)  # type: ignore[arg-type]
