from datetime import datetime, timezone

import pytest

from wxstation.store import MemoryStore


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def day_start() -> datetime:
    return datetime(2024, 1, 1, tzinfo=timezone.utc)
