"""
Shared test fixtures.
"""

import asyncio
import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from ai_usage_gateway.storage.repository import GatewayRepository


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        # Let other tasks run, as a real sleep would.
        await asyncio.sleep(0)


class WallClock:
    """Settable wall clock returning aware datetimes."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


def make_completion(content: str, prompt_tokens: int = 50, completion_tokens: int = 20,
                    model: str = "llama-3.1-8b-instant", request_id: str = "chatcmpl-1"):
    """Object shaped like an OpenAI ChatCompletion."""
    return SimpleNamespace(
        id=request_id,
        model=model,
        choices=[SimpleNamespace(message=SimpleNamespace(role="assistant", content=content))],
        usage=SimpleNamespace(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        ),
    )


def make_client(*results) -> MagicMock:
    """AsyncOpenAI stand-in whose create() returns or raises ``results`` in order."""
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=list(results))
    client.close = AsyncMock()
    return client


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def wall_clock():
    return WallClock()


@pytest.fixture
def db_path():
    temp_dir = tempfile.mkdtemp()
    yield os.path.join(temp_dir, "test.db")
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def repository(db_path):
    repo = GatewayRepository(db_path)
    repo.initialize()
    return repo
