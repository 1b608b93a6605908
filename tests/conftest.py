from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from control_plane.bootstrap import build_control_plane  # noqa: E402
from control_plane.config.settings import AppSettings  # noqa: E402
from control_plane.outbox.publisher import InMemoryDispatchQueue  # noqa: E402


class FixedClock:
    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def utc_now(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class SequenceIds:
    def __init__(self) -> None:
        self._counters: dict = {}

    def new_id(self, prefix: str) -> str:
        self._counters[prefix] = self._counters.get(prefix, 0) + 1
        return f"{prefix}-{self._counters[prefix]}"

    def new_trace_id(self) -> str:
        return self.new_id("trace")


def memory_settings(**overrides) -> AppSettings:
    values = {
        "storage_backend": "memory",
        "routing_provider": "openai",
        "routing_model": "gpt-4o-mini",
        "routing_fallback_providers": ("anthropic", "azure"),
        "retry_max_attempts": 3,
    }
    values.update(overrides)
    return AppSettings(**values)


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture()
def ids() -> SequenceIds:
    return SequenceIds()


@pytest.fixture()
def queue() -> InMemoryDispatchQueue:
    return InMemoryDispatchQueue()


@pytest.fixture()
def control_plane(clock, ids, queue):
    return build_control_plane(memory_settings(), clock=clock, id_generator=ids, queue=queue)


@pytest.fixture()
def make_control_plane(clock, ids, queue):
    def factory(**overrides):
        return build_control_plane(memory_settings(**overrides), clock=clock, id_generator=ids, queue=queue)

    return factory
