from datetime import datetime, timezone
from typing import Protocol
from uuid import uuid4


class Clock(Protocol):
    def utc_now(self) -> datetime:
        ...


class IdGenerator(Protocol):
    def new_id(self, prefix: str) -> str:
        ...

    def new_trace_id(self) -> str:
        ...


class SystemClock:
    def utc_now(self) -> datetime:
        return datetime.now(timezone.utc)


class UuidIdGenerator:
    def new_id(self, prefix: str) -> str:
        return f"{prefix}-{uuid4().hex}"

    def new_trace_id(self) -> str:
        return uuid4().hex
