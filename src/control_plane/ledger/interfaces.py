from typing import List, Optional, Protocol

from .models import JobEvent, JobRecord, JobSummary, OutboxDispatchMessage
from .results import CanonicalResponse


class JobsStore(Protocol):
    async def create_job(self, job: JobRecord) -> JobRecord:
        ...

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        ...

    async def update_job(self, job: JobRecord, etag: str) -> JobRecord:
        ...

    async def list_jobs(self, limit: int) -> List[JobSummary]:
        ...


class JobEventStore(Protocol):
    async def append(self, event: JobEvent) -> None:
        ...

    async def get_events(self, job_id: str) -> List[JobEvent]:
        ...


class OutboxStore(Protocol):
    async def enqueue_dispatch(self, message: OutboxDispatchMessage) -> None:
        ...

    async def try_dequeue(self, owner: str) -> Optional[OutboxDispatchMessage]:
        ...

    # With an owner, these only apply while that owner still holds the lease and return False otherwise.
    async def mark_dispatched(self, outbox_id: str, owner: Optional[str] = None) -> bool:
        ...

    async def release(self, outbox_id: str, owner: Optional[str] = None) -> bool:
        ...

    async def mark_failed(self, outbox_id: str, reason: str, owner: Optional[str] = None) -> bool:
        ...


class DeduplicationStore(Protocol):
    async def try_start(self, job_id: str, attempt_id: str) -> bool:
        ...

    async def mark_completed(self, job_id: str, attempt_id: str) -> None:
        ...


class ResultStore(Protocol):
    async def save_attempt_result(self, job_id: str, attempt_id: str, response: CanonicalResponse) -> None:
        ...

    async def save_final_result(self, job_id: str, response: CanonicalResponse) -> None:
        ...

    async def get_final_result(self, job_id: str) -> Optional[CanonicalResponse]:
        ...
