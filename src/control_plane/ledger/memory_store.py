from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from control_plane.core.clock import Clock, SystemClock
from control_plane.errors import ConcurrencyConflictError, JobAlreadyExistsError, NotFoundError, PayloadDecodeError

from .codec import dispatch_from_dict, dispatch_to_dict
from .interfaces import DeduplicationStore, JobEventStore, JobsStore, OutboxStore, ResultStore
from .models import JobEvent, JobRecord, JobSummary, OutboxDispatchMessage, OutboxRecord, OutboxStatus
from .results import CanonicalResponse


class MemoryJobsStore(JobsStore):
    def __init__(self) -> None:
        self._by_job_id: Dict[str, JobRecord] = {}

    async def create_job(self, job: JobRecord) -> JobRecord:
        if job.job_id in self._by_job_id:
            raise JobAlreadyExistsError(f"Job '{job.job_id}' already exists.")
        job = replace(job, etag="1")
        self._by_job_id[job.job_id] = job
        return job

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        return self._by_job_id.get(job_id)

    async def update_job(self, job: JobRecord, etag: str) -> JobRecord:
        current = self._by_job_id.get(job.job_id)
        if current is None:
            raise NotFoundError(f"Job '{job.job_id}' was not found.")
        if current.etag != etag:
            raise ConcurrencyConflictError(f"Job '{job.job_id}' was modified concurrently.")
        updated = replace(job, etag=str(int(etag) + 1))
        self._by_job_id[job.job_id] = updated
        return updated

    async def list_jobs(self, limit: int) -> List[JobSummary]:
        jobs = sorted(self._by_job_id.values(), key=lambda job: job.updated_at, reverse=True)
        return [job.summary() for job in jobs[:limit]]


class MemoryJobEventStore(JobEventStore):
    def __init__(self) -> None:
        self._by_job: Dict[str, List[JobEvent]] = {}

    async def append(self, event: JobEvent) -> None:
        self._by_job.setdefault(event.job_id, []).append(event)

    async def get_events(self, job_id: str) -> List[JobEvent]:
        return sorted(self._by_job.get(job_id, []), key=lambda event: event.sort_key())


class MemoryOutboxStore(OutboxStore):
    """Outbox kept as encoded payloads so reads go through the same decode path as the table store."""

    def __init__(self, clock: Optional[Clock] = None, lease_ttl_seconds: float = 300.0) -> None:
        self._clock = clock or SystemClock()
        self._lease_ttl = timedelta(seconds=lease_ttl_seconds)
        self._records: Dict[str, OutboxRecord] = {}

    async def enqueue_dispatch(self, message: OutboxDispatchMessage) -> None:
        if message.message is None:
            raise ValueError("outbox message requires a dispatch payload")
        if message.outbox_id in self._records:
            return
        self.put_raw(message.outbox_id, dispatch_to_dict(message.message), message)

    def put_raw(
        self,
        outbox_id: str,
        payload: Optional[Dict[str, object]],
        message: Optional[OutboxDispatchMessage] = None,
    ) -> None:
        now = self._clock.utc_now()
        created_at = message.created_at if message is not None else now
        self._records[outbox_id] = OutboxRecord(
            outbox_id=outbox_id,
            status=OutboxStatus.PENDING,
            payload=payload,
            created_at=created_at,
            updated_at=now,
        )

    def _claimable(self, record: OutboxRecord) -> bool:
        if record.status == OutboxStatus.PENDING:
            return True
        if record.status == OutboxStatus.PROCESSING and record.leased_at is not None:
            return record.leased_at + self._lease_ttl <= self._clock.utc_now()
        return False

    async def try_dequeue(self, owner: str) -> Optional[OutboxDispatchMessage]:
        candidates = sorted(
            (record for record in self._records.values() if self._claimable(record)),
            key=lambda record: (record.created_at, record.outbox_id),
        )
        if not candidates:
            return None
        record = candidates[0]
        now = self._clock.utc_now()
        record.status = OutboxStatus.PROCESSING
        record.lease_owner = owner
        record.leased_at = now
        record.updated_at = now
        try:
            message = dispatch_from_dict(record.payload) if record.payload is not None else None
        except PayloadDecodeError:
            message = None
        return OutboxDispatchMessage(outbox_id=record.outbox_id, message=message, created_at=record.created_at)

    def _require(self, outbox_id: str) -> OutboxRecord:
        record = self._records.get(outbox_id)
        if record is None:
            raise NotFoundError(f"Outbox item '{outbox_id}' was not found.")
        return record

    def _transition(
        self, outbox_id: str, status: OutboxStatus, error: Optional[str], owner: Optional[str]
    ) -> bool:
        record = self._require(outbox_id)
        if owner is not None and (record.status != OutboxStatus.PROCESSING or record.lease_owner != owner):
            return False
        record.status = status
        record.lease_owner = None
        record.leased_at = None
        record.error = error
        record.updated_at = self._clock.utc_now()
        return True

    async def mark_dispatched(self, outbox_id: str, owner: Optional[str] = None) -> bool:
        return self._transition(outbox_id, OutboxStatus.DISPATCHED, None, owner)

    async def release(self, outbox_id: str, owner: Optional[str] = None) -> bool:
        return self._transition(outbox_id, OutboxStatus.PENDING, None, owner)

    async def mark_failed(self, outbox_id: str, reason: str, owner: Optional[str] = None) -> bool:
        return self._transition(outbox_id, OutboxStatus.FAILED, reason, owner)

    def get_record(self, outbox_id: str) -> Optional[OutboxRecord]:
        record = self._records.get(outbox_id)
        return replace(record) if record is not None else None

    def records(self) -> List[OutboxRecord]:
        return [replace(record) for record in self._records.values()]


class MemoryDeduplicationStore(DeduplicationStore):
    def __init__(self, clock: Optional[Clock] = None, ttl_seconds: float = 900.0) -> None:
        self._clock = clock or SystemClock()
        self._ttl = timedelta(seconds=ttl_seconds)
        self._entries: Dict[Tuple[str, str], Tuple[str, datetime]] = {}

    async def try_start(self, job_id: str, attempt_id: str) -> bool:
        key = (job_id, attempt_id)
        now = self._clock.utc_now()
        entry = self._entries.get(key)
        if entry is not None:
            status, started_at = entry
            if status == "completed" or started_at + self._ttl > now:
                return False
        self._entries[key] = ("processing", now)
        return True

    async def mark_completed(self, job_id: str, attempt_id: str) -> None:
        self._entries[(job_id, attempt_id)] = ("completed", self._clock.utc_now())

    def status(self, job_id: str, attempt_id: str) -> Optional[str]:
        entry = self._entries.get((job_id, attempt_id))
        return entry[0] if entry is not None else None


class MemoryResultStore(ResultStore):
    def __init__(self) -> None:
        self._attempts: Dict[Tuple[str, str], CanonicalResponse] = {}
        self._finals: Dict[str, CanonicalResponse] = {}

    async def save_attempt_result(self, job_id: str, attempt_id: str, response: CanonicalResponse) -> None:
        self._attempts[(job_id, attempt_id)] = response

    async def save_final_result(self, job_id: str, response: CanonicalResponse) -> None:
        self._finals[job_id] = response

    async def get_final_result(self, job_id: str) -> Optional[CanonicalResponse]:
        return self._finals.get(job_id)

    def get_attempt_result(self, job_id: str, attempt_id: str) -> Optional[CanonicalResponse]:
        return self._attempts.get((job_id, attempt_id))
