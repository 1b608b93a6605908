import asyncio
from datetime import datetime, timezone

import pytest
from azure.core.exceptions import ResourceExistsError, ResourceModifiedError, ResourceNotFoundError

from control_plane.errors import ConcurrencyConflictError, CorruptRecordError, JobAlreadyExistsError
from control_plane.ledger.models import (
    CanonicalJobRequest,
    DispatchMessage,
    JobEvent,
    JobEventType,
    JobRecord,
    JobState,
    OutboxDispatchMessage,
    OutboxStatus,
)
from control_plane.ledger.results import CanonicalResponse
from control_plane.ledger.table_storage import (
    TableDeduplicationStore,
    TableJobEventStore,
    TableJobsStore,
    TableOutboxStore,
    TableResultStore,
)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class _Entity(dict):
    def __init__(self, data, etag: str) -> None:
        super().__init__(data)
        self.metadata = {"etag": etag}


class _FakeTable:
    def __init__(self) -> None:
        self.rows = {}
        self._version = 0

    def _next_etag(self) -> str:
        self._version += 1
        return f'W/"{self._version}"'

    def _put(self, entity) -> dict:
        etag = self._next_etag()
        self.rows[(entity["PartitionKey"], entity["RowKey"])] = (dict(entity), etag)
        return {"etag": etag}

    async def create_entity(self, entity):
        if (entity["PartitionKey"], entity["RowKey"]) in self.rows:
            raise ResourceExistsError("entity already exists")
        return self._put(entity)

    async def get_entity(self, partition_key, row_key):
        try:
            data, etag = self.rows[(partition_key, row_key)]
        except KeyError:
            raise ResourceNotFoundError("entity not found")
        return _Entity(data, etag)

    async def update_entity(self, entity, mode=None, etag=None, match_condition=None):
        key = (entity["PartitionKey"], entity["RowKey"])
        if key not in self.rows:
            raise ResourceNotFoundError("entity not found")
        if etag is not None and self.rows[key][1] != etag:
            raise ResourceModifiedError("precondition failed")
        return self._put(entity)

    async def upsert_entity(self, entity, mode=None):
        return self._put(entity)

    async def query_entities(self, query_filter, parameters=None):
        for (partition_key, _), (data, etag) in list(self.rows.items()):
            if partition_key == parameters["pk"]:
                yield _Entity(data, etag)

    async def close(self) -> None:
        return None


class _FakeService:
    def __init__(self) -> None:
        self.tables = {}

    def get_table_client(self, table_name: str) -> _FakeTable:
        return self.tables.setdefault(table_name, _FakeTable())


def _job() -> JobRecord:
    request = CanonicalJobRequest(task_type="chat", job_id="job-1", attempt_id="attempt-1", trace_id="trace-1")
    return JobRecord.create(request, NOW)


def _dispatch() -> DispatchMessage:
    return DispatchMessage(
        job_id="job-1",
        attempt_id="attempt-1",
        trace_id="trace-1",
        provider="openai",
        model="gpt",
        idempotency_key="job-1:attempt-1",
        request=CanonicalJobRequest(task_type="chat", job_id="job-1", attempt_id="attempt-1", trace_id="trace-1"),
    )


def test_jobs_store_round_trips_snapshot_with_etag():
    store = TableJobsStore(_FakeService(), "jobs")

    created = asyncio.run(store.create_job(_job()))
    loaded = asyncio.run(store.get_job("job-1"))
    updated = asyncio.run(store.update_job(loaded.with_state(JobState.ROUTED, NOW), loaded.etag))

    assert created.etag == loaded.etag
    assert loaded.request.task_type == "chat"
    assert updated.etag != loaded.etag
    assert asyncio.run(store.get_job("job-1")).state == JobState.ROUTED
    assert asyncio.run(store.get_job("missing")) is None
    assert [summary.job_id for summary in asyncio.run(store.list_jobs(5))] == ["job-1"]


def test_jobs_store_maps_conflicts():
    store = TableJobsStore(_FakeService(), "jobs")
    created = asyncio.run(store.create_job(_job()))
    asyncio.run(store.update_job(created.with_state(JobState.ROUTED, NOW), created.etag))

    with pytest.raises(ConcurrencyConflictError):
        asyncio.run(store.update_job(created.with_state(JobState.FAILED, NOW), created.etag))
    with pytest.raises(JobAlreadyExistsError):
        asyncio.run(store.create_job(_job()))


def test_event_store_orders_by_occurrence():
    store = TableJobEventStore(_FakeService(), "events")
    asyncio.run(store.append(JobEvent("job-1", "attempt-1", JobEventType.ROUTED, NOW.replace(second=5))))
    asyncio.run(store.append(JobEvent("job-1", "attempt-1", JobEventType.CREATED, NOW, {"task_type": "chat"})))

    events = asyncio.run(store.get_events("job-1"))

    assert [event.type for event in events] == [JobEventType.CREATED, JobEventType.ROUTED]
    assert events[0].attributes == {"task_type": "chat"}


def test_outbox_claim_release_and_dispatch(clock):
    store = TableOutboxStore(_FakeService(), "outbox", clock, lease_ttl_seconds=60)
    asyncio.run(store.enqueue_dispatch(OutboxDispatchMessage("outbox-1", _dispatch(), NOW)))

    claimed = asyncio.run(store.try_dequeue("w1"))
    assert claimed.message.idempotency_key == "job-1:attempt-1"
    assert asyncio.run(store.try_dequeue("w2")) is None

    asyncio.run(store.release("outbox-1"))
    again = asyncio.run(store.try_dequeue("w2"))
    assert again.outbox_id == "outbox-1"

    asyncio.run(store.mark_dispatched("outbox-1"))
    assert asyncio.run(store.try_dequeue("w3")) is None


def test_dedup_store_first_writer_wins(clock):
    store = TableDeduplicationStore(_FakeService(), "dedup", clock, ttl_seconds=30)

    assert asyncio.run(store.try_start("job-1", "attempt-1")) is True
    assert asyncio.run(store.try_start("job-1", "attempt-1")) is False
    clock.advance(31)
    assert asyncio.run(store.try_start("job-1", "attempt-1")) is True
    asyncio.run(store.mark_completed("job-1", "attempt-1"))
    clock.advance(3600)
    assert asyncio.run(store.try_start("job-1", "attempt-1")) is False


def test_result_store_keeps_final_separate_from_attempts():
    store = TableResultStore(_FakeService(), "results")
    response = CanonicalResponse(provider="openai", model="gpt", output_ref="blob://out")

    asyncio.run(store.save_attempt_result("job-1", "attempt-1", response))
    assert asyncio.run(store.get_final_result("job-1")) is None

    asyncio.run(store.save_final_result("job-1", response))
    assert asyncio.run(store.get_final_result("job-1")) == response


def test_unreadable_job_snapshot_is_corrupt_record():
    service = _FakeService()
    store = TableJobsStore(service, "jobs")
    service.get_table_client("jobs").rows[("JOB", "job-1")] = (
        {"PartitionKey": "JOB", "RowKey": "job-1", "snapshot_json": "{broken"},
        'W/"1"',
    )

    with pytest.raises(CorruptRecordError, match="JOB/job-1"):
        asyncio.run(store.get_job("job-1"))


def test_event_store_keeps_distinct_events_from_one_tick():
    store = TableJobEventStore(_FakeService(), "events")
    first = JobEvent("job-1", "attempt-1", JobEventType.DISPATCHED, NOW, {"outbox_id": "outbox-1"})
    second = JobEvent("job-1", "attempt-1", JobEventType.DISPATCHED, NOW, {"outbox_id": "outbox-2"})

    asyncio.run(store.append(first))
    asyncio.run(store.append(second))
    asyncio.run(store.append(first))

    events = asyncio.run(store.get_events("job-1"))

    assert sorted(event.attributes["outbox_id"] for event in events) == ["outbox-1", "outbox-2"]


def test_outbox_enqueue_keeps_existing_record(clock):
    store = TableOutboxStore(_FakeService(), "outbox", clock)
    asyncio.run(store.enqueue_dispatch(OutboxDispatchMessage("outbox-1", _dispatch(), NOW)))
    asyncio.run(store.try_dequeue("w1"))

    asyncio.run(store.enqueue_dispatch(OutboxDispatchMessage("outbox-1", _dispatch(), NOW)))

    assert asyncio.run(store.try_dequeue("w2")) is None


def test_outbox_transitions_require_current_lease(clock):
    service = _FakeService()
    store = TableOutboxStore(service, "outbox", clock, lease_ttl_seconds=60)
    asyncio.run(store.enqueue_dispatch(OutboxDispatchMessage("outbox-1", _dispatch(), NOW)))
    asyncio.run(store.try_dequeue("w1"))
    clock.advance(61)
    asyncio.run(store.try_dequeue("w2"))

    assert asyncio.run(store.release("outbox-1", "w1")) is False
    assert asyncio.run(store.mark_failed("outbox-1", "late", "w1")) is False
    row, _ = service.get_table_client("outbox").rows[("OUTBOX", "outbox-1")]
    assert (row["status"], row["lease_owner"]) == (OutboxStatus.PROCESSING.value, "w2")

    assert asyncio.run(store.mark_dispatched("outbox-1", "w2")) is True
    row, _ = service.get_table_client("outbox").rows[("OUTBOX", "outbox-1")]
    assert row["status"] == OutboxStatus.DISPATCHED.value
    assert asyncio.run(store.mark_dispatched("outbox-1", "w2")) is False
