import hashlib
from dataclasses import replace
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from control_plane.core.clock import Clock, SystemClock
from control_plane.errors import (
    ConcurrencyConflictError,
    CorruptRecordError,
    JobAlreadyExistsError,
    NotFoundError,
    PayloadDecodeError,
    TransientInfrastructureError,
)

from .codec import (
    dispatch_from_dict,
    dispatch_to_dict,
    dumps,
    event_from_dict,
    event_to_dict,
    format_timestamp,
    job_from_dict,
    job_to_dict,
    loads,
    parse_timestamp,
    response_from_dict,
    response_to_dict,
)
from .interfaces import DeduplicationStore, JobEventStore, JobsStore, OutboxStore, ResultStore
from .models import JobEvent, JobRecord, JobSummary, OutboxDispatchMessage, OutboxStatus
from .results import CanonicalResponse

try:
    from azure.core import MatchConditions
    from azure.core.exceptions import (
        HttpResponseError,
        ResourceExistsError,
        ResourceModifiedError,
        ResourceNotFoundError,
    )
    from azure.data.tables import UpdateMode
    from azure.data.tables.aio import TableServiceClient
except ImportError:  # pragma: no cover - dependency not installed yet
    TableServiceClient = None
    UpdateMode = None

JOBS_PARTITION = "JOB"
OUTBOX_PARTITION = "OUTBOX"
FINAL_ROW = "FINAL"
PARTITION_FILTER = "PartitionKey eq @pk"


class TableStorageError(TransientInfrastructureError):
    pass


def _require_sdk() -> None:
    if TableServiceClient is None:
        raise TableStorageError("azure-data-tables dependency is not installed")


def _etag(entity: Any) -> Optional[str]:
    metadata = getattr(entity, "metadata", None) or {}
    return metadata.get("etag") or entity.get("etag") or entity.get("odata.etag")


def _transient(action: str, exc: Exception) -> TableStorageError:
    return TableStorageError(f"{action} failed: {exc}")


class _TableStore:
    def __init__(self, service_client: "TableServiceClient", table_name: str) -> None:
        _require_sdk()
        self._table = service_client.get_table_client(table_name)

    async def _get(self, partition_key: str, row_key: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._table.get_entity(partition_key=partition_key, row_key=row_key)
        except ResourceNotFoundError:
            return None
        except HttpResponseError as exc:
            raise _transient("get_entity", exc) from exc

    async def _partition(self, partition_key: str) -> List[Dict[str, Any]]:
        entities: List[Dict[str, Any]] = []
        try:
            async for entity in self._table.query_entities(PARTITION_FILTER, parameters={"pk": partition_key}):
                entities.append(entity)
        except HttpResponseError as exc:
            raise _transient("query_entities", exc) from exc
        return entities

    async def _replace_if_match(self, entity: Dict[str, Any], etag: str) -> Dict[str, Any]:
        try:
            return await self._table.update_entity(
                entity,
                mode=UpdateMode.REPLACE,
                etag=etag,
                match_condition=MatchConditions.IfNotModified,
            )
        except ResourceModifiedError as exc:
            raise ConcurrencyConflictError(f"{entity['PartitionKey']}/{entity['RowKey']} was modified") from exc
        except ResourceNotFoundError as exc:
            raise NotFoundError(f"{entity['PartitionKey']}/{entity['RowKey']} was not found") from exc
        except HttpResponseError as exc:
            raise _transient("update_entity", exc) from exc

    async def close(self) -> None:
        await self._table.close()


def _job_entity(job: JobRecord) -> Dict[str, Any]:
    return {
        "PartitionKey": JOBS_PARTITION,
        "RowKey": job.job_id,
        "state": job.state.value,
        "updated_at": format_timestamp(job.updated_at),
        "snapshot_json": dumps(job_to_dict(job)),
    }


def _decode_stored(entity: Dict[str, Any], column: str, decode: Callable[[Dict[str, Any]], Any]) -> Any:
    try:
        return decode(loads(entity[column]))
    except (KeyError, PayloadDecodeError) as exc:
        raise CorruptRecordError(
            f"{entity.get('PartitionKey')}/{entity.get('RowKey')} has an unreadable {column}: {exc}"
        ) from exc


def _job_from_entity(entity: Dict[str, Any]) -> JobRecord:
    return _decode_stored(entity, "snapshot_json", lambda data: job_from_dict(data, etag=_etag(entity)))


class TableJobsStore(_TableStore, JobsStore):
    async def create_job(self, job: JobRecord) -> JobRecord:
        try:
            metadata = await self._table.create_entity(_job_entity(job))
        except ResourceExistsError as exc:
            raise JobAlreadyExistsError(f"Job '{job.job_id}' already exists.") from exc
        except HttpResponseError as exc:
            raise _transient("create_entity", exc) from exc
        return replace(job, etag=_etag(metadata))

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        entity = await self._get(JOBS_PARTITION, job_id)
        if entity is None:
            return None
        return _job_from_entity(entity)

    async def update_job(self, job: JobRecord, etag: str) -> JobRecord:
        metadata = await self._replace_if_match(_job_entity(job), etag)
        return replace(job, etag=_etag(metadata))

    async def list_jobs(self, limit: int) -> List[JobSummary]:
        jobs = [_job_from_entity(entity) for entity in await self._partition(JOBS_PARTITION)]
        jobs.sort(key=lambda job: job.updated_at, reverse=True)
        return [job.summary() for job in jobs[:limit]]


def _event_row_key(event: JobEvent, event_json: str) -> str:
    # Digest keeps distinct events from one clock tick apart while a replayed event maps to the same row.
    digest = hashlib.sha256(event_json.encode("utf-8")).hexdigest()[:16]
    return f"{format_timestamp(event.occurred_at)}#{event.attempt_id}#{event.type.value}#{digest}"


class TableJobEventStore(_TableStore, JobEventStore):
    async def append(self, event: JobEvent) -> None:
        event_json = dumps(event_to_dict(event))
        entity = {
            "PartitionKey": event.job_id,
            "RowKey": _event_row_key(event, event_json),
            "attempt_id": event.attempt_id,
            "type": event.type.value,
            "event_json": event_json,
        }
        try:
            await self._table.create_entity(entity)
        except ResourceExistsError:
            # Same event replayed after a retried write; events are write-once.
            return
        except HttpResponseError as exc:
            raise _transient("create_entity", exc) from exc

    async def get_events(self, job_id: str) -> List[JobEvent]:
        events = [_decode_stored(entity, "event_json", event_from_dict) for entity in await self._partition(job_id)]
        return sorted(events, key=lambda event: event.sort_key())


class TableOutboxStore(_TableStore, OutboxStore):
    def __init__(
        self,
        service_client: "TableServiceClient",
        table_name: str,
        clock: Optional[Clock] = None,
        lease_ttl_seconds: float = 300.0,
    ) -> None:
        super().__init__(service_client, table_name)
        self._clock = clock or SystemClock()
        self._lease_ttl = timedelta(seconds=lease_ttl_seconds)

    def _entity(
        self,
        outbox_id: str,
        status: OutboxStatus,
        payload_json: Optional[str],
        created_at: str,
        lease_owner: Optional[str] = None,
        leased_at: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        return {
            "PartitionKey": OUTBOX_PARTITION,
            "RowKey": outbox_id,
            "status": status.value,
            "payload_json": payload_json,
            "created_at": created_at,
            "updated_at": format_timestamp(self._clock.utc_now()),
            "lease_owner": lease_owner,
            "leased_at": leased_at,
            "error": error,
        }

    async def enqueue_dispatch(self, message: OutboxDispatchMessage) -> None:
        if message.message is None:
            raise ValueError("outbox message requires a dispatch payload")
        entity = self._entity(
            message.outbox_id,
            OutboxStatus.PENDING,
            dumps(dispatch_to_dict(message.message)),
            format_timestamp(message.created_at),
        )
        try:
            await self._table.create_entity(entity)
        except ResourceExistsError:
            # Already enqueued under this id; the stored record stands.
            return
        except HttpResponseError as exc:
            raise _transient("create_entity", exc) from exc

    def _claimable(self, entity: Dict[str, Any]) -> bool:
        status = entity.get("status")
        if status == OutboxStatus.PENDING.value:
            return True
        if status == OutboxStatus.PROCESSING.value and entity.get("leased_at"):
            return parse_timestamp(entity["leased_at"]) + self._lease_ttl <= self._clock.utc_now()
        return False

    async def try_dequeue(self, owner: str) -> Optional[OutboxDispatchMessage]:
        candidates = [entity for entity in await self._partition(OUTBOX_PARTITION) if self._claimable(entity)]
        if not candidates:
            return None
        candidates.sort(key=lambda entity: (entity.get("created_at") or "", entity["RowKey"]))
        current = candidates[0]
        claimed = self._entity(
            current["RowKey"],
            OutboxStatus.PROCESSING,
            current.get("payload_json"),
            current.get("created_at") or format_timestamp(self._clock.utc_now()),
            lease_owner=owner,
            leased_at=format_timestamp(self._clock.utc_now()),
        )
        try:
            await self._replace_if_match(claimed, _etag(current) or "")
        except (ConcurrencyConflictError, NotFoundError):
            return None

        try:
            message = dispatch_from_dict(loads(current["payload_json"])) if current.get("payload_json") else None
        except PayloadDecodeError:
            message = None
        return OutboxDispatchMessage(
            outbox_id=current["RowKey"],
            message=message,
            created_at=parse_timestamp(claimed["created_at"]),
        )

    async def _transition(
        self, outbox_id: str, status: OutboxStatus, error: Optional[str], owner: Optional[str]
    ) -> bool:
        current = await self._get(OUTBOX_PARTITION, outbox_id)
        if current is None:
            raise NotFoundError(f"Outbox item '{outbox_id}' was not found.")
        entity = self._entity(
            outbox_id,
            status,
            current.get("payload_json"),
            current.get("created_at") or format_timestamp(self._clock.utc_now()),
            error=error,
        )
        if owner is None:
            try:
                await self._table.upsert_entity(entity, mode=UpdateMode.REPLACE)
            except HttpResponseError as exc:
                raise _transient("upsert_entity", exc) from exc
            return True

        if current.get("status") != OutboxStatus.PROCESSING.value or current.get("lease_owner") != owner:
            return False
        # The etag guards against another worker reclaiming the lease between the read and the write.
        try:
            await self._replace_if_match(entity, _etag(current) or "")
        except (ConcurrencyConflictError, NotFoundError):
            return False
        return True

    async def mark_dispatched(self, outbox_id: str, owner: Optional[str] = None) -> bool:
        return await self._transition(outbox_id, OutboxStatus.DISPATCHED, None, owner)

    async def release(self, outbox_id: str, owner: Optional[str] = None) -> bool:
        return await self._transition(outbox_id, OutboxStatus.PENDING, None, owner)

    async def mark_failed(self, outbox_id: str, reason: str, owner: Optional[str] = None) -> bool:
        return await self._transition(outbox_id, OutboxStatus.FAILED, reason, owner)


class TableDeduplicationStore(_TableStore, DeduplicationStore):
    def __init__(
        self,
        service_client: "TableServiceClient",
        table_name: str,
        clock: Optional[Clock] = None,
        ttl_seconds: float = 900.0,
    ) -> None:
        super().__init__(service_client, table_name)
        self._clock = clock or SystemClock()
        self._ttl = timedelta(seconds=ttl_seconds)

    def _entity(self, job_id: str, attempt_id: str, status: str) -> Dict[str, Any]:
        return {
            "PartitionKey": job_id,
            "RowKey": attempt_id,
            "status": status,
            "updated_at": format_timestamp(self._clock.utc_now()),
        }

    async def try_start(self, job_id: str, attempt_id: str) -> bool:
        try:
            await self._table.create_entity(self._entity(job_id, attempt_id, "processing"))
            return True
        except ResourceExistsError:
            pass
        except HttpResponseError as exc:
            raise _transient("create_entity", exc) from exc

        current = await self._get(job_id, attempt_id)
        if current is None or current.get("status") == "completed":
            return False
        started_at = parse_timestamp(current["updated_at"])
        if started_at + self._ttl > self._clock.utc_now():
            return False
        try:
            await self._replace_if_match(self._entity(job_id, attempt_id, "processing"), _etag(current) or "")
        except (ConcurrencyConflictError, NotFoundError):
            return False
        return True

    async def mark_completed(self, job_id: str, attempt_id: str) -> None:
        try:
            await self._table.upsert_entity(self._entity(job_id, attempt_id, "completed"), mode=UpdateMode.REPLACE)
        except HttpResponseError as exc:
            raise _transient("upsert_entity", exc) from exc


class TableResultStore(_TableStore, ResultStore):
    async def _put(self, job_id: str, row_key: str, response: CanonicalResponse) -> None:
        entity = {
            "PartitionKey": job_id,
            "RowKey": row_key,
            "provider": response.provider,
            "model": response.model,
            "response_json": dumps(response_to_dict(response)),
        }
        try:
            await self._table.upsert_entity(entity, mode=UpdateMode.REPLACE)
        except HttpResponseError as exc:
            raise _transient("upsert_entity", exc) from exc

    async def save_attempt_result(self, job_id: str, attempt_id: str, response: CanonicalResponse) -> None:
        await self._put(job_id, f"ATTEMPT#{attempt_id}", response)

    async def save_final_result(self, job_id: str, response: CanonicalResponse) -> None:
        await self._put(job_id, FINAL_ROW, response)

    async def get_final_result(self, job_id: str) -> Optional[CanonicalResponse]:
        entity = await self._get(job_id, FINAL_ROW)
        if entity is None:
            return None
        return _decode_stored(entity, "response_json", response_from_dict)
