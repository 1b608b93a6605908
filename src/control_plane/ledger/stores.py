from dataclasses import dataclass, field
from typing import Any, List, Optional

from control_plane.config.settings import AppSettings
from control_plane.core.clock import Clock, SystemClock
from control_plane.errors import ConfigurationError

from .interfaces import DeduplicationStore, JobEventStore, JobsStore, OutboxStore, ResultStore
from .memory_store import (
    MemoryDeduplicationStore,
    MemoryJobEventStore,
    MemoryJobsStore,
    MemoryOutboxStore,
    MemoryResultStore,
)
from .table_storage import (
    TableDeduplicationStore,
    TableJobEventStore,
    TableJobsStore,
    TableOutboxStore,
    TableResultStore,
)


@dataclass
class Stores:
    jobs: JobsStore
    events: JobEventStore
    outbox: OutboxStore
    dedup: DeduplicationStore
    results: ResultStore
    clients: List[Any] = field(default_factory=list)

    async def close(self) -> None:
        for client in self.clients:
            await client.close()


def build_stores(settings: AppSettings, clock: Optional[Clock] = None) -> Stores:
    clock = clock or SystemClock()
    if settings.storage_backend == "memory":
        return Stores(
            jobs=MemoryJobsStore(),
            events=MemoryJobEventStore(),
            outbox=MemoryOutboxStore(clock, settings.outbox_lease_ttl_seconds),
            dedup=MemoryDeduplicationStore(clock, settings.dedup_ttl_seconds),
            results=MemoryResultStore(),
        )

    if settings.storage_backend != "table":
        raise ConfigurationError(f"Unsupported storage backend: {settings.storage_backend}")

    if not settings.table_connection_string:
        raise ConfigurationError("CONTROL_PLANE_TABLE_CONNECTION is required for table storage")

    from azure.data.tables.aio import TableServiceClient

    service_client = TableServiceClient.from_connection_string(settings.table_connection_string)
    return Stores(
        jobs=TableJobsStore(service_client, settings.jobs_table),
        events=TableJobEventStore(service_client, settings.events_table),
        outbox=TableOutboxStore(service_client, settings.outbox_table, clock, settings.outbox_lease_ttl_seconds),
        dedup=TableDeduplicationStore(service_client, settings.dedup_table, clock, settings.dedup_ttl_seconds),
        results=TableResultStore(service_client, settings.results_table),
        clients=[service_client],
    )
