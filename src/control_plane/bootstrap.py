from dataclasses import dataclass
from typing import Optional

from control_plane.config.settings import AppSettings
from control_plane.core.clock import Clock, IdGenerator, SystemClock, UuidIdGenerator
from control_plane.dispatcher.processor import DispatchOutboxProcessor
from control_plane.ledger.stores import Stores, build_stores
from control_plane.orchestrator.service import JobOrchestrator
from control_plane.outbox.publisher import AsyncServiceBusPublisher, DispatchQueue, InMemoryDispatchQueue
from control_plane.policy.assembler import SimpleResponseAssembler
from control_plane.policy.retry import FallbackRetryPlanner
from control_plane.policy.routing import StaticRoutingPolicy


@dataclass
class ControlPlane:
    settings: AppSettings
    stores: Stores
    queue: DispatchQueue
    orchestrator: JobOrchestrator
    processor: DispatchOutboxProcessor

    async def close(self) -> None:
        await self.stores.close()


def build_queue(settings: AppSettings) -> DispatchQueue:
    if settings.service_bus_connection:
        return AsyncServiceBusPublisher(
            connection_string=settings.service_bus_connection,
            queue_name=settings.dispatch_queue,
            timeout_seconds=settings.publish_timeout_seconds,
        )
    return InMemoryDispatchQueue()


def build_control_plane(
    settings: Optional[AppSettings] = None,
    clock: Optional[Clock] = None,
    id_generator: Optional[IdGenerator] = None,
    queue: Optional[DispatchQueue] = None,
) -> ControlPlane:
    settings = settings or AppSettings.from_env()
    clock = clock or SystemClock()
    stores = build_stores(settings, clock)
    queue = queue or build_queue(settings)
    orchestrator = JobOrchestrator(
        jobs=stores.jobs,
        events=stores.events,
        routing_policy=StaticRoutingPolicy(settings.routing_options()),
        outbox=stores.outbox,
        dedup=stores.dedup,
        assembler=SimpleResponseAssembler(),
        results=stores.results,
        retry_planner=FallbackRetryPlanner(settings.retry_options()),
        id_generator=id_generator or UuidIdGenerator(),
        clock=clock,
    )
    processor = DispatchOutboxProcessor(stores.outbox, queue)
    return ControlPlane(
        settings=settings,
        stores=stores,
        queue=queue,
        orchestrator=orchestrator,
        processor=processor,
    )
