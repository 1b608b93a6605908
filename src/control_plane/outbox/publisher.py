import asyncio
from dataclasses import dataclass, field
from typing import List, Protocol

from control_plane.ledger.codec import dispatch_to_dict, dumps
from control_plane.ledger.models import DispatchMessage


class DispatchQueue(Protocol):
    async def publish(self, message: DispatchMessage) -> None:
        ...


@dataclass
class InMemoryDispatchQueue:
    published: List[DispatchMessage] = field(default_factory=list)

    async def publish(self, message: DispatchMessage) -> None:
        self.published.append(message)


@dataclass
class AsyncServiceBusPublisher:
    connection_string: str
    queue_name: str
    timeout_seconds: float

    async def publish(self, message: DispatchMessage) -> None:
        try:
            from azure.servicebus.aio import ServiceBusClient
            from azure.servicebus import ServiceBusMessage
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("azure-servicebus dependency is not installed") from exc

        bus_message = ServiceBusMessage(
            dumps(dispatch_to_dict(message)),
            content_type="application/json",
            application_properties={
                "job_id": message.job_id,
                "attempt_id": message.attempt_id,
                "provider": message.provider,
            },
        )
        bus_message.message_id = message.idempotency_key
        async with ServiceBusClient.from_connection_string(self.connection_string) as client:
            sender = client.get_queue_sender(queue_name=self.queue_name)
            async with sender:
                await asyncio.wait_for(sender.send_messages(bus_message), timeout=self.timeout_seconds)
