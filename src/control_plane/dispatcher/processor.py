import logging
import os
import socket
from typing import Optional
from uuid import uuid4

from control_plane.ledger.interfaces import OutboxStore
from control_plane.outbox.publisher import DispatchQueue
from control_plane.shared.logging import get_logger, log_event

MISSING_PAYLOAD = "missing_payload"


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class DispatchOutboxProcessor:
    """Moves one claimed outbox item onto the dispatch queue per call."""

    def __init__(self, outbox: OutboxStore, queue: DispatchQueue, owner: Optional[str] = None) -> None:
        self._outbox = outbox
        self._queue = queue
        self._owner = owner or default_owner()
        self._logger = get_logger("control_plane.dispatcher")

    @property
    def owner(self) -> str:
        return self._owner

    def _lease_lost(self, outbox_id: str, action: str) -> None:
        log_event(
            self._logger,
            "outbox.lease_lost",
            level=logging.WARNING,
            outbox_id=outbox_id,
            owner=self._owner,
            action=action,
        )

    async def process_once(self) -> bool:
        item = await self._outbox.try_dequeue(self._owner)
        if item is None:
            log_event(self._logger, "outbox.empty", level=logging.DEBUG, owner=self._owner)
            return False

        if item.message is None:
            if not await self._outbox.mark_failed(item.outbox_id, MISSING_PAYLOAD, self._owner):
                self._lease_lost(item.outbox_id, "mark_failed")
                return False
            log_event(
                self._logger,
                "outbox.missing_payload",
                level=logging.WARNING,
                outbox_id=item.outbox_id,
                owner=self._owner,
            )
            return False

        message = item.message
        log_event(
            self._logger,
            "outbox.publish",
            outbox_id=item.outbox_id,
            job_id=message.job_id,
            attempt_id=message.attempt_id,
            provider=message.provider,
            idempotency_key=message.idempotency_key,
        )
        try:
            await self._queue.publish(message)
        except BaseException as exc:
            # Covers task cancellation too: the item must go back to pending.
            if not await self._outbox.release(item.outbox_id, self._owner):
                self._lease_lost(item.outbox_id, "release")
            log_event(
                self._logger,
                "outbox.publish_failed",
                level=logging.ERROR,
                outbox_id=item.outbox_id,
                job_id=message.job_id,
                attempt_id=message.attempt_id,
                error=type(exc).__name__,
            )
            raise

        # A reclaimed lease means the new owner publishes again; consumers dedupe on the idempotency key.
        if not await self._outbox.mark_dispatched(item.outbox_id, self._owner):
            self._lease_lost(item.outbox_id, "mark_dispatched")
            return True
        log_event(
            self._logger,
            "outbox.dispatched",
            outbox_id=item.outbox_id,
            job_id=message.job_id,
            attempt_id=message.attempt_id,
        )
        return True
