import argparse
import asyncio
import logging
from typing import Optional

from control_plane.bootstrap import build_control_plane
from control_plane.config.settings import AppSettings
from control_plane.shared.logging import configure_logging, get_logger, log_event

from .processor import DispatchOutboxProcessor


class OutboxWorker:
    """Polls the outbox until stopped: idle sleep when empty, error sleep after a failure."""

    def __init__(self, processor: DispatchOutboxProcessor, idle_delay: float = 1.0, error_delay: float = 2.0) -> None:
        self._processor = processor
        self._idle_delay = idle_delay
        self._error_delay = error_delay
        self._logger = get_logger("control_plane.worker")

    async def _sleep(self, delay: float, stop_event: asyncio.Event) -> None:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        stop_event = stop_event or asyncio.Event()
        while not stop_event.is_set():
            try:
                processed = await self._processor.process_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log_event(
                    self._logger,
                    "worker.error",
                    level=logging.ERROR,
                    owner=self._processor.owner,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                await self._sleep(self._error_delay, stop_event)
                continue
            if not processed:
                await self._sleep(self._idle_delay, stop_event)


async def run_once(settings: AppSettings) -> bool:
    control_plane = build_control_plane(settings)
    try:
        return await control_plane.processor.process_once()
    finally:
        await control_plane.close()


async def run_loop(settings: AppSettings, idle_delay: float, error_delay: float) -> None:
    control_plane = build_control_plane(settings)
    worker = OutboxWorker(control_plane.processor, idle_delay, error_delay)
    try:
        await worker.run()
    finally:
        await control_plane.close()


def main(argv: Optional[list] = None) -> None:
    parser = argparse.ArgumentParser(description="Control plane outbox runner")
    parser.add_argument("--log-level")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("once")

    loop_parser = sub.add_parser("loop")
    loop_parser.add_argument("--idle-delay", type=float)
    loop_parser.add_argument("--error-delay", type=float)

    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    settings = AppSettings.from_env()

    if args.command == "once":
        processed = asyncio.run(run_once(settings))
        print("processed" if processed else "empty")
    elif args.command == "loop":
        idle_delay = args.idle_delay if args.idle_delay is not None else settings.outbox_idle_delay_seconds
        error_delay = args.error_delay if args.error_delay is not None else settings.outbox_error_delay_seconds
        try:
            asyncio.run(run_loop(settings, idle_delay, error_delay))
        except KeyboardInterrupt:
            pass


if __name__ == "__main__":
    main()
