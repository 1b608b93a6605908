import asyncio

import pytest

from control_plane.config.settings import AppSettings
from control_plane.dispatcher import runner
from control_plane.dispatcher.runner import OutboxWorker
from control_plane.errors import ConfigurationError


class _ScriptedProcessor:
    owner = "test-owner"

    def __init__(self, outcomes, stop_event: asyncio.Event) -> None:
        self._outcomes = list(outcomes)
        self._stop_event = stop_event
        self.calls = 0

    async def process_once(self) -> bool:
        self.calls += 1
        if not self._outcomes:
            self._stop_event.set()
            return False
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def test_worker_keeps_going_after_errors_until_stopped():
    async def scenario():
        stop_event = asyncio.Event()
        processor = _ScriptedProcessor([True, RuntimeError("boom"), True], stop_event)
        worker = OutboxWorker(processor, idle_delay=0.01, error_delay=0.01)
        await asyncio.wait_for(worker.run(stop_event), timeout=2)
        return processor.calls

    assert asyncio.run(scenario()) == 4


def test_worker_exits_on_cancellation():
    async def scenario():
        stop_event = asyncio.Event()
        processor = _ScriptedProcessor([False] * 1000, stop_event)
        task = asyncio.create_task(OutboxWorker(processor, idle_delay=10, error_delay=10).run(stop_event))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return processor.calls

    assert asyncio.run(scenario()) == 1


def test_once_command_reports_empty_outbox(monkeypatch, capsys):
    monkeypatch.setenv("CONTROL_PLANE_STORAGE_BACKEND", "memory")
    monkeypatch.delenv("CONTROL_PLANE_SERVICEBUS_CONNECTION", raising=False)

    runner.main(["once"])

    assert capsys.readouterr().out.strip() == "empty"


def test_loop_uses_settings_delays(monkeypatch):
    captured = {}

    async def fake_run_loop(settings: AppSettings, idle_delay: float, error_delay: float) -> None:
        captured.update(idle=idle_delay, error=error_delay)

    monkeypatch.setenv("CONTROL_PLANE_OUTBOX_IDLE_DELAY", "0.5")
    monkeypatch.setattr(runner, "run_loop", fake_run_loop)

    runner.main(["loop", "--error-delay", "3"])

    assert captured == {"idle": 0.5, "error": 3.0}


def test_table_backend_requires_connection(monkeypatch):
    monkeypatch.setenv("CONTROL_PLANE_STORAGE_BACKEND", "table")
    monkeypatch.delenv("CONTROL_PLANE_TABLE_CONNECTION", raising=False)

    with pytest.raises(ConfigurationError):
        runner.main(["once"])
