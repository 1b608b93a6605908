from datetime import datetime, timedelta, timezone

import pytest

from control_plane.errors import InvalidStateError, ValidationError
from control_plane.ledger.models import (
    AttemptState,
    CanonicalJobRequest,
    DispatchMessage,
    JobEvent,
    JobEventType,
    JobRecord,
    JobState,
    RoutingDecision,
)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _request(**overrides) -> CanonicalJobRequest:
    values = {"task_type": "chat.completion", "job_id": "job-1", "attempt_id": "attempt-1", "trace_id": "trace-1"}
    values.update(overrides)
    return CanonicalJobRequest(**values)


def _decision(provider: str = "openai") -> RoutingDecision:
    return RoutingDecision(provider=provider, model="gpt", policy_version="static", fallback_providers=("anthropic",))


def test_create_starts_with_single_created_attempt():
    job = JobRecord.create(_request(), NOW)

    assert job.state == JobState.CREATED
    assert job.current_attempt_id == "attempt-1"
    assert [attempt.state for attempt in job.attempts] == [AttemptState.CREATED]
    assert job.etag is None


def test_create_requires_ids():
    with pytest.raises(ValidationError):
        JobRecord.create(_request(job_id=" "), NOW)


def test_transitions_return_new_snapshots():
    job = JobRecord.create(_request(), NOW)
    routed_attempt = job.current_attempt.with_routing(_decision(), NOW + timedelta(seconds=1))
    routed = job.with_attempt(routed_attempt, NOW + timedelta(seconds=1)).with_state(JobState.ROUTED, NOW)

    assert job.state == JobState.CREATED
    assert job.current_attempt.provider is None
    assert routed.state == JobState.ROUTED
    assert routed.current_attempt.provider == "openai"
    assert routed.current_attempt.state == AttemptState.ROUTED


def test_updated_at_never_moves_backwards():
    job = JobRecord.create(_request(), NOW)
    later = job.with_state(JobState.ROUTED, NOW + timedelta(minutes=5))
    skewed = later.with_state(JobState.DISPATCHED, NOW)

    assert skewed.updated_at == NOW + timedelta(minutes=5)


def test_terminal_attempt_rejects_transitions():
    job = JobRecord.create(_request(), NOW)
    failed = job.current_attempt.with_state(AttemptState.FAILED, NOW)

    with pytest.raises(InvalidStateError):
        failed.with_state(AttemptState.COMPLETED, NOW)
    with pytest.raises(InvalidStateError):
        failed.with_routing(_decision(), NOW)


def test_add_attempt_becomes_current_and_rejects_duplicates():
    job = JobRecord.create(_request(), NOW).add_attempt("attempt-2", NOW)

    assert job.current_attempt_id == "attempt-2"
    assert [attempt.attempt_id for attempt in job.attempts] == ["attempt-1", "attempt-2"]
    with pytest.raises(InvalidStateError):
        job.add_attempt("attempt-1", NOW)


def test_dispatch_message_restamps_request_with_attempt_ids():
    job = JobRecord.create(_request(), NOW).add_attempt("attempt-2", NOW)
    attempt = job.current_attempt.with_routing(_decision("anthropic"), NOW)

    dispatch = DispatchMessage.for_attempt(job, attempt)

    assert dispatch.idempotency_key == "job-1:attempt-2"
    assert dispatch.provider == "anthropic"
    assert dispatch.request.attempt_id == "attempt-2"
    assert dispatch.request.job_id == "job-1"


def test_events_sort_by_time_then_lifecycle_order():
    early = JobEvent("job-1", "attempt-1", JobEventType.ROUTED, NOW)
    same_time = JobEvent("job-1", "attempt-1", JobEventType.CREATED, NOW)
    late = JobEvent("job-1", "attempt-0", JobEventType.CREATED, NOW + timedelta(seconds=1))

    ordered = sorted([late, early, same_time], key=lambda event: event.sort_key())

    assert [event.type for event in ordered] == [JobEventType.CREATED, JobEventType.ROUTED, JobEventType.CREATED]
    assert ordered[-1] is late
