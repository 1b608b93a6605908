from datetime import datetime, timezone
from decimal import Decimal

import pytest

from control_plane.errors import PayloadDecodeError
from control_plane.ledger import codec
from control_plane.ledger.models import CanonicalJobRequest, JobRecord, RoutingDecision


def _routed_job() -> JobRecord:
    now = datetime(2024, 1, 1, 8, 30, tzinfo=timezone.utc)
    request = CanonicalJobRequest(
        task_type="chat",
        job_id="job-1",
        attempt_id="attempt-1",
        trace_id="trace-1",
        input_ref="blob://in",
        metadata={"tenant": "acme"},
    )
    job = JobRecord.create(request, now)
    decision = RoutingDecision(provider="openai", model="gpt", policy_version="static", fallback_providers=("azure",))
    return job.with_attempt(job.current_attempt.with_routing(decision, now), now)


def test_job_snapshot_survives_json():
    job = _routed_job()

    raw = codec.dumps(codec.job_to_dict(job))
    restored = codec.job_from_dict(codec.loads(raw), etag="W/1")

    assert restored.etag == "W/1"
    assert restored.current_attempt.routing_decision.fallback_providers == ("azure",)
    assert restored.request.metadata == {"tenant": "acme"}
    assert restored.created_at == job.created_at


def test_snapshot_uses_snake_case_and_iso_timestamps():
    data = codec.job_to_dict(_routed_job())

    assert data["created_at"] == "2024-01-01T08:30:00+00:00"
    assert data["attempts"][0]["routing_decision"]["policy_version"] == "static"
    assert data["state"] == "created"


def test_provider_result_parses_decimal_cost_from_string():
    result = codec.provider_result_from_dict(
        {
            "job_id": "job-1",
            "attempt_id": "attempt-1",
            "provider": "openai",
            "model": "gpt",
            "is_success": True,
            "cost": {"amount": "0.10", "currency": "USD", "is_estimated": False},
            "usage": {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7},
        }
    )

    assert result.cost.amount == Decimal("0.10")
    assert codec.cost_to_dict(result.cost)["amount"] == "0.10"
    assert result.usage.total_tokens == 7


def test_dispatch_payload_missing_fields_is_rejected():
    with pytest.raises(PayloadDecodeError):
        codec.dispatch_from_dict({"job_id": "job-1"})
    with pytest.raises(PayloadDecodeError):
        codec.dispatch_from_dict(["not", "a", "dict"])


def test_loads_rejects_non_objects():
    with pytest.raises(PayloadDecodeError):
        codec.loads("[1, 2]")
    with pytest.raises(PayloadDecodeError):
        codec.loads("{broken")


def test_snapshot_breaking_aggregate_rules_is_a_decode_error():
    data = codec.job_to_dict(_routed_job())
    data["current_attempt_id"] = "attempt-404"

    with pytest.raises(PayloadDecodeError, match="corrupt job snapshot"):
        codec.job_from_dict(data)

    data["attempts"] = []
    with pytest.raises(PayloadDecodeError):
        codec.job_from_dict(data)
