"""snake_case JSON codec shared by the table adapters, the queue and the HTTP layer."""
import json
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from control_plane.errors import PayloadDecodeError, ValidationError

from .models import (
    AttemptState,
    CanonicalJobRequest,
    DispatchMessage,
    JobAttempt,
    JobEvent,
    JobEventType,
    JobRecord,
    JobState,
    JobSummary,
    RoutingDecision,
)
from .results import CanonicalError, CanonicalResponse, CostMetrics, ProviderResultEvent, UsageMetrics


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError) as exc:
        raise PayloadDecodeError(f"invalid timestamp {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _required(data: Dict[str, Any], key: str) -> Any:
    if key not in data or data[key] is None:
        raise PayloadDecodeError(f"missing field '{key}'")
    return data[key]


def request_to_dict(request: CanonicalJobRequest) -> Dict[str, Any]:
    return {
        "task_type": request.task_type,
        "job_id": request.job_id,
        "attempt_id": request.attempt_id,
        "trace_id": request.trace_id,
        "input_ref": request.input_ref,
        "metadata": dict(request.metadata) if request.metadata is not None else None,
    }


def request_from_dict(data: Dict[str, Any]) -> CanonicalJobRequest:
    metadata = data.get("metadata")
    return CanonicalJobRequest(
        task_type=_required(data, "task_type"),
        job_id=data.get("job_id"),
        attempt_id=data.get("attempt_id"),
        trace_id=data.get("trace_id"),
        input_ref=data.get("input_ref"),
        metadata={str(k): str(v) for k, v in metadata.items()} if metadata is not None else None,
    )


def routing_to_dict(decision: RoutingDecision) -> Dict[str, Any]:
    return {
        "provider": decision.provider,
        "model": decision.model,
        "policy_version": decision.policy_version,
        "fallback_providers": list(decision.fallback_providers),
        "inputs": dict(decision.inputs) if decision.inputs is not None else None,
    }


def routing_from_dict(data: Dict[str, Any]) -> RoutingDecision:
    return RoutingDecision(
        provider=_required(data, "provider"),
        model=data.get("model") or "",
        policy_version=data.get("policy_version") or "",
        fallback_providers=tuple(data.get("fallback_providers") or ()),
        inputs=data.get("inputs"),
    )


def attempt_to_dict(attempt: JobAttempt) -> Dict[str, Any]:
    return {
        "attempt_id": attempt.attempt_id,
        "created_at": format_timestamp(attempt.created_at),
        "updated_at": format_timestamp(attempt.updated_at),
        "state": attempt.state.value,
        "provider": attempt.provider,
        "model": attempt.model,
        "routing_decision": routing_to_dict(attempt.routing_decision) if attempt.routing_decision else None,
    }


def attempt_from_dict(data: Dict[str, Any]) -> JobAttempt:
    routing = data.get("routing_decision")
    return JobAttempt(
        attempt_id=_required(data, "attempt_id"),
        created_at=parse_timestamp(_required(data, "created_at")),
        updated_at=parse_timestamp(_required(data, "updated_at")),
        state=AttemptState(_required(data, "state")),
        provider=data.get("provider"),
        model=data.get("model"),
        routing_decision=routing_from_dict(routing) if routing else None,
    )


def job_to_dict(job: JobRecord) -> Dict[str, Any]:
    return {
        "job_id": job.job_id,
        "trace_id": job.trace_id,
        "state": job.state.value,
        "created_at": format_timestamp(job.created_at),
        "updated_at": format_timestamp(job.updated_at),
        "current_attempt_id": job.current_attempt_id,
        "request": request_to_dict(job.request),
        "attempts": [attempt_to_dict(attempt) for attempt in job.attempts],
    }


def job_from_dict(data: Dict[str, Any], etag: Optional[str] = None) -> JobRecord:
    try:
        return JobRecord(
            job_id=_required(data, "job_id"),
            trace_id=_required(data, "trace_id"),
            state=JobState(_required(data, "state")),
            created_at=parse_timestamp(_required(data, "created_at")),
            updated_at=parse_timestamp(_required(data, "updated_at")),
            current_attempt_id=_required(data, "current_attempt_id"),
            request=request_from_dict(_required(data, "request")),
            attempts=tuple(attempt_from_dict(item) for item in _required(data, "attempts")),
            etag=etag,
        )
    except ValidationError as exc:
        # A stored snapshot that breaks the aggregate rules is corrupt data, not bad input.
        raise PayloadDecodeError(f"corrupt job snapshot: {exc}") from exc
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        if isinstance(exc, PayloadDecodeError):
            raise
        raise PayloadDecodeError(f"invalid job snapshot: {exc}") from exc


def summary_to_dict(summary: JobSummary) -> Dict[str, Any]:
    return {
        "job_id": summary.job_id,
        "trace_id": summary.trace_id,
        "current_attempt_id": summary.current_attempt_id,
        "state": summary.state.value,
        "created_at": format_timestamp(summary.created_at),
        "updated_at": format_timestamp(summary.updated_at),
    }


def event_to_dict(event: JobEvent) -> Dict[str, Any]:
    return {
        "job_id": event.job_id,
        "attempt_id": event.attempt_id,
        "type": event.type.value,
        "occurred_at": format_timestamp(event.occurred_at),
        "attributes": dict(event.attributes),
    }


def event_from_dict(data: Dict[str, Any]) -> JobEvent:
    try:
        return JobEvent(
            job_id=_required(data, "job_id"),
            attempt_id=_required(data, "attempt_id"),
            type=JobEventType(_required(data, "type")),
            occurred_at=parse_timestamp(_required(data, "occurred_at")),
            attributes={str(k): str(v) for k, v in (data.get("attributes") or {}).items()},
        )
    except ValueError as exc:
        if isinstance(exc, PayloadDecodeError):
            raise
        raise PayloadDecodeError(f"invalid job event: {exc}") from exc


def dispatch_to_dict(message: DispatchMessage) -> Dict[str, Any]:
    return {
        "job_id": message.job_id,
        "attempt_id": message.attempt_id,
        "trace_id": message.trace_id,
        "provider": message.provider,
        "model": message.model,
        "idempotency_key": message.idempotency_key,
        "request": request_to_dict(message.request),
    }


def dispatch_from_dict(data: Dict[str, Any]) -> DispatchMessage:
    if not isinstance(data, dict):
        raise PayloadDecodeError("dispatch payload must be an object")
    try:
        return DispatchMessage(
            job_id=_required(data, "job_id"),
            attempt_id=_required(data, "attempt_id"),
            trace_id=_required(data, "trace_id"),
            provider=data.get("provider") or "",
            model=data.get("model") or "",
            idempotency_key=_required(data, "idempotency_key"),
            request=request_from_dict(_required(data, "request")),
        )
    except (AttributeError, TypeError) as exc:
        raise PayloadDecodeError(f"invalid dispatch payload: {exc}") from exc


def usage_to_dict(usage: Optional[UsageMetrics]) -> Optional[Dict[str, Any]]:
    if usage is None:
        return None
    return {
        "prompt_tokens": usage.prompt_tokens,
        "completion_tokens": usage.completion_tokens,
        "total_tokens": usage.total_tokens,
    }


def usage_from_dict(data: Optional[Dict[str, Any]]) -> Optional[UsageMetrics]:
    if not data:
        return None
    return UsageMetrics(
        prompt_tokens=int(data.get("prompt_tokens", 0)),
        completion_tokens=int(data.get("completion_tokens", 0)),
        total_tokens=int(data.get("total_tokens", 0)),
    )


def cost_to_dict(cost: Optional[CostMetrics]) -> Optional[Dict[str, Any]]:
    if cost is None:
        return None
    return {"amount": str(cost.amount), "currency": cost.currency, "is_estimated": cost.is_estimated}


def cost_from_dict(data: Optional[Dict[str, Any]]) -> Optional[CostMetrics]:
    if not data:
        return None
    try:
        amount = Decimal(str(_required(data, "amount")))
    except InvalidOperation as exc:
        raise PayloadDecodeError(f"invalid cost amount {data.get('amount')!r}") from exc
    return CostMetrics(amount=amount, currency=data.get("currency") or "", is_estimated=bool(data.get("is_estimated")))


def error_to_dict(error: Optional[CanonicalError]) -> Optional[Dict[str, Any]]:
    if error is None:
        return None
    return {"code": error.code, "message": error.message, "provider_code": error.provider_code}


def error_from_dict(data: Optional[Dict[str, Any]]) -> Optional[CanonicalError]:
    if not data:
        return None
    return CanonicalError(
        code=_required(data, "code"),
        message=data.get("message") or "",
        provider_code=data.get("provider_code"),
    )


def response_to_dict(response: CanonicalResponse) -> Dict[str, Any]:
    return {
        "provider": response.provider,
        "model": response.model,
        "output_ref": response.output_ref,
        "usage": usage_to_dict(response.usage),
        "cost": cost_to_dict(response.cost),
        "error": error_to_dict(response.error),
    }


def response_from_dict(data: Dict[str, Any]) -> CanonicalResponse:
    return CanonicalResponse(
        provider=_required(data, "provider"),
        model=data.get("model") or "",
        output_ref=data.get("output_ref"),
        usage=usage_from_dict(data.get("usage")),
        cost=cost_from_dict(data.get("cost")),
        error=error_from_dict(data.get("error")),
    )


def provider_result_from_dict(data: Dict[str, Any]) -> ProviderResultEvent:
    return ProviderResultEvent(
        job_id=_required(data, "job_id"),
        attempt_id=_required(data, "attempt_id"),
        provider=_required(data, "provider"),
        model=data.get("model") or "",
        is_success=bool(_required(data, "is_success")),
        output_ref=data.get("output_ref"),
        usage=usage_from_dict(data.get("usage")),
        cost=cost_from_dict(data.get("cost")),
        error=error_from_dict(data.get("error")),
    )


def dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True)


def loads(raw: str) -> Dict[str, Any]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise PayloadDecodeError("payload is not valid JSON") from exc
    if not isinstance(data, dict):
        raise PayloadDecodeError("payload must be a JSON object")
    return data
