"""Job aggregate, audit events and outbox records.

Aggregate types are frozen: every transition returns a new snapshot, so two
callers that loaded "the same" job never share mutable state.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple

from control_plane.errors import InvalidStateError, ValidationError

from .results import CanonicalError, CanonicalResponse


class JobState(str, Enum):
    CREATED = "created"
    ROUTED = "routed"
    DISPATCHED = "dispatched"
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class AttemptState(str, Enum):
    CREATED = "created"
    ROUTED = "routed"
    DISPATCHED = "dispatched"
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class JobEventType(str, Enum):
    CREATED = "created"
    ROUTED = "routed"
    DISPATCHED = "dispatched"
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRIED = "retried"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DISPATCHED = "dispatched"
    FAILED = "failed"


TERMINAL_JOB_STATES = frozenset(
    {JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED, JobState.EXPIRED}
)
TERMINAL_ATTEMPT_STATES = frozenset({AttemptState.COMPLETED, AttemptState.FAILED})
# Tie-break for events recorded within the same clock tick.
_EVENT_ORDER = {event_type: index for index, event_type in enumerate(JobEventType)}


def _later(previous: datetime, now: datetime) -> datetime:
    return now if now > previous else previous


@dataclass(frozen=True)
class CanonicalJobRequest:
    task_type: str
    job_id: Optional[str] = None
    attempt_id: Optional[str] = None
    trace_id: Optional[str] = None
    input_ref: Optional[str] = None
    metadata: Optional[Dict[str, str]] = None

    def with_ids(self, job_id: str, attempt_id: str, trace_id: str) -> "CanonicalJobRequest":
        return replace(
            self,
            job_id=job_id,
            attempt_id=attempt_id,
            trace_id=trace_id,
            metadata=dict(self.metadata) if self.metadata is not None else None,
        )


@dataclass(frozen=True)
class JobHandle:
    job_id: str
    attempt_id: str
    trace_id: str


@dataclass(frozen=True)
class RoutingDecision:
    provider: str
    model: str
    policy_version: str
    fallback_providers: Tuple[str, ...] = ()
    inputs: Optional[Dict[str, str]] = None


@dataclass(frozen=True)
class JobAttempt:
    attempt_id: str
    created_at: datetime
    updated_at: datetime
    state: AttemptState = AttemptState.CREATED
    provider: Optional[str] = None
    model: Optional[str] = None
    routing_decision: Optional[RoutingDecision] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_ATTEMPT_STATES

    def _ensure_open(self) -> None:
        if self.is_terminal:
            raise InvalidStateError(
                f"Attempt '{self.attempt_id}' is already {self.state.value}."
            )

    def with_routing(self, decision: RoutingDecision, now: datetime) -> "JobAttempt":
        self._ensure_open()
        return replace(
            self,
            routing_decision=decision,
            provider=decision.provider,
            model=decision.model,
            state=AttemptState.ROUTED,
            updated_at=_later(self.updated_at, now),
        )

    def with_state(self, state: AttemptState, now: datetime) -> "JobAttempt":
        self._ensure_open()
        return replace(self, state=state, updated_at=_later(self.updated_at, now))


@dataclass(frozen=True)
class JobRecord:
    job_id: str
    trace_id: str
    state: JobState
    created_at: datetime
    updated_at: datetime
    current_attempt_id: str
    request: CanonicalJobRequest
    attempts: Tuple[JobAttempt, ...]
    etag: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.attempts:
            raise ValidationError(f"Job '{self.job_id}' has no attempts.")
        ids = [attempt.attempt_id for attempt in self.attempts]
        if len(set(ids)) != len(ids):
            raise ValidationError(f"Job '{self.job_id}' has duplicate attempt ids.")
        if self.current_attempt_id != ids[-1]:
            raise ValidationError(
                f"Job '{self.job_id}' current attempt '{self.current_attempt_id}' is not the latest attempt."
            )

    @classmethod
    def create(cls, request: CanonicalJobRequest, now: datetime) -> "JobRecord":
        for name in ("job_id", "attempt_id", "trace_id"):
            if not (getattr(request, name) or "").strip():
                raise ValidationError(f"{name} is required.")
        attempt = JobAttempt(attempt_id=request.attempt_id, created_at=now, updated_at=now)
        return cls(
            job_id=request.job_id,
            trace_id=request.trace_id,
            state=JobState.CREATED,
            created_at=now,
            updated_at=now,
            current_attempt_id=attempt.attempt_id,
            request=request,
            attempts=(attempt,),
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_JOB_STATES

    @property
    def current_attempt(self) -> Optional[JobAttempt]:
        return self.get_attempt(self.current_attempt_id)

    def get_attempt(self, attempt_id: str) -> Optional[JobAttempt]:
        return next((attempt for attempt in self.attempts if attempt.attempt_id == attempt_id), None)

    def with_state(self, state: JobState, now: datetime) -> "JobRecord":
        return replace(self, state=state, updated_at=_later(self.updated_at, now))

    def with_attempt(self, attempt: JobAttempt, now: datetime) -> "JobRecord":
        if self.get_attempt(attempt.attempt_id) is None:
            raise InvalidStateError(f"Attempt '{attempt.attempt_id}' does not belong to job '{self.job_id}'.")
        attempts = tuple(
            attempt if existing.attempt_id == attempt.attempt_id else existing
            for existing in self.attempts
        )
        return replace(self, attempts=attempts, updated_at=_later(self.updated_at, now))

    def add_attempt(self, attempt_id: str, now: datetime) -> "JobRecord":
        if self.get_attempt(attempt_id) is not None:
            raise InvalidStateError(f"Attempt '{attempt_id}' already exists on job '{self.job_id}'.")
        attempt = JobAttempt(attempt_id=attempt_id, created_at=now, updated_at=now)
        return replace(
            self,
            attempts=self.attempts + (attempt,),
            current_attempt_id=attempt_id,
            updated_at=_later(self.updated_at, now),
        )

    def used_providers(self) -> Tuple[str, ...]:
        return tuple(attempt.provider for attempt in self.attempts if (attempt.provider or "").strip())

    def summary(self) -> "JobSummary":
        return JobSummary(
            job_id=self.job_id,
            trace_id=self.trace_id,
            current_attempt_id=self.current_attempt_id,
            state=self.state,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


@dataclass(frozen=True)
class JobSummary:
    job_id: str
    trace_id: str
    current_attempt_id: str
    state: JobState
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class DispatchMessage:
    job_id: str
    attempt_id: str
    trace_id: str
    provider: str
    model: str
    idempotency_key: str
    request: CanonicalJobRequest

    @classmethod
    def for_attempt(cls, job: JobRecord, attempt: JobAttempt) -> "DispatchMessage":
        return cls(
            job_id=job.job_id,
            attempt_id=attempt.attempt_id,
            trace_id=job.trace_id,
            provider=attempt.provider or "",
            model=attempt.model or "",
            idempotency_key=idempotency_key(job.job_id, attempt.attempt_id),
            request=job.request.with_ids(job.job_id, attempt.attempt_id, job.trace_id),
        )


def idempotency_key(job_id: str, attempt_id: str) -> str:
    return f"{job_id}:{attempt_id}"


@dataclass(frozen=True)
class OutboxDispatchMessage:
    outbox_id: str
    message: Optional[DispatchMessage]
    created_at: datetime


@dataclass
class OutboxRecord:
    outbox_id: str
    status: OutboxStatus
    payload: Optional[Dict[str, object]]
    created_at: datetime
    updated_at: datetime
    lease_owner: Optional[str] = None
    leased_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class JobEvent:
    job_id: str
    attempt_id: str
    type: JobEventType
    occurred_at: datetime
    attributes: Dict[str, str] = field(default_factory=dict)

    def sort_key(self) -> Tuple[datetime, int, str]:
        return (self.occurred_at, _EVENT_ORDER[self.type], self.attempt_id)

    @classmethod
    def created(cls, job: JobRecord, now: datetime) -> "JobEvent":
        return cls(job.job_id, job.current_attempt_id, JobEventType.CREATED, now, {"task_type": job.request.task_type})

    @classmethod
    def routed(cls, job_id: str, attempt_id: str, now: datetime, decision: RoutingDecision) -> "JobEvent":
        return cls(
            job_id,
            attempt_id,
            JobEventType.ROUTED,
            now,
            {
                "provider": decision.provider,
                "model": decision.model,
                "policy_version": decision.policy_version,
            },
        )

    @classmethod
    def dispatched(cls, dispatch: DispatchMessage, outbox_id: str, now: datetime) -> "JobEvent":
        return cls(
            dispatch.job_id,
            dispatch.attempt_id,
            JobEventType.DISPATCHED,
            now,
            {
                "provider": dispatch.provider,
                "model": dispatch.model,
                "idempotency_key": dispatch.idempotency_key,
                "outbox_id": outbox_id,
            },
        )

    @classmethod
    def started(cls, job_id: str, attempt: JobAttempt, now: datetime) -> "JobEvent":
        attributes = {"provider": attempt.provider} if attempt.provider else {}
        return cls(job_id, attempt.attempt_id, JobEventType.STARTED, now, attributes)

    @classmethod
    def completed(cls, job_id: str, attempt_id: str, now: datetime, response: CanonicalResponse) -> "JobEvent":
        attributes = {"provider": response.provider, "model": response.model}
        if (response.output_ref or "").strip():
            attributes["output_ref"] = response.output_ref
        return cls(job_id, attempt_id, JobEventType.COMPLETED, now, attributes)

    @classmethod
    def failed(cls, job_id: str, attempt_id: str, now: datetime, error: CanonicalError) -> "JobEvent":
        return cls(
            job_id,
            attempt_id,
            JobEventType.FAILED,
            now,
            {"error_code": error.code, "error_message": error.message},
        )

    @classmethod
    def retried(
        cls,
        job_id: str,
        attempt_id: str,
        now: datetime,
        plan: "RetryPlan",
        next_attempt_id: str,
    ) -> "JobEvent":
        attributes = {"next_attempt_id": next_attempt_id}
        if (plan.provider or "").strip():
            attributes["provider"] = plan.provider
        if (plan.model or "").strip():
            attributes["model"] = plan.model
        if plan.reason:
            attributes["reason"] = plan.reason
        return cls(job_id, attempt_id, JobEventType.RETRIED, now, attributes)

    @classmethod
    def closed(cls, job: JobRecord, event_type: JobEventType, now: datetime, reason: str) -> "JobEvent":
        return cls(job.job_id, job.current_attempt_id, event_type, now, {"reason": reason})


@dataclass(frozen=True)
class RetryPlan:
    should_retry: bool
    provider: Optional[str] = None
    model: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def none(cls, reason: str) -> "RetryPlan":
        return cls(should_retry=False, reason=reason)

    @classmethod
    def for_provider(cls, provider: str, model: str, reason: str) -> "RetryPlan":
        return cls(should_retry=True, provider=provider, model=model, reason=reason)


class ResultIngestionStatus(str, Enum):
    DUPLICATE = "duplicate"
    JOB_NOT_FOUND = "job_not_found"
    FINALIZED = "finalized"
    RETRYING = "retrying"


@dataclass(frozen=True)
class ResultIngestionOutcome:
    status: ResultIngestionStatus
    dispatch: Optional[DispatchMessage] = None
    response: Optional[CanonicalResponse] = None

    @classmethod
    def duplicate(cls) -> "ResultIngestionOutcome":
        return cls(ResultIngestionStatus.DUPLICATE)

    @classmethod
    def job_not_found(cls) -> "ResultIngestionOutcome":
        return cls(ResultIngestionStatus.JOB_NOT_FOUND)

    @classmethod
    def finalized(cls, response: CanonicalResponse) -> "ResultIngestionOutcome":
        return cls(ResultIngestionStatus.FINALIZED, response=response)

    @classmethod
    def retrying(cls, dispatch: DispatchMessage) -> "ResultIngestionOutcome":
        return cls(ResultIngestionStatus.RETRYING, dispatch=dispatch)
