"""Job orchestration: accept, route, dispatch and result ingestion.

Every mutating operation loads a fresh snapshot, applies pure transitions and
writes it back conditioned on the loaded etag. A lost race surfaces as
``ConcurrencyConflictError`` and is safe to retry from the top. Result ingestion
retries a bounded number of times itself while it holds the dedup claim.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from control_plane.core.clock import Clock, IdGenerator
from control_plane.errors import ConcurrencyConflictError, InvalidStateError, NotFoundError, ValidationError
from control_plane.ledger.interfaces import DeduplicationStore, JobEventStore, JobsStore, OutboxStore, ResultStore
from control_plane.ledger.models import (
    AttemptState,
    CanonicalJobRequest,
    DispatchMessage,
    JobAttempt,
    JobEvent,
    JobEventType,
    JobHandle,
    JobRecord,
    JobState,
    JobSummary,
    OutboxDispatchMessage,
    ResultIngestionOutcome,
    RetryPlan,
    RoutingDecision,
)
from control_plane.ledger.results import CanonicalResponse, ProviderResultEvent
from control_plane.policy.assembler import ResponseAssembler
from control_plane.policy.retry import RetryPlanner
from control_plane.policy.routing import RoutingPolicy
from control_plane.shared.logging import get_logger, log_event

RETRY_POLICY_VERSION = "retry"
RESULT_WRITE_ATTEMPTS = 3


def _blank(value: Optional[str]) -> bool:
    return not (value or "").strip()


class JobOrchestrator:
    def __init__(
        self,
        jobs: JobsStore,
        events: JobEventStore,
        routing_policy: RoutingPolicy,
        outbox: OutboxStore,
        dedup: DeduplicationStore,
        assembler: ResponseAssembler,
        results: ResultStore,
        retry_planner: RetryPlanner,
        id_generator: IdGenerator,
        clock: Clock,
    ) -> None:
        self._jobs = jobs
        self._events = events
        self._routing_policy = routing_policy
        self._outbox = outbox
        self._dedup = dedup
        self._assembler = assembler
        self._results = results
        self._retry_planner = retry_planner
        self._ids = id_generator
        self._clock = clock
        self._logger = get_logger("control_plane.orchestrator")

    async def _load(self, job_id: str) -> JobRecord:
        job = await self._jobs.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job '{job_id}' was not found.")
        return job

    async def _save(self, job: JobRecord) -> JobRecord:
        return await self._jobs.update_job(job, job.etag or "")

    async def _load_attempt(self, job_id: str, attempt_id: str) -> Tuple[JobRecord, JobAttempt]:
        job = await self._load(job_id)
        attempt = job.get_attempt(attempt_id)
        if attempt is None:
            raise NotFoundError(f"Attempt '{attempt_id}' was not found on job '{job_id}'.")
        return job, attempt

    async def accept(self, request: Optional[CanonicalJobRequest]) -> JobHandle:
        if request is None:
            raise ValidationError("request is required.")
        if _blank(request.task_type):
            raise ValidationError("task_type is required.")

        job_id = request.job_id if not _blank(request.job_id) else self._ids.new_id("job")
        attempt_id = request.attempt_id if not _blank(request.attempt_id) else self._ids.new_id("attempt")
        trace_id = request.trace_id if not _blank(request.trace_id) else self._ids.new_trace_id()
        now = self._clock.utc_now()

        job = JobRecord.create(request.with_ids(job_id, attempt_id, trace_id), now)
        await self._jobs.create_job(job)
        await self._events.append(JobEvent.created(job, now))

        log_event(
            self._logger,
            "job.accepted",
            job_id=job_id,
            attempt_id=attempt_id,
            trace_id=trace_id,
            task_type=request.task_type,
        )
        return JobHandle(job_id=job_id, attempt_id=attempt_id, trace_id=trace_id)

    async def route(self, job_id: str) -> RoutingDecision:
        job = await self._load(job_id)
        attempt = job.current_attempt
        if attempt is None:
            raise NotFoundError(f"Attempt '{job.current_attempt_id}' was not found on job '{job_id}'.")
        if job.is_terminal:
            raise InvalidStateError(f"Job '{job_id}' is already {job.state.value}.")

        decision = await self._routing_policy.decide(job.request)
        now = self._clock.utc_now()
        routed = attempt.with_routing(decision, now)
        job = job.with_attempt(routed, now).with_state(JobState.ROUTED, now)

        await self._save(job)
        await self._events.append(JobEvent.routed(job_id, routed.attempt_id, now, decision))

        log_event(
            self._logger,
            "job.routed",
            job_id=job_id,
            attempt_id=routed.attempt_id,
            provider=decision.provider,
            model=decision.model,
            policy_version=decision.policy_version,
        )
        return decision

    async def dispatch(self, job_id: str, attempt_id: str) -> DispatchMessage:
        job, attempt = await self._load_attempt(job_id, attempt_id)
        if attempt.routing_decision is None or _blank(attempt.provider):
            raise InvalidStateError(f"Attempt '{attempt_id}' has not been routed.")
        if attempt.is_terminal:
            raise InvalidStateError(f"Attempt '{attempt_id}' is already {attempt.state.value}.")
        if job.is_terminal:
            raise InvalidStateError(f"Job '{job_id}' is already {job.state.value}.")

        now = self._clock.utc_now()
        dispatch = DispatchMessage.for_attempt(job, attempt)
        outbox_id = self._ids.new_id("outbox")
        # Outbox first: a pending entry without a job update is still delivered.
        await self._outbox.enqueue_dispatch(OutboxDispatchMessage(outbox_id, dispatch, now))

        dispatched = attempt.with_state(AttemptState.DISPATCHED, now)
        job = job.with_attempt(dispatched, now).with_state(JobState.DISPATCHED, now)
        await self._save(job)
        await self._events.append(JobEvent.dispatched(dispatch, outbox_id, now))

        log_event(
            self._logger,
            "job.dispatched",
            job_id=job_id,
            attempt_id=attempt_id,
            provider=dispatch.provider,
            model=dispatch.model,
            idempotency_key=dispatch.idempotency_key,
            outbox_id=outbox_id,
        )
        return dispatch

    async def record_started(self, job_id: str, attempt_id: str) -> JobRecord:
        job, attempt = await self._load_attempt(job_id, attempt_id)
        if attempt.state == AttemptState.STARTED or attempt.is_terminal or job.is_terminal:
            return job

        now = self._clock.utc_now()
        started = attempt.with_state(AttemptState.STARTED, now)
        job = job.with_attempt(started, now)
        if job.current_attempt_id == attempt_id:
            job = job.with_state(JobState.STARTED, now)
        job = await self._save(job)
        await self._events.append(JobEvent.started(job_id, started, now))

        log_event(self._logger, "job.started", job_id=job_id, attempt_id=attempt_id, provider=started.provider)
        return job

    async def ingest_result(self, result: Optional[ProviderResultEvent]) -> ResultIngestionOutcome:
        if result is None:
            raise ValidationError("result is required.")

        if not await self._dedup.try_start(result.job_id, result.attempt_id):
            log_event(self._logger, "result.duplicate", job_id=result.job_id, attempt_id=result.attempt_id)
            return ResultIngestionOutcome.duplicate()

        # The dedup claim stays held across reloads; a conflicting job write is retried here.
        reserved: Dict[str, str] = {}
        write_attempt = 1
        while True:
            try:
                return await self._apply_result(result, reserved)
            except ConcurrencyConflictError:
                if write_attempt >= RESULT_WRITE_ATTEMPTS:
                    raise
                log_event(
                    self._logger,
                    "result.write_conflict",
                    level=logging.WARNING,
                    job_id=result.job_id,
                    attempt_id=result.attempt_id,
                    write_attempt=write_attempt,
                )
                write_attempt += 1

    def _reserve(self, reserved: Dict[str, str], prefix: str) -> str:
        if prefix not in reserved:
            reserved[prefix] = self._ids.new_id(prefix)
        return reserved[prefix]

    async def _apply_result(self, result: ProviderResultEvent, reserved: Dict[str, str]) -> ResultIngestionOutcome:
        job = await self._jobs.get_job(result.job_id)
        attempt = job.get_attempt(result.attempt_id) if job is not None else None
        if job is None or attempt is None:
            await self._dedup.mark_completed(result.job_id, result.attempt_id)
            log_event(
                self._logger,
                "result.job_not_found",
                level=logging.WARNING,
                job_id=result.job_id,
                attempt_id=result.attempt_id,
            )
            return ResultIngestionOutcome.job_not_found()

        if attempt.is_terminal or job.is_terminal:
            await self._dedup.mark_completed(result.job_id, result.attempt_id)
            log_event(
                self._logger,
                "result.ignored_terminal",
                job_id=job.job_id,
                attempt_id=attempt.attempt_id,
                job_state=job.state.value,
                attempt_state=attempt.state.value,
            )
            return ResultIngestionOutcome.duplicate()

        now = self._clock.utc_now()
        if result.is_success:
            return await self._finalize(job, attempt, result, now)

        plan = self._retry_planner.plan_retry(job, attempt, result)
        if plan.should_retry and not _blank(plan.provider):
            return await self._retry(job, attempt, result, plan, now, reserved)
        return await self._finalize(job, attempt, result, now)

        plan = self._retry_planner.plan_retry(job, attempt, result)
        if plan.should_retry and not _blank(plan.provider):
            return await self._retry(job, attempt, result, plan, now)
        return await self._finalize(job, attempt, result, now)

    async def _finalize(
        self,
        job: JobRecord,
        attempt: JobAttempt,
        result: ProviderResultEvent,
        now: datetime,
    ) -> ResultIngestionOutcome:
        response = self._assembler.assemble(result)
        succeeded = result.is_success
        closed = attempt.with_state(AttemptState.COMPLETED if succeeded else AttemptState.FAILED, now)
        job = job.with_attempt(closed, now).with_state(JobState.COMPLETED if succeeded else JobState.FAILED, now)

        await self._save(job)
        await self._results.save_attempt_result(job.job_id, attempt.attempt_id, response)
        await self._results.save_final_result(job.job_id, response)
        if succeeded:
            await self._events.append(JobEvent.completed(job.job_id, attempt.attempt_id, now, response))
        elif response.error is not None:
            await self._events.append(JobEvent.failed(job.job_id, attempt.attempt_id, now, response.error))
        await self._dedup.mark_completed(job.job_id, attempt.attempt_id)

        if succeeded:
            log_event(
                self._logger,
                "result.finalized",
                job_id=job.job_id,
                attempt_id=attempt.attempt_id,
                provider=response.provider,
                model=response.model,
            )
        else:
            log_event(
                self._logger,
                "result.failed",
                level=logging.ERROR,
                job_id=job.job_id,
                attempt_id=attempt.attempt_id,
                provider=response.provider,
                error_code=response.error.code if response.error else None,
            )
        return ResultIngestionOutcome.finalized(response)

    async def _retry(
        self,
        job: JobRecord,
        attempt: JobAttempt,
        result: ProviderResultEvent,
        plan: RetryPlan,
        now: datetime,
        reserved: Dict[str, str],
    ) -> ResultIngestionOutcome:
        failed_response = self._assembler.assemble(result)
        failed = attempt.with_state(AttemptState.FAILED, now)
        next_attempt_id = self._reserve(reserved, "attempt")

        job = job.with_attempt(failed, now).add_attempt(next_attempt_id, now)
        decision = RoutingDecision(
            provider=plan.provider,
            model=plan.model or "",
            policy_version=RETRY_POLICY_VERSION,
            fallback_providers=(),
        )
        next_attempt = job.current_attempt.with_routing(decision, now)
        dispatch = DispatchMessage.for_attempt(job, next_attempt)
        outbox_id = self._reserve(reserved, "outbox")
        await self._outbox.enqueue_dispatch(OutboxDispatchMessage(outbox_id, dispatch, now))

        job = job.with_attempt(next_attempt.with_state(AttemptState.DISPATCHED, now), now)
        job = job.with_state(JobState.RETRYING, now)

        await self._save(job)
        await self._results.save_attempt_result(job.job_id, attempt.attempt_id, failed_response)
        await self._events.append(JobEvent.retried(job.job_id, attempt.attempt_id, now, plan, next_attempt_id))
        await self._dedup.mark_completed(job.job_id, attempt.attempt_id)

        log_event(
            self._logger,
            "result.retrying",
            level=logging.WARNING,
            job_id=job.job_id,
            attempt_id=attempt.attempt_id,
            next_attempt_id=next_attempt_id,
            provider=dispatch.provider,
            model=dispatch.model,
            reason=plan.reason,
            outbox_id=outbox_id,
        )
        return ResultIngestionOutcome.retrying(dispatch)

    async def cancel(self, job_id: str, reason: str = "cancelled") -> JobRecord:
        return await self._close(job_id, JobState.CANCELLED, JobEventType.CANCELLED, reason, "job.cancelled")

    async def expire(self, job_id: str, reason: str = "expired") -> JobRecord:
        return await self._close(job_id, JobState.EXPIRED, JobEventType.EXPIRED, reason, "job.expired")

    async def _close(
        self,
        job_id: str,
        state: JobState,
        event_type: JobEventType,
        reason: str,
        log_name: str,
    ) -> JobRecord:
        job = await self._load(job_id)
        if job.is_terminal:
            return job
        now = self._clock.utc_now()
        job = await self._save(job.with_state(state, now))
        await self._events.append(JobEvent.closed(job, event_type, now, reason))
        log_event(self._logger, log_name, job_id=job_id, attempt_id=job.current_attempt_id, reason=reason)
        return job

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        return await self._jobs.get_job(job_id)

    async def get_final_result(self, job_id: str) -> Optional[CanonicalResponse]:
        return await self._results.get_final_result(job_id)

    async def get_events(self, job_id: str) -> List[JobEvent]:
        return await self._events.get_events(job_id)

    async def list_jobs(self, limit: int) -> List[JobSummary]:
        if limit <= 0:
            raise ValidationError("limit must be positive.")
        return await self._jobs.list_jobs(limit)
