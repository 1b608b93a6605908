from dataclasses import dataclass
from typing import Protocol

from control_plane.ledger.models import JobAttempt, JobRecord, RetryPlan
from control_plane.ledger.results import ProviderResultEvent


class RetryPlanner(Protocol):
    def plan_retry(self, job: JobRecord, attempt: JobAttempt, result: ProviderResultEvent) -> RetryPlan:
        ...


@dataclass(frozen=True)
class RetryPlannerOptions:
    max_attempts: int = 3


class FallbackRetryPlanner(RetryPlanner):
    """Walks the attempt's fallback chain, skipping providers any earlier attempt already used."""

    def __init__(self, options: RetryPlannerOptions) -> None:
        self._options = options

    def plan_retry(self, job: JobRecord, attempt: JobAttempt, result: ProviderResultEvent) -> RetryPlan:
        if result.is_success:
            return RetryPlan.none("success")
        if len(job.attempts) >= self._options.max_attempts:
            return RetryPlan.none("max_attempts")

        decision = attempt.routing_decision
        fallbacks = decision.fallback_providers if decision is not None else ()
        if not fallbacks:
            return RetryPlan.none("no_fallbacks")

        used = {provider.lower() for provider in job.used_providers()}
        for provider in fallbacks:
            if provider.strip() and provider.lower() not in used:
                return RetryPlan.for_provider(provider, attempt.model or "", "fallback")
        return RetryPlan.none("fallbacks_exhausted")
