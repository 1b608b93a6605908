from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class UsageMetrics:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass(frozen=True)
class CostMetrics:
    amount: Decimal
    currency: str
    is_estimated: bool


@dataclass(frozen=True)
class CanonicalError:
    code: str
    message: str
    provider_code: Optional[str] = None


@dataclass(frozen=True)
class ProviderResultEvent:
    job_id: str
    attempt_id: str
    provider: str
    model: str
    is_success: bool
    output_ref: Optional[str] = None
    usage: Optional[UsageMetrics] = None
    cost: Optional[CostMetrics] = None
    error: Optional[CanonicalError] = None


@dataclass(frozen=True)
class CanonicalResponse:
    provider: str
    model: str
    output_ref: Optional[str] = None
    usage: Optional[UsageMetrics] = None
    cost: Optional[CostMetrics] = None
    error: Optional[CanonicalError] = None
