from dataclasses import dataclass, field
from typing import Protocol, Tuple

from control_plane.errors import ConfigurationError
from control_plane.ledger.models import CanonicalJobRequest, RoutingDecision


class RoutingPolicy(Protocol):
    async def decide(self, request: CanonicalJobRequest) -> RoutingDecision:
        ...


@dataclass(frozen=True)
class RoutingPolicyOptions:
    provider: str = ""
    model: str = ""
    policy_version: str = "static"
    fallback_providers: Tuple[str, ...] = field(default_factory=tuple)


class StaticRoutingPolicy(RoutingPolicy):
    """Routes every request to the configured provider, carrying the fallback chain along."""

    def __init__(self, options: RoutingPolicyOptions) -> None:
        if options is None:
            raise ConfigurationError("routing options are required")
        self._options = options

    async def decide(self, request: CanonicalJobRequest) -> RoutingDecision:
        if not self._options.provider.strip():
            raise ConfigurationError("routing provider is not configured")
        return RoutingDecision(
            provider=self._options.provider,
            model=self._options.model,
            policy_version=self._options.policy_version or "static",
            fallback_providers=tuple(self._options.fallback_providers),
        )
