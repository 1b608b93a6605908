from dataclasses import dataclass, field
import os
from typing import Optional, Tuple

from control_plane.errors import ConfigurationError
from control_plane.policy.retry import RetryPlannerOptions
from control_plane.policy.routing import RoutingPolicyOptions


def _split_csv(value: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


@dataclass
class AppSettings:
    storage_backend: str = "memory"
    table_connection_string: Optional[str] = None
    jobs_table: str = "jobs"
    events_table: str = "jobevents"
    outbox_table: str = "outbox"
    dedup_table: str = "resultdedup"
    results_table: str = "results"
    service_bus_connection: Optional[str] = None
    dispatch_queue: str = "dispatch"
    publish_timeout_seconds: float = 10.0
    routing_provider: str = ""
    routing_model: str = ""
    routing_policy_version: str = "static"
    routing_fallback_providers: Tuple[str, ...] = field(default_factory=tuple)
    retry_max_attempts: int = 3
    outbox_lease_ttl_seconds: float = 300.0
    dedup_ttl_seconds: float = 900.0
    outbox_idle_delay_seconds: float = 1.0
    outbox_error_delay_seconds: float = 2.0
    outbox_worker_enabled: bool = False
    admin_enabled: bool = False
    admin_api_key: Optional[str] = None
    default_list_limit: int = 50

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            storage_backend=os.getenv("CONTROL_PLANE_STORAGE_BACKEND", "memory"),
            table_connection_string=os.getenv("CONTROL_PLANE_TABLE_CONNECTION"),
            jobs_table=os.getenv("CONTROL_PLANE_JOBS_TABLE", "jobs"),
            events_table=os.getenv("CONTROL_PLANE_EVENTS_TABLE", "jobevents"),
            outbox_table=os.getenv("CONTROL_PLANE_OUTBOX_TABLE", "outbox"),
            dedup_table=os.getenv("CONTROL_PLANE_DEDUP_TABLE", "resultdedup"),
            results_table=os.getenv("CONTROL_PLANE_RESULTS_TABLE", "results"),
            service_bus_connection=os.getenv("CONTROL_PLANE_SERVICEBUS_CONNECTION"),
            dispatch_queue=os.getenv("CONTROL_PLANE_DISPATCH_QUEUE", "dispatch"),
            publish_timeout_seconds=_env_float("CONTROL_PLANE_PUBLISH_TIMEOUT", "10.0"),
            routing_provider=os.getenv("CONTROL_PLANE_ROUTING_PROVIDER", ""),
            routing_model=os.getenv("CONTROL_PLANE_ROUTING_MODEL", ""),
            routing_policy_version=os.getenv("CONTROL_PLANE_ROUTING_POLICY_VERSION", "static"),
            routing_fallback_providers=_split_csv(os.getenv("CONTROL_PLANE_ROUTING_FALLBACKS", "")),
            retry_max_attempts=_env_int("CONTROL_PLANE_RETRY_MAX_ATTEMPTS", "3"),
            outbox_lease_ttl_seconds=_env_float("CONTROL_PLANE_OUTBOX_LEASE_TTL", "300"),
            dedup_ttl_seconds=_env_float("CONTROL_PLANE_DEDUP_TTL", "900"),
            outbox_idle_delay_seconds=_env_float("CONTROL_PLANE_OUTBOX_IDLE_DELAY", "1.0"),
            outbox_error_delay_seconds=_env_float("CONTROL_PLANE_OUTBOX_ERROR_DELAY", "2.0"),
            outbox_worker_enabled=_env_bool("CONTROL_PLANE_OUTBOX_WORKER_ENABLED", "false"),
            admin_enabled=_env_bool("CONTROL_PLANE_ADMIN_ENABLED", "false"),
            admin_api_key=os.getenv("CONTROL_PLANE_ADMIN_API_KEY"),
            default_list_limit=_env_int("CONTROL_PLANE_DEFAULT_LIST_LIMIT", "50"),
        )

    def routing_options(self) -> RoutingPolicyOptions:
        return RoutingPolicyOptions(
            provider=self.routing_provider,
            model=self.routing_model,
            policy_version=self.routing_policy_version,
            fallback_providers=tuple(self.routing_fallback_providers),
        )

    def retry_options(self) -> RetryPlannerOptions:
        return RetryPlannerOptions(max_attempts=self.retry_max_attempts)
