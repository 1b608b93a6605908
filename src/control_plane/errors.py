class ControlPlaneError(RuntimeError):
    """Base class for failures raised by the control plane."""


class ValidationError(ControlPlaneError):
    """Caller supplied bad input. Never retried."""


class NotFoundError(ControlPlaneError):
    """A job or attempt does not exist."""


class InvalidStateError(ControlPlaneError):
    """An operation was called out of order, e.g. dispatch before routing."""


class JobAlreadyExistsError(InvalidStateError):
    pass


class ConfigurationError(ControlPlaneError):
    """Required settings are missing or malformed."""


class TransientInfrastructureError(ControlPlaneError):
    """A store or queue call failed; the caller may retry with backoff."""


class ConcurrencyConflictError(TransientInfrastructureError):
    """A conditional write lost against a concurrent writer."""


class PayloadDecodeError(ValueError):
    pass


class CorruptRecordError(ControlPlaneError):
    """A stored record could not be decoded. Not the caller's fault."""
