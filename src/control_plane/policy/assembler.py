from typing import Protocol

from control_plane.ledger.results import CanonicalError, CanonicalResponse, ProviderResultEvent

DEFAULT_PROVIDER_ERROR = CanonicalError(code="provider_error", message="Provider returned an error.")


class ResponseAssembler(Protocol):
    def assemble(self, result: ProviderResultEvent) -> CanonicalResponse:
        ...


class SimpleResponseAssembler(ResponseAssembler):
    def assemble(self, result: ProviderResultEvent) -> CanonicalResponse:
        error = None
        if not result.is_success:
            error = result.error or DEFAULT_PROVIDER_ERROR
        return CanonicalResponse(
            provider=result.provider,
            model=result.model,
            output_ref=result.output_ref,
            usage=result.usage,
            cost=result.cost,
            error=error,
        )
