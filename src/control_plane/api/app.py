import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from control_plane.bootstrap import ControlPlane, build_control_plane
from control_plane.config.settings import AppSettings
from control_plane.dispatcher.runner import OutboxWorker
from control_plane.errors import (
    ConfigurationError,
    CorruptRecordError,
    InvalidStateError,
    NotFoundError,
    PayloadDecodeError,
    TransientInfrastructureError,
    ValidationError,
)
from control_plane.ledger.codec import (
    dispatch_to_dict,
    event_to_dict,
    job_to_dict,
    provider_result_from_dict,
    request_from_dict,
    response_to_dict,
    routing_to_dict,
    summary_to_dict,
)
from control_plane.shared.logging import get_logger, log_event
from control_plane.validation.validator import SchemaValidator

try:
    import jsonschema
except ImportError:  # pragma: no cover - dependency not installed yet
    jsonschema = None

_STATUS_BY_ERROR = (
    (ValidationError, 422),
    (PayloadDecodeError, 422),
    (NotFoundError, 404),
    (InvalidStateError, 409),
    (ConfigurationError, 500),
    (CorruptRecordError, 500),
    (TransientInfrastructureError, 503),
)


def _job_body(job) -> Dict[str, Any]:
    body = job_to_dict(job)
    body["etag"] = job.etag
    return body


def create_app(settings: Optional[AppSettings] = None, control_plane: Optional[ControlPlane] = None) -> FastAPI:
    logger = get_logger("control_plane.api")
    owns_control_plane = control_plane is None
    if control_plane is None:
        control_plane = build_control_plane(settings or AppSettings.from_env())
    settings = control_plane.settings
    orchestrator = control_plane.orchestrator
    validator = SchemaValidator()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        worker_task = None
        stop_event = asyncio.Event()
        if settings.outbox_worker_enabled:
            worker = OutboxWorker(
                control_plane.processor,
                settings.outbox_idle_delay_seconds,
                settings.outbox_error_delay_seconds,
            )
            worker_task = asyncio.create_task(worker.run(stop_event))
            log_event(logger, "worker.started", owner=control_plane.processor.owner)
        try:
            yield
        finally:
            if worker_task is not None:
                stop_event.set()
                worker_task.cancel()
                try:
                    await worker_task
                except asyncio.CancelledError:
                    pass
                log_event(logger, "worker.stopped", owner=control_plane.processor.owner)
            if owns_control_plane:
                await control_plane.close()

    app = FastAPI(title="Control Plane", lifespan=lifespan)
    app.state.control_plane = control_plane
    app.state.validator = validator

    def _handler(status_code: int):
        async def handle(request: Request, exc: Exception) -> JSONResponse:
            log_event(
                logger,
                "request.failed",
                path=request.url.path,
                status=status_code,
                error=type(exc).__name__,
                detail=str(exc),
            )
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})

        return handle

    for error_type, status_code in _STATUS_BY_ERROR:
        app.add_exception_handler(error_type, _handler(status_code))
    if jsonschema is not None:
        app.add_exception_handler(jsonschema.ValidationError, _handler(422))

    @app.post("/v1/jobs")
    async def submit_job(payload: Dict[str, Any]):
        log_event(logger, "job.received", task_type=payload.get("task_type"), job_id=payload.get("job_id"))
        validator.validate_job_request(payload)
        handle = await orchestrator.accept(request_from_dict(payload))
        routing = await orchestrator.route(handle.job_id)
        dispatch = await orchestrator.dispatch(handle.job_id, handle.attempt_id)
        return JSONResponse(
            status_code=202,
            content={
                "job_id": handle.job_id,
                "attempt_id": handle.attempt_id,
                "trace_id": handle.trace_id,
                "routing": routing_to_dict(routing),
                "idempotency_key": dispatch.idempotency_key,
            },
        )

    @app.get("/v1/jobs")
    async def list_jobs(limit: Optional[int] = None):
        summaries = await orchestrator.list_jobs(limit if limit is not None else settings.default_list_limit)
        return {"jobs": [summary_to_dict(summary) for summary in summaries]}

    @app.get("/v1/jobs/{job_id}")
    async def get_job(job_id: str):
        job = await orchestrator.get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="job not found")
        return _job_body(job)

    @app.get("/v1/jobs/{job_id}/result")
    async def get_result(job_id: str):
        response = await orchestrator.get_final_result(job_id)
        if response is None:
            raise HTTPException(status_code=404, detail="result not found")
        return response_to_dict(response)

    @app.get("/v1/jobs/{job_id}/events")
    async def get_events(job_id: str):
        events = await orchestrator.get_events(job_id)
        return {"events": [event_to_dict(event) for event in events]}

    @app.get("/v1/jobs/{job_id}/detail")
    async def get_detail(job_id: str):
        job = await orchestrator.get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="job not found")
        events = await orchestrator.get_events(job_id)
        response = await orchestrator.get_final_result(job_id)
        return {
            "job": _job_body(job),
            "events": [event_to_dict(event) for event in events],
            "result": response_to_dict(response) if response is not None else None,
        }

    @app.post("/v1/jobs/{job_id}:cancel")
    async def cancel_job(job_id: str, reason: str = "cancelled"):
        job = await orchestrator.cancel(job_id, reason)
        return _job_body(job)

    @app.post("/v1/callbacks/started")
    async def started_callback(payload: Dict[str, Any]):
        log_event(
            logger,
            "callback.started.received",
            job_id=payload.get("job_id"),
            attempt_id=payload.get("attempt_id"),
        )
        validator.validate_started(payload)
        job = await orchestrator.record_started(payload["job_id"], payload["attempt_id"])
        return {"status": "ok", "job_state": job.state.value}

    @app.post("/v1/callbacks/result")
    async def result_callback(payload: Dict[str, Any]):
        log_event(
            logger,
            "callback.result.received",
            job_id=payload.get("job_id"),
            attempt_id=payload.get("attempt_id"),
            provider=payload.get("provider"),
            is_success=payload.get("is_success"),
        )
        validator.validate_provider_result(payload)
        outcome = await orchestrator.ingest_result(provider_result_from_dict(payload))
        return {
            "status": outcome.status.value,
            "dispatch": dispatch_to_dict(outcome.dispatch) if outcome.dispatch is not None else None,
            "response": response_to_dict(outcome.response) if outcome.response is not None else None,
        }

    if settings.admin_enabled:
        def _require_admin(key: Optional[str]) -> None:
            if settings.admin_api_key and key != settings.admin_api_key:
                raise HTTPException(status_code=401, detail="unauthorized")

        @app.post("/v1/admin/outbox/process")
        async def admin_process_outbox(x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key")):
            _require_admin(x_admin_key)
            processed = await control_plane.processor.process_once()
            return {"processed": processed}

        @app.post("/v1/admin/jobs/{job_id}:expire")
        async def admin_expire_job(
            job_id: str,
            reason: str = "expired",
            x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key"),
        ):
            _require_admin(x_admin_key)
            job = await orchestrator.expire(job_id, reason)
            return _job_body(job)

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("control_plane.api.app:create_app", host="0.0.0.0", port=8000, factory=True)
