"""HTTP entrypoint for the Clinigate decision-support gateway."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ValidationError

from clinigate.config import Settings, get_settings
from clinigate.errors import ErrorHandler, GatewayError
from clinigate.log import bind_request_id, configure_logging, reset_request_id
from clinigate.orchestration import DecisionSupportOrchestrator, PreparedJob, build_orchestrator
from clinigate.schemas import SectionRequest, StreamEvent, TaskRequest
from clinigate.sse import stream_event_to_sse
from clinigate.tasks import get_task
from clinigate.utils import utc_now

logger = logging.getLogger(__name__)

KEEP_ALIVE_SEC = 0.75

_background: set[asyncio.Task] = set()

_STATUS_BY_CATEGORY = {
    "rate_limited": 429,
    "quota_exceeded": 429,
    "safety_violation": 403,
    "validation_failure": 422,
    "provider_unavailable": 502,
    "timeout": 504,
    "unknown": 500,
}

# Failures after admission keep 200 unless the model runtime itself failed.
_RUNTIME_STATUS = {"provider_unavailable": 502, "timeout": 504}


def _validate(model: type[BaseModel], payload: dict[str, Any]) -> Any:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False)) from exc


def create_app(
    settings: Settings | None = None,
    orchestrator: DecisionSupportOrchestrator | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    orchestrator = orchestrator or build_orchestrator(settings)

    app = FastAPI(title="Clinigate AI Gateway", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "X-GlobalLimit-Limit",
            "X-GlobalLimit-Remaining",
            "X-DailyQuota-Limit",
            "X-DailyQuota-Remaining",
            "X-DailyQuota-Reset",
        ],
    )
    app.state.orchestrator = orchestrator

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        if exc.response is not None:
            body = exc.response.model_dump(mode="json")
        else:
            body = {"success": False, "error": ErrorHandler().handle(exc).model_dump(mode="json")}
        return JSONResponse(
            status_code=_STATUS_BY_CATEGORY.get(exc.category, 500),
            content=body,
            headers=dict(exc.details.get("headers", {})),
        )

    def _stream_response(job: PreparedJob) -> StreamingResponse:
        queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        done = asyncio.Event()
        cancel = asyncio.Event()

        async def runner() -> None:
            token = bind_request_id(job.request_id)
            try:
                async for event in orchestrator.stream(job, cancel=cancel):
                    await queue.put(event)
            except Exception as exc:
                logger.exception("stream_runner_failed: %s", exc)
                await queue.put(
                    StreamEvent(
                        type="error",
                        request_id=job.request_id,
                        payload={"code": "unknown", "message": str(exc), "recoverable": False},
                    )
                )
            finally:
                reset_request_id(token)
                done.set()

        task = asyncio.create_task(runner())
        _background.add(task)
        task.add_done_callback(_background.discard)

        async def event_gen():
            try:
                while True:
                    if done.is_set() and queue.empty():
                        break
                    try:
                        event = await asyncio.wait_for(queue.get(), timeout=KEEP_ALIVE_SEC)
                        yield stream_event_to_sse(event)
                    except asyncio.TimeoutError:
                        yield ": keep-alive\n\n"
            finally:
                if not done.is_set():
                    cancel.set()
                    logger.info("stream_client_disconnected: request_id=%s", job.request_id)

        return StreamingResponse(
            event_gen(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no", **job.decision.headers},
        )

    @app.get("/health")
    async def health(probe: bool = False) -> dict[str, Any]:
        return {
            "status": "ok",
            "service": settings.app_name,
            "timestamp": utc_now().isoformat(),
            "model": settings.ollama_model,
            "fallback_configured": orchestrator.gateway.has_fallback,
            "providers": await orchestrator.gateway.health(probe=probe),
            "probe_performed": probe,
            "cache": orchestrator.cache.stats(),
            "rate_limits": await orchestrator.limiter.stats(),
            "context_source_configured": bool(settings.context_base_url),
            "s3_configured": bool(settings.s3_bucket),
        }

    @app.post("/v1/ai/request")
    async def ai_request(payload: dict[str, Any] = Body(...)) -> JSONResponse:
        request = _validate(TaskRequest, payload)
        job = await orchestrator.prepare(request)
        response, headers = await orchestrator.execute(job)
        status = 200
        if not response.success and response.error is not None:
            status = _RUNTIME_STATUS.get(response.error.category, 200)
        return JSONResponse(status_code=status, content=response.model_dump(mode="json"), headers=headers)

    @app.post("/v1/ai/stream")
    async def ai_stream(payload: dict[str, Any] = Body(...)) -> StreamingResponse:
        request = _validate(TaskRequest, payload)
        job = await orchestrator.prepare(request)
        return _stream_response(job)

    @app.post("/v1/ai/sections/stream")
    async def ai_section_stream(payload: dict[str, Any] = Body(...)) -> StreamingResponse:
        request = _validate(SectionRequest, payload)
        job = await orchestrator.prepare_section(request)
        return _stream_response(job)

    @app.delete("/v1/ai/cache/patients/{patient_id}")
    async def invalidate_patient(patient_id: str) -> dict[str, Any]:
        removed = await orchestrator.cache.invalidate_patient(patient_id)
        return {"patient_id": patient_id, "invalidated": removed}

    @app.get("/v1/ai/metrics")
    async def metrics(period: str = "hour") -> dict[str, Any]:
        try:
            return orchestrator.monitor.metrics(period)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    @app.get("/v1/ai/dashboard")
    async def dashboard() -> dict[str, Any]:
        return orchestrator.monitor.dashboard()

    @app.get("/v1/ai/rate-limits")
    async def rate_limits(task: str, principal: str, role: str) -> dict[str, Any]:
        spec = get_task(task)
        limits = await orchestrator.limiter.remaining(spec.name, principal, role)
        return {
            "task": spec.name,
            "principal": principal,
            "role": role,
            "limits": {name: status.model_dump() for name, status in limits.items()},
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "gateway_server:app",
        host=os.getenv("CLINIGATE_HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8080")),
        log_level=get_settings().log_level.lower(),
    )
