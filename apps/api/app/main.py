from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.errors import CRMError
from app.crm.api import crm_error_response, error_response
from app.crm.service import STAGE_CHANGED_EVENT
from app.events import DomainEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import SERVICE_NAME, get_fastapi_server_request_hook, setup_otel
from app.performance import PerformanceRecorder


configure_logging()
logger = logging.getLogger("app.lifecycle")


def _on_stage_changed(event: DomainEvent) -> None:
    envelope = event.payload
    payload = envelope.get("payload", {}) if isinstance(envelope, dict) else {}
    logger.info(
        "intent.stage_changed",
        extra={
            "event_type": event.name,
            "tenant_id": envelope.get("tenant_id") if isinstance(envelope, dict) else None,
            "intent_id": payload.get("intent_id"),
            "from_stage": payload.get("from_stage"),
            "to_stage": payload.get("to_stage"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe(STAGE_CHANGED_EVENT, _on_stage_changed)
    logger.info("system.started", extra={"event_name": "system.started"})
    yield
    event_bus.unsubscribe(STAGE_CHANGED_EVENT, _on_stage_changed)


settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.state.performance_recorder = PerformanceRecorder(
    max_samples=settings.performance_buffer_size,
    window_seconds=settings.performance_window_seconds,
)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(CRMError)
async def handle_crm_error(request: Request, exc: CRMError) -> JSONResponse:
    return crm_error_response(request, exc)


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        error="validation_error",
        message="Invalid request",
        code="request.invalid",
        details={
            "errors": [
                {"loc": [str(part) for part in error["loc"]], "msg": error["msg"], "type": error["type"]}
                for error in exc.errors()
            ]
        },
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("http.unhandled_error", extra={"path": request.url.path, "error": str(exc)[:500]})
    return error_response(
        request,
        status_code=500,
        error="internal_error",
        message="An unexpected error occurred",
        code="internal_error",
    )


setup_otel(SERVICE_NAME, settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
