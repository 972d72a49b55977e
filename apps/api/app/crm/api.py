from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user
from app.core.context import RequestContext
from app.core.database import get_db
from app.core.errors import CRMError
from app.crm.schemas import Envelope
from app.crm.service import (
    IntentService,
    InteractionService,
    PipelineAnalyticsService,
    RelationshipService,
    SignalService,
)
from app.performance import PerformanceRecorder


relationships_router = APIRouter(prefix="/api/crm", tags=["crm.relationships"])
intents_router = APIRouter(prefix="/api/crm", tags=["crm.intents"])
activity_router = APIRouter(prefix="/api/crm", tags=["crm.activity"])
analytics_router = APIRouter(prefix="/api/crm", tags=["crm.analytics"])


@dataclass
class ErrorEnvelope:
    error: str
    message: str
    code: str | None
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    error: str,
    message: str,
    code: str | None = None,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        error=error,
        message=message,
        code=code,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def crm_error_response(request: Request, exc: CRMError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        error=exc.error,
        message=exc.message,
        code=exc.code,
        details=exc.details,
    )


def envelope_response(envelope: Envelope, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def get_request_context(request: Request, user: AuthUser = Depends(get_current_user)) -> RequestContext:
    """Resolve the caller's tenant from the token claim or the ``x-tenant-id`` header.

    The header is kept alongside the resolved tenant; a header that disagrees
    with the token claim is rejected by the service call, which also records
    the failure.
    """

    context = getattr(request.state, "context", None)
    if context is None:
        context = RequestContext(
            request_id=str(uuid.uuid4()),
            correlation_id=get_correlation_id() or "",
            tenant_id=None,
            user_id=None,
        )
        request.state.context = context

    header_tenant = request.headers.get("x-tenant-id")
    context.tenant_id = user.tenant_id or header_tenant
    context.requested_tenant_id = header_tenant
    context.user_id = user.sub
    return context


def get_performance_recorder(request: Request) -> PerformanceRecorder:
    return request.app.state.performance_recorder


def get_relationship_service(recorder: PerformanceRecorder = Depends(get_performance_recorder)) -> RelationshipService:
    return RelationshipService(recorder=recorder)


def get_intent_service(recorder: PerformanceRecorder = Depends(get_performance_recorder)) -> IntentService:
    return IntentService(recorder=recorder)


def get_interaction_service(recorder: PerformanceRecorder = Depends(get_performance_recorder)) -> InteractionService:
    return InteractionService(recorder=recorder)


def get_signal_service(recorder: PerformanceRecorder = Depends(get_performance_recorder)) -> SignalService:
    return SignalService(recorder=recorder)


def get_analytics_service(recorder: PerformanceRecorder = Depends(get_performance_recorder)) -> PipelineAnalyticsService:
    return PipelineAnalyticsService(recorder=recorder)


def _present(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


@relationships_router.get("/relationships")
def list_relationships(
    request: Request,
    cursor: str | None = Query(default=None),
    limit: str | None = Query(default=None),
    search: str | None = Query(default=None),
    tags: list[str] | None = Query(default=None),
    type: str | None = Query(default=None),
    min_propensity: str | None = Query(default=None),
    include_total: str | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    service: RelationshipService = Depends(get_relationship_service),
) -> JSONResponse:
    params = _present(
        {
            "cursor": cursor,
            "limit": limit,
            "search": search,
            "tags": tags,
            "type": type,
            "min_propensity": min_propensity,
            "include_total": include_total,
        }
    )
    try:
        return envelope_response(service.list_relationships(db, ctx, params))
    except CRMError as exc:
        return crm_error_response(request, exc)


@relationships_router.post("/relationships", status_code=status.HTTP_201_CREATED)
def create_relationship(
    request: Request,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    service: RelationshipService = Depends(get_relationship_service),
) -> JSONResponse:
    try:
        return envelope_response(service.create_relationship(db, ctx, payload), status.HTTP_201_CREATED)
    except CRMError as exc:
        return crm_error_response(request, exc)


@relationships_router.get("/relationships/{relationship_id}")
def get_relationship(
    request: Request,
    relationship_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    service: RelationshipService = Depends(get_relationship_service),
) -> JSONResponse:
    try:
        return envelope_response(service.get_relationship(db, ctx, {"id": relationship_id}))
    except CRMError as exc:
        return crm_error_response(request, exc)


@relationships_router.patch("/relationships/{relationship_id}")
def update_relationship(
    request: Request,
    relationship_id: uuid.UUID,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    service: RelationshipService = Depends(get_relationship_service),
) -> JSONResponse:
    try:
        return envelope_response(service.update_relationship(db, ctx, relationship_id, payload))
    except CRMError as exc:
        return crm_error_response(request, exc)


@relationships_router.get("/relationships/{relationship_id}/interactions")
def list_relationship_interactions(
    request: Request,
    relationship_id: uuid.UUID,
    cursor: str | None = Query(default=None),
    limit: str | None = Query(default=None),
    include_total: str | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    service: InteractionService = Depends(get_interaction_service),
) -> JSONResponse:
    params = _present(
        {
            "relationship_id": relationship_id,
            "cursor": cursor,
            "limit": limit,
            "include_total": include_total,
        }
    )
    try:
        return envelope_response(service.list_interactions(db, ctx, params))
    except CRMError as exc:
        return crm_error_response(request, exc)


@activity_router.post("/interactions", status_code=status.HTTP_201_CREATED)
def record_interaction(
    request: Request,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    service: InteractionService = Depends(get_interaction_service),
) -> JSONResponse:
    try:
        return envelope_response(service.record_interaction(db, ctx, payload), status.HTTP_201_CREATED)
    except CRMError as exc:
        return crm_error_response(request, exc)


@activity_router.post("/signals", status_code=status.HTTP_201_CREATED)
def record_signal(
    request: Request,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    service: SignalService = Depends(get_signal_service),
) -> JSONResponse:
    try:
        return envelope_response(service.record_signal(db, ctx, payload), status.HTTP_201_CREATED)
    except CRMError as exc:
        return crm_error_response(request, exc)


@intents_router.get("/intents")
def list_intents(
    request: Request,
    cursor: str | None = Query(default=None),
    limit: str | None = Query(default=None),
    search: str | None = Query(default=None),
    stage: str | None = Query(default=None),
    priority: str | None = Query(default=None),
    relationship_id: str | None = Query(default=None),
    min_value: str | None = Query(default=None),
    max_value: str | None = Query(default=None),
    min_probability: str | None = Query(default=None),
    expected_close_before: str | None = Query(default=None),
    expected_close_after: str | None = Query(default=None),
    include_total: str | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    service: IntentService = Depends(get_intent_service),
) -> JSONResponse:
    params = _present(
        {
            "cursor": cursor,
            "limit": limit,
            "search": search,
            "stage": stage,
            "priority": priority,
            "relationship_id": relationship_id,
            "min_value": min_value,
            "max_value": max_value,
            "min_probability": min_probability,
            "expected_close_before": expected_close_before,
            "expected_close_after": expected_close_after,
            "include_total": include_total,
        }
    )
    try:
        return envelope_response(service.list_intents(db, ctx, params))
    except CRMError as exc:
        return crm_error_response(request, exc)


@intents_router.post("/intents", status_code=status.HTTP_201_CREATED)
def create_intent(
    request: Request,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    service: IntentService = Depends(get_intent_service),
) -> JSONResponse:
    try:
        return envelope_response(service.create_intent(db, ctx, payload), status.HTTP_201_CREATED)
    except CRMError as exc:
        return crm_error_response(request, exc)


@intents_router.get("/intents/{intent_id}")
def get_intent(
    request: Request,
    intent_id: uuid.UUID,
    include_relationship: str | None = Query(default=None),
    include_interactions: str | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    service: IntentService = Depends(get_intent_service),
) -> JSONResponse:
    params = _present(
        {
            "id": intent_id,
            "include_relationship": include_relationship,
            "include_interactions": include_interactions,
        }
    )
    try:
        return envelope_response(service.get_intent(db, ctx, params))
    except CRMError as exc:
        return crm_error_response(request, exc)


@intents_router.patch("/intents/{intent_id}")
def update_intent(
    request: Request,
    intent_id: uuid.UUID,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    service: IntentService = Depends(get_intent_service),
) -> JSONResponse:
    try:
        return envelope_response(service.update_intent(db, ctx, intent_id, payload))
    except CRMError as exc:
        return crm_error_response(request, exc)


@intents_router.get("/intents/{intent_id}/events")
def list_intent_events(
    request: Request,
    intent_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    service: IntentService = Depends(get_intent_service),
) -> JSONResponse:
    try:
        return envelope_response(service.list_intent_events(db, ctx, {"intent_id": intent_id}))
    except CRMError as exc:
        return crm_error_response(request, exc)


@analytics_router.get("/analytics/pipeline")
def get_pipeline_analytics(
    request: Request,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    service: PipelineAnalyticsService = Depends(get_analytics_service),
) -> JSONResponse:
    try:
        return envelope_response(service.get_pipeline_analytics(db, ctx))
    except CRMError as exc:
        return crm_error_response(request, exc)
