from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import events
from app.core.config import get_settings
from app.core.context import RequestContext
from app.core.database import tenant_scope
from app.core.errors import (
    CRMError,
    DataAccessError,
    NotFoundError,
    TenantContextError,
    TenantMismatchError,
    ValidationError,
)
from app.crm.analytics import StageTransition, aggregate_pipeline
from app.crm.insights import as_utc, days_in_stage, generate_insights, generate_next_best_actions
from app.crm.models import CRMIntent, CRMInteraction, CRMRelationship, CRMSignal, utcnow
from app.crm.repositories import (
    EventLogRepository,
    IntentRepository,
    InteractionRepository,
    PageResult,
    RelationshipRepository,
    SignalRepository,
    paginate,
)
from app.crm.schemas import (
    Envelope,
    EventLogRead,
    GetIntentParams,
    GetRelationshipParams,
    IntentCreate,
    IntentEventsParams,
    IntentRead,
    IntentUpdate,
    InteractionCreate,
    InteractionRead,
    ListIntentsParams,
    ListInteractionsParams,
    ListRelationshipsParams,
    PaginationMeta,
    RelationshipCreate,
    RelationshipRead,
    RelationshipSummary,
    RelationshipUpdate,
    ResponseMeta,
    SignalCreate,
    SignalRead,
)
from app.metrics import observe_operation
from app.performance import PerformanceRecorder
from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError


logger = logging.getLogger("app.crm.service")
tracer = trace.get_tracer("app.crm.service")

STAGE_CHANGED_EVENT = "crm.intent.stage_changed"

ParamsT = TypeVar("ParamsT", bound=BaseModel)


@dataclass(slots=True)
class OperationScope:
    operation: str
    ctx: RequestContext
    span: Any
    tags: dict[str, Any] = field(default_factory=dict)
    params: Any = None
    auth: AuthContext = field(init=False)

    @property
    def tenant_uuid(self) -> uuid.UUID:
        return uuid.UUID(str(self.auth.tenant_id))

    def tag(self, **tags: Any) -> None:
        for key, value in tags.items():
            if value is None:
                continue
            if not isinstance(value, (str, bool, int, float)):
                value = str(value)
            self.tags[key] = value
            self.span.set_attribute(key, value)

    def validate(self, schema: type[ParamsT], params: Any) -> ParamsT:
        if isinstance(params, BaseModel):
            params = params.model_dump(exclude_unset=True)
        try:
            return schema.model_validate(params if params is not None else {})
        except PydanticValidationError as exc:
            raise ValidationError(
                "Invalid parameters",
                code=f"{self.operation}.invalid_params",
                details={
                    "errors": [
                        {"loc": [str(part) for part in error["loc"]], "msg": error["msg"], "type": error["type"]}
                        for error in exc.errors()
                    ]
                },
            ) from exc


def _require_tenant(ctx: RequestContext) -> AuthContext:
    if ctx.requested_tenant_id and ctx.tenant_id and ctx.requested_tenant_id != ctx.tenant_id:
        raise TenantMismatchError("Tenant header does not match the authenticated tenant", code="tenant_mismatch")
    if not ctx.tenant_id:
        raise TenantContextError("Tenant context is required", code="tenant_required")
    try:
        tenant_id = str(uuid.UUID(str(ctx.tenant_id)))
    except ValueError as exc:
        raise TenantContextError("Tenant id must be a UUID", code="tenant_invalid") from exc
    return AuthContext(
        user_id=ctx.user_id or "anonymous",
        tenant_id=tenant_id,
        correlation_id=ctx.correlation_id or None,
    )


def _mark_failed(span: Any, exc: BaseException) -> None:
    span.record_exception(exc)
    span.set_status(Status(StatusCode.ERROR, str(exc)[:200]))


@contextmanager
def service_operation(
    session: Session,
    ctx: RequestContext,
    operation: str,
    recorder: PerformanceRecorder,
    *,
    schema: type[BaseModel] | None = None,
    params: Any = None,
    **tags: Any,
) -> Iterator[OperationScope]:
    """Run one service call inside a span, a tenant scope and a timing sample.

    ``params`` are checked against ``schema`` before the tenant is resolved, so
    malformed input never reaches the database. Tenant scoping is released
    before any error leaves this block. Database
    errors surface as ``DataAccessError`` with the original exception chained,
    and every exit records exactly one sample: ``<operation>`` on success,
    ``<operation>.error`` otherwise.
    """

    started = time.perf_counter()
    outcome = "success"
    with tracer.start_as_current_span(operation, record_exception=False, set_status_on_exception=False) as span:
        scope = OperationScope(operation=operation, ctx=ctx, span=span)
        scope.tag(operation=operation, tenant_id=ctx.tenant_id, request_id=ctx.request_id, **tags)
        try:
            if schema is not None:
                scope.params = scope.validate(schema, params)
            scope.auth = _require_tenant(ctx)
            with tenant_scope(session, scope.auth.tenant_id):
                yield scope
        except CRMError as exc:
            outcome = "error"
            session.rollback()
            _mark_failed(span, exc)
            logger.warning(
                "operation.failed",
                extra={
                    "operation": operation,
                    "tenant_id": ctx.tenant_id,
                    "error": exc.message,
                    "error_code": exc.code,
                },
            )
            raise
        except AuthorizationError as exc:
            outcome = "error"
            session.rollback()
            _mark_failed(span, exc)
            raise NotFoundError("Record not found", code=f"{operation}.not_found") from exc
        except SQLAlchemyError as exc:
            outcome = "error"
            session.rollback()
            _mark_failed(span, exc)
            logger.error(
                "operation.data_access_failed",
                extra={"operation": operation, "tenant_id": ctx.tenant_id, "error": str(exc)[:500]},
            )
            raise DataAccessError("Failed to access CRM data", code=f"{operation}.data_access_failed") from exc
        except Exception as exc:
            outcome = "error"
            session.rollback()
            _mark_failed(span, exc)
            logger.exception("operation.unexpected_error", extra={"operation": operation, "error": str(exc)[:500]})
            raise
        else:
            logger.info(
                "operation.completed",
                extra={
                    "operation": operation,
                    "tenant_id": ctx.tenant_id,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "result_count": scope.tags.get("result_count"),
                },
            )
        finally:
            duration_ms = round((time.perf_counter() - started) * 1000, 3)
            sample_name = operation if outcome == "success" else f"{operation}.error"
            recorder.record(sample_name, duration_ms, scope.tags)
            observe_operation(operation, outcome)


def build_envelope(ctx: RequestContext, data: Any, page: PageResult[Any] | None = None) -> Envelope:
    meta = ResponseMeta(
        request_id=ctx.request_id,
        timestamp=datetime.now(timezone.utc),
        tenant_id=str(ctx.tenant_id),
    )
    if page is not None:
        meta.pagination = PaginationMeta(
            cursor=page.cursor,
            has_more=page.has_more,
            limit=page.limit,
            total_count=page.total_count,
        )
    return Envelope(data=data, meta=meta)


def relationship_read(row: CRMRelationship, *, metadata: dict[str, Any] | None = None) -> RelationshipRead:
    return RelationshipRead(
        id=row.id,
        tenant_id=row.tenant_id,
        type=row.type,
        name=row.name,
        email=row.email,
        phone=row.phone,
        company=row.company,
        title=row.title,
        avatar_url=row.avatar_url,
        tags=list(row.tags or []),
        metadata=metadata if metadata is not None else dict(row.metadata_json or {}),
        propensity_score=row.propensity_score,
        last_interaction_at=row.last_interaction_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def relationship_summary(row: CRMRelationship) -> RelationshipSummary:
    return RelationshipSummary(
        id=row.id,
        name=row.name,
        email=row.email,
        company=row.company,
        propensity_score=row.propensity_score,
    )


def intent_read(
    row: CRMIntent,
    *,
    now: datetime | None = None,
    relationship: CRMRelationship | None = None,
    interaction_count: int | None = None,
) -> IntentRead:
    current = now or datetime.now(timezone.utc)
    return IntentRead(
        id=row.id,
        tenant_id=row.tenant_id,
        relationship_id=row.relationship_id,
        title=row.title,
        description=row.description,
        value=row.value,
        currency=row.currency,
        stage=row.stage,
        priority=row.priority,
        expected_close_date=row.expected_close_date,
        probability=row.probability,
        metadata=dict(row.metadata_json or {}),
        days_in_stage=days_in_stage(row.updated_at, current),
        ai_insights=generate_insights(row, current),
        next_best_actions=generate_next_best_actions(row, current),
        relationship=relationship_summary(relationship) if relationship is not None else None,
        interaction_count=interaction_count,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def interaction_read(row: CRMInteraction) -> InteractionRead:
    return InteractionRead(
        id=row.id,
        relationship_id=row.relationship_id,
        intent_id=row.intent_id,
        type=row.type,
        subject=row.subject,
        content=row.content,
        direction=row.direction,
        occurred_at=row.occurred_at,
        metadata=dict(row.metadata_json or {}),
        created_at=row.created_at,
    )


def signal_read(row: CRMSignal) -> SignalRead:
    return SignalRead(
        id=row.id,
        relationship_id=row.relationship_id,
        intent_id=row.intent_id,
        type=row.type,
        strength=row.strength,
        description=row.description,
        occurred_at=row.occurred_at,
        metadata=dict(row.metadata_json or {}),
        created_at=row.created_at,
    )


def _relationship_not_found(relationship_id: uuid.UUID) -> NotFoundError:
    return NotFoundError(
        "Relationship not found",
        code="relationship_not_found",
        details={"id": str(relationship_id)},
    )


def _intent_not_found(intent_id: uuid.UUID) -> NotFoundError:
    return NotFoundError("Intent not found", code="intent_not_found", details={"id": str(intent_id)})


@dataclass(slots=True)
class RelationshipService:
    recorder: PerformanceRecorder
    relationships: RelationshipRepository = field(default_factory=RelationshipRepository)
    interactions: InteractionRepository = field(default_factory=InteractionRepository)
    signals: SignalRepository = field(default_factory=SignalRepository)
    event_log: EventLogRepository = field(default_factory=EventLogRepository)

    def get_relationship(self, session: Session, ctx: RequestContext, params: Any) -> Envelope:
        with service_operation(
            session, ctx, "relationship.get", self.recorder, schema=GetRelationshipParams, params=params
        ) as op:
            validated = op.params
            op.tag(relationship_id=validated.id)

            row = self.relationships.get(session, op.auth, validated.id)
            if row is None:
                raise _relationship_not_found(validated.id)

            metadata = {
                **(row.metadata_json or {}),
                "interaction_count": self.interactions.count_for_relationship(session, op.auth, row.id),
                "signal_count": self.signals.count_for_relationship(session, op.auth, row.id),
            }
            return build_envelope(ctx, relationship_read(row, metadata=metadata))

    def list_relationships(self, session: Session, ctx: RequestContext, params: Any = None) -> Envelope:
        with service_operation(
            session, ctx, "relationship.list", self.recorder, schema=ListRelationshipsParams, params=params
        ) as op:
            validated = op.params
            op.tag(
                limit=validated.limit,
                has_cursor=validated.cursor is not None,
                has_search=bool(validated.search),
            )

            page = paginate(
                session,
                self.relationships.list_query(op.auth, validated),
                CRMRelationship.id,
                cursor=validated.cursor,
                limit=validated.limit,
                include_total=validated.include_total,
            )
            op.tag(result_count=len(page.items), has_more=page.has_more)
            return build_envelope(ctx, [relationship_read(row) for row in page.items], page)

    def create_relationship(self, session: Session, ctx: RequestContext, payload: Any) -> Envelope:
        with service_operation(
            session, ctx, "relationship.create", self.recorder, schema=RelationshipCreate, params=payload
        ) as op:
            dto = op.params

            row = CRMRelationship(
                tenant_id=op.tenant_uuid,
                type=dto.type,
                name=dto.name,
                email=str(dto.email) if dto.email else None,
                phone=dto.phone,
                company=dto.company,
                title=dto.title,
                avatar_url=dto.avatar_url,
                tags=list(dto.tags),
                metadata_json=dict(dto.metadata),
                propensity_score=dto.propensity_score,
            )
            session.add(row)
            session.flush()
            op.tag(relationship_id=row.id)

            self.event_log.append(
                session,
                op.auth,
                entity_type="relationship",
                entity_id=row.id,
                event_type="created",
                data={"name": row.name, "type": row.type},
            )
            session.flush()
            response = build_envelope(ctx, relationship_read(row))
            session.commit()
            return response

    def update_relationship(
        self,
        session: Session,
        ctx: RequestContext,
        relationship_id: uuid.UUID,
        payload: Any,
    ) -> Envelope:
        with service_operation(
            session,
            ctx,
            "relationship.update",
            self.recorder,
            schema=RelationshipUpdate,
            params=payload,
            relationship_id=relationship_id,
        ) as op:
            dto = op.params
            changes = dto.model_dump(exclude_unset=True)

            row = self.relationships.get(session, op.auth, relationship_id)
            if row is None:
                raise _relationship_not_found(relationship_id)

            for key, value in changes.items():
                if key == "metadata":
                    row.metadata_json = dict(value or {})
                elif key == "email":
                    row.email = str(value) if value else None
                elif key == "tags":
                    row.tags = list(value or [])
                else:
                    setattr(row, key, value)
            row.updated_at = utcnow()

            if changes:
                self.event_log.append(
                    session,
                    op.auth,
                    entity_type="relationship",
                    entity_id=row.id,
                    event_type="updated",
                    data={"fields": sorted(changes)},
                )
            session.flush()
            response = build_envelope(ctx, relationship_read(row))
            session.commit()
            return response


@dataclass(slots=True)
class IntentService:
    recorder: PerformanceRecorder
    intents: IntentRepository = field(default_factory=IntentRepository)
    relationships: RelationshipRepository = field(default_factory=RelationshipRepository)
    interactions: InteractionRepository = field(default_factory=InteractionRepository)
    event_log: EventLogRepository = field(default_factory=EventLogRepository)

    def get_intent(self, session: Session, ctx: RequestContext, params: Any) -> Envelope:
        with service_operation(
            session, ctx, "intent.get", self.recorder, schema=GetIntentParams, params=params
        ) as op:
            validated = op.params
            op.tag(intent_id=validated.id, include_relationship=validated.include_relationship)

            row = self.intents.get(session, op.auth, validated.id)
            if row is None:
                raise _intent_not_found(validated.id)

            relationship = None
            if validated.include_relationship:
                relationship = self.relationships.get(session, op.auth, row.relationship_id)
            interaction_count = None
            if validated.include_interactions:
                interaction_count = self.interactions.count_for_intent(session, op.auth, row.id)

            op.tag(stage=row.stage)
            data = intent_read(row, relationship=relationship, interaction_count=interaction_count)
            return build_envelope(ctx, data)

    def list_intents(self, session: Session, ctx: RequestContext, params: Any = None) -> Envelope:
        with service_operation(
            session, ctx, "intent.list", self.recorder, schema=ListIntentsParams, params=params
        ) as op:
            validated = op.params
            op.tag(
                limit=validated.limit,
                has_cursor=validated.cursor is not None,
                has_search=bool(validated.search),
                stage=validated.stage or "all",
                priority=validated.priority or "all",
            )

            page = paginate(
                session,
                self.intents.list_query(op.auth, validated),
                CRMIntent.id,
                cursor=validated.cursor,
                limit=validated.limit,
                include_total=validated.include_total,
            )
            relationships = self.relationships.get_many(
                session,
                op.auth,
                {row.relationship_id for row in page.items},
            )
            now = datetime.now(timezone.utc)
            items = [
                intent_read(row, now=now, relationship=relationships.get(row.relationship_id))
                for row in page.items
            ]
            op.tag(result_count=len(items), has_more=page.has_more)
            return build_envelope(ctx, items, page)

    def create_intent(self, session: Session, ctx: RequestContext, payload: Any) -> Envelope:
        with service_operation(
            session, ctx, "intent.create", self.recorder, schema=IntentCreate, params=payload
        ) as op:
            dto = op.params
            op.tag(relationship_id=dto.relationship_id)

            relationship = self.relationships.get(session, op.auth, dto.relationship_id)
            if relationship is None:
                raise _relationship_not_found(dto.relationship_id)

            row = CRMIntent(
                tenant_id=op.tenant_uuid,
                relationship_id=relationship.id,
                title=dto.title,
                description=dto.description,
                value=dto.value,
                currency=dto.currency,
                stage=dto.stage,
                priority=dto.priority,
                expected_close_date=dto.expected_close_date,
                probability=dto.probability,
                metadata_json=dict(dto.metadata),
            )
            session.add(row)
            session.flush()
            op.tag(intent_id=row.id, stage=row.stage)

            self.event_log.append(
                session,
                op.auth,
                entity_type="intent",
                entity_id=row.id,
                event_type="created",
                data={"stage": row.stage, "value": str(row.value), "probability": row.probability},
            )
            session.flush()
            response = build_envelope(ctx, intent_read(row, relationship=relationship))
            session.commit()
            return response

    def update_intent(self, session: Session, ctx: RequestContext, intent_id: uuid.UUID, payload: Any) -> Envelope:
        with service_operation(
            session, ctx, "intent.update", self.recorder, schema=IntentUpdate, params=payload, intent_id=intent_id
        ) as op:
            dto = op.params
            changes = dto.model_dump(exclude_unset=True)

            row = self.intents.get(session, op.auth, intent_id)
            if row is None:
                raise _intent_not_found(intent_id)

            previous_stage = row.stage
            previous_probability = row.probability
            for key, value in changes.items():
                if key == "metadata":
                    row.metadata_json = dict(value or {})
                elif value is None and key in {"title", "value", "currency", "stage", "priority", "probability"}:
                    raise ValidationError(f"{key} cannot be null", code="intent.update.invalid_params")
                else:
                    setattr(row, key, value)
            row.updated_at = utcnow()

            transition: dict[str, Any] | None = None
            if row.stage != previous_stage:
                transition = {
                    "from_stage": previous_stage,
                    "to_stage": row.stage,
                    "probability_change": round(row.probability - previous_probability, 4),
                }
                self.event_log.append(
                    session,
                    op.auth,
                    entity_type="intent",
                    entity_id=row.id,
                    event_type="stage_transition",
                    data=transition,
                )
                op.tag(from_stage=previous_stage, to_stage=row.stage)

            session.flush()
            response = build_envelope(ctx, intent_read(row))
            session.commit()

            if transition is not None:
                events.publish(
                    STAGE_CHANGED_EVENT,
                    {"intent_id": str(intent_id), **transition},
                    actor_user_id=ctx.user_id,
                )
            return response

    def list_intent_events(self, session: Session, ctx: RequestContext, params: Any) -> Envelope:
        with service_operation(
            session, ctx, "intent.events", self.recorder, schema=IntentEventsParams, params=params
        ) as op:
            validated = op.params
            op.tag(intent_id=validated.intent_id)

            if self.intents.get(session, op.auth, validated.intent_id) is None:
                raise _intent_not_found(validated.intent_id)

            rows = self.event_log.for_entity(session, op.auth, "intent", validated.intent_id)
            op.tag(result_count=len(rows))
            return build_envelope(ctx, [EventLogRead.model_validate(row) for row in rows])


@dataclass(slots=True)
class InteractionService:
    recorder: PerformanceRecorder
    interactions: InteractionRepository = field(default_factory=InteractionRepository)
    relationships: RelationshipRepository = field(default_factory=RelationshipRepository)
    intents: IntentRepository = field(default_factory=IntentRepository)

    def record_interaction(self, session: Session, ctx: RequestContext, payload: Any) -> Envelope:
        with service_operation(
            session, ctx, "interaction.record", self.recorder, schema=InteractionCreate, params=payload
        ) as op:
            dto = op.params
            op.tag(relationship_id=dto.relationship_id, intent_id=dto.intent_id)

            relationship = self.relationships.get(session, op.auth, dto.relationship_id)
            if relationship is None:
                raise _relationship_not_found(dto.relationship_id)
            if dto.intent_id is not None:
                intent = self.intents.get(session, op.auth, dto.intent_id)
                if intent is None:
                    raise _intent_not_found(dto.intent_id)
                if intent.relationship_id != relationship.id:
                    raise ValidationError(
                        "Intent belongs to a different relationship",
                        code="interaction.intent_mismatch",
                        details={"intent_id": str(intent.id)},
                    )

            occurred_at = as_utc(dto.occurred_at) if dto.occurred_at is not None else utcnow()
            row = CRMInteraction(
                tenant_id=op.tenant_uuid,
                relationship_id=relationship.id,
                intent_id=dto.intent_id,
                type=dto.type,
                subject=dto.subject,
                content=dto.content,
                direction=dto.direction,
                occurred_at=occurred_at,
                metadata_json=dict(dto.metadata),
            )
            session.add(row)

            last = relationship.last_interaction_at
            if last is None or as_utc(last) < occurred_at:
                relationship.last_interaction_at = occurred_at
                relationship.updated_at = utcnow()

            session.flush()
            op.tag(interaction_id=row.id)
            response = build_envelope(ctx, interaction_read(row))
            session.commit()
            return response

    def list_interactions(self, session: Session, ctx: RequestContext, params: Any) -> Envelope:
        with service_operation(
            session, ctx, "interaction.list", self.recorder, schema=ListInteractionsParams, params=params
        ) as op:
            validated = op.params
            op.tag(relationship_id=validated.relationship_id, limit=validated.limit)

            if self.relationships.get(session, op.auth, validated.relationship_id) is None:
                raise _relationship_not_found(validated.relationship_id)

            page = paginate(
                session,
                self.interactions.list_query(op.auth, validated.relationship_id),
                CRMInteraction.id,
                cursor=validated.cursor,
                limit=validated.limit,
                include_total=validated.include_total,
            )
            op.tag(result_count=len(page.items), has_more=page.has_more)
            return build_envelope(ctx, [interaction_read(row) for row in page.items], page)


@dataclass(slots=True)
class SignalService:
    recorder: PerformanceRecorder
    relationships: RelationshipRepository = field(default_factory=RelationshipRepository)
    intents: IntentRepository = field(default_factory=IntentRepository)

    def record_signal(self, session: Session, ctx: RequestContext, payload: Any) -> Envelope:
        with service_operation(
            session, ctx, "signal.record", self.recorder, schema=SignalCreate, params=payload
        ) as op:
            dto = op.params
            op.tag(relationship_id=dto.relationship_id, intent_id=dto.intent_id)

            relationship_id = dto.relationship_id
            if dto.intent_id is not None:
                intent = self.intents.get(session, op.auth, dto.intent_id)
                if intent is None:
                    raise _intent_not_found(dto.intent_id)
                relationship_id = relationship_id or intent.relationship_id
            if relationship_id is not None and self.relationships.get(session, op.auth, relationship_id) is None:
                raise _relationship_not_found(relationship_id)

            row = CRMSignal(
                tenant_id=op.tenant_uuid,
                relationship_id=relationship_id,
                intent_id=dto.intent_id,
                type=dto.type,
                strength=dto.strength,
                description=dto.description,
                occurred_at=as_utc(dto.occurred_at) if dto.occurred_at is not None else utcnow(),
                metadata_json=dict(dto.metadata),
            )
            session.add(row)
            session.flush()
            response = build_envelope(ctx, signal_read(row))
            session.commit()
            return response


@dataclass(slots=True)
class PipelineAnalyticsService:
    recorder: PerformanceRecorder
    forecast_confidence: float = field(default_factory=lambda: get_settings().forecast_confidence)
    intents: IntentRepository = field(default_factory=IntentRepository)
    event_log: EventLogRepository = field(default_factory=EventLogRepository)

    def get_pipeline_analytics(self, session: Session, ctx: RequestContext, now: datetime | None = None) -> Envelope:
        with service_operation(session, ctx, "intent.pipeline_analytics", self.recorder) as op:
            open_rows = self.intents.pipeline_rows(session, op.auth)
            closed = self.intents.closed_stages(session, op.auth)
            transitions = [
                StageTransition(
                    intent_id=event.entity_id,
                    from_stage=str(event.data.get("from_stage")),
                    to_stage=str(event.data.get("to_stage")),
                    occurred_at=event.occurred_at,
                    intent_created_at=created_at,
                )
                for event, created_at in self.event_log.stage_transitions(session, op.auth)
                if event.data.get("from_stage") and event.data.get("to_stage")
            ]

            analytics = aggregate_pipeline(
                open_rows,
                closed,
                transitions,
                now=now,
                forecast_confidence=self.forecast_confidence,
            )
            op.tag(result_count=analytics.total_intents)
            return build_envelope(ctx, analytics)
