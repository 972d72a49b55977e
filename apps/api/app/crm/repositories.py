from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from sqlalchemy import Select, String, cast, func, or_, select
from sqlalchemy.orm import Session

from app.crm.models import (
    CRMEventLog,
    CRMIntent,
    CRMInteraction,
    CRMRelationship,
    CRMSignal,
)
from app.crm.schemas import ListIntentsParams, ListRelationshipsParams
from app.platform.security.context import AuthContext
from app.platform.security.repository import BaseRepository


T = TypeVar("T")


@dataclass(slots=True)
class PageResult(Generic[T]):
    items: list[T]
    cursor: uuid.UUID | None
    has_more: bool
    limit: int
    total_count: int | None = None


def paginate(
    session: Session,
    query: Select[Any],
    id_column: Any,
    *,
    cursor: uuid.UUID | None,
    limit: int,
    include_total: bool = False,
) -> PageResult[Any]:
    """Keyset pagination on the primary key.

    ``limit + 1`` rows are fetched so ``has_more`` needs no second query; the
    next cursor is the id of the last row actually returned.
    """

    total_count: int | None = None
    if include_total:
        total_count = session.scalar(select(func.count()).select_from(query.order_by(None).subquery()))

    page_query = query
    if cursor is not None:
        page_query = page_query.where(id_column > cursor)
    rows = list(session.scalars(page_query.order_by(id_column.asc()).limit(limit + 1)).all())

    has_more = len(rows) > limit
    if has_more:
        rows = rows[:limit]
    return PageResult(
        items=rows,
        cursor=rows[-1].id if has_more else None,
        has_more=has_more,
        limit=limit,
        total_count=total_count,
    )


def _like(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class RelationshipRepository(BaseRepository):
    resource = "crm.relationship"

    def get(self, session: Session, ctx: AuthContext, relationship_id: uuid.UUID) -> CRMRelationship | None:
        query = self.apply_scope_query(select(CRMRelationship).where(CRMRelationship.id == relationship_id), ctx)
        row = session.scalar(query)
        if row is not None:
            self.validate_read_scope(ctx, tenant_id=row.tenant_id)
        return row

    def get_many(self, session: Session, ctx: AuthContext, ids: set[uuid.UUID]) -> dict[uuid.UUID, CRMRelationship]:
        if not ids:
            return {}
        query = self.apply_scope_query(select(CRMRelationship).where(CRMRelationship.id.in_(ids)), ctx)
        return {row.id: row for row in session.scalars(query).all()}

    def list_query(self, ctx: AuthContext, params: ListRelationshipsParams) -> Select[Any]:
        query = self.apply_scope_query(select(CRMRelationship), ctx)
        if params.search:
            pattern = _like(params.search)
            query = query.where(
                or_(
                    CRMRelationship.name.ilike(pattern, escape="\\"),
                    CRMRelationship.email.ilike(pattern, escape="\\"),
                    CRMRelationship.company.ilike(pattern, escape="\\"),
                )
            )
        for tag in params.tags or []:
            # Tags are stored as a JSON array serialized with json.dumps; match one
            # encoded element so escapes and non-ASCII text compare equal.
            query = query.where(cast(CRMRelationship.tags, String).like(_like(json.dumps(tag)), escape="\\"))
        if params.type is not None:
            query = query.where(CRMRelationship.type == params.type)
        if params.min_propensity is not None:
            query = query.where(CRMRelationship.propensity_score >= params.min_propensity)
        return query


class IntentRepository(BaseRepository):
    resource = "crm.intent"

    def get(self, session: Session, ctx: AuthContext, intent_id: uuid.UUID) -> CRMIntent | None:
        query = self.apply_scope_query(select(CRMIntent).where(CRMIntent.id == intent_id), ctx)
        row = session.scalar(query)
        if row is not None:
            self.validate_read_scope(ctx, tenant_id=row.tenant_id)
        return row

    def list_query(self, ctx: AuthContext, params: ListIntentsParams) -> Select[Any]:
        query = self.apply_scope_query(select(CRMIntent), ctx)
        if params.search:
            pattern = _like(params.search)
            query = query.where(
                or_(
                    CRMIntent.title.ilike(pattern, escape="\\"),
                    CRMIntent.description.ilike(pattern, escape="\\"),
                )
            )
        if params.stage is not None:
            query = query.where(CRMIntent.stage == params.stage)
        if params.priority is not None:
            query = query.where(CRMIntent.priority == params.priority)
        if params.relationship_id is not None:
            query = query.where(CRMIntent.relationship_id == params.relationship_id)
        if params.min_value is not None:
            query = query.where(CRMIntent.value >= params.min_value)
        if params.max_value is not None:
            query = query.where(CRMIntent.value <= params.max_value)
        if params.min_probability is not None:
            query = query.where(CRMIntent.probability >= params.min_probability)
        if params.expected_close_before is not None:
            query = query.where(CRMIntent.expected_close_date <= params.expected_close_before)
        if params.expected_close_after is not None:
            query = query.where(CRMIntent.expected_close_date >= params.expected_close_after)
        return query

    def pipeline_rows(self, session: Session, ctx: AuthContext) -> list[CRMIntent]:
        query = self.apply_scope_query(select(CRMIntent).where(CRMIntent.stage != "closed-lost"), ctx)
        return list(session.scalars(query).all())

    def closed_stages(self, session: Session, ctx: AuthContext) -> list[str]:
        query = self.apply_scope_query(
            select(CRMIntent.stage).where(CRMIntent.stage.in_(("closed-won", "closed-lost"))),
            ctx,
        )
        return list(session.scalars(query).all())


class InteractionRepository(BaseRepository):
    resource = "crm.interaction"

    def list_query(self, ctx: AuthContext, relationship_id: uuid.UUID) -> Select[Any]:
        return self.apply_scope_query(
            select(CRMInteraction).where(CRMInteraction.relationship_id == relationship_id),
            ctx,
        )

    def count_for_relationship(self, session: Session, ctx: AuthContext, relationship_id: uuid.UUID) -> int:
        query = select(func.count(CRMInteraction.id)).where(
            CRMInteraction.tenant_id == uuid.UUID(str(ctx.tenant_id)),
            CRMInteraction.relationship_id == relationship_id,
        )
        return int(session.scalar(query) or 0)

    def count_for_intent(self, session: Session, ctx: AuthContext, intent_id: uuid.UUID) -> int:
        query = select(func.count(CRMInteraction.id)).where(
            CRMInteraction.tenant_id == uuid.UUID(str(ctx.tenant_id)),
            CRMInteraction.intent_id == intent_id,
        )
        return int(session.scalar(query) or 0)


class SignalRepository(BaseRepository):
    resource = "crm.signal"

    def count_for_relationship(self, session: Session, ctx: AuthContext, relationship_id: uuid.UUID) -> int:
        query = select(func.count(CRMSignal.id)).where(
            CRMSignal.tenant_id == uuid.UUID(str(ctx.tenant_id)),
            CRMSignal.relationship_id == relationship_id,
        )
        return int(session.scalar(query) or 0)


class EventLogRepository(BaseRepository):
    resource = "crm.event_log"

    def append(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        entity_type: str,
        entity_id: uuid.UUID,
        event_type: str,
        data: dict[str, Any],
    ) -> CRMEventLog:
        payload = {"tenant_id": uuid.UUID(str(ctx.tenant_id))}
        self.validate_write_security(payload, ctx, action="append")
        row = CRMEventLog(
            tenant_id=payload["tenant_id"],
            entity_type=entity_type,
            entity_id=entity_id,
            event_type=event_type,
            actor_id=ctx.user_id,
            data=data,
        )
        session.add(row)
        return row

    def for_entity(self, session: Session, ctx: AuthContext, entity_type: str, entity_id: uuid.UUID) -> list[CRMEventLog]:
        query = self.apply_scope_query(
            select(CRMEventLog).where(CRMEventLog.entity_type == entity_type, CRMEventLog.entity_id == entity_id),
            ctx,
        )
        return list(session.scalars(query.order_by(CRMEventLog.occurred_at.asc(), CRMEventLog.id.asc())).all())

    def stage_transitions(self, session: Session, ctx: AuthContext) -> list[tuple[CRMEventLog, Any]]:
        query = self.apply_scope_query(
            select(CRMEventLog, CRMIntent.created_at)
            .join(CRMIntent, CRMIntent.id == CRMEventLog.entity_id)
            .where(CRMEventLog.entity_type == "intent", CRMEventLog.event_type == "stage_transition"),
            ctx,
        )
        return [(row[0], row[1]) for row in session.execute(query).all()]
