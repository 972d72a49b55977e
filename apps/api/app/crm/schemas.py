from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator


RelationshipType = Literal["individual", "company"]
IntentStage = Literal["discovery", "qualification", "proposal", "negotiation", "closed-won", "closed-lost"]
IntentPriority = Literal["low", "medium", "high", "urgent"]
InteractionType = Literal["email", "call", "meeting", "note", "task"]
InteractionDirection = Literal["inbound", "outbound"]
SignalStrength = Literal["weak", "medium", "strong"]
InsightType = Literal["behavioral", "predictive", "contextual", "competitive"]
ActionType = Literal["call", "email", "meeting", "follow_up", "proposal", "demo", "negotiation"]
Level = Literal["low", "medium", "high"]


def _check_tags(tags: list[str] | None) -> list[str] | None:
    if tags is None:
        return None
    for tag in tags:
        if not tag or len(tag) > 50:
            raise ValueError("tags must be 1-50 characters long")
    return tags


class ListParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cursor: UUID | None = None
    limit: int = Field(default=20, ge=1, le=100)
    include_total: bool = False


class GetRelationshipParams(BaseModel):
    id: UUID


class ListRelationshipsParams(ListParams):
    search: str | None = Field(default=None, max_length=255)
    tags: list[str] | None = None
    type: RelationshipType | None = None
    min_propensity: float | None = Field(default=None, ge=0, le=1)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, value: list[str] | None) -> list[str] | None:
        return _check_tags(value)


class RelationshipCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: RelationshipType = "individual"
    name: str = Field(min_length=1, max_length=255)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=64)
    company: str | None = Field(default=None, max_length=255)
    title: str | None = Field(default=None, max_length=255)
    avatar_url: str | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    propensity_score: float = Field(default=0.0, ge=0, le=1)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, value: list[str] | None) -> list[str] | None:
        return _check_tags(value)


class RelationshipUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: RelationshipType | None = None
    name: str | None = Field(default=None, min_length=1, max_length=255)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=64)
    company: str | None = Field(default=None, max_length=255)
    title: str | None = Field(default=None, max_length=255)
    avatar_url: str | None = None
    tags: list[str] | None = None
    metadata: dict[str, Any] | None = None
    propensity_score: float | None = Field(default=None, ge=0, le=1)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, value: list[str] | None) -> list[str] | None:
        return _check_tags(value)


class RelationshipRead(BaseModel):
    id: UUID
    tenant_id: UUID
    type: RelationshipType
    name: str
    email: str | None
    phone: str | None
    company: str | None
    title: str | None
    avatar_url: str | None
    tags: list[str]
    metadata: dict[str, Any]
    propensity_score: float
    last_interaction_at: datetime | None
    created_at: datetime
    updated_at: datetime


class RelationshipSummary(BaseModel):
    id: UUID
    name: str
    email: str | None
    company: str | None
    propensity_score: float


class AIInsight(BaseModel):
    id: str
    type: InsightType
    title: str
    description: str
    confidence: float = Field(ge=0, le=1)
    reasoning: str
    impact: Level
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class NextBestAction(BaseModel):
    id: str
    type: ActionType
    title: str
    description: str
    priority: int = Field(ge=1, le=10)
    reasoning: str
    confidence: float = Field(ge=0, le=1)
    estimated_impact: Level
    estimated_effort: Level
    due_date: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class GetIntentParams(BaseModel):
    id: UUID
    include_relationship: bool = False
    include_interactions: bool = False


class ListIntentsParams(ListParams):
    search: str | None = Field(default=None, max_length=255)
    stage: IntentStage | None = None
    priority: IntentPriority | None = None
    relationship_id: UUID | None = None
    min_value: Decimal | None = Field(default=None, ge=0)
    max_value: Decimal | None = Field(default=None, ge=0)
    min_probability: float | None = Field(default=None, ge=0, le=1)
    expected_close_before: date | None = None
    expected_close_after: date | None = None

    @model_validator(mode="after")
    def check_ranges(self) -> "ListIntentsParams":
        if self.min_value is not None and self.max_value is not None and self.min_value > self.max_value:
            raise ValueError("min_value must not exceed max_value")
        if (
            self.expected_close_before is not None
            and self.expected_close_after is not None
            and self.expected_close_after > self.expected_close_before
        ):
            raise ValueError("expected_close_after must not be later than expected_close_before")
        return self


class IntentCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    relationship_id: UUID
    title: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=2000)
    value: Decimal = Field(default=Decimal("0"), ge=0, max_digits=15, decimal_places=2)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    stage: IntentStage = "discovery"
    priority: IntentPriority = "medium"
    expected_close_date: date | None = None
    probability: float = Field(default=0.5, ge=0, le=1)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        if not value.isalpha():
            raise ValueError("currency must be a 3-letter code")
        return value.upper()


class IntentUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=2000)
    value: Decimal | None = Field(default=None, ge=0, max_digits=15, decimal_places=2)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    stage: IntentStage | None = None
    priority: IntentPriority | None = None
    expected_close_date: date | None = None
    probability: float | None = Field(default=None, ge=0, le=1)
    metadata: dict[str, Any] | None = None

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, value: str | None) -> str | None:
        if value is None:
            return None
        if not value.isalpha():
            raise ValueError("currency must be a 3-letter code")
        return value.upper()


class IntentRead(BaseModel):
    id: UUID
    tenant_id: UUID
    relationship_id: UUID
    title: str
    description: str | None
    value: Decimal
    currency: str
    stage: IntentStage
    priority: IntentPriority
    expected_close_date: date | None
    probability: float
    metadata: dict[str, Any]
    days_in_stage: int
    ai_insights: list[AIInsight]
    next_best_actions: list[NextBestAction]
    relationship: RelationshipSummary | None = None
    interaction_count: int | None = None
    created_at: datetime
    updated_at: datetime


class IntentEventsParams(BaseModel):
    intent_id: UUID


class EventLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_type: str
    entity_id: UUID
    event_type: str
    actor_id: str | None
    data: dict[str, Any]
    occurred_at: datetime


class InteractionCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    relationship_id: UUID
    intent_id: UUID | None = None
    type: InteractionType
    subject: str = Field(min_length=1, max_length=255)
    content: str | None = None
    direction: InteractionDirection | None = None
    occurred_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ListInteractionsParams(ListParams):
    relationship_id: UUID


class InteractionRead(BaseModel):
    id: UUID
    relationship_id: UUID
    intent_id: UUID | None
    type: InteractionType
    subject: str
    content: str | None
    direction: InteractionDirection | None
    occurred_at: datetime
    metadata: dict[str, Any]
    created_at: datetime


class SignalCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    relationship_id: UUID | None = None
    intent_id: UUID | None = None
    type: str = Field(min_length=1, max_length=64)
    strength: SignalStrength = "medium"
    description: str | None = None
    occurred_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def require_target(self) -> "SignalCreate":
        if self.relationship_id is None and self.intent_id is None:
            raise ValueError("relationship_id or intent_id is required")
        return self


class SignalRead(BaseModel):
    id: UUID
    relationship_id: UUID | None
    intent_id: UUID | None
    type: str
    strength: SignalStrength
    description: str | None
    occurred_at: datetime
    metadata: dict[str, Any]
    created_at: datetime


class StageMetrics(BaseModel):
    stage: IntentStage
    count: int = 0
    total_value: float = 0.0
    avg_value: float = 0.0
    avg_probability: float = 0.0
    avg_days_in_stage: float = 0.0


class VelocityMetrics(BaseModel):
    avg_days_discovery_to_qualification: float = 0.0
    avg_days_qualification_to_proposal: float = 0.0
    avg_days_proposal_to_negotiation: float = 0.0
    avg_days_negotiation_to_close: float = 0.0
    avg_days_to_close: float = 0.0


class Forecast(BaseModel):
    next_30_days: float = 0.0
    next_60_days: float = 0.0
    next_90_days: float = 0.0
    confidence: float = 0.0


class PipelineAnalytics(BaseModel):
    total_intents: int = 0
    total_pipeline_value: float = 0.0
    weighted_pipeline_value: float = 0.0
    avg_deal_size: float = 0.0
    overall_conversion_rate: float = 0.0
    stage_metrics: list[StageMetrics] = Field(default_factory=list)
    velocity_metrics: VelocityMetrics = Field(default_factory=VelocityMetrics)
    forecasting: Forecast = Field(default_factory=Forecast)


class PaginationMeta(BaseModel):
    cursor: UUID | None
    has_more: bool
    limit: int
    total_count: int | None = None


class ResponseMeta(BaseModel):
    request_id: str
    timestamp: datetime
    tenant_id: str
    pagination: PaginationMeta | None = None


class Envelope(BaseModel):
    data: Any
    meta: ResponseMeta
