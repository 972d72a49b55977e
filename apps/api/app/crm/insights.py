"""Deterministic insight and next-best-action rules for intents.

Every function here is pure: the clock is passed in as ``now`` and nothing is
persisted. Missing optional inputs (no expected close date, no timestamps)
skip the affected rule instead of raising.
"""

from __future__ import annotations

import math
import uuid
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any

from app.crm.schemas import AIInsight, NextBestAction
from app.metrics import observe_action_generated, observe_insight_generated


SECONDS_PER_DAY = 86400

HIGH_CONVERSION_PROBABILITY = 0.8
HIGH_VALUE_DEAL = 50000
CLOSING_SOON_DAYS = 30
EXTENDED_STAGE_DAYS = 30
DISCOVERY_LOW_PROBABILITY = 0.3
QUALIFIED_PROBABILITY = 0.7
PROPOSAL_FOLLOW_UP_DAYS = 14
EXECUTIVE_MEETING_VALUE = 100000


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _now(now: datetime | None) -> datetime:
    return as_utc(now) if now is not None else datetime.now(timezone.utc)


def _ceil_days(delta: timedelta) -> int:
    return math.ceil(delta.total_seconds() / SECONDS_PER_DAY)


def days_in_stage(updated_at: datetime | None, now: datetime | None = None) -> int:
    if updated_at is None:
        return 0
    return _ceil_days(_now(now) - as_utc(updated_at))


def days_to_close(expected_close_date: date, now: datetime | None = None) -> int:
    close_at = datetime.combine(expected_close_date, time.min, tzinfo=timezone.utc)
    return _ceil_days(close_at - _now(now))


def _format_money(value: Decimal | float) -> str:
    formatted = f"{float(value):,.2f}"
    return formatted[:-3] if formatted.endswith(".00") else formatted


def _insight(now: datetime, **fields: Any) -> AIInsight:
    insight = AIInsight(id=str(uuid.uuid4()), timestamp=now, **fields)
    observe_insight_generated(insight.type)
    return insight


def _action(**fields: Any) -> NextBestAction:
    action = NextBestAction(id=str(uuid.uuid4()), **fields)
    observe_action_generated(action.type)
    return action


def generate_insights(intent: Any, now: datetime | None = None) -> list[AIInsight]:
    current = _now(now)
    stage = intent.stage
    probability = float(intent.probability)
    value = Decimal(str(intent.value))
    insights: list[AIInsight] = []

    if stage == "qualification" and probability > HIGH_CONVERSION_PROBABILITY:
        insights.append(
            _insight(
                current,
                type="behavioral",
                title="High Conversion Probability Detected",
                description=(
                    "This intent shows strong buying signals with 80%+ probability while still in qualification stage."
                ),
                confidence=0.92,
                reasoning="High probability score combined with early stage indicates accelerated buying process",
                impact="high",
                metadata={"probability": probability, "stage": stage},
            )
        )

    if value > HIGH_VALUE_DEAL and intent.expected_close_date is not None:
        remaining = days_to_close(intent.expected_close_date, current)
        if remaining < CLOSING_SOON_DAYS:
            insights.append(
                _insight(
                    current,
                    type="predictive",
                    title="High-Value Deal Closing Soon",
                    description=f"${_format_money(value)} deal expected to close within {remaining} days.",
                    confidence=0.85,
                    reasoning="Large deal value with near-term close date requires focused attention",
                    impact="high",
                    metadata={"value": float(value), "days_to_close": remaining},
                )
            )

    stage_days = days_in_stage(intent.updated_at, current)
    if stage_days > EXTENDED_STAGE_DAYS and stage != "discovery":
        insights.append(
            _insight(
                current,
                type="contextual",
                title="Extended Stage Duration",
                description=f"Intent has been in {stage} stage for {stage_days} days, longer than typical.",
                confidence=0.78,
                reasoning="Extended time in stage may indicate stalled progress or need for intervention",
                impact="medium",
                metadata={"days_in_stage": stage_days, "stage": stage},
            )
        )

    return insights


def _stage_action(intent: Any, current: datetime) -> NextBestAction | None:
    stage = intent.stage
    probability = float(intent.probability)

    if stage == "discovery":
        if probability < DISCOVERY_LOW_PROBABILITY:
            return _action(
                type="call",
                title="Discovery Call",
                description="Schedule a discovery call to better understand needs and increase engagement",
                priority=2,
                reasoning="Low probability indicates need for deeper relationship building",
                confidence=0.85,
                estimated_impact="high",
                estimated_effort="medium",
                metadata={"current_probability": probability},
            )
    elif stage == "qualification":
        if probability > QUALIFIED_PROBABILITY:
            return _action(
                type="proposal",
                title="Send Proposal",
                description="High qualification score indicates readiness for formal proposal",
                priority=1,
                reasoning="Strong qualification signals suggest buyer is ready to evaluate solutions",
                confidence=0.91,
                estimated_impact="high",
                estimated_effort="high",
                due_date=current + timedelta(days=3),
                metadata={"probability": probability},
            )
    elif stage == "proposal":
        stage_days = days_in_stage(intent.updated_at, current)
        if stage_days > PROPOSAL_FOLLOW_UP_DAYS:
            return _action(
                type="follow_up",
                title="Proposal Follow-up",
                description="Follow up on proposal submitted 2+ weeks ago",
                priority=1,
                reasoning="Extended time in proposal stage requires proactive follow-up",
                confidence=0.88,
                estimated_impact="medium",
                estimated_effort="low",
                metadata={"days_in_stage": stage_days},
            )
    elif stage == "negotiation":
        return _action(
            type="negotiation",
            title="Negotiation Meeting",
            description="Schedule meeting to address final terms and close the deal",
            priority=1,
            reasoning="Negotiation stage requires direct engagement to resolve final objections",
            confidence=0.82,
            estimated_impact="high",
            estimated_effort="medium",
            metadata={"stage": stage},
        )
    return None


def sort_actions(actions: list[NextBestAction]) -> list[NextBestAction]:
    return sorted(actions, key=lambda action: (action.priority, -action.confidence))


def generate_next_best_actions(intent: Any, now: datetime | None = None) -> list[NextBestAction]:
    current = _now(now)
    value = Decimal(str(intent.value))
    actions: list[NextBestAction] = []

    stage_action = _stage_action(intent, current)
    if stage_action is not None:
        actions.append(stage_action)

    if value > EXECUTIVE_MEETING_VALUE and not any(action.type == "meeting" for action in actions):
        actions.append(
            _action(
                type="meeting",
                title="Executive Meeting",
                description="High-value deal warrants executive-level engagement",
                priority=1,
                reasoning="Large deal value justifies senior stakeholder involvement",
                confidence=0.79,
                estimated_impact="high",
                estimated_effort="high",
                metadata={"deal_value": float(value)},
            )
        )

    return sort_actions(actions)
