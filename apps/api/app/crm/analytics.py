from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any

from app.crm.insights import SECONDS_PER_DAY, as_utc, days_in_stage
from app.crm.models import CLOSED_STAGES
from app.crm.schemas import Forecast, PipelineAnalytics, StageMetrics, VelocityMetrics


METRIC_STAGES = ("discovery", "qualification", "proposal", "negotiation", "closed-won")
VELOCITY_PAIRS = (
    ("discovery", "qualification", "avg_days_discovery_to_qualification"),
    ("qualification", "proposal", "avg_days_qualification_to_proposal"),
    ("proposal", "negotiation", "avg_days_proposal_to_negotiation"),
)
FORECAST_HORIZONS = (30, 60, 90)


@dataclass(frozen=True, slots=True)
class StageTransition:
    intent_id: uuid.UUID
    from_stage: str
    to_stage: str
    occurred_at: datetime
    intent_created_at: datetime | None = None


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _days_between(start: datetime, end: datetime) -> float:
    return (as_utc(end) - as_utc(start)).total_seconds() / SECONDS_PER_DAY


def _stage_metrics(intents: Sequence[Any], now: datetime) -> list[StageMetrics]:
    metrics: list[StageMetrics] = []
    for stage in METRIC_STAGES:
        rows = [item for item in intents if item.stage == stage]
        if not rows:
            metrics.append(StageMetrics(stage=stage))
            continue
        count = len(rows)
        total_value = sum(float(item.value) for item in rows)
        metrics.append(
            StageMetrics(
                stage=stage,
                count=count,
                total_value=total_value,
                avg_value=total_value / count,
                avg_probability=_mean([float(item.probability) for item in rows]),
                avg_days_in_stage=_mean([float(days_in_stage(item.updated_at, now)) for item in rows]),
            )
        )
    return metrics


def velocity_from_transitions(transitions: Iterable[StageTransition]) -> VelocityMetrics:
    """Average time spent per stage, measured from the stage-transition audit trail.

    A stage is entered either by the previous transition into it or, for the
    first stage of an intent, at the intent's creation time.
    """

    by_intent: dict[uuid.UUID, list[StageTransition]] = defaultdict(list)
    for transition in transitions:
        by_intent[transition.intent_id].append(transition)

    durations: dict[str, list[float]] = defaultdict(list)
    to_close: list[float] = []

    for history in by_intent.values():
        history.sort(key=lambda item: as_utc(item.occurred_at))
        created_at = history[0].intent_created_at
        entered: dict[str, datetime] = {}
        if created_at is not None:
            entered[history[0].from_stage] = created_at
        closed = False

        for transition in history:
            started = entered.get(transition.from_stage)
            if started is not None:
                for from_stage, to_stage, key in VELOCITY_PAIRS:
                    if transition.from_stage == from_stage and transition.to_stage == to_stage:
                        durations[key].append(_days_between(started, transition.occurred_at))
                if transition.from_stage == "negotiation" and transition.to_stage in CLOSED_STAGES:
                    durations["avg_days_negotiation_to_close"].append(
                        _days_between(started, transition.occurred_at)
                    )
            if not closed and transition.to_stage in CLOSED_STAGES and created_at is not None:
                to_close.append(_days_between(created_at, transition.occurred_at))
                closed = True
            entered[transition.to_stage] = transition.occurred_at

    return VelocityMetrics(
        avg_days_discovery_to_qualification=round(_mean(durations["avg_days_discovery_to_qualification"]), 2),
        avg_days_qualification_to_proposal=round(_mean(durations["avg_days_qualification_to_proposal"]), 2),
        avg_days_proposal_to_negotiation=round(_mean(durations["avg_days_proposal_to_negotiation"]), 2),
        avg_days_negotiation_to_close=round(_mean(durations["avg_days_negotiation_to_close"]), 2),
        avg_days_to_close=round(_mean(to_close), 2),
    )


def _forecast(intents: Sequence[Any], now: datetime, confidence: float) -> Forecast:
    totals: dict[int, float] = {}
    for horizon in FORECAST_HORIZONS:
        cutoff = now + timedelta(days=horizon)
        totals[horizon] = sum(
            float(item.value) * float(item.probability)
            for item in intents
            if item.expected_close_date is not None
            and datetime.combine(item.expected_close_date, time.min, tzinfo=timezone.utc) <= cutoff
        )
    return Forecast(
        next_30_days=totals[30],
        next_60_days=totals[60],
        next_90_days=totals[90],
        confidence=confidence,
    )


def aggregate_pipeline(
    open_intents: Sequence[Any],
    closed_stages: Sequence[str],
    transitions: Iterable[StageTransition] = (),
    now: datetime | None = None,
    forecast_confidence: float = 0.82,
) -> PipelineAnalytics:
    """Portfolio metrics over every intent that is not closed-lost.

    Empty inputs produce all-zero metrics.
    """

    current = as_utc(now) if now is not None else datetime.now(timezone.utc)
    total_intents = len(open_intents)
    total_value = sum(float(item.value) for item in open_intents)
    weighted_value = sum(float(item.value) * float(item.probability) for item in open_intents)

    closed = [stage for stage in closed_stages if stage in CLOSED_STAGES]
    won = sum(1 for stage in closed if stage == "closed-won")

    return PipelineAnalytics(
        total_intents=total_intents,
        total_pipeline_value=total_value,
        weighted_pipeline_value=weighted_value,
        avg_deal_size=total_value / total_intents if total_intents else 0.0,
        overall_conversion_rate=won / len(closed) if closed else 0.0,
        stage_metrics=_stage_metrics(open_intents, current),
        velocity_metrics=velocity_from_transitions(transitions),
        forecasting=_forecast(open_intents, current, forecast_confidence),
    )
