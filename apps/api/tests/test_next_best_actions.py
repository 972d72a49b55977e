from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.crm.insights import generate_next_best_actions, sort_actions
from app.crm.schemas import NextBestAction


NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _intent(**overrides):
    values = {
        "stage": "discovery",
        "probability": 0.5,
        "value": Decimal("1000"),
        "expected_close_date": None,
        "updated_at": NOW - timedelta(days=1),
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def test_discovery_call_for_low_probability() -> None:
    actions = generate_next_best_actions(_intent(stage="discovery", probability=0.2), NOW)

    assert len(actions) == 1
    action = actions[0]
    assert action.title == "Discovery Call"
    assert action.type == "call"
    assert action.priority == 2
    assert action.confidence == 0.85
    assert (action.estimated_impact, action.estimated_effort) == ("high", "medium")
    assert action.metadata == {"current_probability": 0.2}


def test_discovery_without_low_probability_has_no_action() -> None:
    assert generate_next_best_actions(_intent(stage="discovery", probability=0.3), NOW) == []


def test_send_proposal_due_in_three_days() -> None:
    actions = generate_next_best_actions(_intent(stage="qualification", probability=0.75), NOW)

    assert [action.title for action in actions] == ["Send Proposal"]
    assert actions[0].type == "proposal"
    assert actions[0].priority == 1
    assert actions[0].confidence == 0.91
    assert actions[0].due_date == NOW + timedelta(days=3)


def test_proposal_follow_up_after_two_weeks() -> None:
    assert generate_next_best_actions(_intent(stage="proposal", updated_at=NOW - timedelta(days=14)), NOW) == []

    actions = generate_next_best_actions(_intent(stage="proposal", updated_at=NOW - timedelta(days=15)), NOW)
    assert [action.title for action in actions] == ["Proposal Follow-up"]
    assert actions[0].type == "follow_up"
    assert (actions[0].estimated_impact, actions[0].estimated_effort) == ("medium", "low")
    assert actions[0].metadata == {"days_in_stage": 15}


def test_negotiation_stage_always_gets_a_meeting() -> None:
    actions = generate_next_best_actions(_intent(stage="negotiation", probability=0.1), NOW)

    assert [action.title for action in actions] == ["Negotiation Meeting"]
    assert actions[0].confidence == 0.82


def test_negotiation_high_value_orders_by_confidence() -> None:
    actions = generate_next_best_actions(_intent(stage="negotiation", value=Decimal("120000")), NOW)

    assert [action.title for action in actions] == ["Negotiation Meeting", "Executive Meeting"]
    assert [action.priority for action in actions] == [1, 1]
    assert [action.confidence for action in actions] == [0.82, 0.79]


@pytest.mark.parametrize("stage", ["discovery", "qualification", "proposal", "closed-won", "closed-lost"])
def test_exactly_one_executive_meeting_above_value_threshold(stage: str) -> None:
    actions = generate_next_best_actions(_intent(stage=stage, value=Decimal("100000.01")), NOW)

    executive = [action for action in actions if action.title == "Executive Meeting"]
    assert len(executive) == 1
    assert executive[0].type == "meeting"
    assert executive[0].metadata == {"deal_value": 100000.01}


def test_no_executive_meeting_at_threshold() -> None:
    actions = generate_next_best_actions(_intent(stage="closed-won", value=Decimal("100000")), NOW)

    assert actions == []


def test_qualification_scenario_puts_send_proposal_first() -> None:
    intent = _intent(
        stage="qualification",
        probability=0.85,
        value=Decimal("150000"),
        expected_close_date=(NOW + timedelta(days=20)).date(),
    )

    actions = generate_next_best_actions(intent, NOW)

    assert [action.title for action in actions] == ["Send Proposal", "Executive Meeting"]


def test_discovery_call_sorts_after_priority_one_actions() -> None:
    actions = generate_next_best_actions(_intent(stage="discovery", probability=0.1, value=Decimal("200000")), NOW)

    assert [(action.title, action.priority) for action in actions] == [
        ("Executive Meeting", 1),
        ("Discovery Call", 2),
    ]


def _action(priority: int, confidence: float, title: str) -> NextBestAction:
    return NextBestAction(
        id=title,
        type="email",
        title=title,
        description=title,
        priority=priority,
        reasoning="test",
        confidence=confidence,
        estimated_impact="low",
        estimated_effort="low",
    )


def test_sort_actions_orders_by_priority_then_confidence() -> None:
    unsorted = [
        _action(3, 0.99, "c"),
        _action(1, 0.50, "b"),
        _action(1, 0.90, "a"),
        _action(2, 0.10, "d"),
    ]

    ordered = sort_actions(unsorted)

    assert [action.title for action in ordered] == ["a", "b", "d", "c"]
    for left, right in zip(ordered, ordered[1:]):
        assert left.priority <= right.priority
        if left.priority == right.priority:
            assert left.confidence >= right.confidence
