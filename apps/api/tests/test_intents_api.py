from __future__ import annotations

import uuid
from datetime import date, timedelta
from decimal import Decimal

from fastapi.testclient import TestClient

from app import events


def _relationship_id(client: TestClient, headers: dict[str, str], name: str = "Jane Doe") -> str:
    response = client.post("/api/crm/relationships", json={"name": name, "company": "Acme"}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]["id"]


def _create_intent(client: TestClient, headers: dict[str, str], relationship_id: str, **overrides) -> dict:
    payload = {"relationship_id": relationship_id, "title": "Platform rollout", "value": "75000", "probability": 0.5}
    payload.update(overrides)
    response = client.post("/api/crm/intents", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def test_create_intent_returns_enriched_view(client: TestClient, tenant_headers: dict[str, str]) -> None:
    relationship_id = _relationship_id(client, tenant_headers)
    close_date = (date.today() + timedelta(days=10)).isoformat()

    data = _create_intent(
        client,
        tenant_headers,
        relationship_id,
        stage="qualification",
        probability=0.9,
        expected_close_date=close_date,
        currency="eur",
    )

    assert Decimal(data["value"]) == Decimal("75000")
    assert data["currency"] == "EUR"
    assert data["days_in_stage"] <= 1
    assert data["relationship"]["id"] == relationship_id
    assert [item["type"] for item in data["ai_insights"]] == ["behavioral", "predictive"]
    assert data["next_best_actions"][0]["type"] == "proposal"
    assert data["next_best_actions"][0]["due_date"] is not None


def test_create_intent_for_unknown_relationship(client: TestClient, tenant_headers: dict[str, str]) -> None:
    response = client.post(
        "/api/crm/intents",
        json={"relationship_id": str(uuid.uuid4()), "title": "Ghost deal"},
        headers=tenant_headers,
    )

    assert response.status_code == 404
    assert response.json()["code"] == "relationship_not_found"


def test_create_intent_validates_ranges(client: TestClient, tenant_headers: dict[str, str]) -> None:
    relationship_id = _relationship_id(client, tenant_headers)

    for payload in (
        {"probability": 1.5},
        {"value": "-1"},
        {"stage": "won"},
        {"currency": "US1"},
    ):
        response = client.post(
            "/api/crm/intents",
            json={"relationship_id": relationship_id, "title": "Bad", **payload},
            headers=tenant_headers,
        )
        assert response.status_code == 422, payload


def test_get_intent_with_includes(client: TestClient, tenant_headers: dict[str, str]) -> None:
    relationship_id = _relationship_id(client, tenant_headers)
    intent = _create_intent(client, tenant_headers, relationship_id)
    client.post(
        "/api/crm/interactions",
        json={"relationship_id": relationship_id, "intent_id": intent["id"], "type": "meeting", "subject": "Kickoff"},
        headers=tenant_headers,
    )

    plain = client.get(f"/api/crm/intents/{intent['id']}", headers=tenant_headers).json()["data"]
    assert plain["relationship"] is None
    assert plain["interaction_count"] is None

    enriched = client.get(
        f"/api/crm/intents/{intent['id']}",
        params={"include_relationship": "true", "include_interactions": "true"},
        headers=tenant_headers,
    ).json()["data"]
    assert enriched["relationship"]["name"] == "Jane Doe"
    assert enriched["interaction_count"] == 1


def test_get_intent_not_found(client: TestClient, tenant_headers: dict[str, str]) -> None:
    response = client.get(f"/api/crm/intents/{uuid.uuid4()}", headers=tenant_headers)

    assert response.status_code == 404
    assert response.json()["code"] == "intent_not_found"


def test_interaction_must_match_intent_relationship(client: TestClient, tenant_headers: dict[str, str]) -> None:
    first = _relationship_id(client, tenant_headers, "First")
    second = _relationship_id(client, tenant_headers, "Second")
    intent = _create_intent(client, tenant_headers, first)

    response = client.post(
        "/api/crm/interactions",
        json={"relationship_id": second, "intent_id": intent["id"], "type": "email", "subject": "Hello"},
        headers=tenant_headers,
    )

    assert response.status_code == 422
    assert response.json()["code"] == "interaction.intent_mismatch"


def test_list_intents_filters(client: TestClient, tenant_headers: dict[str, str]) -> None:
    relationship_id = _relationship_id(client, tenant_headers)
    _create_intent(client, tenant_headers, relationship_id, title="Small", value="1000", stage="discovery")
    _create_intent(client, tenant_headers, relationship_id, title="Large", value="90000", stage="proposal", priority="high")

    by_stage = client.get("/api/crm/intents", params={"stage": "proposal"}, headers=tenant_headers)
    assert by_stage.status_code == 200
    assert [item["title"] for item in by_stage.json()["data"]] == ["Large"]

    by_value = client.get("/api/crm/intents", params={"min_value": "5000"}, headers=tenant_headers)
    assert [item["title"] for item in by_value.json()["data"]] == ["Large"]

    by_search = client.get("/api/crm/intents", params={"search": "small"}, headers=tenant_headers)
    assert [item["title"] for item in by_search.json()["data"]] == ["Small"]

    listed = client.get("/api/crm/intents", headers=tenant_headers).json()["data"]
    assert all(item["relationship"]["id"] == relationship_id for item in listed)


def test_list_intents_rejects_bad_filters(client: TestClient, tenant_headers: dict[str, str]) -> None:
    for params in ({"stage": "won"}, {"min_probability": "2"}, {"min_value": "10", "max_value": "1"}):
        response = client.get("/api/crm/intents", params=params, headers=tenant_headers)
        assert response.status_code == 422, params
        assert response.json()["code"] == "intent.list.invalid_params"


def test_stage_change_records_history(client: TestClient, tenant_headers: dict[str, str], tenant_a: uuid.UUID) -> None:
    relationship_id = _relationship_id(client, tenant_headers)
    intent = _create_intent(client, tenant_headers, relationship_id)

    updated = client.patch(
        f"/api/crm/intents/{intent['id']}",
        json={"stage": "qualification", "probability": 0.6},
        headers={**tenant_headers, "X-Correlation-Id": "corr-stage-1"},
    )
    assert updated.status_code == 200
    assert updated.json()["data"]["stage"] == "qualification"

    history = client.get(f"/api/crm/intents/{intent['id']}/events", headers=tenant_headers)
    assert history.status_code == 200
    entries = history.json()["data"]
    assert [entry["event_type"] for entry in entries] == ["created", "stage_transition"]
    assert entries[1]["data"]["from_stage"] == "discovery"
    assert entries[1]["data"]["to_stage"] == "qualification"
    assert entries[1]["data"]["probability_change"] == 0.1

    assert len(events.published_events) == 1
    published = events.published_events[0]
    assert published["correlation_id"] == "corr-stage-1"
    assert published["tenant_id"] == str(tenant_a)
    assert published["actor_user_id"] == "user-1"


def test_update_missing_intent(client: TestClient, tenant_headers: dict[str, str]) -> None:
    response = client.patch(f"/api/crm/intents/{uuid.uuid4()}", json={"title": "Nope"}, headers=tenant_headers)

    assert response.status_code == 404


def test_events_for_missing_intent(client: TestClient, tenant_headers: dict[str, str]) -> None:
    response = client.get(f"/api/crm/intents/{uuid.uuid4()}/events", headers=tenant_headers)

    assert response.status_code == 404


def test_pipeline_analytics_endpoint(client: TestClient, tenant_headers: dict[str, str], tenant_b: uuid.UUID) -> None:
    relationship_id = _relationship_id(client, tenant_headers)
    soon = (date.today() + timedelta(days=5)).isoformat()
    _create_intent(client, tenant_headers, relationship_id, value="10000", probability=0.5, expected_close_date=soon)
    _create_intent(client, tenant_headers, relationship_id, value="30000", probability=1.0, stage="closed-won")
    _create_intent(client, tenant_headers, relationship_id, value="50000", probability=0.0, stage="closed-lost")

    other_headers = {"x-tenant-id": str(tenant_b)}
    _create_intent(client, other_headers, _relationship_id(client, other_headers), value="999999")

    response = client.get("/api/crm/analytics/pipeline", headers=tenant_headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total_intents"] == 2
    assert data["total_pipeline_value"] == 40000
    assert data["weighted_pipeline_value"] == 35000
    assert data["avg_deal_size"] == 20000
    assert data["overall_conversion_rate"] == 0.5
    assert [item["stage"] for item in data["stage_metrics"]] == [
        "discovery",
        "qualification",
        "proposal",
        "negotiation",
        "closed-won",
    ]
    assert data["forecasting"]["next_30_days"] == 5000
    assert data["forecasting"]["confidence"] == 0.82


def test_pipeline_analytics_empty_tenant(client: TestClient, tenant_headers: dict[str, str]) -> None:
    response = client.get("/api/crm/analytics/pipeline", headers=tenant_headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total_intents"] == 0
    assert data["avg_deal_size"] == 0
    assert data["overall_conversion_rate"] == 0
    assert data["velocity_metrics"]["avg_days_to_close"] == 0
