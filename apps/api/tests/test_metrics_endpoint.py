from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.main import app


@pytest.fixture()
def metrics_enabled(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _create_intent(client: TestClient, headers: dict[str, str]) -> str:
    relationship = client.post("/api/crm/relationships", json={"name": "Metrics Contact"}, headers=headers)
    assert relationship.status_code == 201
    intent = client.post(
        "/api/crm/intents",
        json={"relationship_id": relationship.json()["data"]["id"], "title": "Metrics Deal", "value": "200000"},
        headers=headers,
    )
    assert intent.status_code == 201
    return intent.json()["data"]["id"]


def test_metrics_endpoint_exposes_http_and_operation_metrics(
    client: TestClient,
    tenant_headers: dict[str, str],
    metrics_enabled: None,
) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    intent_id = _create_intent(client, tenant_headers)
    assert client.get(f"/api/crm/intents/{intent_id}", headers=tenant_headers).status_code == 200
    assert client.get(f"/api/crm/intents/{uuid.uuid4()}", headers=tenant_headers).status_code == 404

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_operation_duration_seconds" in body
    assert 'crm_operations_total{operation="intent.get",outcome="success"}' in body
    assert 'crm_operations_total{operation="intent.get",outcome="error"}' in body
    assert 'crm_actions_generated_total{action_type="meeting"}' in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/intents/{id}"' in body


def test_metrics_disabled_by_default(client: TestClient) -> None:
    response = client.get("/metrics")

    assert response.status_code == 404


def test_metrics_require_permission(client: TestClient, metrics_enabled: None) -> None:
    app.dependency_overrides[get_current_user] = lambda: AuthUser(sub="user-2", roles=["user"])

    response = client.get("/metrics")

    assert response.status_code == 403


def test_performance_stats_for_operation(
    client: TestClient,
    tenant_headers: dict[str, str],
    metrics_enabled: None,
) -> None:
    for _ in range(3):
        assert client.get("/api/crm/relationships", headers=tenant_headers).status_code == 200
    assert client.get("/api/crm/relationships", params={"limit": "0"}, headers=tenant_headers).status_code == 422

    response = client.get("/performance/relationship.list")

    assert response.status_code == 200
    stats = response.json()
    assert stats["operation"] == "relationship.list"
    assert stats["count"] == 3
    assert stats["error_count"] == 1
    assert stats["min_ms"] <= stats["p95_ms"] <= stats["max_ms"]


def test_performance_stats_for_unknown_operation(client: TestClient, metrics_enabled: None) -> None:
    response = client.get("/performance/intent.unknown")

    assert response.status_code == 200
    assert response.json()["count"] == 0
    assert response.json()["p95_ms"] == 0
