from __future__ import annotations

import uuid

from fastapi.testclient import TestClient

from app.core.auth import AuthUser, get_current_user
from app.main import app
from app.performance import PerformanceRecorder


def _create_relationship(client: TestClient, headers: dict[str, str], **overrides) -> dict:
    payload = {"name": "Jane Doe", "email": "jane@example.com", "company": "Acme", "tags": ["vip"]}
    payload.update(overrides)
    response = client.post("/api/crm/relationships", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def test_create_and_get_relationship(client: TestClient, tenant_headers: dict[str, str], tenant_a: uuid.UUID) -> None:
    created = _create_relationship(client, tenant_headers)
    assert created["tenant_id"] == str(tenant_a)
    assert created["type"] == "individual"
    assert created["tags"] == ["vip"]

    response = client.get(f"/api/crm/relationships/{created['id']}", headers=tenant_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["data"]["name"] == "Jane Doe"
    assert body["data"]["metadata"] == {"interaction_count": 0, "signal_count": 0}
    assert body["meta"]["tenant_id"] == str(tenant_a)
    assert body["meta"]["request_id"] == response.headers["x-request-id"]
    assert body["meta"]["pagination"] is None


def test_missing_relationship_returns_error_envelope(client: TestClient, tenant_headers: dict[str, str]) -> None:
    missing = uuid.uuid4()
    response = client.get(f"/api/crm/relationships/{missing}", headers=tenant_headers)

    assert response.status_code == 404
    body = response.json()
    assert body["error"] == "not_found"
    assert body["code"] == "relationship_not_found"
    assert body["details"] == {"id": str(missing)}
    assert body["correlation_id"] == response.headers["x-correlation-id"]


def test_other_tenant_cannot_read_relationship(
    client: TestClient,
    tenant_headers: dict[str, str],
    tenant_b: uuid.UUID,
) -> None:
    created = _create_relationship(client, tenant_headers)

    response = client.get(f"/api/crm/relationships/{created['id']}", headers={"x-tenant-id": str(tenant_b)})

    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_tenant_is_required(client: TestClient, tenant_a: uuid.UUID, recorder: PerformanceRecorder) -> None:
    missing = client.get("/api/crm/relationships")
    assert missing.status_code == 400
    assert missing.json()["code"] == "tenant_required"

    invalid = client.get("/api/crm/relationships", headers={"x-tenant-id": "acme"})
    assert invalid.status_code == 400
    assert invalid.json()["code"] == "tenant_invalid"
    assert len(recorder.samples("relationship.list.error")) == 2
    assert recorder.samples("relationship.list") == []


def test_tenant_claim_is_used_without_header(client: TestClient, tenant_a: uuid.UUID) -> None:
    app.dependency_overrides[get_current_user] = lambda: AuthUser(sub="user-1", roles=["user"], tenant_id=str(tenant_a))

    response = client.get("/api/crm/relationships")

    assert response.status_code == 200
    assert response.json()["meta"]["tenant_id"] == str(tenant_a)


def test_tenant_header_must_match_claim(
    client: TestClient,
    tenant_a: uuid.UUID,
    tenant_b: uuid.UUID,
    recorder: PerformanceRecorder,
) -> None:
    app.dependency_overrides[get_current_user] = lambda: AuthUser(sub="user-1", roles=["user"], tenant_id=str(tenant_a))

    response = client.get("/api/crm/relationships", headers={"x-tenant-id": str(tenant_b)})

    assert response.status_code == 403
    assert response.json()["code"] == "tenant_mismatch"
    assert len(recorder.samples("relationship.list.error")) == 1


def test_invalid_body_uses_error_envelope(
    client: TestClient,
    tenant_headers: dict[str, str],
    recorder: PerformanceRecorder,
) -> None:
    response = client.post("/api/crm/relationships", json={"name": ""}, headers=tenant_headers)

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "validation_error"
    assert body["code"] == "relationship.create.invalid_params"
    assert body["details"]["errors"][0]["loc"] == ["name"]
    assert body["correlation_id"] == response.headers["x-correlation-id"]
    assert len(recorder.samples("relationship.create.error")) == 1


def test_invalid_list_params_are_rejected(client: TestClient, tenant_headers: dict[str, str]) -> None:
    for limit in ("0", "101"):
        response = client.get("/api/crm/relationships", params={"limit": limit}, headers=tenant_headers)
        assert response.status_code == 422
        assert response.json()["code"] == "relationship.list.invalid_params"

    bad_type = client.get("/api/crm/relationships", params={"type": "robot"}, headers=tenant_headers)
    assert bad_type.status_code == 422


def test_list_relationships_paginates(client: TestClient, tenant_headers: dict[str, str]) -> None:
    ids = sorted(_create_relationship(client, tenant_headers, name=f"Contact {index}")["id"] for index in range(3))

    first = client.get("/api/crm/relationships", params={"limit": 2, "include_total": "true"}, headers=tenant_headers)
    assert first.status_code == 200
    page = first.json()
    assert [item["id"] for item in page["data"]] == ids[:2]
    assert page["meta"]["pagination"] == {"cursor": ids[1], "has_more": True, "limit": 2, "total_count": 3}

    second = client.get(
        "/api/crm/relationships",
        params={"limit": 2, "cursor": page["meta"]["pagination"]["cursor"]},
        headers=tenant_headers,
    )
    rest = second.json()
    assert [item["id"] for item in rest["data"]] == ids[2:]
    assert rest["meta"]["pagination"]["has_more"] is False
    assert rest["meta"]["pagination"]["cursor"] is None


def test_list_relationships_filters(client: TestClient, tenant_headers: dict[str, str]) -> None:
    _create_relationship(client, tenant_headers, name="Ada Lovelace", type="individual", tags=["vip"])
    _create_relationship(client, tenant_headers, name="Initech", email=None, type="company", tags=["smb"])

    companies = client.get("/api/crm/relationships", params={"type": "company"}, headers=tenant_headers)
    assert [item["name"] for item in companies.json()["data"]] == ["Initech"]

    tagged = client.get("/api/crm/relationships", params=[("tags", "vip")], headers=tenant_headers)
    assert [item["name"] for item in tagged.json()["data"]] == ["Ada Lovelace"]


def test_update_relationship(client: TestClient, tenant_headers: dict[str, str]) -> None:
    created = _create_relationship(client, tenant_headers)

    response = client.patch(
        f"/api/crm/relationships/{created['id']}",
        json={"company": "Globex", "propensity_score": 0.75},
        headers=tenant_headers,
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["company"] == "Globex"
    assert data["propensity_score"] == 0.75
    assert data["name"] == "Jane Doe"


def test_update_rejects_unknown_fields(client: TestClient, tenant_headers: dict[str, str]) -> None:
    created = _create_relationship(client, tenant_headers)

    response = client.patch(
        f"/api/crm/relationships/{created['id']}",
        json={"tenant_id": str(uuid.uuid4())},
        headers=tenant_headers,
    )

    assert response.status_code == 422


def test_interactions_are_recorded_and_listed(client: TestClient, tenant_headers: dict[str, str]) -> None:
    relationship = _create_relationship(client, tenant_headers)

    for subject in ("Intro call", "Follow-up"):
        response = client.post(
            "/api/crm/interactions",
            json={"relationship_id": relationship["id"], "type": "call", "subject": subject, "direction": "outbound"},
            headers=tenant_headers,
        )
        assert response.status_code == 201
        assert response.json()["data"]["subject"] == subject

    listing = client.get(
        f"/api/crm/relationships/{relationship['id']}/interactions",
        params={"include_total": "true"},
        headers=tenant_headers,
    )
    assert listing.status_code == 200
    body = listing.json()
    assert sorted(item["subject"] for item in body["data"]) == ["Follow-up", "Intro call"]
    assert body["meta"]["pagination"]["total_count"] == 2

    detail = client.get(f"/api/crm/relationships/{relationship['id']}", headers=tenant_headers).json()["data"]
    assert detail["metadata"]["interaction_count"] == 2
    assert detail["last_interaction_at"] is not None


def test_interactions_for_unknown_relationship(client: TestClient, tenant_headers: dict[str, str]) -> None:
    response = client.get(f"/api/crm/relationships/{uuid.uuid4()}/interactions", headers=tenant_headers)

    assert response.status_code == 404


def test_signals_require_a_target(client: TestClient, tenant_headers: dict[str, str]) -> None:
    relationship = _create_relationship(client, tenant_headers)

    missing_target = client.post("/api/crm/signals", json={"type": "website_visit"}, headers=tenant_headers)
    assert missing_target.status_code == 422

    recorded = client.post(
        "/api/crm/signals",
        json={"relationship_id": relationship["id"], "type": "website_visit", "strength": "strong"},
        headers=tenant_headers,
    )
    assert recorded.status_code == 201
    assert recorded.json()["data"]["strength"] == "strong"

    detail = client.get(f"/api/crm/relationships/{relationship['id']}", headers=tenant_headers).json()["data"]
    assert detail["metadata"]["signal_count"] == 1
