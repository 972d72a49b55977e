from __future__ import annotations

import json
import logging
import uuid

import pytest
from fastapi.testclient import TestClient

from app.context import reset_correlation_id, reset_tenant_id, set_correlation_id, set_tenant_id
from app.logging import MASKED_VALUE, JsonLogFormatter, RequestContextFilter, mask_pii


def test_logs_include_correlation_id_for_http(
    client: TestClient,
    tenant_headers: dict[str, str],
    tenant_a: uuid.UUID,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    path = f"/api/crm/intents/{uuid.uuid4()}"
    response = client.get(path, headers={**tenant_headers, "X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/intents/{id}"
        and getattr(record, "status_code", None) == 404
        and getattr(record, "tenant_id", None) == str(tenant_a)
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_service_logs_carry_tenant_and_operation(
    client: TestClient,
    tenant_headers: dict[str, str],
    tenant_a: uuid.UUID,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/api/crm/relationships", headers={**tenant_headers, "X-Correlation-Id": "svc-1"})
    assert response.status_code == 200

    records = [record for record in caplog.records if record.name == "app.crm.service"]
    assert any(
        record.getMessage() == "operation.completed"
        and getattr(record, "operation", None) == "relationship.list"
        and getattr(record, "tenant_id", None) == str(tenant_a)
        and getattr(record, "correlation_id", None) == "svc-1"
        for record in records
    )


def test_failed_operation_is_logged(
    client: TestClient,
    tenant_headers: dict[str, str],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    client.get(f"/api/crm/relationships/{uuid.uuid4()}", headers=tenant_headers)

    assert any(
        record.getMessage() == "operation.failed"
        and getattr(record, "operation", None) == "relationship.get"
        and getattr(record, "error_code", None) == "relationship_not_found"
        for record in caplog.records
    )


def test_mask_pii_replaces_sensitive_values() -> None:
    masked = mask_pii({"email": "jane@example.com", "phone": "", "operation": "relationship.create"})

    assert masked["email"] == MASKED_VALUE
    assert masked["phone"] == ""
    assert masked["operation"] == "relationship.create"


def test_json_formatter_emits_context_and_masks_fields() -> None:
    record = logging.makeLogRecord(
        {
            "name": "app.crm.service",
            "levelno": logging.INFO,
            "levelname": "INFO",
            "msg": "operation.completed",
            "operation": "relationship.create",
            "email": "jane@example.com",
            "unlisted": "dropped",
        }
    )
    correlation_token = set_correlation_id("corr-json")
    tenant_token = set_tenant_id("tenant-json")
    try:
        RequestContextFilter().filter(record)
    finally:
        reset_tenant_id(tenant_token)
        reset_correlation_id(correlation_token)

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "operation.completed"
    assert payload["logger"] == "app.crm.service"
    assert payload["correlation_id"] == "corr-json"
    assert payload["fields"]["tenant_id"] == "tenant-json"
    assert payload["fields"]["operation"] == "relationship.create"
    assert payload["fields"]["email"] == MASKED_VALUE
    assert "unlisted" not in payload["fields"]
