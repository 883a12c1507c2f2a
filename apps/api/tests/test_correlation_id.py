from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from app import audit
from app.core.config import get_settings
from app.middleware.rate_limit import reset_rate_limiter


Q1_2025 = {"start_date": "2025-01-01", "end_date": "2025-03-31"}


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get("/api/auth/permissions")
    assert response.status_code == 401
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient, auth_headers) -> None:
    response = client.post(
        "/api/dashboard/conversion-rates",
        json=Q1_2025,
        headers={**auth_headers("recruiter", recruiterFilter="Acme Search"), "X-Correlation-Id": "abc-123"},
    )
    assert response.status_code == 403
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_audit_uses_request_correlation_id(client: TestClient, auth_headers, coordinator) -> None:
    response = client.post(
        "/api/admin/trigger-transfer",
        headers={**auth_headers("admin"), "X-Correlation-Id": "corr-audit-1"},
    )
    assert response.status_code == 202

    trigger_audits = [entry for entry in audit.audit_entries if entry.get("action") == "refresh.trigger"]
    assert trigger_audits
    assert trigger_audits[-1]["correlation_id"] == "corr-audit-1"


def test_denied_guard_audit_carries_correlation_id(client: TestClient, auth_headers) -> None:
    client.post(
        "/api/sga-hub/leaderboard",
        json={**Q1_2025, "channels": ["Outbound"]},
        headers={**auth_headers("viewer"), "X-Correlation-Id": "corr-deny-1"},
    )

    denials = [entry for entry in audit.audit_entries if entry.get("entity_type") == "security.guard"]
    assert denials
    assert denials[-1]["correlation_id"] == "corr-deny-1"


def test_rate_limited_response_includes_correlation_id(
    client: TestClient,
    auth_headers,
    warehouse,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_ANALYTICS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()
    headers = {**auth_headers("admin"), "X-Correlation-Id": "corr-rate-1"}

    first = client.post("/api/dashboard/conversion-rates", json=Q1_2025, headers=headers)
    assert first.status_code == 200

    second = client.post("/api/dashboard/conversion-rates", json=Q1_2025, headers=headers)
    assert second.status_code == 429
    payload = second.json()
    assert payload["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"


def test_unsafe_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get("/api/auth/permissions", headers={"X-Correlation-Id": "x" * 200})

    replaced = response.headers.get("x-correlation-id")
    assert replaced
    assert replaced != "x" * 200
    assert response.json()["correlation_id"] == replaced
