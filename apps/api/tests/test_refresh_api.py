from __future__ import annotations

import uuid

import pytest
from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.platform.refresh.pipeline import ExternalRunState, StubRefreshPipeline
from app.platform.refresh.service import RefreshCoordinator

from conftest import CRON_SECRET


CRON_HEADERS = {"Authorization": f"Bearer {CRON_SECRET}"}


def test_admin_trigger_is_accepted_then_cooldown_rejects(
    client: TestClient,
    auth_headers,
    coordinator: RefreshCoordinator,
    pipeline: StubRefreshPipeline,
) -> None:
    first = client.post("/api/admin/trigger-transfer", headers=auth_headers("admin"))
    second = client.post("/api/admin/trigger-transfer", headers=auth_headers("manager"))

    assert first.status_code == 202
    body = first.json()
    assert body["success"] is True
    assert body["estimated_duration"] == "3-5 minutes"
    assert uuid.UUID(body["run_id"])

    assert second.status_code == 429
    rejected = second.json()
    assert rejected["code"] == "COOLDOWN_ACTIVE"
    minutes = rejected["details"]["cooldown_minutes_remaining"]
    assert 1 <= minutes <= 15
    assert second.headers["Retry-After"] == str(minutes * 60)
    assert pipeline.start_calls == 1


@pytest.mark.parametrize("role", ["sga", "viewer", "revops_admin"])
def test_trigger_requires_admin_or_manager(client: TestClient, auth_headers, coordinator: RefreshCoordinator, role: str) -> None:
    claims = {"sgaFilter": "Jane Doe"} if role == "sga" else {}

    response = client.post("/api/admin/trigger-transfer", headers=auth_headers(role, **claims))

    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"


def test_status_reports_cooldown_and_run_progress(
    client: TestClient,
    auth_headers,
    coordinator: RefreshCoordinator,
    pipeline: StubRefreshPipeline,
) -> None:
    idle = client.get("/api/admin/trigger-transfer", headers=auth_headers("admin"))
    assert idle.status_code == 200
    assert idle.json()["within_cooldown"] is False

    run_id = client.post("/api/admin/trigger-transfer", headers=auth_headers("admin")).json()["run_id"]
    blocked = client.post("/api/admin/trigger-transfer", headers=auth_headers("admin"))
    assert blocked.status_code == 429

    cooling = client.get("/api/admin/trigger-transfer", headers=auth_headers("manager"))
    assert cooling.json()["within_cooldown"] is True
    assert cooling.json()["last_run_id"] == run_id

    running = client.get("/api/admin/trigger-transfer", params={"run_id": run_id}, headers=auth_headers("admin"))
    assert running.json()["state"] == "running"
    assert running.json()["is_complete"] is False

    pipeline.finish(running.json()["external_run_id"], ExternalRunState.SUCCEEDED)
    done = client.get("/api/admin/trigger-transfer", params={"run_id": run_id}, headers=auth_headers("admin"))
    assert done.json()["state"] == "succeeded"
    assert done.json()["success"] is True
    assert done.json()["cache_invalidated"] is True

    runs = client.get("/api/admin/transfer-runs", headers=auth_headers("admin"))
    assert [run["run_id"] for run in runs.json()] == [run_id]


def test_status_for_unknown_run_is_not_found(client: TestClient, auth_headers, coordinator: RefreshCoordinator) -> None:
    response = client.get(
        "/api/admin/trigger-transfer",
        params={"run_id": str(uuid.uuid4())},
        headers=auth_headers("admin"),
    )

    assert response.status_code == 404


def test_refresh_cache_is_admin_only(client: TestClient, auth_headers) -> None:
    denied = client.post("/api/admin/refresh-cache", headers=auth_headers("manager"))
    allowed = client.post("/api/admin/refresh-cache", headers=auth_headers("admin"))

    assert denied.status_code == 403
    assert allowed.status_code == 200
    assert allowed.json()["removed"] == {"dashboard": 0, "sga-hub": 0}


def test_cron_trigger_reports_cooldown_without_error(client: TestClient, coordinator: RefreshCoordinator) -> None:
    first = client.get("/api/cron/trigger-transfer", headers=CRON_HEADERS)
    second = client.get("/api/cron/trigger-transfer", headers=CRON_HEADERS)

    assert first.status_code == 200
    assert first.json()["success"] is True
    assert second.status_code == 200
    assert second.json()["success"] is False
    assert second.json()["cooldown_minutes_remaining"] >= 1


def test_cron_rejects_wrong_secret(client: TestClient, coordinator: RefreshCoordinator, pipeline: StubRefreshPipeline) -> None:
    wrong = client.get("/api/cron/trigger-transfer", headers={"Authorization": "Bearer nope"})
    missing = client.get("/api/cron/refresh-cache")

    assert wrong.status_code == 401
    assert missing.status_code == 401
    assert pipeline.start_calls == 0


def test_cron_without_configured_secret_is_server_error(
    client: TestClient,
    coordinator: RefreshCoordinator,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("CRON_SECRET", "")
    get_settings.cache_clear()

    response = client.get("/api/cron/trigger-transfer", headers={"Authorization": "Bearer "})

    assert response.status_code == 500


def test_cron_refresh_cache_invalidates(client: TestClient) -> None:
    response = client.get("/api/cron/refresh-cache", headers=CRON_HEADERS)

    assert response.status_code == 200
    assert response.json()["success"] is True
