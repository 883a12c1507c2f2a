from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

import pytest

from app.analytics.funnel import DateWindow
from app.analytics.warehouse import DETAIL_METRICS, BigQueryWarehouse, FunnelScope, InMemoryWarehouse, build_warehouse_client
from app.core.config import get_settings
from app.core.errors import UpstreamQueryFailed


class FakeRow(dict):
    pass


class FakeJob:
    def __init__(self, rows: list[dict[str, Any]]) -> None:
        self._rows = rows
        self.result_timeout: float | None = None

    def result(self, timeout: float | None = None) -> list[FakeRow]:
        self.result_timeout = timeout
        return [FakeRow(row) for row in self._rows]


class FakeClient:
    def __init__(self, rows: list[dict[str, Any]] | None = None, error: Exception | None = None) -> None:
        self.rows = rows or []
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def query(self, sql: str, job_config: Any = None, timeout: float | None = None) -> FakeJob:
        self.calls.append({"sql": sql, "job_config": job_config, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return FakeJob(self.rows)

    def parameters(self, index: int = -1) -> dict[str, Any]:
        params = self.calls[index]["job_config"].query_parameters
        return {param.name: getattr(param, "value", None) or getattr(param, "values", None) for param in params}


WINDOW = DateWindow(start=date(2025, 1, 1), end=date(2025, 3, 31))


def _warehouse(client: FakeClient) -> BigQueryWarehouse:
    return BigQueryWarehouse(
        project_id="test-project",
        funnel_table="analytics.vw_funnel_master",
        dataset="analytics",
        freshness_tables=["Lead", "Opportunity"],
        excluded_sgas=["Savvy Operations"],
        timeout_seconds=12.0,
        client=client,  # type: ignore[arg-type]
    )


def test_funnel_records_bind_scope_as_parameters() -> None:
    client = FakeClient(rows=[{"contacted_date": date(2025, 1, 3), "is_mql": 1, "eligible_contacted": 1}])

    records = _warehouse(client).funnel_records(FunnelScope(channel="Outbound", sga="O'Brien"), WINDOW)

    assert records[0].contacted_date == date(2025, 1, 3)
    assert records[0].is_mql is True
    call = client.calls[0]
    assert call["timeout"] == 12.0
    assert "O'Brien" not in call["sql"]
    assert "@sga" in call["sql"]
    assert "@source" not in call["sql"]
    params = client.parameters()
    assert params["sga"] == "O'Brien"
    assert params["channel"] == "Outbound"
    assert params["start_date"] == date(2025, 1, 1)


def test_detail_records_apply_metric_flag_and_limit() -> None:
    client = FakeClient(rows=[{"id": 17, "advisor_name": "Lead", "sqo_date": date(2025, 2, 1)}])

    records = _warehouse(client).detail_records(FunnelScope(), WINDOW, DETAIL_METRICS["sqo"], 25)

    assert records == [
        {
            "id": "17",
            "advisor_name": "Lead",
            "source": None,
            "channel": None,
            "stage_name": None,
            "sga_owner": None,
            "sgm_owner": None,
            "relevant_date": "2025-02-01",
        }
    ]
    sql = client.calls[0]["sql"]
    assert "v.is_sqo_unique = 1" in sql
    assert "LIMIT @limit" in sql
    assert client.parameters()["limit"] == 25


def test_sqo_counts_exclude_configured_sgas_unless_names_given() -> None:
    client = FakeClient(rows=[{"sga_name": "Jane Doe", "sqo_count": 3}, {"sga_name": "Pat Quinn", "sqo_count": None}])
    warehouse = _warehouse(client)

    entries = warehouse.sqo_counts(WINDOW, ["Outbound"], None, None)
    warehouse.sqo_counts(WINDOW, ["Outbound"], ["Events"], ["Jane Doe"])

    assert [(entry.name, entry.count) for entry in entries] == [("Jane Doe", 3), ("Pat Quinn", 0)]
    assert "NOT IN UNNEST(@excluded_sgas)" in client.calls[0]["sql"]
    assert client.parameters(0)["excluded_sgas"] == ["Savvy Operations"]
    assert "IN UNNEST(@sga_names)" in client.calls[1]["sql"]
    assert client.parameters(1)["sources"] == ["Events"]


def test_last_data_load_is_utc() -> None:
    client = FakeClient(rows=[{"last_updated": datetime(2025, 6, 1, 8, 30)}])

    loaded = _warehouse(client).last_data_load()

    assert loaded == datetime(2025, 6, 1, 8, 30, tzinfo=timezone.utc)
    assert client.parameters()["tables"] == ["Lead", "Opportunity"]


def test_last_data_load_without_rows_is_none() -> None:
    assert _warehouse(FakeClient(rows=[{"last_updated": None}])).last_data_load() is None


def test_query_errors_become_upstream_failures() -> None:
    client = FakeClient(error=RuntimeError("Access Denied: Table analytics.vw_funnel_master"))

    with pytest.raises(UpstreamQueryFailed) as exc_info:
        _warehouse(client).funnel_records(FunnelScope(), WINDOW)

    assert exc_info.value.operation == "funnel_records"
    assert "Access Denied" in (exc_info.value.detail or "")


def test_backend_is_chosen_from_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LEADERBOARD_EXCLUDED_SGAS", "Ops Bot, Marketing Bot")
    get_settings.cache_clear()
    memory = build_warehouse_client()
    assert isinstance(memory, InMemoryWarehouse)
    assert memory.excluded_sgas == frozenset({"Ops Bot", "Marketing Bot"})

    monkeypatch.setenv("WAREHOUSE_BACKEND", "bigquery")
    get_settings.cache_clear()
    assert isinstance(build_warehouse_client(), BigQueryWarehouse)
