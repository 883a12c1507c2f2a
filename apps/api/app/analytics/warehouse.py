from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from threading import Lock
from typing import Any, Protocol

from google.cloud import bigquery
from opentelemetry import trace

from app.analytics.funnel import DateWindow, FunnelRecord
from app.analytics.leaderboard import LeaderboardEntry
from app.context import get_correlation_id
from app.core.config import get_settings
from app.core.errors import UpstreamQueryFailed


logger = logging.getLogger("app.warehouse")
tracer = trace.get_tracer("app.analytics.warehouse")


@dataclass(frozen=True, slots=True)
class FunnelScope:
    """Row filters applied inside the warehouse query."""

    channel: str | None = None
    source: str | None = None
    sga: str | None = None
    sgm: str | None = None


@dataclass(frozen=True, slots=True)
class DetailMetric:
    name: str
    date_column: str
    flag_column: str | None


DETAIL_METRICS: dict[str, DetailMetric] = {
    "contacted": DetailMetric("contacted", "contacted_date", None),
    "mql": DetailMetric("mql", "contacted_date", "is_mql"),
    "sql": DetailMetric("sql", "sql_date", "is_sql"),
    "sqo": DetailMetric("sqo", "sqo_date", "is_sqo"),
    "joined": DetailMetric("joined", "joined_date", "is_joined"),
}

_STAGE_DATE_COLUMNS = ("contacted_date", "sql_date", "sqo_date", "joined_date")
_FLAG_COLUMNS = (
    "is_mql",
    "is_sql",
    "is_sqo",
    "is_joined",
    "eligible_contacted",
    "eligible_mql",
    "eligible_sql",
    "eligible_sqo",
    "contacted_to_mql",
    "mql_to_sql",
    "sql_to_sqo",
    "sqo_to_joined",
)
_DETAIL_COLUMNS = ("id", "advisor_name", "source", "channel", "stage_name", "sga_owner", "sgm_owner")


def _as_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def funnel_record_from_row(row: Mapping[str, Any]) -> FunnelRecord:
    values: dict[str, Any] = {column: _as_date(row.get(column)) for column in _STAGE_DATE_COLUMNS}
    values.update({column: bool(row.get(column) or 0) for column in _FLAG_COLUMNS})
    return FunnelRecord(**values)


def detail_record_from_row(row: Mapping[str, Any], metric: DetailMetric) -> dict[str, Any]:
    record = {column: row.get(column) for column in _DETAIL_COLUMNS}
    record["id"] = str(record["id"]) if record["id"] is not None else None
    relevant = _as_date(row.get(metric.date_column))
    record["relevant_date"] = relevant.isoformat() if relevant else None
    return record


class WarehouseClient(Protocol):
    """Read-only analytical store. Deterministic between data refreshes."""

    def funnel_records(self, scope: FunnelScope, window: DateWindow) -> list[FunnelRecord]: ...

    def detail_records(self, scope: FunnelScope, window: DateWindow, metric: DetailMetric, limit: int) -> list[dict[str, Any]]: ...

    def sqo_counts(
        self,
        window: DateWindow,
        channels: Sequence[str],
        sources: Sequence[str] | None,
        sga_names: Sequence[str] | None,
    ) -> list[LeaderboardEntry]: ...

    def last_data_load(self) -> datetime | None: ...


@dataclass(slots=True)
class InMemoryWarehouse:
    """Warehouse over in-process rows shaped like the funnel view projection."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    active_sgas: list[str] = field(default_factory=list)
    excluded_sgas: frozenset[str] = frozenset()
    loaded_at: datetime | None = None
    query_count: int = 0
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def _count(self) -> None:
        with self._lock:
            self.query_count += 1

    def _in_scope(self, row: Mapping[str, Any], scope: FunnelScope) -> bool:
        if scope.channel and (row.get("channel") or "Other") != scope.channel:
            return False
        if scope.source and row.get("source") != scope.source:
            return False
        if scope.sga and row.get("sga_owner") != scope.sga:
            return False
        if scope.sgm and row.get("sgm_owner") != scope.sgm:
            return False
        return True

    def funnel_records(self, scope: FunnelScope, window: DateWindow) -> list[FunnelRecord]:
        self._count()
        records: list[FunnelRecord] = []
        for row in self.rows:
            if not self._in_scope(row, scope):
                continue
            if any(window.contains(_as_date(row.get(column))) for column in _STAGE_DATE_COLUMNS):
                records.append(funnel_record_from_row(row))
        return records

    def detail_records(self, scope: FunnelScope, window: DateWindow, metric: DetailMetric, limit: int) -> list[dict[str, Any]]:
        self._count()
        matched = [
            row
            for row in self.rows
            if self._in_scope(row, scope)
            and window.contains(_as_date(row.get(metric.date_column)))
            and (metric.flag_column is None or bool(row.get(metric.flag_column)))
        ]
        matched.sort(key=lambda row: (_as_date(row.get(metric.date_column)), str(row.get("id"))), reverse=True)
        return [detail_record_from_row(row, metric) for row in matched[:limit]]

    def sqo_counts(
        self,
        window: DateWindow,
        channels: Sequence[str],
        sources: Sequence[str] | None,
        sga_names: Sequence[str] | None,
    ) -> list[LeaderboardEntry]:
        self._count()
        if sga_names:
            names = [name for name in self.active_sgas if name in set(sga_names)]
        else:
            names = [name for name in self.active_sgas if name not in self.excluded_sgas]

        counts = dict.fromkeys(names, 0)
        for row in self.rows:
            owner = row.get("sga_owner")
            if owner not in counts or not row.get("is_sqo"):
                continue
            if not window.contains(_as_date(row.get("sqo_date"))):
                continue
            if row.get("channel") not in set(channels):
                continue
            if sources and row.get("source") not in set(sources):
                continue
            counts[owner] += 1
        return [LeaderboardEntry(name=name, count=count) for name, count in counts.items()]

    def last_data_load(self) -> datetime | None:
        self._count()
        return self.loaded_at


# Column aliases shared by every funnel-view SELECT below.
_FUNNEL_PROJECTION = """
    DATE(v.stage_entered_contacting__c) AS contacted_date,
    DATE(v.converted_date_raw) AS sql_date,
    DATE(v.Date_Became_SQO__c) AS sqo_date,
    DATE(v.advisor_join_date__c) AS joined_date,
    v.is_mql AS is_mql,
    v.is_sql AS is_sql,
    v.is_sqo_unique AS is_sqo,
    v.is_joined_unique AS is_joined,
    v.eligible_for_contacted_conversions AS eligible_contacted,
    v.eligible_for_mql_conversions AS eligible_mql,
    v.eligible_for_sql_conversions AS eligible_sql,
    v.eligible_for_sqo_conversions AS eligible_sqo,
    v.contacted_to_mql_progression AS contacted_to_mql,
    v.mql_to_sql_progression AS mql_to_sql,
    v.sql_to_sqo_progression AS sql_to_sqo,
    v.sqo_to_joined_progression AS sqo_to_joined
"""

_DETAIL_PROJECTION = """
    v.primary_key AS id,
    v.advisor_name AS advisor_name,
    v.Original_source AS source,
    COALESCE(v.Channel_Grouping_Name, 'Other') AS channel,
    v.StageName AS stage_name,
    v.SGA_Owner_Name__c AS sga_owner,
    v.SGM_Owner_Name__c AS sgm_owner
"""


class BigQueryWarehouse:
    """Warehouse backed by the BigQuery funnel view. Every job waits at most the configured timeout."""

    def __init__(self, *, project_id: str | None, funnel_table: str, dataset: str, freshness_tables: Sequence[str],
                 excluded_sgas: Sequence[str], timeout_seconds: float, client: bigquery.Client | None = None) -> None:
        self._project_id = project_id
        self._funnel_table = funnel_table
        self._dataset = dataset
        self._freshness_tables = list(freshness_tables)
        self._excluded_sgas = list(excluded_sgas)
        self._timeout_seconds = timeout_seconds
        self._client = client

    def _get_client(self) -> bigquery.Client:
        if self._client is None:
            self._client = bigquery.Client(project=self._project_id)
        return self._client

    def _run(self, operation: str, sql: str, parameters: list[Any]) -> list[dict[str, Any]]:
        with tracer.start_as_current_span(f"warehouse.{operation}") as span:
            span.set_attribute("operation", operation)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                job = self._get_client().query(
                    sql,
                    job_config=bigquery.QueryJobConfig(query_parameters=parameters),
                    timeout=self._timeout_seconds,
                )
                rows = [dict(row.items()) for row in job.result(timeout=self._timeout_seconds)]
            except Exception as exc:
                logger.exception("warehouse.query_failed", extra={"function_id": operation, "error": str(exc)})
                raise UpstreamQueryFailed(operation, str(exc)) from exc
            span.set_attribute("row_count", len(rows))
            return rows

    def _scope_sql(self, scope: FunnelScope, parameters: list[Any]) -> str:
        conditions: list[str] = []
        if scope.channel:
            conditions.append("COALESCE(v.Channel_Grouping_Name, 'Other') = @channel")
            parameters.append(bigquery.ScalarQueryParameter("channel", "STRING", scope.channel))
        if scope.source:
            conditions.append("v.Original_source = @source")
            parameters.append(bigquery.ScalarQueryParameter("source", "STRING", scope.source))
        if scope.sga:
            conditions.append("v.SGA_Owner_Name__c = @sga")
            parameters.append(bigquery.ScalarQueryParameter("sga", "STRING", scope.sga))
        if scope.sgm:
            conditions.append("v.SGM_Owner_Name__c = @sgm")
            parameters.append(bigquery.ScalarQueryParameter("sgm", "STRING", scope.sgm))
        return "".join(f" AND {condition}" for condition in conditions)

    def _window_parameters(self, window: DateWindow) -> list[Any]:
        return [
            bigquery.ScalarQueryParameter("start_date", "DATE", window.start),
            bigquery.ScalarQueryParameter("end_date", "DATE", window.end),
        ]

    def funnel_records(self, scope: FunnelScope, window: DateWindow) -> list[FunnelRecord]:
        parameters = self._window_parameters(window)
        scope_sql = self._scope_sql(scope, parameters)
        in_window = " OR ".join(
            f"DATE({column}) BETWEEN @start_date AND @end_date"
            for column in (
                "v.stage_entered_contacting__c",
                "v.converted_date_raw",
                "v.Date_Became_SQO__c",
                "v.advisor_join_date__c",
            )
        )
        sql = f"SELECT {_FUNNEL_PROJECTION} FROM `{self._funnel_table}` v WHERE ({in_window}){scope_sql}"
        return [funnel_record_from_row(row) for row in self._run("funnel_records", sql, parameters)]

    def detail_records(self, scope: FunnelScope, window: DateWindow, metric: DetailMetric, limit: int) -> list[dict[str, Any]]:
        source_columns = {
            "contacted_date": "v.stage_entered_contacting__c",
            "sql_date": "v.converted_date_raw",
            "sqo_date": "v.Date_Became_SQO__c",
            "joined_date": "v.advisor_join_date__c",
        }
        flag_columns = {"is_mql": "v.is_mql", "is_sql": "v.is_sql", "is_sqo": "v.is_sqo_unique", "is_joined": "v.is_joined_unique"}
        date_column = source_columns[metric.date_column]

        parameters = self._window_parameters(window)
        parameters.append(bigquery.ScalarQueryParameter("limit", "INT64", limit))
        scope_sql = self._scope_sql(scope, parameters)
        flag_sql = f" AND {flag_columns[metric.flag_column]} = 1" if metric.flag_column else ""
        sql = (
            f"SELECT {_DETAIL_PROJECTION}, DATE({date_column}) AS {metric.date_column} "
            f"FROM `{self._funnel_table}` v "
            f"WHERE DATE({date_column}) BETWEEN @start_date AND @end_date{flag_sql}{scope_sql} "
            f"ORDER BY {metric.date_column} DESC, id DESC LIMIT @limit"
        )
        return [detail_record_from_row(row, metric) for row in self._run("detail_records", sql, parameters)]

    def sqo_counts(
        self,
        window: DateWindow,
        channels: Sequence[str],
        sources: Sequence[str] | None,
        sga_names: Sequence[str] | None,
    ) -> list[LeaderboardEntry]:
        parameters = self._window_parameters(window)
        parameters.append(bigquery.ArrayQueryParameter("channels", "STRING", list(channels)))
        if sga_names:
            sga_sql = "AND u.Name IN UNNEST(@sga_names)"
            parameters.append(bigquery.ArrayQueryParameter("sga_names", "STRING", list(sga_names)))
        else:
            sga_sql = "AND u.Name NOT IN UNNEST(@excluded_sgas)"
            parameters.append(bigquery.ArrayQueryParameter("excluded_sgas", "STRING", self._excluded_sgas))
        source_sql = ""
        if sources:
            source_sql = "AND v.Original_source IN UNNEST(@sources)"
            parameters.append(bigquery.ArrayQueryParameter("sources", "STRING", list(sources)))

        sql = f"""
            WITH active_sgas AS (
              SELECT DISTINCT u.Name AS sga_name
              FROM `{self._dataset}.User` u
              WHERE u.IsSGA__c = TRUE AND u.IsActive = TRUE {sga_sql}
            ),
            sqo_data AS (
              SELECT v.SGA_Owner_Name__c AS sga_name, v.primary_key
              FROM `{self._funnel_table}` v
              WHERE v.is_sqo_unique = 1
                AND DATE(v.Date_Became_SQO__c) BETWEEN @start_date AND @end_date
                AND v.Channel_Grouping_Name IN UNNEST(@channels)
                {source_sql}
            )
            SELECT a.sga_name, COUNT(DISTINCT s.primary_key) AS sqo_count
            FROM active_sgas a
            LEFT JOIN sqo_data s ON a.sga_name = s.sga_name
            GROUP BY a.sga_name
        """
        rows = self._run("sqo_counts", sql, parameters)
        return [LeaderboardEntry(name=str(row["sga_name"]), count=int(row["sqo_count"] or 0)) for row in rows]

    def last_data_load(self) -> datetime | None:
        sql = f"""
            SELECT MAX(TIMESTAMP_MILLIS(last_modified_time)) AS last_updated
            FROM `{self._dataset}.__TABLES__`
            WHERE table_id IN UNNEST(@tables)
        """
        parameters = [bigquery.ArrayQueryParameter("tables", "STRING", self._freshness_tables)]
        rows = self._run("last_data_load", sql, parameters)
        if not rows or rows[0].get("last_updated") is None:
            return None
        value = rows[0]["last_updated"]
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _split_csv(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def build_warehouse_client() -> WarehouseClient:
    settings = get_settings()
    if settings.warehouse_backend.lower() == "bigquery":
        return BigQueryWarehouse(
            project_id=settings.warehouse_project_id,
            funnel_table=settings.warehouse_funnel_table,
            dataset=settings.warehouse_dataset,
            freshness_tables=_split_csv(settings.warehouse_freshness_tables),
            excluded_sgas=_split_csv(settings.leaderboard_excluded_sgas),
            timeout_seconds=settings.upstream_timeout_seconds,
        )
    return InMemoryWarehouse(excluded_sgas=frozenset(_split_csv(settings.leaderboard_excluded_sgas)))


_WAREHOUSE: WarehouseClient | None = None
_WAREHOUSE_LOCK = Lock()


def get_warehouse_client() -> WarehouseClient:
    global _WAREHOUSE
    with _WAREHOUSE_LOCK:
        if _WAREHOUSE is None:
            _WAREHOUSE = build_warehouse_client()
        return _WAREHOUSE


def set_warehouse_client(client: WarehouseClient | None) -> None:
    global _WAREHOUSE
    with _WAREHOUSE_LOCK:
        _WAREHOUSE = client
