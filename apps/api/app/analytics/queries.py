from __future__ import annotations

from typing import Any

from app.analytics.funnel import DateWindow, conversion_rates, conversion_trends, rolling_trend_window, trend_span
from app.analytics.leaderboard import rank_leaderboard
from app.analytics.schemas import (
    ConversionRatesRequest,
    ConversionTrendsRequest,
    DashboardFilters,
    DetailRecordsRequest,
    LeaderboardRequest,
)
from app.analytics.warehouse import DETAIL_METRICS, FunnelScope, get_warehouse_client
from app.platform.cache import CacheTag, QueryClass, cached_query


# Every function below returns JSON-shaped data: that is what the cache stores
# and what a hit hands back.


def _scope(filters: DashboardFilters) -> FunnelScope:
    return FunnelScope(channel=filters.channel, source=filters.source, sga=filters.sga, sgm=filters.sgm)


@cached_query("dashboard.conversion_rates", CacheTag.DASHBOARD)
def conversion_rates_query(filters: ConversionRatesRequest) -> dict[str, Any]:
    window = DateWindow(start=filters.start_date, end=filters.end_date)
    records = get_warehouse_client().funnel_records(_scope(filters), window)
    return {"mode": filters.mode.value, **conversion_rates(records, window, filters.mode).to_payload()}


@cached_query("dashboard.conversion_trends", CacheTag.DASHBOARD)
def conversion_trends_query(filters: ConversionTrendsRequest) -> dict[str, Any]:
    buckets = rolling_trend_window(filters.start_date, filters.granularity)
    records = get_warehouse_client().funnel_records(_scope(filters), trend_span(buckets))
    points = conversion_trends(records, filters.start_date, filters.granularity, filters.mode)
    return {
        "mode": filters.mode.value,
        "granularity": filters.granularity.value,
        "trends": [point.to_payload() for point in points],
    }


@cached_query("dashboard.detail_records", CacheTag.DASHBOARD, QueryClass.DETAIL)
def detail_records_query(filters: DetailRecordsRequest, limit: int) -> dict[str, Any]:
    window = DateWindow(start=filters.start_date, end=filters.end_date)
    metric = DETAIL_METRICS[filters.metric_filter]
    records = get_warehouse_client().detail_records(_scope(filters), window, metric, limit)
    return {"records": records, "count": len(records)}


@cached_query("dashboard.data_freshness", CacheTag.DASHBOARD)
def last_data_load_query() -> dict[str, Any]:
    loaded_at = get_warehouse_client().last_data_load()
    return {"last_updated": loaded_at.isoformat() if loaded_at else None}


@cached_query("sga_hub.leaderboard", CacheTag.SGA_HUB)
def leaderboard_query(filters: LeaderboardRequest) -> dict[str, Any]:
    window = DateWindow(start=filters.start_date, end=filters.end_date)
    entries = get_warehouse_client().sqo_counts(window, filters.channels, filters.sources, filters.sga_names)
    return {"entries": [entry.to_payload() for entry in rank_leaderboard(entries)]}
