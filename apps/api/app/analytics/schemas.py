from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from app.analytics.funnel import FunnelMode, Granularity


DetailMetricName = Literal["contacted", "mql", "sql", "sqo", "joined"]
FreshnessStatus = Literal["fresh", "recent", "stale", "very_stale", "unknown"]
AdvisorSortField = Literal[
    "advisor_name",
    "account_name",
    "period_start",
    "gross_revenue",
    "commissions_paid",
    "amount_earned",
]


class DashboardFilters(BaseModel):
    start_date: date
    end_date: date
    channel: str | None = None
    source: str | None = None
    sga: str | None = None
    sgm: str | None = None

    @model_validator(mode="after")
    def _window_is_ordered(self) -> "DashboardFilters":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class ConversionRatesRequest(DashboardFilters):
    mode: FunnelMode = FunnelMode.PERIOD


class ConversionTrendsRequest(DashboardFilters):
    mode: FunnelMode = FunnelMode.PERIOD
    granularity: Granularity = Granularity.QUARTER


class DetailRecordsRequest(DashboardFilters):
    metric_filter: DetailMetricName = "sql"
    limit: int | None = Field(default=None, ge=1, le=50000)


class StageRateRead(BaseModel):
    numerator: int
    denominator: int
    rate: float


class ConversionRatesRead(BaseModel):
    mode: FunnelMode
    contacted_to_mql: StageRateRead
    mql_to_sql: StageRateRead
    sql_to_sqo: StageRateRead
    sqo_to_joined: StageRateRead


class TrendPointRead(BaseModel):
    period: str
    contacted_to_mql_rate: float
    mql_to_sql_rate: float
    sql_to_sqo_rate: float
    sqo_to_joined_rate: float
    sqls: int
    sqos: int
    joined: int
    is_selected_period: bool


class ConversionTrendsRead(BaseModel):
    mode: FunnelMode
    granularity: Granularity
    trends: list[TrendPointRead]


class DetailRecordRead(BaseModel):
    id: str | None
    advisor_name: str | None
    source: str | None
    channel: str | None
    stage_name: str | None
    sga_owner: str | None
    sgm_owner: str | None
    relevant_date: date | None


class DetailRecordsRead(BaseModel):
    records: list[DetailRecordRead]
    count: int


class DataFreshnessRead(BaseModel):
    last_updated: datetime | None
    hours_ago: int
    minutes_ago: int
    is_stale: bool
    status: FreshnessStatus


class LeaderboardRequest(BaseModel):
    start_date: date
    end_date: date
    channels: list[str] = Field(min_length=1)
    sources: list[str] | None = None
    sga_names: list[str] | None = None

    @model_validator(mode="after")
    def _window_is_ordered(self) -> "LeaderboardRequest":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class LeaderboardEntryRead(BaseModel):
    name: str
    count: int
    rank: int


class LeaderboardRead(BaseModel):
    entries: list[LeaderboardEntryRead]


class GcHubFilters(BaseModel):
    start_date: date | None = None
    end_date: date | None = None
    account_names: list[str] | None = None
    advisor_names: list[str] | None = None
    billing_frequency: str | None = None


class AdvisorTableRequest(GcHubFilters):
    sort_by: AdvisorSortField = "gross_revenue"
    sort_dir: Literal["asc", "desc"] = "desc"
    search: str | None = None


class AdvisorRowRead(BaseModel):
    advisor_name: str
    account_name: str | None
    orion_representative_id: str | None
    period: str
    period_start: date
    gross_revenue: float | None
    commissions_paid: float | None
    amount_earned: float | None
    billing_frequency: str | None
    billing_style: str | None
    data_source: str
    is_manually_overridden: bool


class AdvisorTableRead(BaseModel):
    records: list[AdvisorRowRead]
    count: int
    is_anonymized: bool


class AdvisorDetailRequest(BaseModel):
    advisor_name: str | None = None


class AdvisorPeriodRead(BaseModel):
    id: str | None = None
    period: str
    period_start: date
    gross_revenue: float | None
    commissions_paid: float | None
    amount_earned: float | None
    data_source: str
    is_manually_overridden: bool | None = None
    original_gross_revenue: float | None = None
    original_commissions_paid: float | None = None
    override_reason: str | None = None
    overridden_by: str | None = None
    overridden_at: datetime | None = None


class AdvisorDetailRead(BaseModel):
    advisor_name: str
    account_name: str | None
    orion_representative_id: str | None
    billing_frequency: str | None
    billing_style: str | None
    periods: list[AdvisorPeriodRead]
    is_anonymized: bool


class PeriodSummaryRead(BaseModel):
    period: str
    period_start: date
    total_revenue: float
    total_commissions: float
    total_amount_earned: float
    active_advisor_count: int
    revenue_per_advisor: float


class GcPeriodSummaryRead(BaseModel):
    summary: list[PeriodSummaryRead]
    is_anonymized: bool


class GcFilterOptionsRead(BaseModel):
    account_names: list[str]
    advisor_names: list[str]
    advisors_by_account: dict[str, list[str]]
    periods: list[str]
    billing_frequencies: list[str]
    is_anonymized: bool


class PermissionsRead(BaseModel):
    role: str
    email: str
    allowed_pages: list[int]
    sga_filter: str | None
    sgm_filter: str | None
    recruiter_filter: str | None
    can_export: bool
    can_manage_users: bool
    can_manage_requests: bool
    user_id: str | None
