from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.analytics.schemas import (
    AdvisorDetailRead,
    AdvisorDetailRequest,
    AdvisorTableRead,
    AdvisorTableRequest,
    ConversionRatesRead,
    ConversionRatesRequest,
    ConversionTrendsRead,
    ConversionTrendsRequest,
    DataFreshnessRead,
    DetailRecordsRead,
    DetailRecordsRequest,
    GcFilterOptionsRead,
    GcHubFilters,
    GcPeriodSummaryRead,
    LeaderboardRead,
    LeaderboardRequest,
)
from app.analytics.service import advisor_hub_service, analytics_service
from app.core.auth import get_permissions
from app.core.database import get_db
from app.platform.security.context import Permissions
from app.platform.security.guards import page_guard
from app.platform.security.roles import BLANKET_DENIED_ROLES, PageId, Role


dashboard_router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])
sga_hub_router = APIRouter(prefix="/api/sga-hub", tags=["sga-hub"])
gc_hub_router = APIRouter(prefix="/api/gc-hub", tags=["gc-hub"])

LEADERBOARD_ROLES = (Role.ADMIN, Role.MANAGER, Role.SGA, Role.REVOPS_ADMIN)

dashboard_guard = page_guard(PageId.FUNNEL_PERFORMANCE, forbid=BLANKET_DENIED_ROLES)
leaderboard_guard = page_guard(PageId.SGA_HUB, forbid=BLANKET_DENIED_ROLES, allow_roles=LEADERBOARD_ROLES)
gc_hub_guard = page_guard(PageId.CAPITAL_PARTNER_HUB)


@dashboard_router.post("/conversion-rates", response_model=ConversionRatesRead)
def conversion_rates(
    payload: ConversionRatesRequest,
    permissions: Permissions = Depends(dashboard_guard),
) -> ConversionRatesRead:
    return analytics_service.conversion_rates(permissions, payload)


@dashboard_router.post("/conversion-trends", response_model=ConversionTrendsRead)
def conversion_trends(
    payload: ConversionTrendsRequest,
    permissions: Permissions = Depends(dashboard_guard),
) -> ConversionTrendsRead:
    return analytics_service.conversion_trends(permissions, payload)


@dashboard_router.post("/detail-records", response_model=DetailRecordsRead)
def detail_records(
    payload: DetailRecordsRequest,
    permissions: Permissions = Depends(dashboard_guard),
) -> DetailRecordsRead:
    return analytics_service.detail_records(permissions, payload)


@dashboard_router.get("/data-freshness", response_model=DataFreshnessRead)
def data_freshness(permissions: Permissions = Depends(get_permissions)) -> DataFreshnessRead:
    return analytics_service.data_freshness()


@sga_hub_router.post("/leaderboard", response_model=LeaderboardRead)
def leaderboard(
    payload: LeaderboardRequest,
    permissions: Permissions = Depends(leaderboard_guard),
) -> LeaderboardRead:
    return analytics_service.leaderboard(permissions, payload)


@gc_hub_router.post("/advisors", response_model=AdvisorTableRead)
def advisors(
    payload: AdvisorTableRequest,
    db: Session = Depends(get_db),
    permissions: Permissions = Depends(gc_hub_guard),
) -> AdvisorTableRead:
    return advisor_hub_service.advisor_table(db, permissions, payload)


@gc_hub_router.post("/summary", response_model=GcPeriodSummaryRead)
def summary(
    payload: GcHubFilters,
    db: Session = Depends(get_db),
    permissions: Permissions = Depends(gc_hub_guard),
) -> GcPeriodSummaryRead:
    return advisor_hub_service.period_summary(db, permissions, payload)


@gc_hub_router.post("/filters", response_model=GcFilterOptionsRead)
def filters(
    db: Session = Depends(get_db),
    permissions: Permissions = Depends(gc_hub_guard),
) -> GcFilterOptionsRead:
    return advisor_hub_service.filter_options(db, permissions)


@gc_hub_router.post("/advisor-detail", response_model=AdvisorDetailRead)
def advisor_detail(
    payload: AdvisorDetailRequest,
    db: Session = Depends(get_db),
    permissions: Permissions = Depends(gc_hub_guard),
) -> AdvisorDetailRead:
    advisor_name = (payload.advisor_name or "").strip()
    if not advisor_name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="advisor_name is required")

    detail = advisor_hub_service.advisor_detail(db, permissions, advisor_name)
    if detail is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="advisor not found")
    return detail
