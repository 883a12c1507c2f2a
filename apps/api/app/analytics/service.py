from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, TypeVar

from sqlalchemy import Select, func, or_, select
from sqlalchemy.orm import Session

from app.analytics import queries
from app.analytics.models import AdvisorMapping, AdvisorPeriodRecord
from app.analytics.schemas import (
    AdvisorDetailRead,
    AdvisorRowRead,
    AdvisorTableRead,
    AdvisorTableRequest,
    ConversionRatesRead,
    ConversionRatesRequest,
    ConversionTrendsRead,
    ConversionTrendsRequest,
    DashboardFilters,
    DataFreshnessRead,
    DetailRecordsRead,
    DetailRecordsRequest,
    GcFilterOptionsRead,
    GcHubFilters,
    GcPeriodSummaryRead,
    LeaderboardRead,
    LeaderboardRequest,
    PeriodSummaryRead,
)
from app.core.config import get_settings
from app.platform.refresh.models import as_utc, utcnow
from app.platform.security.anonymize import MIN_TEAM_SIZE, AdvisorAlias, AnonymizationMap, AnonymizingProjector
from app.platform.security.context import Permissions
from app.platform.security.roles import Role


logger = logging.getLogger("app.analytics")

F = TypeVar("F", bound=DashboardFilters)


def apply_personal_filters(filters: F, permissions: Permissions) -> F:
    """Pin the row filters a principal's role carries. Caller-supplied values are replaced, never merged."""

    updates: dict[str, str] = {}
    if permissions.sga_filter:
        updates["sga"] = permissions.sga_filter
    if permissions.sgm_filter:
        updates["sgm"] = permissions.sgm_filter
    if not updates:
        return filters
    return filters.model_copy(update=updates)


def scope_leaderboard(filters: LeaderboardRequest, permissions: Permissions) -> LeaderboardRequest:
    if permissions.role == Role.SGA and permissions.sga_filter:
        return filters.model_copy(update={"sga_names": [permissions.sga_filter]})
    return filters


def freshness_status(last_updated: datetime | None, now: datetime) -> DataFreshnessRead:
    if last_updated is None:
        return DataFreshnessRead(last_updated=None, hours_ago=0, minutes_ago=0, is_stale=True, status="unknown")

    elapsed_minutes = max(int((now - last_updated).total_seconds() // 60), 0)
    hours_ago = elapsed_minutes // 60
    if hours_ago < 1:
        status = "fresh"
    elif hours_ago < 6:
        status = "recent"
    elif hours_ago < 24:
        status = "stale"
    else:
        status = "very_stale"
    return DataFreshnessRead(
        last_updated=last_updated,
        hours_ago=hours_ago,
        minutes_ago=elapsed_minutes,
        is_stale=hours_ago >= 24,
        status=status,
    )


@dataclass(slots=True)
class AnalyticsService:
    """Dashboard and SGA hub reads. Query results come from the cache gateway."""

    def conversion_rates(self, permissions: Permissions, filters: ConversionRatesRequest) -> ConversionRatesRead:
        payload = queries.conversion_rates_query(apply_personal_filters(filters, permissions))
        return ConversionRatesRead.model_validate(payload)

    def conversion_trends(self, permissions: Permissions, filters: ConversionTrendsRequest) -> ConversionTrendsRead:
        payload = queries.conversion_trends_query(apply_personal_filters(filters, permissions))
        return ConversionTrendsRead.model_validate(payload)

    def detail_records(self, permissions: Permissions, filters: DetailRecordsRequest) -> DetailRecordsRead:
        scoped = apply_personal_filters(filters, permissions)
        limit = scoped.limit or get_settings().detail_records_default_limit
        payload = queries.detail_records_query(scoped.model_copy(update={"limit": None}), limit)
        return DetailRecordsRead.model_validate(payload)

    def data_freshness(self, now: datetime | None = None) -> DataFreshnessRead:
        payload = queries.last_data_load_query()
        raw = payload.get("last_updated")
        last_updated = as_utc(datetime.fromisoformat(raw)) if raw else None
        return freshness_status(last_updated, now or utcnow())

    def leaderboard(self, permissions: Permissions, filters: LeaderboardRequest) -> LeaderboardRead:
        payload = queries.leaderboard_query(scope_leaderboard(filters, permissions))
        return LeaderboardRead.model_validate(payload)


_SORT_COLUMNS = {
    "advisor_name": AdvisorPeriodRecord.advisor_name,
    "account_name": AdvisorPeriodRecord.account_name,
    "period_start": AdvisorPeriodRecord.period_start,
    "gross_revenue": AdvisorPeriodRecord.gross_revenue,
    "commissions_paid": AdvisorPeriodRecord.commissions_paid,
    "amount_earned": AdvisorPeriodRecord.amount_earned,
}
_IDENTITY_SORTS = frozenset({"advisor_name", "account_name"})


@dataclass(slots=True)
class AdvisorHubService:
    """Capital-partner hub reads over the advisor tables.

    Every response passes through ``AnonymizingProjector``; for capital
    partners it is the last step before the rows leave the service.
    """

    def _mappings(self, session: Session) -> list[AdvisorMapping]:
        return list(session.scalars(select(AdvisorMapping).where(AdvisorMapping.is_excluded.is_(False))).all())

    def _excluded_names(self, session: Session) -> list[str]:
        stmt = select(AdvisorMapping.advisor_name).where(AdvisorMapping.is_excluded.is_(True))
        return list(session.scalars(stmt).all())

    def _projector(self, mappings: list[AdvisorMapping]) -> AnonymizingProjector:
        aliases = AnonymizationMap.build(
            AdvisorAlias(
                real_name=mapping.advisor_name,
                anonymous_id=mapping.anonymous_advisor_id,
                account_name=mapping.account_name,
                anonymous_team=mapping.anonymous_account_name,
            )
            for mapping in mappings
        )
        return AnonymizingProjector(aliases)

    def _team_map(self, mappings: list[AdvisorMapping]) -> dict[str, str | None]:
        sizes = Counter(mapping.account_name for mapping in mappings if mapping.account_name)
        return {
            mapping.advisor_name: mapping.account_name
            if mapping.account_name and sizes[mapping.account_name] >= MIN_TEAM_SIZE
            else None
            for mapping in mappings
        }

    def _min_start(self) -> date:
        return date.fromisoformat(get_settings().cp_min_start_date)

    def _effective_start(self, permissions: Permissions, start: date | None) -> date | None:
        if not permissions.is_capital_partner:
            return start
        floor = self._min_start()
        return floor if start is None or start < floor else start

    def _name_filter(
        self,
        permissions: Permissions,
        mappings: list[AdvisorMapping],
        filters: GcHubFilters,
        search: str | None = None,
    ) -> set[str] | None:
        names: set[str] | None = None

        if filters.account_names:
            wanted = set(filters.account_names)
            if permissions.is_capital_partner:
                names = {m.advisor_name for m in mappings if m.anonymous_account_name in wanted}
            else:
                names = {m.advisor_name for m in mappings if m.account_name in wanted}

        # Real-name filtering is not offered to capital partners.
        if filters.advisor_names and not permissions.is_capital_partner:
            requested = set(filters.advisor_names)
            names = requested if names is None else names & requested

        search = (search or "").strip().lower()
        if search and permissions.is_capital_partner:
            matched = {
                m.advisor_name
                for m in mappings
                if search in m.anonymous_advisor_id.lower() or search in (m.anonymous_account_name or "").lower()
            }
            names = matched if names is None else names & matched
        return names

    def _apply_filters(
        self,
        stmt: Select[Any],
        session: Session,
        permissions: Permissions,
        mappings: list[AdvisorMapping],
        filters: GcHubFilters,
        search: str | None = None,
    ) -> Select[Any]:
        start = self._effective_start(permissions, filters.start_date)
        if start is not None:
            stmt = stmt.where(AdvisorPeriodRecord.period_start >= start)
        if filters.end_date is not None:
            stmt = stmt.where(AdvisorPeriodRecord.period_start <= filters.end_date)
        if filters.billing_frequency:
            stmt = stmt.where(AdvisorPeriodRecord.billing_frequency == filters.billing_frequency)

        names = self._name_filter(permissions, mappings, filters, search)
        if names is not None:
            stmt = stmt.where(AdvisorPeriodRecord.advisor_name.in_(sorted(names)))

        excluded = self._excluded_names(session)
        if excluded:
            stmt = stmt.where(AdvisorPeriodRecord.advisor_name.not_in(excluded))
        return stmt

    def advisor_table(self, session: Session, permissions: Permissions, filters: AdvisorTableRequest) -> AdvisorTableRead:
        mappings = self._mappings(session)
        team_map = self._team_map(mappings)

        stmt: Select[tuple[AdvisorPeriodRecord]] = select(AdvisorPeriodRecord)
        stmt = self._apply_filters(stmt, session, permissions, mappings, filters, filters.search)

        search = (filters.search or "").strip()
        if search and not permissions.is_capital_partner:
            pattern = f"%{search}%"
            stmt = stmt.where(
                or_(AdvisorPeriodRecord.advisor_name.ilike(pattern), AdvisorPeriodRecord.account_name.ilike(pattern))
            )

        # Ordering on real names would reveal them, so capital partners get those sorts after masking.
        sort_in_sql = not (permissions.is_capital_partner and filters.sort_by in _IDENTITY_SORTS)
        if sort_in_sql:
            column = _SORT_COLUMNS[filters.sort_by]
            stmt = stmt.order_by(column.asc() if filters.sort_dir == "asc" else column.desc())
        stmt = stmt.order_by(AdvisorPeriodRecord.period_start.asc(), AdvisorPeriodRecord.advisor_name.asc())

        rows = [self._row_payload(record, team_map) for record in session.scalars(stmt).all()]
        projected = self._projector(mappings).project_rows(rows, permissions)
        if not sort_in_sql:
            projected.sort(
                key=lambda row: row.get(filters.sort_by) or "",
                reverse=filters.sort_dir == "desc",
            )

        logger.info("gc_hub.advisors", extra={"principal": permissions.email, "role": permissions.role.value})
        return AdvisorTableRead(
            records=[AdvisorRowRead.model_validate(row) for row in projected],
            count=len(projected),
            is_anonymized=permissions.is_capital_partner,
        )

    def advisor_detail(self, session: Session, permissions: Permissions, advisor_name: str) -> AdvisorDetailRead | None:
        mappings = self._mappings(session)
        projector = self._projector(mappings)

        real_name: str | None = advisor_name
        if permissions.is_capital_partner:
            real_name = projector.resolve_anonymous_id(advisor_name)
        if real_name is None or real_name in set(self._excluded_names(session)):
            return None

        stmt = select(AdvisorPeriodRecord).where(AdvisorPeriodRecord.advisor_name == real_name)
        if permissions.is_capital_partner:
            stmt = stmt.where(AdvisorPeriodRecord.period_start >= self._min_start())
        records = list(session.scalars(stmt.order_by(AdvisorPeriodRecord.period_start.asc())).all())
        if not records:
            return None

        first = records[0]
        detail: dict[str, Any] = {
            "advisor_name": first.advisor_name,
            "account_name": self._team_map(mappings).get(first.advisor_name),
            "orion_representative_id": first.orion_representative_id,
            "billing_frequency": first.billing_frequency,
            "billing_style": first.billing_style,
            "periods": [self._period_payload(record) for record in records],
        }
        projected = projector.project_detail(detail, permissions)
        projected["is_anonymized"] = permissions.is_capital_partner
        return AdvisorDetailRead.model_validate(projected)

    def period_summary(self, session: Session, permissions: Permissions, filters: GcHubFilters) -> GcPeriodSummaryRead:
        mappings = self._mappings(session)

        stmt: Select[Any] = select(
            AdvisorPeriodRecord.period,
            AdvisorPeriodRecord.period_start,
            func.sum(AdvisorPeriodRecord.gross_revenue),
            func.sum(AdvisorPeriodRecord.commissions_paid),
            func.sum(AdvisorPeriodRecord.amount_earned),
            func.count(AdvisorPeriodRecord.advisor_name),
        )
        stmt = self._apply_filters(stmt, session, permissions, mappings, filters)
        stmt = stmt.group_by(AdvisorPeriodRecord.period, AdvisorPeriodRecord.period_start).order_by(
            AdvisorPeriodRecord.period_start.asc()
        )

        rows: list[dict[str, Any]] = []
        for period, period_start, revenue, commissions, earned, advisors in session.execute(stmt).all():
            revenue = float(revenue or 0.0)
            rows.append(
                {
                    "period": period,
                    "period_start": period_start,
                    "total_revenue": revenue,
                    "total_commissions": float(commissions or 0.0),
                    "total_amount_earned": float(earned or 0.0),
                    "active_advisor_count": advisors,
                    "revenue_per_advisor": revenue / advisors if advisors else 0.0,
                }
            )
        projected = self._projector(mappings).project_rows(rows, permissions, resource="gc_hub.period_summary")

        logger.info("gc_hub.summary", extra={"principal": permissions.email, "role": permissions.role.value})
        return GcPeriodSummaryRead(
            summary=[PeriodSummaryRead.model_validate(row) for row in projected],
            is_anonymized=permissions.is_capital_partner,
        )

    def filter_options(self, session: Session, permissions: Permissions) -> GcFilterOptionsRead:
        mappings = self._mappings(session)

        by_account: dict[str, list[str]] = {}
        for mapping in mappings:
            if mapping.account_name:
                by_account.setdefault(mapping.account_name, []).append(mapping.advisor_name)
        teams = {account: names for account, names in by_account.items() if len(names) >= MIN_TEAM_SIZE}
        advisors_by_account, advisor_names = self._projector(mappings).project_filter_options(
            teams, [mapping.advisor_name for mapping in mappings], permissions
        )

        period_stmt = select(AdvisorPeriodRecord.period, func.min(AdvisorPeriodRecord.period_start))
        excluded = self._excluded_names(session)
        if excluded:
            period_stmt = period_stmt.where(AdvisorPeriodRecord.advisor_name.not_in(excluded))
        if permissions.is_capital_partner:
            period_stmt = period_stmt.where(AdvisorPeriodRecord.period_start >= self._min_start())
        period_stmt = period_stmt.group_by(AdvisorPeriodRecord.period).order_by(
            func.min(AdvisorPeriodRecord.period_start).asc()
        )
        periods = [period for period, _ in session.execute(period_stmt).all()]

        frequencies = sorted({mapping.billing_frequency for mapping in mappings if mapping.billing_frequency})

        return GcFilterOptionsRead(
            account_names=list(advisors_by_account),
            advisor_names=advisor_names,
            advisors_by_account=advisors_by_account,
            periods=periods,
            billing_frequencies=frequencies,
            is_anonymized=permissions.is_capital_partner,
        )

    @staticmethod
    def _row_payload(record: AdvisorPeriodRecord, team_map: dict[str, str | None]) -> dict[str, Any]:
        return {
            "advisor_name": record.advisor_name,
            "account_name": team_map.get(record.advisor_name),
            "orion_representative_id": record.orion_representative_id,
            "period": record.period,
            "period_start": record.period_start,
            "gross_revenue": record.gross_revenue,
            "commissions_paid": record.commissions_paid,
            "amount_earned": record.amount_earned,
            "billing_frequency": record.billing_frequency,
            "billing_style": record.billing_style,
            "data_source": record.data_source,
            "is_manually_overridden": record.is_manually_overridden,
        }

    @staticmethod
    def _period_payload(record: AdvisorPeriodRecord) -> dict[str, Any]:
        return {
            "id": str(record.id),
            "period": record.period,
            "period_start": record.period_start,
            "gross_revenue": record.gross_revenue,
            "commissions_paid": record.commissions_paid,
            "amount_earned": record.amount_earned,
            "data_source": record.data_source,
            "is_manually_overridden": record.is_manually_overridden,
            "original_gross_revenue": record.original_gross_revenue,
            "original_commissions_paid": record.original_commissions_paid,
            "override_reason": record.override_reason,
            "overridden_by": record.overridden_by,
            "overridden_at": record.overridden_at,
        }


analytics_service = AnalyticsService()
advisor_hub_service = AdvisorHubService()
