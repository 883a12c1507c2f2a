from __future__ import annotations

import itertools
from datetime import date

import pytest

from app.analytics.funnel import (
    STAGE_NAMES,
    DateWindow,
    FunnelMode,
    FunnelRecord,
    Granularity,
    conversion_rates,
    conversion_trends,
    rolling_trend_window,
    safe_rate,
    trend_span,
)


JANUARY = DateWindow(start=date(2025, 1, 1), end=date(2025, 1, 31))


def test_safe_rate_handles_empty_and_full() -> None:
    assert safe_rate(0, 0) == 0
    assert safe_rate(7, 7) == 1.0
    assert safe_rate(1, 4) == 0.25
    assert safe_rate(3, 0) == 0


def test_period_mode_dates_each_side_by_its_own_stage() -> None:
    records = [
        FunnelRecord(contacted_date=date(2025, 1, 5), is_mql=True),
        FunnelRecord(contacted_date=date(2025, 1, 10)),
        FunnelRecord(contacted_date=date(2024, 12, 20), is_mql=True, sql_date=date(2025, 1, 15), is_sql=True),
        FunnelRecord(sql_date=date(2025, 1, 20), is_sql=True, sqo_date=date(2025, 2, 2), is_sqo=True),
    ]

    rates = conversion_rates(records, JANUARY, FunnelMode.PERIOD)

    assert (rates.contacted_to_mql.numerator, rates.contacted_to_mql.denominator) == (1, 2)
    assert rates.contacted_to_mql.rate == 0.5
    assert (rates.mql_to_sql.numerator, rates.mql_to_sql.denominator) == (2, 1)
    assert (rates.sql_to_sqo.numerator, rates.sql_to_sqo.denominator) == (0, 2)
    assert rates.sqo_to_joined.rate == 0


def test_cohort_mode_follows_the_entering_cohort() -> None:
    records = [
        FunnelRecord(contacted_date=date(2025, 1, 5), eligible_contacted=True, contacted_to_mql=True),
        FunnelRecord(contacted_date=date(2025, 1, 8), eligible_contacted=True),
        # still open: not eligible, so excluded from both sides
        FunnelRecord(contacted_date=date(2025, 1, 9)),
        FunnelRecord(contacted_date=date(2024, 12, 1), eligible_contacted=True, contacted_to_mql=True),
        FunnelRecord(
            sql_date=date(2025, 1, 12),
            eligible_sql=True,
            sql_to_sqo=True,
            sqo_date=date(2025, 4, 1),
        ),
    ]

    rates = conversion_rates(records, JANUARY, FunnelMode.COHORT)

    assert (rates.contacted_to_mql.numerator, rates.contacted_to_mql.denominator) == (1, 2)
    assert (rates.sql_to_sqo.numerator, rates.sql_to_sqo.denominator) == (1, 1)
    assert rates.sql_to_sqo.rate == 1.0


def test_cohort_numerator_never_exceeds_denominator() -> None:
    days = [None, date(2024, 12, 31), date(2025, 1, 15)]
    records = [
        FunnelRecord(
            contacted_date=contacted,
            sql_date=sql,
            eligible_contacted=eligible,
            eligible_mql=eligible,
            eligible_sql=eligible,
            contacted_to_mql=progressed,
            mql_to_sql=progressed,
            sql_to_sqo=progressed,
        )
        for contacted, sql, eligible, progressed in itertools.product(days, days, (True, False), (True, False))
    ]

    rates = conversion_rates(records, JANUARY, FunnelMode.COHORT)

    for name in STAGE_NAMES:
        stage = getattr(rates, name)
        assert stage.numerator <= stage.denominator
        assert 0.0 <= stage.rate <= 1.0


def test_quarter_window_is_four_contiguous_quarters() -> None:
    buckets = rolling_trend_window(date(2025, 2, 15), Granularity.QUARTER)

    assert [bucket.label for bucket in buckets] == ["2024-Q2", "2024-Q3", "2024-Q4", "2025-Q1"]
    assert [bucket.is_selected for bucket in buckets] == [False, False, False, True]
    for earlier, later in zip(buckets, buckets[1:]):
        assert (later.window.start - earlier.window.end).days == 1
    assert trend_span(buckets) == DateWindow(start=date(2024, 4, 1), end=date(2025, 3, 31))


def test_month_window_ends_with_selected_quarter() -> None:
    buckets = rolling_trend_window(date(2025, 2, 15), Granularity.MONTH)

    assert len(buckets) == 12
    assert buckets[0].label == "2024-04"
    assert buckets[-1].label == "2025-03"
    assert buckets[-1].window.end == date(2025, 3, 31)
    assert [bucket.label for bucket in buckets if bucket.is_selected] == ["2025-01", "2025-02", "2025-03"]


@pytest.mark.parametrize("granularity", list(Granularity))
def test_trends_report_empty_buckets_as_zero(granularity: Granularity) -> None:
    records = [FunnelRecord(sqo_date=date(2025, 1, 20), is_sqo=True, sql_date=date(2025, 1, 3), is_sql=True)]

    points = conversion_trends(records, date(2025, 1, 10), granularity, FunnelMode.PERIOD)

    assert sum(point.sqos for point in points) == 1
    assert sum(point.sqls for point in points) == 1
    empty = [point for point in points if point.sqos == 0]
    assert empty
    for point in empty:
        assert point.sqls == 0
        assert point.joined == 0
        assert point.to_payload()["sql_to_sqo_rate"] == 0
    assert points[-1].is_selected_period is True


def test_cohort_trends_count_joined_by_sqo_date() -> None:
    records = [
        FunnelRecord(sqo_date=date(2024, 11, 5), is_sqo=True, joined_date=date(2025, 2, 14), is_joined=True),
        FunnelRecord(sqo_date=date(2025, 1, 7), is_sqo=True, joined_date=date(2025, 3, 3), is_joined=True),
        FunnelRecord(sqo_date=date(2025, 1, 9), is_sqo=True),
    ]

    anchor = date(2025, 1, 10)
    period = {p.period: p.joined for p in conversion_trends(records, anchor, Granularity.QUARTER, FunnelMode.PERIOD)}
    cohort = {p.period: p.joined for p in conversion_trends(records, anchor, Granularity.QUARTER, FunnelMode.COHORT)}

    assert period["2024-Q4"] == 0
    assert period["2025-Q1"] == 2
    assert cohort["2024-Q4"] == 1
    assert cohort["2025-Q1"] == 1
    assert sum(cohort.values()) == sum(period.values())
