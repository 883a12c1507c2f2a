from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, timedelta
from enum import StrEnum


class FunnelMode(StrEnum):
    PERIOD = "period"
    COHORT = "cohort"


class Granularity(StrEnum):
    MONTH = "month"
    QUARTER = "quarter"


@dataclass(frozen=True, slots=True)
class DateWindow:
    """Inclusive calendar window."""

    start: date
    end: date

    def contains(self, value: date | None) -> bool:
        return value is not None and self.start <= value <= self.end


@dataclass(frozen=True, slots=True)
class FunnelRecord:
    """One lead/opportunity as projected from the funnel view.

    MQL has no stage date of its own: it is dated by ``contacted_date``.
    """

    contacted_date: date | None = None
    sql_date: date | None = None
    sqo_date: date | None = None
    joined_date: date | None = None
    is_mql: bool = False
    is_sql: bool = False
    is_sqo: bool = False
    is_joined: bool = False
    eligible_contacted: bool = False
    eligible_mql: bool = False
    eligible_sql: bool = False
    eligible_sqo: bool = False
    contacted_to_mql: bool = False
    mql_to_sql: bool = False
    sql_to_sqo: bool = False
    sqo_to_joined: bool = False


@dataclass(frozen=True, slots=True)
class _Stage:
    name: str
    numerator_date: str
    numerator_flag: str
    denominator_date: str
    denominator_flag: str | None
    eligible_flag: str
    progression_flag: str


_STAGES: tuple[_Stage, ...] = (
    _Stage("contacted_to_mql", "contacted_date", "is_mql", "contacted_date", None, "eligible_contacted", "contacted_to_mql"),
    _Stage("mql_to_sql", "sql_date", "is_sql", "contacted_date", "is_mql", "eligible_mql", "mql_to_sql"),
    _Stage("sql_to_sqo", "sqo_date", "is_sqo", "sql_date", "is_sql", "eligible_sql", "sql_to_sqo"),
    _Stage("sqo_to_joined", "joined_date", "is_joined", "sqo_date", "is_sqo", "eligible_sqo", "sqo_to_joined"),
)

STAGE_NAMES: tuple[str, ...] = tuple(stage.name for stage in _STAGES)


@dataclass(frozen=True, slots=True)
class StageRate:
    numerator: int
    denominator: int

    @property
    def rate(self) -> float:
        return safe_rate(self.numerator, self.denominator)

    def to_payload(self) -> dict[str, float | int]:
        return {"numerator": self.numerator, "denominator": self.denominator, "rate": self.rate}


@dataclass(frozen=True, slots=True)
class ConversionRates:
    contacted_to_mql: StageRate
    mql_to_sql: StageRate
    sql_to_sqo: StageRate
    sqo_to_joined: StageRate

    def to_payload(self) -> dict[str, dict[str, float | int]]:
        return {name: getattr(self, name).to_payload() for name in STAGE_NAMES}


@dataclass(frozen=True, slots=True)
class TrendBucket:
    label: str
    window: DateWindow
    is_selected: bool


@dataclass(frozen=True, slots=True)
class TrendPoint:
    period: str
    rates: ConversionRates
    sqls: int
    sqos: int
    joined: int
    is_selected_period: bool

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "period": self.period,
            "sqls": self.sqls,
            "sqos": self.sqos,
            "joined": self.joined,
            "is_selected_period": self.is_selected_period,
        }
        for name in STAGE_NAMES:
            payload[f"{name}_rate"] = getattr(self.rates, name).rate
        return payload


def safe_rate(numerator: int, denominator: int) -> float:
    if denominator == 0:
        return 0.0
    return numerator / denominator


def conversion_rates(records: Iterable[FunnelRecord], window: DateWindow, mode: FunnelMode) -> ConversionRates:
    """Four stage conversion rates for ``window``.

    Period mode dates each numerator by the later stage and each denominator
    by the earlier stage. Cohort mode takes the resolved records that entered
    the earlier stage in the window and counts how many of that same set
    progressed, whenever that happened.
    """

    counts = {stage.name: [0, 0] for stage in _STAGES}
    for record in records:
        for stage in _STAGES:
            bucket = counts[stage.name]
            if mode == FunnelMode.COHORT:
                if not window.contains(getattr(record, stage.denominator_date)):
                    continue
                if not getattr(record, stage.eligible_flag):
                    continue
                bucket[1] += 1
                if getattr(record, stage.progression_flag):
                    bucket[0] += 1
                continue

            if getattr(record, stage.numerator_flag) and window.contains(getattr(record, stage.numerator_date)):
                bucket[0] += 1
            if window.contains(getattr(record, stage.denominator_date)) and (
                stage.denominator_flag is None or getattr(record, stage.denominator_flag)
            ):
                bucket[1] += 1

    return ConversionRates(**{name: StageRate(numerator=num, denominator=den) for name, (num, den) in counts.items()})


def quarter_of(value: date) -> int:
    return (value.month - 1) // 3 + 1


def quarter_window(year: int, quarter: int) -> DateWindow:
    start = date(year, (quarter - 1) * 3 + 1, 1)
    return DateWindow(start=start, end=_month_end(year, (quarter - 1) * 3 + 3))


def format_quarter(year: int, quarter: int) -> str:
    return f"{year}-Q{quarter}"


def format_month(year: int, month: int) -> str:
    return f"{year}-{month:02d}"


def _month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year, 12, 31)
    return date(year, month + 1, 1) - timedelta(days=1)


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def rolling_trend_window(anchor: date, granularity: Granularity) -> list[TrendBucket]:
    """Contiguous ascending buckets around the quarter containing ``anchor``.

    Quarter: the selected quarter and the three before it. Month: the twelve
    months ending with the selected quarter's last month.
    """

    selected_year, selected_quarter = anchor.year, quarter_of(anchor)

    if granularity == Granularity.QUARTER:
        buckets: list[TrendBucket] = []
        for offset in range(3, -1, -1):
            index = selected_year * 4 + (selected_quarter - 1) - offset
            year, quarter = index // 4, index % 4 + 1
            buckets.append(
                TrendBucket(
                    label=format_quarter(year, quarter),
                    window=quarter_window(year, quarter),
                    is_selected=offset == 0,
                )
            )
        return buckets

    last_month = selected_quarter * 3
    buckets = []
    for offset in range(11, -1, -1):
        year, month = _shift_month(selected_year, last_month, -offset)
        buckets.append(
            TrendBucket(
                label=format_month(year, month),
                window=DateWindow(start=date(year, month, 1), end=_month_end(year, month)),
                is_selected=year == selected_year and quarter_of(date(year, month, 1)) == selected_quarter,
            )
        )
    return buckets


def conversion_trends(
    records: Sequence[FunnelRecord],
    anchor: date,
    granularity: Granularity,
    mode: FunnelMode,
) -> list[TrendPoint]:
    """One point per bucket of the rolling window; empty buckets report zeros.

    In cohort mode joined volume is bucketed by SQO date, alongside the
    SQO cohort it converts from.
    """

    joined_date = "sqo_date" if mode == FunnelMode.COHORT else "joined_date"
    points: list[TrendPoint] = []
    for bucket in rolling_trend_window(anchor, granularity):
        window = bucket.window
        points.append(
            TrendPoint(
                period=bucket.label,
                rates=conversion_rates(records, window, mode),
                sqls=sum(1 for record in records if record.is_sql and window.contains(record.sql_date)),
                sqos=sum(1 for record in records if record.is_sqo and window.contains(record.sqo_date)),
                joined=sum(
                    1 for record in records if record.is_joined and window.contains(getattr(record, joined_date))
                ),
                is_selected_period=bucket.is_selected,
            )
        )
    return points


def trend_span(buckets: Sequence[TrendBucket]) -> DateWindow:
    return DateWindow(start=buckets[0].window.start, end=buckets[-1].window.end)
