from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from finance_core.money import normalize_currency
from finance_core.records import Category, TransactionRecord, utc_day
from finance_core.settings import FALLBACK_CURRENCY
from finance_core.transaction_filters import ALL, month_bounds, shift_month

TOP_CATEGORY_LIMIT = 5
SERIES_DAYS = 7
UNCATEGORIZED_NAME = "Other"


@dataclass(frozen=True)
class CurrencyTotal:
    currency: str
    amount_minor: int
    count: int


@dataclass(frozen=True)
class Kpis:
    currency: str
    last_month: int
    this_month: int
    yearly_average: int


@dataclass(frozen=True)
class CategoryShare:
    category_id: Optional[str]
    name: str
    amount_minor: int
    percent: int


@dataclass(frozen=True)
class DailyPoint:
    day: date
    amount_minor: int


@dataclass(frozen=True)
class DailySeries:
    currency: str
    points: List[DailyPoint]
    max_minor: int


@dataclass(frozen=True)
class Summary:
    currency: str
    mixed_currency: bool
    totals: List[CurrencyTotal]
    kpis: Kpis
    categories: List[CategoryShare]
    series: DailySeries


def totals_by_currency(records: Iterable[TransactionRecord]) -> List[CurrencyTotal]:
    sums: Dict[str, int] = {}
    counts: Dict[str, int] = {}
    for record in records:
        sums[record.currency] = sums.get(record.currency, 0) + record.amount_minor
        counts[record.currency] = counts.get(record.currency, 0) + 1
    return [
        CurrencyTotal(currency=currency, amount_minor=total, count=counts[currency])
        for currency, total in sums.items()
    ]


def choose_currency(
    records: Sequence[TransactionRecord],
    pinned: str = ALL,
    default: str = FALLBACK_CURRENCY,
) -> str:
    """The currency KPIs are reported in: the pinned one, else the first present."""
    if _is_pinned(pinned):
        return normalize_currency(pinned)
    if records:
        return records[0].currency
    return normalize_currency(default)


def compute_kpis(
    records: Iterable[TransactionRecord], currency: str, today: date
) -> Kpis:
    currency = normalize_currency(currency)
    in_currency = [record for record in records if record.currency == currency]

    this_start, this_end = month_bounds(today)
    last_start, last_end = month_bounds(shift_month(today, -1))
    months_elapsed = today.month
    year_start = date(today.year, 1, 1)

    this_month = _sum_between(in_currency, this_start, this_end)
    last_month = _sum_between(in_currency, last_start, last_end)
    year_total = _sum_between(in_currency, year_start, this_end)
    yearly_average = int(
        (Decimal(year_total) / Decimal(months_elapsed)).quantize(
            Decimal(1), rounding=ROUND_HALF_UP
        )
    )
    return Kpis(
        currency=currency,
        last_month=last_month,
        this_month=this_month,
        yearly_average=yearly_average,
    )


def category_breakdown(
    records: Iterable[TransactionRecord],
    currency: str,
    categories: Mapping[str, Category] | None = None,
    limit: int = TOP_CATEGORY_LIMIT,
) -> List[CategoryShare]:
    currency = normalize_currency(currency)
    sums: Dict[Optional[str], int] = {}
    for record in records:
        if record.currency != currency:
            continue
        sums[record.category_id] = sums.get(record.category_id, 0) + record.amount_minor

    positive = [(category_id, total) for category_id, total in sums.items() if total > 0]
    if not positive:
        return []
    grand_total = sum(total for _, total in positive)
    positive.sort(key=lambda item: item[1], reverse=True)

    lookup = categories or {}
    shares: List[CategoryShare] = []
    for category_id, total in positive[:limit]:
        category = lookup.get(category_id) if category_id is not None else None
        shares.append(
            CategoryShare(
                category_id=category_id,
                name=category.name if category else UNCATEGORIZED_NAME,
                amount_minor=total,
                percent=_percent(total, grand_total),
            )
        )
    return shares


def daily_series(
    records: Iterable[TransactionRecord],
    currency: str,
    today: date,
    days: int = SERIES_DAYS,
) -> DailySeries:
    if days <= 0:
        raise ValueError("days must be greater than zero.")
    currency = normalize_currency(currency)
    window = [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
    sums: Dict[date, int] = {day: 0 for day in window}
    for record in records:
        if record.currency != currency:
            continue
        day = utc_day(record.date)
        if day in sums:
            sums[day] += record.amount_minor

    points = [DailyPoint(day=day, amount_minor=sums[day]) for day in window]
    max_minor = max([0, *(point.amount_minor for point in points)])
    return DailySeries(currency=currency, points=points, max_minor=max_minor)


def summarize(
    records: Sequence[TransactionRecord],
    today: date,
    pinned_currency: str = ALL,
    categories: Mapping[str, Category] | None = None,
    default_currency: str = FALLBACK_CURRENCY,
) -> Summary:
    """Everything a summary screen shows for one already-filtered record kind."""
    kinds = {record.kind for record in records}
    if len(kinds) > 1:
        raise ValueError("Summaries are computed over a single record kind.")
    currency = choose_currency(records, pinned_currency, default_currency)
    totals = totals_by_currency(records)
    return Summary(
        currency=currency,
        mixed_currency=not _is_pinned(pinned_currency) and len(totals) > 1,
        totals=totals,
        kpis=compute_kpis(records, currency, today),
        categories=category_breakdown(records, currency, categories),
        series=daily_series(records, currency, today),
    )


def _is_pinned(currency: str) -> bool:
    return bool(currency) and currency != ALL


def _sum_between(
    records: Iterable[TransactionRecord], start: date, end: date
) -> int:
    total = 0
    for record in records:
        if start <= utc_day(record.date) <= end:
            total += record.amount_minor
    return total


def _percent(part: int, whole: int) -> int:
    if not whole:
        return 0
    return int((Decimal(part * 100) / Decimal(whole)).quantize(Decimal(1), rounding=ROUND_HALF_UP))
