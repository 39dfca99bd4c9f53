from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Iterable, List, Mapping, Optional, Tuple

from finance_core.money import normalize_currency, to_major_decimal
from finance_core.records import Account, Category, TransactionRecord, utc_day
from finance_core.recurring_projection import ProjectedOccurrence

ALL = "ALL"
SORT_KEYS = {"date_desc", "date_asc", "amount_desc", "amount_asc"}


class DatePreset(str, Enum):
    ALL = "ALL"
    THIS_MONTH = "THIS_MONTH"
    LAST_MONTH = "LAST_MONTH"
    LAST_30 = "LAST_30"
    LAST_90 = "LAST_90"
    THIS_YEAR = "THIS_YEAR"
    CUSTOM = "CUSTOM"


@dataclass(frozen=True)
class FilterCriteria:
    search_text: str = ""
    account_id: str = ALL
    category_id: str = ALL
    currency: str = ALL
    date_preset: DatePreset = DatePreset.ALL
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    min_amount_major: Optional[Decimal] = None
    max_amount_major: Optional[Decimal] = None


DateRange = Tuple[Optional[date], Optional[date]]


def resolve_date_range(criteria: FilterCriteria, today: date) -> DateRange:
    """Inclusive UTC day bounds for the criteria's date preset."""
    preset = DatePreset(criteria.date_preset)
    if preset is DatePreset.ALL:
        return None, None
    if preset is DatePreset.THIS_MONTH:
        return month_bounds(today)
    if preset is DatePreset.LAST_MONTH:
        return month_bounds(shift_month(today, -1))
    if preset is DatePreset.LAST_30:
        return today - timedelta(days=30), today
    if preset is DatePreset.LAST_90:
        return today - timedelta(days=90), today
    if preset is DatePreset.THIS_YEAR:
        return date(today.year, 1, 1), date(today.year, 12, 31)
    if (
        criteria.start_date is not None
        and criteria.end_date is not None
        and criteria.start_date > criteria.end_date
    ):
        raise ValueError("start_date must be on or before end_date.")
    return criteria.start_date, criteria.end_date


def month_bounds(value: date) -> Tuple[date, date]:
    return value.replace(day=1), value.replace(day=monthrange(value.year, value.month)[1])


def shift_month(value: date, months: int) -> date:
    total_month = value.month - 1 + months
    year = value.year + total_month // 12
    month = total_month % 12 + 1
    return date(year, month, 1)


def matches(
    record: TransactionRecord,
    criteria: FilterCriteria,
    date_range: DateRange,
    categories: Mapping[str, Category] | None = None,
    accounts: Mapping[str, Account] | None = None,
) -> bool:
    if criteria.account_id != ALL and record.account_id != criteria.account_id:
        return False
    if criteria.category_id != ALL and record.category_id != criteria.category_id:
        return False
    if criteria.currency != ALL and record.currency != normalize_currency(criteria.currency):
        return False

    start, end = date_range
    day = utc_day(record.date)
    if start is not None and day < start:
        return False
    if end is not None and day > end:
        return False

    if criteria.min_amount_major is not None or criteria.max_amount_major is not None:
        major = to_major_decimal(record.amount_minor, record.currency)
        if criteria.min_amount_major is not None and major < _coerce_amount(criteria.min_amount_major):
            return False
        if criteria.max_amount_major is not None and major > _coerce_amount(criteria.max_amount_major):
            return False

    needle = criteria.search_text.strip().lower()
    if needle and needle not in search_haystack(record, categories, accounts):
        return False
    return True


def search_haystack(
    record: TransactionRecord,
    categories: Mapping[str, Category] | None = None,
    accounts: Mapping[str, Account] | None = None,
) -> str:
    category = (categories or {}).get(record.category_id or "")
    account = (accounts or {}).get(record.account_id)
    parts = [
        record.description,
        record.notes,
        category.name if category else "",
        account.name if account else "",
        " ".join(record.tags),
    ]
    return " ".join(parts).lower()


def filter_records(
    records: Iterable[TransactionRecord],
    criteria: FilterCriteria,
    today: date,
    categories: Mapping[str, Category] | None = None,
    accounts: Mapping[str, Account] | None = None,
) -> List[TransactionRecord]:
    date_range = resolve_date_range(criteria, today)
    return [
        record
        for record in records
        if matches(record, criteria, date_range, categories, accounts)
    ]


def filter_occurrences(
    occurrences: Iterable[ProjectedOccurrence],
    criteria: FilterCriteria,
    today: date,
    categories: Mapping[str, Category] | None = None,
    accounts: Mapping[str, Account] | None = None,
) -> List[ProjectedOccurrence]:
    date_range = resolve_date_range(criteria, today)
    return [
        occurrence
        for occurrence in occurrences
        if matches(occurrence.record, criteria, date_range, categories, accounts)
    ]


def sort_records(
    records: Iterable[TransactionRecord], sort_key: str = "date_desc"
) -> List[TransactionRecord]:
    if sort_key not in SORT_KEYS:
        raise ValueError(f"Unsupported sort key: {sort_key}")
    if sort_key.startswith("amount"):
        return sorted(
            records,
            key=lambda record: to_major_decimal(record.amount_minor, record.currency),
            reverse=sort_key == "amount_desc",
        )
    return sorted(records, key=lambda record: record.date, reverse=sort_key == "date_desc")


def available_currencies(records: Iterable[TransactionRecord]) -> List[str]:
    seen: List[str] = []
    for record in records:
        if record.currency not in seen:
            seen.append(record.currency)
    return [ALL, *seen]


def _coerce_amount(amount: Decimal | int | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
