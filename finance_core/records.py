from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import ClassVar, Iterable, Mapping, TypeVar

from finance_core.money import normalize_currency


@dataclass(frozen=True)
class TransactionRecord:
    kind: ClassVar[str] = ""

    id: str
    account_id: str
    amount_minor: int
    currency: str
    date: datetime
    category_id: str | None = None
    next_date: datetime | None = None
    description: str = ""
    notes: str = ""
    tags: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if isinstance(self.amount_minor, bool) or not isinstance(self.amount_minor, int):
            raise TypeError("amount_minor must be an integer.")
        object.__setattr__(self, "currency", normalize_currency(self.currency))
        object.__setattr__(self, "date", as_utc(self.date))
        if self.next_date is not None:
            object.__setattr__(self, "next_date", as_utc(self.next_date))
        object.__setattr__(self, "tags", tuple(self.tags or ()))
        object.__setattr__(self, "description", self.description or "")
        object.__setattr__(self, "notes", self.notes or "")


@dataclass(frozen=True)
class ExpenseRecord(TransactionRecord):
    kind: ClassVar[str] = "expense"


@dataclass(frozen=True)
class IncomeRecord(TransactionRecord):
    kind: ClassVar[str] = "income"


@dataclass(frozen=True)
class InvestmentRecord(TransactionRecord):
    kind: ClassVar[str] = "investment"

    asset_symbol: str | None = None
    units: Decimal | None = None


RECORD_TYPES: Mapping[str, type[TransactionRecord]] = {
    "expense": ExpenseRecord,
    "income": IncomeRecord,
    "investment": InvestmentRecord,
}
INVESTMENT_ONLY_FIELDS = {"asset_symbol", "units"}


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    kind: str | None = None


@dataclass(frozen=True)
class Account:
    id: str
    name: str


def normalize_kind(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in RECORD_TYPES:
        raise ValueError("Only expense, income, or investment records are supported.")
    return normalized


def make_record(kind: str, **values) -> TransactionRecord:
    record_type = RECORD_TYPES[normalize_kind(kind)]
    if record_type is not InvestmentRecord:
        extra = {name for name, value in values.items() if value is not None} & INVESTMENT_ONLY_FIELDS
        if extra:
            raise ValueError(f"Fields only allowed on investments: {', '.join(sorted(extra))}")
        for name in INVESTMENT_ONLY_FIELDS:
            values.pop(name, None)
    return record_type(**values)


def utc_day(value: date | datetime) -> date:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    return value


def start_of_day(value: date) -> datetime:
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def as_utc(value: date | datetime) -> datetime:
    """Aware UTC datetime; naive values are taken as UTC, bare dates as midnight."""
    if not isinstance(value, datetime):
        return start_of_day(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


T = TypeVar("T", Category, Account)


def index_by_id(items: Iterable[T]) -> dict[str, T]:
    return {item.id: item for item in items}
