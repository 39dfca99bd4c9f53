from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel

from finance_core.money import normalize_currency, to_major, to_minor
from finance_core.records import INVESTMENT_ONLY_FIELDS, normalize_kind, start_of_day
from finance_core.recurring_projection import ProjectedOccurrence


class MissingRequiredField(ValueError):
    """Raised when a draft lacks a field the form requires."""

    def __init__(self, field_name: str) -> None:
        super().__init__(f"{field_name} is required.")
        self.field_name = field_name


class TransactionPayload(BaseModel):
    kind: str
    account_id: str
    category_id: str | None = None
    amount_minor: int
    currency: str
    date: datetime
    next_date: datetime | None = None
    description: str = ""
    notes: str = ""
    tags: list[str] = []
    asset_symbol: str | None = None
    units: Decimal | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.kind = normalize_kind(payload.kind)
        payload.account_id = payload.account_id.strip()
        if not payload.account_id:
            raise MissingRequiredField("account_id")
        payload.category_id = payload.category_id.strip() if payload.category_id else None
        payload.currency = normalize_currency(payload.currency)
        payload.description = (payload.description or "").strip()
        payload.notes = (payload.notes or "").strip()
        payload.tags = [tag.strip() for tag in payload.tags if tag and tag.strip()]
        if payload.kind != "investment":
            present = [name for name in INVESTMENT_ONLY_FIELDS if getattr(payload, name) is not None]
            if present:
                raise ValueError(f"Fields only allowed on investments: {', '.join(sorted(present))}")
        if payload.units is not None and payload.units <= 0:
            raise ValueError("Units must be greater than zero.")
        return payload


class Suggestion(BaseModel):
    """Best-effort output of a receipt scan or free-text parser."""

    amount: str | None = None
    currency: str | None = None
    occurred_on: date | None = None
    description: str | None = None
    category_id: str | None = None


@dataclass(frozen=True)
class TransactionDraft:
    kind: str
    account_id: str = ""
    category_id: str = ""
    amount: str = ""
    currency: str = "USD"
    date: date | None = None
    next_date: date | None = None
    description: str = ""
    notes: str = ""
    tags: tuple[str, ...] = field(default_factory=tuple)


def merge_suggestion(draft: TransactionDraft, suggestion: Suggestion) -> TransactionDraft:
    changes = {}
    if suggestion.amount and suggestion.amount.strip():
        changes["amount"] = suggestion.amount.strip()
    if suggestion.currency and suggestion.currency.strip():
        changes["currency"] = suggestion.currency.strip()
    if suggestion.occurred_on is not None:
        changes["date"] = suggestion.occurred_on
    if suggestion.description and suggestion.description.strip():
        changes["description"] = suggestion.description.strip()
    if suggestion.category_id:
        changes["category_id"] = suggestion.category_id
    return replace(draft, **changes)


def draft_from_occurrence(occurrence: ProjectedOccurrence) -> TransactionDraft:
    record = occurrence.record
    return TransactionDraft(
        kind=record.kind,
        account_id=record.account_id,
        category_id=record.category_id or "",
        amount=to_major(record.amount_minor, record.currency),
        currency=record.currency,
        date=occurrence.occurrence_date,
        description=record.description,
        notes=record.notes,
        tags=record.tags,
    )


def build_payload(
    draft: TransactionDraft,
    today: date | None = None,
    require_category: bool = True,
) -> TransactionPayload:
    if not draft.account_id:
        raise MissingRequiredField("account_id")
    if require_category and not draft.category_id:
        raise MissingRequiredField("category_id")
    currency = normalize_currency(draft.currency)
    amount_minor = to_minor(draft.amount, currency)
    occurred_on = draft.date or today
    if occurred_on is None:
        raise MissingRequiredField("date")
    payload = TransactionPayload(
        kind=draft.kind,
        account_id=draft.account_id,
        category_id=draft.category_id or None,
        amount_minor=amount_minor,
        currency=currency,
        date=start_of_day(occurred_on),
        next_date=start_of_day(draft.next_date) if draft.next_date else None,
        description=draft.description,
        notes=draft.notes,
        tags=list(draft.tags),
    )
    return TransactionPayload.validate_payload(payload)
