from __future__ import annotations

from dataclasses import replace
from typing import Awaitable, List, Sequence, TypeVar

from finance_core.drafts import TransactionPayload
from finance_core.logging_setup import get_logger
from finance_core.records import InvestmentRecord, TransactionRecord, utc_day
from finance_core.recurring_projection import ProjectedOccurrence
from finance_core.store import StoreError, TransactionStore

logger = get_logger(__name__)

T = TypeVar("T")


class ActiveContext:
    """Marks whether the view that started a store call still wants its result."""

    def __init__(self) -> None:
        self.active = True

    def close(self) -> None:
        self.active = False


class ReconciliationService:
    """Turns upcoming occurrences into stored records or discards them.

    The store is written in two sequential steps and never inside one
    transaction: the new record is created first, and only after that
    succeeds is the parent's ``next_date`` cleared. A failure between the two
    leaves an extra record rather than a lost one.
    """

    def __init__(self, store: TransactionStore) -> None:
        self.store = store

    async def promote(self, occurrence: ProjectedOccurrence) -> TransactionRecord | None:
        """Record a virtual occurrence as a real transaction.

        Returns ``None`` when the parent no longer projects this occurrence
        (already promoted or dismissed elsewhere).
        """
        parent_id = _require_virtual(occurrence)
        parent = await self.store.get_transaction(parent_id)
        if not _still_projects(parent, occurrence):
            logger.debug("promote skipped, %s is stale", occurrence.id)
            return None

        created = await self.store.create_transaction(payload_from_occurrence(occurrence))
        try:
            await self.store.update_transaction(parent_id, {"next_date": None})
        except StoreError:
            logger.warning(
                "created %s but could not clear next_date on %s", created.id, parent_id
            )
            raise
        logger.info("promoted %s into %s", occurrence.id, created.id)
        return created

    async def dismiss(self, occurrence: ProjectedOccurrence) -> None:
        if not occurrence.is_virtual:
            await self.store.delete_transaction(occurrence.id)
            logger.info("deleted upcoming transaction %s", occurrence.id)
            return

        parent_id = _require_virtual(occurrence)
        parent = await self.store.get_transaction(parent_id)
        if parent is None or parent.next_date is None:
            logger.debug("dismiss skipped, %s has no next_date", parent_id)
            return
        await self.store.update_transaction(parent_id, {"next_date": None})
        logger.info("dismissed %s", occurrence.id)

    async def run(self, action: Awaitable[T], context: ActiveContext) -> T | None:
        """Await ``action`` and hand back its result only if ``context`` is live."""
        result = await action
        if not context.active:
            logger.debug("dropping reconciliation result for a closed view")
            return None
        return result


def payload_from_occurrence(occurrence: ProjectedOccurrence) -> TransactionPayload:
    record = occurrence.record
    extra = {}
    if isinstance(record, InvestmentRecord):
        extra = {"asset_symbol": record.asset_symbol, "units": record.units}
    return TransactionPayload(
        kind=record.kind,
        account_id=record.account_id,
        category_id=record.category_id,
        amount_minor=record.amount_minor,
        currency=record.currency,
        date=record.date,
        next_date=None,
        description=record.description,
        notes=record.notes,
        tags=list(record.tags),
        **extra,
    )


def apply_promoted(
    records: Sequence[TransactionRecord],
    created: TransactionRecord,
    parent_id: str,
) -> List[TransactionRecord]:
    updated = [
        replace(record, next_date=None) if record.id == parent_id else record
        for record in records
        if record.id != created.id
    ]
    return [created, *updated]


def apply_dismissed(
    records: Sequence[TransactionRecord], occurrence: ProjectedOccurrence
) -> List[TransactionRecord]:
    if occurrence.is_virtual:
        return [
            replace(record, next_date=None) if record.id == occurrence.parent_id else record
            for record in records
        ]
    return [record for record in records if record.id != occurrence.id]


def _require_virtual(occurrence: ProjectedOccurrence) -> str:
    if not occurrence.is_virtual or not occurrence.parent_id:
        raise ValueError("Only virtual occurrences can be promoted.")
    return occurrence.parent_id


def _still_projects(parent: TransactionRecord | None, occurrence: ProjectedOccurrence) -> bool:
    if parent is None or parent.next_date is None:
        return False
    return utc_day(parent.next_date) == occurrence.occurrence_date
