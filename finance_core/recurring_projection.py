from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from typing import Dict, Iterable, List, Tuple

from finance_core.records import TransactionRecord, normalize_kind, utc_day

VIRTUAL_PREFIX = "virtual-"
SOURCE_ACTUAL = "actual"
SOURCE_VIRTUAL = "virtual"

DedupKey = Tuple[object, ...]


@dataclass(frozen=True)
class ProjectedOccurrence:
    record: TransactionRecord
    source: str = SOURCE_ACTUAL
    parent_id: str | None = None

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def occurrence_date(self) -> date:
        return utc_day(self.record.date)

    @property
    def is_virtual(self) -> bool:
        return self.source == SOURCE_VIRTUAL


def project_upcoming(
    records: Iterable[TransactionRecord],
    today: date,
    kind: str | None = None,
) -> List[ProjectedOccurrence]:
    """Merge future records and ``next_date`` templates into one upcoming list.

    Records dated after ``today`` are emitted as-is. Every record whose
    ``next_date`` falls after ``today`` also yields a virtual occurrence on
    that date. A virtual occurrence that matches an existing future record on
    the dedup key is dropped, so a planned event is never listed twice.
    """
    normalized_kind = normalize_kind(kind) if kind is not None else None
    candidates = [
        record
        for record in records
        if normalized_kind is None or record.kind == normalized_kind
    ]

    merged: Dict[DedupKey, ProjectedOccurrence] = {}
    for record in candidates:
        if utc_day(record.date) > today:
            merged[dedup_key(record)] = ProjectedOccurrence(record=record)

    for record in candidates:
        if record.next_date is None or utc_day(record.next_date) <= today:
            continue
        occurrence = virtual_occurrence(record)
        merged.setdefault(dedup_key(occurrence.record), occurrence)

    return sorted(merged.values(), key=lambda occurrence: occurrence.occurrence_date)


def virtual_occurrence(parent: TransactionRecord) -> ProjectedOccurrence:
    if parent.next_date is None:
        raise ValueError("Only records with a next_date can be projected.")
    return ProjectedOccurrence(
        record=replace(parent, id=virtual_id_for(parent.id), date=parent.next_date),
        source=SOURCE_VIRTUAL,
        parent_id=parent.id,
    )


def dedup_key(record: TransactionRecord) -> DedupKey:
    return (
        record.account_id,
        record.category_id,
        record.kind,
        record.amount_minor,
        record.currency,
        utc_day(record.date),
        record.description.strip(),
    )


def virtual_id_for(parent_id: str) -> str:
    return f"{VIRTUAL_PREFIX}{parent_id}"


def parent_id_from_virtual(occurrence_id: str) -> str | None:
    if not occurrence_id.startswith(VIRTUAL_PREFIX):
        return None
    return occurrence_id[len(VIRTUAL_PREFIX):] or None


def find_occurrence(
    occurrences: Iterable[ProjectedOccurrence], occurrence_id: str
) -> ProjectedOccurrence | None:
    for occurrence in occurrences:
        if occurrence.id == occurrence_id:
            return occurrence
    return None
