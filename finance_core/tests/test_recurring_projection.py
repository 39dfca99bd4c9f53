import unittest
from datetime import date, datetime, timedelta, timezone

from finance_core.records import ExpenseRecord, IncomeRecord
from finance_core.recurring_projection import (
    SOURCE_ACTUAL,
    SOURCE_VIRTUAL,
    find_occurrence,
    parent_id_from_virtual,
    project_upcoming,
    virtual_id_for,
)


def utc(year: int, month: int, day: int, hour: int = 0) -> datetime:
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


class RecurringProjectionTests(unittest.TestCase):
    def test_next_date_yields_one_virtual_occurrence(self) -> None:
        record = ExpenseRecord(
            id="1",
            account_id="acc",
            category_id="rent",
            amount_minor=5000,
            currency="USD",
            date=utc(2024, 1, 5),
            next_date=utc(2024, 3, 5),
        )

        upcoming = project_upcoming([record], today=date(2024, 2, 1))

        self.assertEqual(len(upcoming), 1)
        occurrence = upcoming[0]
        self.assertEqual(occurrence.source, SOURCE_VIRTUAL)
        self.assertEqual(occurrence.occurrence_date, date(2024, 3, 5))
        self.assertEqual(occurrence.record.amount_minor, 5000)
        self.assertEqual(occurrence.id, "virtual-1")
        self.assertEqual(occurrence.parent_id, "1")

    def test_actual_future_wins_over_own_next_date_collision(self) -> None:
        record = ExpenseRecord(
            id="1",
            account_id="acc",
            category_id="gym",
            amount_minor=4500,
            currency="USD",
            date=utc(2024, 3, 1, 9),
            next_date=utc(2024, 3, 1, 18),
            description="Gym",
        )

        upcoming = project_upcoming([record], today=date(2024, 2, 1))

        self.assertEqual([occurrence.source for occurrence in upcoming], [SOURCE_ACTUAL])
        self.assertEqual(upcoming[0].id, "1")

    def test_actual_future_suppresses_virtual_from_unrelated_parent(self) -> None:
        parent = ExpenseRecord(
            id="parent",
            account_id="acc",
            category_id="rent",
            amount_minor=120000,
            currency="EUR",
            date=utc(2024, 1, 1),
            next_date=utc(2024, 2, 1),
            description="Rent ",
        )
        planned = ExpenseRecord(
            id="planned",
            account_id="acc",
            category_id="rent",
            amount_minor=120000,
            currency="EUR",
            date=utc(2024, 2, 1, 12),
            description="Rent",
        )

        upcoming = project_upcoming([parent, planned], today=date(2024, 1, 15))

        self.assertEqual([occurrence.id for occurrence in upcoming], ["planned"])

    def test_stale_and_past_records_contribute_nothing(self) -> None:
        records = [
            ExpenseRecord(
                id="past",
                account_id="acc",
                amount_minor=100,
                currency="USD",
                date=utc(2024, 1, 1),
            ),
            ExpenseRecord(
                id="stale",
                account_id="acc",
                amount_minor=100,
                currency="USD",
                date=utc(2024, 1, 1),
                next_date=utc(2024, 2, 1),
            ),
            ExpenseRecord(
                id="today",
                account_id="acc",
                amount_minor=100,
                currency="USD",
                date=utc(2024, 2, 1, 23),
            ),
        ]

        self.assertEqual(project_upcoming(records, today=date(2024, 2, 1)), [])

    def test_sorted_by_date_with_stable_ties(self) -> None:
        records = [
            ExpenseRecord(
                id="late",
                account_id="a",
                amount_minor=1,
                currency="USD",
                date=utc(2024, 5, 1),
            ),
            ExpenseRecord(
                id="tie-actual",
                account_id="a",
                amount_minor=2,
                currency="USD",
                date=utc(2024, 4, 1),
            ),
            ExpenseRecord(
                id="tie-parent",
                account_id="b",
                amount_minor=3,
                currency="USD",
                date=utc(2024, 1, 1),
                next_date=utc(2024, 4, 1),
            ),
        ]

        upcoming = project_upcoming(records, today=date(2024, 2, 1))

        self.assertEqual(
            [occurrence.id for occurrence in upcoming],
            ["tie-actual", "virtual-tie-parent", "late"],
        )

    def test_record_with_future_date_and_later_next_date_yields_both(self) -> None:
        record = IncomeRecord(
            id="salary",
            account_id="acc",
            amount_minor=300000,
            currency="USD",
            date=utc(2024, 3, 1),
            next_date=utc(2024, 4, 1),
        )

        upcoming = project_upcoming([record], today=date(2024, 2, 1))

        self.assertEqual([occurrence.id for occurrence in upcoming], ["salary", "virtual-salary"])

    def test_kind_filter_ignores_other_kinds(self) -> None:
        future = utc(2024, 3, 1)
        records = [
            ExpenseRecord(id="e", account_id="a", amount_minor=1, currency="USD", date=future),
            IncomeRecord(id="i", account_id="a", amount_minor=1, currency="USD", date=future),
        ]

        upcoming = project_upcoming(records, today=date(2024, 2, 1), kind="income")

        self.assertEqual([occurrence.id for occurrence in upcoming], ["i"])

    def test_day_boundary_uses_utc(self) -> None:
        offset = timezone(timedelta(hours=-5))
        record = ExpenseRecord(
            id="late-evening",
            account_id="a",
            amount_minor=1,
            currency="USD",
            date=datetime(2024, 2, 1, 21, tzinfo=offset),
        )

        upcoming = project_upcoming([record], today=date(2024, 2, 1))

        self.assertEqual(upcoming[0].occurrence_date, date(2024, 2, 2))

    def test_virtual_id_helpers(self) -> None:
        self.assertEqual(virtual_id_for("42"), "virtual-42")
        self.assertEqual(parent_id_from_virtual("virtual-42"), "42")
        self.assertIsNone(parent_id_from_virtual("42"))
        self.assertIsNone(parent_id_from_virtual("virtual-"))

    def test_find_occurrence(self) -> None:
        record = ExpenseRecord(
            id="1",
            account_id="a",
            amount_minor=1,
            currency="USD",
            date=utc(2024, 1, 1),
            next_date=utc(2024, 3, 1),
        )
        upcoming = project_upcoming([record], today=date(2024, 2, 1))

        self.assertIs(find_occurrence(upcoming, "virtual-1"), upcoming[0])
        self.assertIsNone(find_occurrence(upcoming, "1"))


if __name__ == "__main__":
    unittest.main()
