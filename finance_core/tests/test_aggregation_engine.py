import unittest
from datetime import date, datetime, timezone

from finance_core.aggregation_engine import (
    CurrencyTotal,
    category_breakdown,
    choose_currency,
    compute_kpis,
    daily_series,
    summarize,
    totals_by_currency,
)
from finance_core.records import Category, ExpenseRecord, IncomeRecord, index_by_id
from finance_core.transaction_filters import ALL

TODAY = date(2024, 3, 15)


def expense(record_id: str, day: date, amount_minor: int, **overrides) -> ExpenseRecord:
    values = dict(
        id=record_id,
        account_id="acc",
        category_id="food",
        amount_minor=amount_minor,
        currency="USD",
        date=datetime(day.year, day.month, day.day, 10, tzinfo=timezone.utc),
    )
    values.update(overrides)
    return ExpenseRecord(**values)


class TotalsTests(unittest.TestCase):
    def test_totals_never_mix_currencies(self) -> None:
        records = [
            expense("1", TODAY, 1050),
            expense("2", TODAY, 500, currency="JPY"),
            expense("3", TODAY, 250),
            expense("4", TODAY, 1, currency="KWD"),
        ]

        totals = totals_by_currency(records)

        self.assertEqual(
            totals,
            [
                CurrencyTotal(currency="USD", amount_minor=1300, count=2),
                CurrencyTotal(currency="JPY", amount_minor=500, count=1),
                CurrencyTotal(currency="KWD", amount_minor=1, count=1),
            ],
        )

    def test_choose_currency(self) -> None:
        records = [expense("1", TODAY, 1, currency="EUR"), expense("2", TODAY, 1)]

        self.assertEqual(choose_currency(records, "usd"), "USD")
        self.assertEqual(choose_currency(records, ALL), "EUR")
        self.assertEqual(choose_currency([], ALL, default="GBP"), "GBP")


class KpiTests(unittest.TestCase):
    def test_last_this_and_yearly_average(self) -> None:
        records = [
            expense("jan", date(2024, 1, 31), 1000),
            expense("feb-1", date(2024, 2, 1), 2000),
            expense("feb-29", date(2024, 2, 29), 500),
            expense("mar", date(2024, 3, 2), 1500),
            expense("mar-planned", date(2024, 3, 28), 100),
            expense("last-year", date(2023, 12, 31), 9999),
            expense("eur", date(2024, 3, 2), 7777, currency="EUR"),
        ]

        kpis = compute_kpis(records, "USD", TODAY)

        self.assertEqual(kpis.last_month, 2500)
        self.assertEqual(kpis.this_month, 1600)
        # (1000 + 2500 + 1600) / 3 = 1700
        self.assertEqual(kpis.yearly_average, 1700)

    def test_yearly_average_rounds_half_up(self) -> None:
        records = [expense("jan", date(2024, 1, 5), 3), expense("feb", date(2024, 2, 5), 0)]

        kpis = compute_kpis(records, "USD", date(2024, 2, 10))

        self.assertEqual(kpis.yearly_average, 2)

    def test_january_last_month_is_previous_december(self) -> None:
        records = [expense("dec", date(2023, 12, 20), 400), expense("jan", date(2024, 1, 2), 300)]

        kpis = compute_kpis(records, "USD", date(2024, 1, 10))

        self.assertEqual(kpis.last_month, 400)
        self.assertEqual(kpis.this_month, 300)
        self.assertEqual(kpis.yearly_average, 300)


class CategoryBreakdownTests(unittest.TestCase):
    def test_top_five_with_rounded_percentages(self) -> None:
        categories = index_by_id(
            [Category(id=f"c{index}", name=f"Category {index}") for index in range(1, 7)]
        )
        records = [
            expense("1", TODAY, 4000, category_id="c1"),
            expense("2", TODAY, 2000, category_id="c2"),
            expense("3", TODAY, 1500, category_id="c3"),
            expense("4", TODAY, 1000, category_id="c4"),
            expense("5", TODAY, 1000, category_id="c5"),
            expense("6", TODAY, 500, category_id="c6"),
            expense("refund", TODAY, -300, category_id="c7"),
            expense("other-currency", TODAY, 99999, category_id="c1", currency="EUR"),
        ]

        shares = category_breakdown(records, "USD", categories)

        self.assertEqual([share.category_id for share in shares], ["c1", "c2", "c3", "c4", "c5"])
        self.assertEqual([share.percent for share in shares], [40, 20, 15, 10, 10])
        self.assertEqual(shares[0].name, "Category 1")
        self.assertEqual(shares[0].amount_minor, 4000)

    def test_uncategorized_and_unknown_names_fall_back(self) -> None:
        records = [
            expense("1", TODAY, 300, category_id=None),
            expense("2", TODAY, 100, category_id="missing"),
        ]

        shares = category_breakdown(records, "USD")

        self.assertEqual([(share.category_id, share.name) for share in shares], [(None, "Other"), ("missing", "Other")])
        self.assertEqual([share.percent for share in shares], [75, 25])

    def test_no_positive_categories(self) -> None:
        self.assertEqual(category_breakdown([expense("1", TODAY, -5)], "USD"), [])


class DailySeriesTests(unittest.TestCase):
    def test_seven_day_window_and_max(self) -> None:
        records = [
            expense("today", TODAY, 300),
            expense("today-2", TODAY, 200),
            expense("six-back", date(2024, 3, 9), 700),
            expense("seven-back", date(2024, 3, 8), 5000),
            expense("tomorrow", date(2024, 3, 16), 5000),
            expense("jpy", TODAY, 5000, currency="JPY"),
        ]

        series = daily_series(records, "USD", TODAY)

        self.assertEqual([point.day for point in series.points][0], date(2024, 3, 9))
        self.assertEqual([point.day for point in series.points][-1], TODAY)
        self.assertEqual(
            [point.amount_minor for point in series.points], [700, 0, 0, 0, 0, 0, 500]
        )
        self.assertEqual(series.max_minor, 700)

    def test_max_is_zero_for_empty_window(self) -> None:
        series = daily_series([], "USD", TODAY)

        self.assertEqual(len(series.points), 7)
        self.assertEqual(series.max_minor, 0)


class SummaryTests(unittest.TestCase):
    def test_summary_flags_mixed_currency(self) -> None:
        records = [expense("1", TODAY, 100, currency="EUR"), expense("2", TODAY, 200)]

        summary = summarize(records, TODAY)

        self.assertEqual(summary.currency, "EUR")
        self.assertTrue(summary.mixed_currency)
        self.assertEqual(summary.kpis.this_month, 100)
        self.assertEqual(summary.series.max_minor, 100)

    def test_empty_pin_counts_as_unpinned(self) -> None:
        records = [expense("1", TODAY, 100, currency="EUR"), expense("2", TODAY, 200)]

        summary = summarize(records, TODAY, pinned_currency="")

        self.assertEqual(summary.currency, "EUR")
        self.assertTrue(summary.mixed_currency)

    def test_pinned_currency_is_not_mixed(self) -> None:
        summary = summarize([expense("2", TODAY, 200)], TODAY, pinned_currency="USD")

        self.assertFalse(summary.mixed_currency)
        self.assertEqual(summary.categories[0].percent, 100)

    def test_rejects_mixed_kinds(self) -> None:
        income = IncomeRecord(
            id="i",
            account_id="acc",
            amount_minor=1,
            currency="USD",
            date=datetime(2024, 3, 1, tzinfo=timezone.utc),
        )

        with self.assertRaises(ValueError):
            summarize([expense("1", TODAY, 1), income], TODAY)


if __name__ == "__main__":
    unittest.main()
