from datetime import date, timedelta
from decimal import Decimal

import pytest

from fines import assess_overdue, days_overdue, format_money, late_return_reason, to_cents
from models import Fine, FineStatus, from_cents

DUE = date(2024, 1, 1)


@pytest.mark.parametrize("today", [date(2023, 12, 1), date(2023, 12, 31), DUE])
def test_on_time_return_has_no_overdue_days_or_fine(today):
    assessment = assess_overdue(DUE, today)
    assert assessment.days_overdue == 0
    assert assessment.suggested_fine == Decimal("0.00")


@pytest.mark.parametrize("days", [1, 5, 30, 400])
def test_late_return_counts_whole_days_at_unit_rate(days):
    today = DUE + timedelta(days=days)
    assessment = assess_overdue(DUE, today, rate=Decimal("1.00"))
    assert assessment.days_overdue == days
    assert assessment.suggested_fine == Decimal(days).quantize(Decimal("0.01"))


def test_scenario_b_five_days_late():
    assessment = assess_overdue(DUE, date(2024, 1, 6))
    assert assessment.days_overdue == 5
    assert assessment.suggested_fine == Decimal("5.00")


def test_custom_rate():
    assessment = assess_overdue(DUE, date(2024, 1, 4), rate=Decimal("0.25"))
    assert assessment.suggested_fine == Decimal("0.75")


def test_days_overdue_across_leap_day():
    assert days_overdue(date(2024, 2, 28), date(2024, 3, 1)) == 2


def test_money_helpers():
    assert to_cents(Decimal("5.00")) == 500
    assert to_cents(Decimal("0.015")) == 2
    assert from_cents(1234) == Decimal("12.34")
    assert from_cents(None) == Decimal("0.00")
    assert format_money(Decimal("5")) == "$5.00"


def test_fine_row_amount_comes_from_cents():
    fine = Fine.from_row(
        {"id": 1, "issued_book_id": 7, "user_id": 3, "amount_cents": 505, "reason": "Late", "status": "pending"}
    )
    assert fine.amount == Decimal("5.05")
    assert fine.status is FineStatus.PENDING
    assert fine.to_dict()["amount"] == "5.05"


def test_late_return_reason():
    assert late_return_reason("Dune") == "Late return of book 'Dune'"
