"""Overdue and fine arithmetic, plus the fine ledger tables.

The calculator functions are pure; everything that touches the database takes
an open connection and leaves transaction handling to the caller.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List, Optional

from config import settings
from models import Fine, FineStatus, from_cents, quantize_money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OverdueAssessment:
    days_overdue: int
    suggested_fine: Decimal


def to_cents(amount: Decimal) -> int:
    return int(quantize_money(amount) * 100)


def format_money(amount: Decimal) -> str:
    return f"{settings.currency_symbol}{quantize_money(amount):,.2f}"


def days_overdue(due_date: date, today: date) -> int:
    """Whole days elapsed past the due date, floored at zero."""
    return max(0, (today - due_date).days)


def assess_overdue(due_date: date, today: date, rate: Optional[Decimal] = None) -> OverdueAssessment:
    """Compute overdue days and the suggested fine for a loan.

    ``rate`` defaults to the configured unit fine rate (currency per day).
    A loan returned on or before its due date is never fined.
    """
    unit_rate = settings.unit_fine_rate if rate is None else Decimal(rate)
    days = days_overdue(due_date, today)
    return OverdueAssessment(days_overdue=days, suggested_fine=quantize_money(unit_rate * days))


def late_return_reason(title: str) -> str:
    return f"Late return of book '{title}'"


# ------------------------- Fine ledger ------------------------- #
def create_fine(conn: sqlite3.Connection, loan_id: int, user_id: int, amount: Decimal, reason: str) -> int:
    """Insert a pending fine and return its id."""
    cursor = conn.execute(
        "INSERT INTO fines (issued_book_id, user_id, amount_cents, reason, status) VALUES (?, ?, ?, ?, ?)",
        (loan_id, user_id, to_cents(amount), reason, FineStatus.PENDING.value),
    )
    logger.info("Fine %s created: loan=%s user=%s amount=%s", cursor.lastrowid, loan_id, user_id, amount)
    return cursor.lastrowid


def get_fine(conn: sqlite3.Connection, fine_id: int) -> Optional[Fine]:
    row = conn.execute("SELECT * FROM fines WHERE id = ?", (fine_id,)).fetchone()
    return Fine.from_row(row) if row else None


def list_fines(conn: sqlite3.Connection, user_id: Optional[int] = None, status: Optional[str] = None) -> List[Fine]:
    sql = "SELECT * FROM fines WHERE 1 = 1"
    params: list = []
    if user_id is not None:
        sql += " AND user_id = ?"
        params.append(user_id)
    if status:
        sql += " AND status = ?"
        params.append(FineStatus(status).value)
    sql += " ORDER BY created_at DESC, id DESC"
    return [Fine.from_row(row) for row in conn.execute(sql, params).fetchall()]


def fines_for_loan(conn: sqlite3.Connection, loan_id: int) -> List[Fine]:
    rows = conn.execute("SELECT * FROM fines WHERE issued_book_id = ? ORDER BY id", (loan_id,)).fetchall()
    return [Fine.from_row(row) for row in rows]


def total_unpaid_fines(conn: sqlite3.Connection, user_id: Optional[int] = None) -> Decimal:
    sql = "SELECT COALESCE(SUM(amount_cents), 0) FROM fines WHERE status = ?"
    params: list = [FineStatus.PENDING.value]
    if user_id is not None:
        sql += " AND user_id = ?"
        params.append(user_id)
    return from_cents(conn.execute(sql, params).fetchone()[0])
