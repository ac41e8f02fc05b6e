"""Circulation workflows: issuing books, taking them back, fines and payments.

Every workflow receives a :class:`RequestContext` carrying the request's
database connection, the acting librarian, the business date and the
notification sink. Ledger changes for one workflow happen inside a single
:func:`database.transaction`; member notifications are sent after the commit
and never undo it.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple, Union

from config import settings
from database import transaction
from fines import (
    assess_overdue,
    create_fine,
    format_money,
    get_fine,
    late_return_reason,
    to_cents,
)
from library import InventoryError, adjust_inventory
from models import (
    OPEN_LOAN_STATUSES,
    FineStatus,
    LoanRecord,
    LoanStatus,
    Payment,
    Receipt,
    ReturnPreview,
)
from notifications import (
    NotificationSink,
    book_issued_message,
    fine_charged_message,
    fine_paid_message,
    return_confirmation_message,
)
from utils.validators import AmountValidator

logger = logging.getLogger(__name__)

_LOAN_SELECT = """
    SELECT ib.*, b.title, b.author, u.name AS user_name
    FROM issued_books ib
    JOIN books b ON ib.book_id = b.id
    JOIN users u ON ib.user_id = u.id
"""
_OPEN_PLACEHOLDERS = ", ".join("?" for _ in OPEN_LOAN_STATUSES)


# ------------------------- Errors ------------------------- #
class WorkflowError(Exception):
    """Base class for circulation failures."""


class NotFoundOrAlreadyReturned(WorkflowError):
    """The loan does not exist or is no longer issued/overdue."""


class NotFound(WorkflowError):
    """A referenced book, member or fine does not exist or cannot be acted on."""


class InvalidInput(WorkflowError):
    """Rejected librarian input; nothing was written."""


class BookUnavailable(WorkflowError):
    """No copy of the title is on the shelf."""


class PersistenceFailure(WorkflowError):
    """The transaction could not be committed and was rolled back."""


# ------------------------- Context ------------------------- #
@dataclass
class RequestContext:
    conn: sqlite3.Connection
    notifier: NotificationSink
    actor_id: Optional[int] = None
    today: date = field(default_factory=date.today)


def _notify_all(ctx: RequestContext, messages: Sequence[Tuple[int, str]]) -> Tuple[int, List[str]]:
    """Hand messages to the sink one by one.

    A failing sink never raises out of here; whatever could not be queued is
    logged and returned so the caller can report it.
    """
    sent = 0
    undelivered: List[str] = []
    for user_id, message in messages:
        try:
            ctx.notifier.enqueue(user_id, message)
            sent += 1
        except Exception:
            logger.exception("Could not queue notification for user %s: %s", user_id, message)
            undelivered.append(message)
    return sent, undelivered


# ------------------------- Loan reads ------------------------- #
def lookup_loan(conn: sqlite3.Connection, loan_id: int) -> Optional[LoanRecord]:
    """Loan joined with book title/author and borrower name, any status."""
    row = conn.execute(_LOAN_SELECT + " WHERE ib.id = ?", (loan_id,)).fetchone()
    return LoanRecord.from_row(row) if row else None


def _lookup_open_loan(conn: sqlite3.Connection, loan_id: int) -> LoanRecord:
    row = conn.execute(
        _LOAN_SELECT + f" WHERE ib.id = ? AND ib.status IN ({_OPEN_PLACEHOLDERS})",
        (loan_id, *OPEN_LOAN_STATUSES),
    ).fetchone()
    if row is None:
        raise NotFoundOrAlreadyReturned(f"Loan {loan_id} not found or already returned.")
    return LoanRecord.from_row(row)


def list_loans(
    conn: sqlite3.Connection, status: Optional[str] = None, user_id: Optional[int] = None
) -> List[LoanRecord]:
    sql = _LOAN_SELECT + " WHERE 1 = 1"
    params: list = []
    if status:
        sql += " AND ib.status = ?"
        params.append(LoanStatus(status).value)
    if user_id is not None:
        sql += " AND ib.user_id = ?"
        params.append(user_id)
    sql += " ORDER BY ib.due_date ASC, ib.id ASC"
    return [LoanRecord.from_row(row) for row in conn.execute(sql, params).fetchall()]


def loans_due_on(conn: sqlite3.Connection, day: date) -> List[LoanRecord]:
    rows = conn.execute(
        _LOAN_SELECT + " WHERE ib.due_date = ? AND ib.status = ? ORDER BY ib.id",
        (day.isoformat(), LoanStatus.ISSUED.value),
    ).fetchall()
    return [LoanRecord.from_row(row) for row in rows]


def overdue_loans(conn: sqlite3.Connection, today: date) -> List[Tuple[LoanRecord, int]]:
    """Open loans past their due date, oldest first, with their overdue days."""
    rows = conn.execute(
        _LOAN_SELECT + f" WHERE ib.due_date < ? AND ib.status IN ({_OPEN_PLACEHOLDERS}) ORDER BY ib.due_date ASC",
        (today.isoformat(), *OPEN_LOAN_STATUSES),
    ).fetchall()
    loans = [LoanRecord.from_row(row) for row in rows]
    return [(loan, assess_overdue(loan.due_date, today).days_overdue) for loan in loans]


# ------------------------- Issue ------------------------- #
def issue_book(
    ctx: RequestContext,
    book_id: int,
    user_id: int,
    loan_days: Optional[int] = None,
    due_date: Optional[date] = None,
) -> LoanRecord:
    """Lend one copy of ``book_id`` to ``user_id``."""
    if due_date is None:
        days = settings.default_loan_days if loan_days is None else loan_days
        if days < 1:
            raise InvalidInput("Loan period must be at least one day.")
        due_date = ctx.today + timedelta(days=days)
    elif due_date < ctx.today:
        raise InvalidInput("Due date cannot be in the past.")

    conn = ctx.conn
    try:
        with transaction(conn):
            if conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone() is None:
                raise NotFound(f"Member {user_id} not found.")
            if conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone() is None:
                raise NotFound(f"Book {book_id} not found.")
            try:
                adjust_inventory(conn, book_id, -1)
            except InventoryError as exc:
                raise BookUnavailable(f"No copies of book {book_id} are available.") from exc
            cursor = conn.execute(
                """
                INSERT INTO issued_books (book_id, user_id, issue_date, due_date, status, fine_cents)
                VALUES (?, ?, ?, ?, ?, 0)
                """,
                (book_id, user_id, ctx.today.isoformat(), due_date.isoformat(), LoanStatus.ISSUED.value),
            )
            loan = lookup_loan(conn, cursor.lastrowid)
    except sqlite3.Error as exc:
        logger.error("Issuing book %s to member %s failed: %s", book_id, user_id, exc)
        raise PersistenceFailure("Error issuing book.") from exc

    logger.info("Loan %s: book %s issued to member %s, due %s", loan.id, book_id, user_id, due_date)
    _notify_all(ctx, [(user_id, book_issued_message(loan.title, due_date))])
    return loan


# ------------------------- Return ------------------------- #
def preview_return(ctx: RequestContext, loan_id: int) -> ReturnPreview:
    """Loan details plus overdue days and the suggested fine for the return form."""
    loan = _lookup_open_loan(ctx.conn, loan_id)
    assessment = assess_overdue(loan.due_date, ctx.today)
    return ReturnPreview(
        loan=loan,
        today=ctx.today,
        days_overdue=assessment.days_overdue,
        suggested_fine=assessment.suggested_fine,
    )


def process_return(
    ctx: RequestContext, loan_id: int, entered_fine: Union[str, int, float, Decimal, None]
) -> Receipt:
    """Take a copy back, charge the entered fine and notify the borrower.

    The entered fine is final: it is neither compared with nor clamped to the
    suggested fine. Loan, inventory and fine changes commit together or not at
    all.
    """
    try:
        fine_amount = AmountValidator.parse_amount(entered_fine)
    except ValueError as exc:
        raise InvalidInput(str(exc)) from exc

    conn = ctx.conn
    fine_id = None
    try:
        with transaction(conn):
            loan = _lookup_open_loan(conn, loan_id)
            cursor = conn.execute(
                f"""
                UPDATE issued_books
                SET actual_return_date = ?, status = ?, fine_cents = ?
                WHERE id = ? AND status IN ({_OPEN_PLACEHOLDERS})
                """,
                (ctx.today.isoformat(), LoanStatus.RETURNED.value, to_cents(fine_amount), loan_id, *OPEN_LOAN_STATUSES),
            )
            if cursor.rowcount != 1:
                raise NotFoundOrAlreadyReturned(f"Loan {loan_id} was returned concurrently.")
            new_available = adjust_inventory(conn, loan.book_id, +1)
            if fine_amount > 0:
                fine_id = create_fine(conn, loan.id, loan.user_id, fine_amount, late_return_reason(loan.title))
    except NotFoundOrAlreadyReturned:
        logger.info("Return of loan %s skipped: not found or already returned", loan_id)
        raise
    except (sqlite3.Error, InventoryError) as exc:
        logger.error("Return of loan %s rolled back: %s", loan_id, exc)
        raise PersistenceFailure("Error processing return.") from exc

    assessment = assess_overdue(loan.due_date, ctx.today)
    logger.info(
        "Loan %s returned by member %s (%d days overdue, fine %s, book %s now has %d available)",
        loan_id, loan.user_id, assessment.days_overdue, fine_amount, loan.book_id, new_available,
    )

    messages = []
    if fine_id is not None:
        messages.append((loan.user_id, fine_charged_message(loan.title, fine_amount)))
    messages.append((loan.user_id, return_confirmation_message(loan.title)))
    sent, undelivered = _notify_all(ctx, messages)

    message = "Book returned successfully."
    if fine_amount > 0:
        message += f" A fine of {format_money(fine_amount)} has been issued."
    return Receipt(
        loan_id=loan_id,
        fine_charged=fine_amount,
        new_available_quantity=new_available,
        days_overdue=assessment.days_overdue,
        fine_id=fine_id,
        message=message,
        notifications_sent=sent,
        undelivered_notifications=undelivered,
    )


# ------------------------- Overdue sweep ------------------------- #
def mark_overdue_loans(ctx: RequestContext) -> int:
    """Flag issued loans whose due date has passed. Returns how many changed."""
    try:
        with transaction(ctx.conn):
            cursor = ctx.conn.execute(
                "UPDATE issued_books SET status = ? WHERE status = ? AND due_date < ?",
                (LoanStatus.OVERDUE.value, LoanStatus.ISSUED.value, ctx.today.isoformat()),
            )
    except sqlite3.Error as exc:
        raise PersistenceFailure("Error marking overdue loans.") from exc
    if cursor.rowcount:
        logger.info("%d loans marked overdue as of %s", cursor.rowcount, ctx.today)
    return cursor.rowcount


# ------------------------- Fine payment ------------------------- #
def pay_fine(ctx: RequestContext, fine_id: int, method: str = "cash") -> Payment:
    """Settle a pending fine in full and record the payment."""
    method = (method or "").strip().lower()
    if not method:
        raise InvalidInput("Payment method is required.")

    conn = ctx.conn
    try:
        with transaction(conn):
            fine = get_fine(conn, fine_id)
            if fine is None or fine.status is not FineStatus.PENDING:
                raise NotFound(f"Fine {fine_id} not found or already paid.")
            receipt_number = f"RCPT-{ctx.today:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"
            cursor = conn.execute(
                """
                INSERT INTO payments (fine_id, user_id, amount_cents, payment_date, payment_method, receipt_number)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (fine.id, fine.user_id, to_cents(fine.amount), ctx.today.isoformat(), method, receipt_number),
            )
            conn.execute(
                "UPDATE fines SET status = ? WHERE id = ? AND status = ?",
                (FineStatus.PAID.value, fine.id, FineStatus.PENDING.value),
            )
    except sqlite3.Error as exc:
        logger.error("Payment of fine %s rolled back: %s", fine_id, exc)
        raise PersistenceFailure("Error recording payment.") from exc

    payment = Payment(
        id=cursor.lastrowid,
        fine_id=fine.id,
        user_id=fine.user_id,
        amount=fine.amount,
        payment_date=ctx.today,
        payment_method=method,
        receipt_number=receipt_number,
    )
    logger.info("Fine %s paid by member %s: %s (%s)", fine.id, fine.user_id, fine.amount, receipt_number)
    _notify_all(ctx, [(fine.user_id, fine_paid_message(fine.amount, receipt_number))])
    return payment
