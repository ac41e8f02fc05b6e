"""Member notifications: message templates, the sink contract and inbox reads."""

from __future__ import annotations

import logging
import sqlite3
from datetime import date
from decimal import Decimal
from typing import List

from fines import format_money
from models import Notification

logger = logging.getLogger(__name__)


# ------------------------- Message templates ------------------------- #
def fine_charged_message(title: str, amount: Decimal) -> str:
    return (
        f"You have been charged a fine of {format_money(amount)} for late return of '{title}'. "
        "Please settle the payment at the library."
    )


def return_confirmation_message(title: str) -> str:
    return f"Your book '{title}' has been returned successfully."


def book_issued_message(title: str, due_date: date) -> str:
    return f"The book '{title}' has been issued to you. Please return it by {due_date.strftime('%b %d, %Y')}."


def fine_paid_message(amount: Decimal, receipt_number: str) -> str:
    return f"Your payment of {format_money(amount)} has been received. Receipt number: {receipt_number}."


# ------------------------- Sinks ------------------------- #
class NotificationSink:
    """Append-only per-member message queue."""

    def enqueue(self, user_id: int, message: str) -> int:
        raise NotImplementedError


class DatabaseNotificationSink(NotificationSink):
    """Stores notifications in the ``notifications`` table for the member inbox."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def enqueue(self, user_id: int, message: str) -> int:
        cursor = self.conn.execute(
            "INSERT INTO notifications (user_id, message, is_read) VALUES (?, ?, 0)",
            (user_id, message),
        )
        logger.debug("Notification %s queued for user %s", cursor.lastrowid, user_id)
        return cursor.lastrowid


# ------------------------- Inbox ------------------------- #
def list_notifications(conn: sqlite3.Connection, user_id: int, unread_only: bool = False) -> List[Notification]:
    sql = "SELECT * FROM notifications WHERE user_id = ?"
    if unread_only:
        sql += " AND is_read = 0"
    sql += " ORDER BY id DESC"
    return [Notification.from_row(row) for row in conn.execute(sql, (user_id,)).fetchall()]


def mark_read(conn: sqlite3.Connection, notification_id: int) -> bool:
    cursor = conn.execute("UPDATE notifications SET is_read = 1 WHERE id = ?", (notification_id,))
    return cursor.rowcount > 0
