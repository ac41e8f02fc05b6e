from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import List, Optional


class LoanStatus(str, Enum):
    ISSUED = "issued"
    OVERDUE = "overdue"
    RETURNED = "returned"


# Loans a librarian can still take back
OPEN_LOAN_STATUSES = (LoanStatus.ISSUED.value, LoanStatus.OVERDUE.value)


class FineStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class Role(str, Enum):
    LIBRARIAN = "librarian"
    STUDENT = "student"
    FACULTY = "faculty"


def _to_date(value) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


CENT = Decimal("0.01")


def quantize_money(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def from_cents(cents: Optional[int]) -> Decimal:
    return quantize_money(Decimal(cents or 0) / 100)


def _jsonable(data: dict) -> dict:
    out = {}
    for key, value in data.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, date):
            value = value.isoformat()
        elif isinstance(value, Decimal):
            value = str(value)
        out[key] = value
    return out


@dataclass
class Book:
    """A catalog title and its copy counts."""

    title: str
    author: str
    total_quantity: int = 1
    available_quantity: int = 1
    isbn: Optional[str] = None
    category: Optional[str] = None
    id: Optional[int] = None

    def __post_init__(self) -> None:
        self.title = self.title.strip()
        self.author = self.author.strip()

    def __str__(self) -> str:
        return f"{self.title} by {self.author} ({self.available_quantity}/{self.total_quantity} available)"

    def to_dict(self) -> dict:
        return asdict(self)

    @staticmethod
    def from_row(row) -> "Book":
        data = dict(row)
        return Book(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            isbn=data.get("isbn"),
            category=data.get("category"),
            total_quantity=data["total_quantity"],
            available_quantity=data["available_quantity"],
        )


@dataclass
class Member:
    """A library user: librarian, student or faculty."""

    name: str
    email: str
    role: Role = Role.STUDENT
    id: Optional[int] = None

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))

    @staticmethod
    def from_row(row) -> "Member":
        data = dict(row)
        return Member(id=data["id"], name=data["name"], email=data["email"], role=Role(data["role"]))


@dataclass
class LoanRecord:
    """One physical copy lent to one member, joined with the book title and borrower name."""

    id: int
    book_id: int
    user_id: int
    issue_date: date
    due_date: date
    status: LoanStatus
    actual_return_date: Optional[date] = None
    fine_amount: Decimal = Decimal("0.00")
    title: Optional[str] = None
    author: Optional[str] = None
    user_name: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status.value in OPEN_LOAN_STATUSES

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))

    @staticmethod
    def from_row(row) -> "LoanRecord":
        data = dict(row)
        return LoanRecord(
            id=data["id"],
            book_id=data["book_id"],
            user_id=data["user_id"],
            issue_date=_to_date(data["issue_date"]),
            due_date=_to_date(data["due_date"]),
            actual_return_date=_to_date(data.get("actual_return_date")),
            status=LoanStatus(data["status"]),
            fine_amount=from_cents(data.get("fine_cents")),
            title=data.get("title"),
            author=data.get("author"),
            user_name=data.get("user_name"),
        )


@dataclass
class Fine:
    id: int
    issued_book_id: int
    user_id: int
    amount: Decimal
    reason: str
    status: FineStatus = FineStatus.PENDING
    created_at: Optional[str] = None

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))

    @staticmethod
    def from_row(row) -> "Fine":
        data = dict(row)
        return Fine(
            id=data["id"],
            issued_book_id=data["issued_book_id"],
            user_id=data["user_id"],
            amount=from_cents(data["amount_cents"]),
            reason=data.get("reason") or "",
            status=FineStatus(data["status"]),
            created_at=data.get("created_at"),
        )


@dataclass
class Payment:
    id: int
    fine_id: int
    user_id: int
    amount: Decimal
    payment_date: date
    payment_method: str
    receipt_number: str

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))


@dataclass
class Notification:
    id: int
    user_id: int
    message: str
    is_read: bool = False
    created_at: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @staticmethod
    def from_row(row) -> "Notification":
        data = dict(row)
        return Notification(
            id=data["id"],
            user_id=data["user_id"],
            message=data["message"],
            is_read=bool(data["is_read"]),
            created_at=data.get("created_at"),
        )


@dataclass
class ReturnPreview:
    """What the librarian sees before confirming a return."""

    loan: LoanRecord
    today: date
    days_overdue: int
    suggested_fine: Decimal

    def to_dict(self) -> dict:
        return {
            "loan": self.loan.to_dict(),
            "today": self.today.isoformat(),
            "days_overdue": self.days_overdue,
            "suggested_fine": str(self.suggested_fine),
        }


@dataclass
class Receipt:
    """Outcome of a committed return."""

    loan_id: int
    fine_charged: Decimal
    new_available_quantity: int
    days_overdue: int = 0
    fine_id: Optional[int] = None
    message: str = ""
    notifications_sent: int = 0
    undelivered_notifications: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))
