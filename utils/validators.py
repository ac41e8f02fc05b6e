import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union

# Largest amount whose cent value still fits a signed 64-bit SQLite INTEGER
MAX_AMOUNT = Decimal(2**63 - 1) / 100


class ISBNValidator:
    """ISBN-10 / ISBN-13 validator with checksum checks."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper()

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        if not isbn:
            return False
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            # weighted checksum 1..10
            total = 0
            for i, ch in enumerate(s[:-1], 1):
                if not ch.isdigit():
                    return False
                total += i * int(ch)
            check = s[-1]
            if check == 'X':
                check_val = 10
            elif check.isdigit():
                check_val = int(check)
            else:
                return False
            return (total + 10 * check_val) % 11 == 0
        elif len(s) == 13 and s.isdigit():
            total = 0
            for i, ch in enumerate(s[:-1]):
                factor = 1 if i % 2 == 0 else 3
                total += factor * int(ch)
            check_val = (10 - (total % 10)) % 10
            return check_val == int(s[-1])
        return False

class TextValidator:
    """Basic checks for catalog and member text fields."""

    EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    @staticmethod
    def _is_non_empty_alpha(text: Optional[str]) -> bool:
        if text is None:
            return False
        t = text.strip()
        if not t:
            return False
        # reject purely numeric
        return any(c.isalpha() for c in t)

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        return TextValidator._is_non_empty_alpha(title)

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        # must not be digits only
        if author is None:
            return False
        t = author.strip()
        if not t:
            return False
        return not t.isdigit()

    @staticmethod
    def validate_email(email: Optional[str]) -> bool:
        if not email:
            return False
        return bool(TextValidator.EMAIL_RE.match(email.strip()))

class AmountValidator:
    """Parses librarian-entered money amounts."""

    @staticmethod
    def parse_amount(raw: Union[str, int, float, Decimal, None]) -> Decimal:
        """Return ``raw`` as a non-negative Decimal with two decimal places.

        ``None`` and blank strings mean "no fine". Raises ``ValueError`` for
        non-numeric, non-finite, negative or too large input.
        """
        if raw is None:
            return Decimal("0.00")
        if isinstance(raw, bool):
            raise ValueError("Fine amount must be a number.")
        if isinstance(raw, str):
            raw = raw.strip()
            if not raw:
                return Decimal("0.00")
        try:
            # floats go through str() so 0.1 stays 0.1
            amount = Decimal(str(raw)) if isinstance(raw, float) else Decimal(raw)
        except (InvalidOperation, TypeError, ValueError):
            raise ValueError(f"Fine amount '{raw}' is not a number.") from None
        if not amount.is_finite():
            raise ValueError("Fine amount must be a finite number.")
        if amount < 0:
            raise ValueError("Fine amount cannot be negative.")
        try:
            amount = amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        except InvalidOperation:
            raise ValueError("Fine amount is too large.") from None
        if amount > MAX_AMOUNT:
            raise ValueError("Fine amount is too large.")
        return amount
