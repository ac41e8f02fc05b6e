from decimal import Decimal

import pytest

from utils.validators import AmountValidator, ISBNValidator, TextValidator


@pytest.mark.parametrize("isbn", ["0306406152", "0-306-40615-2", "9780306406157", "080442957X"])
def test_valid_isbns(isbn):
    assert ISBNValidator.is_valid_isbn(isbn)


@pytest.mark.parametrize("isbn", ["", None, "1234567890", "9780306406158", "12345"])
def test_invalid_isbns(isbn):
    assert not ISBNValidator.is_valid_isbn(isbn)


def test_text_validators():
    assert TextValidator.validate_title("Dune")
    assert not TextValidator.validate_title("1984 ")  # digits only
    assert TextValidator.validate_author("Frank Herbert")
    assert not TextValidator.validate_author("  ")
    assert TextValidator.validate_email("a@b.io")
    assert not TextValidator.validate_email("a@b")


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("5", Decimal("5.00")),
        ("5.5", Decimal("5.50")),
        (" 2.345 ", Decimal("2.35")),
        (3, Decimal("3.00")),
        (0.1, Decimal("0.10")),
        (Decimal("7.25"), Decimal("7.25")),
        ("", Decimal("0.00")),
        (None, Decimal("0.00")),
    ],
)
def test_parse_amount(raw, expected):
    assert AmountValidator.parse_amount(raw) == expected


@pytest.mark.parametrize("raw", ["-0.01", "ten", "nan", "inf", True, [5]])
def test_parse_amount_rejects(raw):
    with pytest.raises(ValueError):
        AmountValidator.parse_amount(raw)


def test_parse_amount_rejects_amounts_beyond_integer_cents():
    assert AmountValidator.parse_amount("92233720368547758.07") == Decimal("92233720368547758.07")
    with pytest.raises(ValueError, match="too large"):
        AmountValidator.parse_amount("92233720368547758.08")
    with pytest.raises(ValueError, match="too large"):
        AmountValidator.parse_amount("1e20")
