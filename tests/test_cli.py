import json
from datetime import date
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

import circulation
from fines import list_fines
from main import app
from utils.ui_helpers import OUTPUT_MODE_ENV

runner = CliRunner()


@pytest.fixture(autouse=True)
def plain_output(monkeypatch):
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")


@pytest.fixture
def loan(make_ctx, book, member):
    return circulation.issue_book(make_ctx(date(2023, 12, 18)), book.id, member.id, due_date=date(2024, 1, 1))


def test_list_no_books(lib):
    result = runner.invoke(app, ["list"])
    assert result.exit_code == 0
    assert "No books in library." in result.stdout


def test_add_book_and_list(lib):
    result = runner.invoke(app, ["add-book", "Dune", "Frank Herbert", "--copies", "2"])
    assert result.exit_code == 0
    assert "Successfully added: Dune by Frank Herbert" in result.stdout

    result = runner.invoke(app, ["list"])
    assert "Dune by Frank Herbert (2/2 available)" in result.stdout


def test_add_book_invalid_isbn(lib):
    result = runner.invoke(app, ["add-book", "Dune", "Frank Herbert", "--isbn", "123"])
    assert result.exit_code == 1
    assert "Error: Invalid ISBN format." in result.stdout


def test_add_member(lib):
    result = runner.invoke(app, ["add-member", "Ada", "ada@example.com", "--role", "faculty"])
    assert result.exit_code == 0
    assert "(faculty)" in result.stdout


def test_issue(lib, book, member):
    result = runner.invoke(app, ["issue", str(book.id), str(member.id), "--on", "2024-03-01"])
    assert result.exit_code == 0
    assert "issued to Ada Lovelace, due 2024-03-15" in result.stdout


def test_preview(lib, loan):
    result = runner.invoke(app, ["preview", str(loan.id), "--on", "2024-01-06"])
    assert result.exit_code == 0
    assert "Days overdue: 5" in result.stdout
    assert "Suggested fine: 5.00" in result.stdout


def test_return_defaults_to_suggested_fine(lib, conn, loan):
    result = runner.invoke(app, ["return", str(loan.id), "--on", "2024-01-06"])
    assert result.exit_code == 0
    assert "Book returned successfully. A fine of $5.00 has been issued." in result.stdout
    assert [str(f.amount) for f in list_fines(conn)] == ["5.00"]


def test_return_with_waived_fine(lib, conn, loan):
    result = runner.invoke(app, ["return", str(loan.id), "--fine", "0", "--on", "2024-01-06"])
    assert result.exit_code == 0
    assert "Book returned successfully." in result.stdout
    assert "fine" not in result.stdout
    assert list_fines(conn) == []


def test_return_twice(lib, loan):
    runner.invoke(app, ["return", str(loan.id), "--fine", "0", "--on", "2024-01-01"])
    result = runner.invoke(app, ["return", str(loan.id), "--fine", "0", "--on", "2024-01-01"])
    assert result.exit_code == 0
    assert f"Loan {loan.id} not found or already returned." in result.stdout


def test_return_invalid_fine(lib, loan):
    result = runner.invoke(app, ["return", str(loan.id), "--fine", "-2"])
    assert result.exit_code == 2
    assert "Error: Fine amount cannot be negative." in result.stdout


def test_sweep_and_loans_json(lib, loan):
    result = runner.invoke(app, ["sweep", "--on", "2024-01-05"])
    assert result.exit_code == 0
    assert "1 loans marked overdue." in result.stdout

    result = runner.invoke(app, ["--output", "json", "loans", "--status", "overdue"])
    assert result.exit_code == 0
    loans = json.loads(result.stdout)
    assert [(l["id"], l["status"]) for l in loans] == [(loan.id, "overdue")]


def test_pay_and_notifications(lib, member, loan):
    runner.invoke(app, ["return", str(loan.id), "--fine", "2.50", "--on", "2024-01-06"])
    result = runner.invoke(app, ["fines", "--user", str(member.id)])
    assert "2.50 (pending) Late return of book 'The Pragmatic Programmer'" in result.stdout

    fine_id = result.stdout.split(" - ")[0]
    result = runner.invoke(app, ["pay", fine_id, "--method", "cash", "--on", "2024-01-07"])
    assert result.exit_code == 0
    assert f"Fine {fine_id} paid: 2.50 (RCPT-20240107-" in result.stdout

    result = runner.invoke(app, ["notifications", str(member.id), "--unread"])
    assert "* Your payment of $2.50 has been received." in result.stdout


def test_stats(lib, book):
    result = runner.invoke(app, ["stats"])
    assert result.exit_code == 0
    assert "Total Titles: 1" in result.stdout
    assert "Total Copies: 2" in result.stdout


@patch("subprocess.run")
@patch("webbrowser.open")
def test_serve_command(mock_webbrowser_open, mock_subprocess_run, lib):
    result = runner.invoke(app, ["serve"])
    assert result.exit_code == 0
    assert "Starting API on" in result.stdout
    mock_webbrowser_open.assert_called_once()
    args = mock_subprocess_run.call_args[0][0]
    assert "uvicorn" in args
    assert "api:app" in args
    assert "--host" in args
    assert "--port" in args
