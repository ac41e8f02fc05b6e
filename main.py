import logging
import subprocess
import sys
import webbrowser
from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterator, Optional

import typer
from rich.console import Console

import circulation
from circulation import RequestContext, WorkflowError
from config import settings
from database import get_db_connection
from fines import list_fines
from library import Library
from models import Book, Member, Role
from notifications import DatabaseNotificationSink, list_notifications
from utils.ui_helpers import (
    print_book_list,
    print_loan_list,
    print_record,
    print_stats_result,
    set_output_mode,
)

APP_NAME = "Library CLI"

console = Console()

app = typer.Typer(help=APP_NAME)


def _parse_day(value: Optional[str]) -> date:
    if not value:
        return date.today()
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise typer.BadParameter(f"'{value}' is not a YYYY-MM-DD date.")


@contextmanager
def _context(on: Optional[str] = None) -> Iterator[RequestContext]:
    """Open the library database and build the context for one command."""
    Library()
    conn = get_db_connection()
    try:
        yield RequestContext(conn=conn, notifier=DatabaseNotificationSink(conn), today=_parse_day(on))
    finally:
        conn.close()


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show log output"),
):
    """Global CLI options."""
    logging.basicConfig(level=logging.DEBUG if verbose else settings.log_level)
    if output:
        set_output_mode(output)


@app.command("init")
def cli_init():
    """Create the database tables."""
    Library()
    print("Database initialized.")


@app.command("add-book")
def cli_add_book(
    title: str,
    author: str,
    copies: int = typer.Option(1, "--copies", "-c", help="Number of physical copies"),
    isbn: Optional[str] = typer.Option(None, "--isbn"),
    category: Optional[str] = typer.Option(None, "--category"),
):
    """Add a title to the catalog."""
    try:
        book = Library().add_book(Book(title=title, author=author, isbn=isbn, category=category, total_quantity=copies))
    except ValueError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)
    print(f"Successfully added: {book.title} by {book.author} (id {book.id}, {book.total_quantity} copies)")


@app.command("add-member")
def cli_add_member(
    name: str,
    email: str,
    role: Role = typer.Option(Role.STUDENT, "--role", case_sensitive=False),
):
    """Register a librarian, student or faculty member."""
    try:
        member = Library().add_member(Member(name=name, email=email, role=role))
    except ValueError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)
    print(f"Member {member.id} added: {member.name} ({member.role.value})")


@app.command("list")
def cli_list():
    """List the catalog with copy counts."""
    print_book_list(Library().list_books())


@app.command("issue")
def cli_issue(
    book_id: int,
    user_id: int,
    days: Optional[int] = typer.Option(None, "--days", help="Loan period in days"),
    on: Optional[str] = typer.Option(None, "--on", help="Business date (YYYY-MM-DD)"),
):
    """Lend one copy of a book to a member."""
    with _context(on) as ctx:
        try:
            loan = circulation.issue_book(ctx, book_id, user_id, loan_days=days)
        except WorkflowError as e:
            print(f"Error: {e}")
            raise typer.Exit(code=1)
    print(f"Loan {loan.id}: '{loan.title}' issued to {loan.user_name}, due {loan.due_date.isoformat()}")


@app.command("loans")
def cli_loans(
    status: Optional[str] = typer.Option(None, "--status", help="issued | overdue | returned"),
    user_id: Optional[int] = typer.Option(None, "--user"),
):
    """List loans."""
    with _context() as ctx:
        try:
            loans = circulation.list_loans(ctx.conn, status=status, user_id=user_id)
        except ValueError as e:
            print(f"Error: {e}")
            raise typer.Exit(code=1)
    print_loan_list(loans)


@app.command("preview")
def cli_preview(
    loan_id: int,
    on: Optional[str] = typer.Option(None, "--on", help="Business date (YYYY-MM-DD)"),
):
    """Show overdue days and the suggested fine for a loan."""
    with _context(on) as ctx:
        try:
            preview = circulation.preview_return(ctx, loan_id)
        except circulation.NotFoundOrAlreadyReturned:
            print(f"Loan {loan_id} not found or already returned.")
            return
    loan = preview.loan
    print_record("Return Details", {
        "Title": loan.title,
        "Issued to": loan.user_name,
        "Due date": loan.due_date.isoformat(),
        "Days overdue": preview.days_overdue,
        "Suggested fine": str(preview.suggested_fine),
    })


@app.command("return")
def cli_return(
    loan_id: int,
    fine: Optional[str] = typer.Option(None, "--fine", help="Final fine amount (default: suggested fine)"),
    on: Optional[str] = typer.Option(None, "--on", help="Business date (YYYY-MM-DD)"),
):
    """Take a book back and charge the fine."""
    with _context(on) as ctx:
        try:
            if fine is None:
                fine = circulation.preview_return(ctx, loan_id).suggested_fine
            receipt = circulation.process_return(ctx, loan_id, fine)
        except circulation.NotFoundOrAlreadyReturned:
            print(f"Loan {loan_id} not found or already returned.")
            return
        except circulation.InvalidInput as e:
            print(f"Error: {e}")
            raise typer.Exit(code=2)
        except circulation.PersistenceFailure as e:
            print(f"Error: {e} Nothing was changed.")
            raise typer.Exit(code=1)
    print(receipt.message)
    for message in receipt.undelivered_notifications:
        console.print(f"[yellow]Notification not delivered:[/] {message}")


@app.command("sweep")
def cli_sweep(on: Optional[str] = typer.Option(None, "--on", help="Business date (YYYY-MM-DD)")):
    """Mark issued loans past their due date as overdue."""
    with _context(on) as ctx:
        try:
            count = circulation.mark_overdue_loans(ctx)
        except WorkflowError as e:
            print(f"Error: {e}")
            raise typer.Exit(code=1)
        overdue = circulation.overdue_loans(ctx.conn, ctx.today)
    print(f"{count} loans marked overdue.")
    print_loan_list([loan for loan, _ in overdue], empty_message="No overdue loans.")


@app.command("fines")
def cli_fines(
    user_id: Optional[int] = typer.Option(None, "--user"),
    status: Optional[str] = typer.Option(None, "--status", help="pending | paid"),
):
    """List fines."""
    with _context() as ctx:
        fines = list_fines(ctx.conn, user_id=user_id, status=status)
    if not fines:
        print("No fines found.")
        return
    for f in fines:
        print(f"{f.id} - member {f.user_id}: {f.amount} ({f.status.value}) {f.reason}")


@app.command("pay")
def cli_pay(
    fine_id: int,
    method: str = typer.Option("cash", "--method"),
    on: Optional[str] = typer.Option(None, "--on", help="Business date (YYYY-MM-DD)"),
):
    """Record payment of a pending fine."""
    with _context(on) as ctx:
        try:
            payment = circulation.pay_fine(ctx, fine_id, method)
        except WorkflowError as e:
            print(f"Error: {e}")
            raise typer.Exit(code=1)
    print(f"Fine {fine_id} paid: {payment.amount} ({payment.receipt_number})")


@app.command("notifications")
def cli_notifications(
    user_id: int,
    unread: bool = typer.Option(False, "--unread", help="Only unread messages"),
):
    """Show a member's notifications, newest first."""
    with _context() as ctx:
        items = list_notifications(ctx.conn, user_id, unread_only=unread)
    if not items:
        print("No notifications.")
        return
    for n in items:
        marker = " " if n.is_read else "*"
        print(f"{marker} {n.message}")


@app.command("stats")
def cli_stats():
    """Show dashboard counters."""
    print_stats_result(Library().get_statistics())


@app.command("serve")
def cli_serve(
    host: str = typer.Option(settings.api_host, "--host"),
    port: int = typer.Option(settings.api_port, "--port"),
    open_browser: bool = typer.Option(True, "--open/--no-open"),
):
    """Run the HTTP API with uvicorn."""
    url = f"http://{host}:{port}/docs"
    print(f"Starting API on {url}")
    if open_browser:
        webbrowser.open(url)
    subprocess.run([sys.executable, "-m", "uvicorn", "api:app", "--host", host, "--port", str(port)])


if __name__ == "__main__":
    app()
