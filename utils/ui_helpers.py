import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable controlling CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode

def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()

def print_book_list(books: List[Any]) -> None:
    """Print the catalog in the current output mode.
    - plain: 'ID - Title by Author [available/total]' lines, or 'No books in library.'
    - json: array of book dicts
    - rich: table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Available", justify="right")
        for b in books:
            table.add_row(str(b.id), b.title, b.author, f"{b.available_quantity}/{b.total_quantity}")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id} - {b}")

def print_loan_list(loans: List[Any], empty_message: str = "No loans found.") -> None:
    mode = get_output_mode()

    if not loans:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps([loan.to_dict() for loan in loans], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📖 Loans", header_style="bold cyan")
        table.add_column("Loan", style="magenta", no_wrap=True)
        table.add_column("Title")
        table.add_column("Borrower")
        table.add_column("Due")
        table.add_column("Status")
        for loan in loans:
            style = "red" if loan.status.value == "overdue" else "white"
            table.add_row(str(loan.id), loan.title or "", loan.user_name or "", loan.due_date.isoformat(),
                          f"[{style}]{loan.status.value}[/]")
        _console.print(table)
    else:
        for loan in loans:
            print(f"{loan.id} - {loan.title} -> {loan.user_name} due {loan.due_date.isoformat()} ({loan.status.value})")

def print_record(title: str, record: Dict[str, Any]) -> None:
    """Print a single record (receipt, preview, payment...) as key/value pairs."""
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(record, ensure_ascii=False, default=str))
    elif mode == "rich":
        content = "\n".join(f"[bold]{key}:[/] {value}" for key, value in record.items())
        _console.print(Panel.fit(content, title=title, border_style="blue"))
    else:
        print(title)
        for key, value in record.items():
            print(f"{key}: {value}")

def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print dashboard counters in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = {
        "total_titles": "Total Titles",
        "total_copies": "Total Copies",
        "issued_copies": "Issued Copies",
        "total_members": "Members",
        "unpaid_fines": "Unpaid Fines",
    }

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{labels.get(k, k)}:[/] {v}" for k, v in stats.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, value in stats.items():
            print(f"{labels.get(key, key)}: {value}")
