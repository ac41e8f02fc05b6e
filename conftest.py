import os
from datetime import date

import pytest

from circulation import RequestContext
from database import get_db_connection
from library import Library
from models import Book, Member, Role
from notifications import DatabaseNotificationSink


@pytest.fixture
def lib(tmp_path, request):
    # Each test gets its own database file
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file)
    yield lib
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def conn(lib):
    conn = get_db_connection()
    yield conn
    conn.close()


@pytest.fixture
def make_ctx(conn):
    """Build a context for a given business date; the sink can be swapped for fault injection."""

    def _make(today: date, notifier=None) -> RequestContext:
        return RequestContext(conn=conn, notifier=notifier or DatabaseNotificationSink(conn), today=today)

    return _make


@pytest.fixture
def book(lib):
    return lib.add_book(Book(title="The Pragmatic Programmer", author="Hunt & Thomas", total_quantity=2))


@pytest.fixture
def member(lib):
    return lib.add_member(Member(name="Ada Lovelace", email="ada@example.com", role=Role.STUDENT))
