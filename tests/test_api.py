from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient

import circulation
from config import settings
from models import Member, Role

HEADERS = {"X-API-Key": settings.api_key}


@pytest.fixture
def client(lib):
    # lib has already pointed the database module at a per-test file
    import api as api_module

    with TestClient(api_module.app) as test_client:
        yield test_client


@pytest.fixture
def librarian(lib):
    return lib.add_member(Member("Head Librarian", "librarian@example.com", role=Role.LIBRARIAN))


@pytest.fixture
def late_loan(make_ctx, book, member):
    """A loan that fell due five days ago."""
    today = date.today()
    return circulation.issue_book(
        make_ctx(today - timedelta(days=19)), book.id, member.id, due_date=today - timedelta(days=5)
    )


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["db"] is True


def test_get_books(client, book):
    response = client.get("/books")
    assert response.status_code == 200
    assert [b["title"] for b in response.json()] == [book.title]


def test_add_book_with_valid_api_key(client):
    payload = {"title": "Dune", "author": "Frank Herbert", "total_quantity": 3}
    response = client.post("/books", headers=HEADERS, json=payload)
    assert response.status_code == 200
    body = response.json()
    assert body["available_quantity"] == 3
    assert client.get(f"/books/{body['id']}").json()["title"] == "Dune"


def test_add_book_with_invalid_api_key(client):
    response = client.post("/books", headers={"X-API-Key": "invalid-key"}, json={"title": "Dune", "author": "FH"})
    assert response.status_code == 403


def test_book_not_found(client):
    assert client.get("/books/999").status_code == 404


def test_update_and_delete_book(client, book):
    response = client.put(f"/books/{book.id}", headers=HEADERS, json={"title": "The Pragmatic Programmer, 2nd ed."})
    assert response.status_code == 200
    assert response.json()["title"] == "The Pragmatic Programmer, 2nd ed."
    assert client.delete(f"/books/{book.id}", headers=HEADERS).status_code == 200
    assert client.get(f"/books/{book.id}").status_code == 404


def test_add_member(client):
    response = client.post("/members", headers=HEADERS, json={"name": "Ada", "email": "ada@example.com"})
    assert response.status_code == 200
    assert response.json()["role"] == "student"
    duplicate = client.post("/members", headers=HEADERS, json={"name": "Ada", "email": "ada@example.com"})
    assert duplicate.status_code == 400


def test_issue_loan(client, book, member, librarian):
    headers = {**HEADERS, "X-Librarian-Id": str(librarian.id)}
    response = client.post("/loans", headers=headers, json={"book_id": book.id, "user_id": member.id})
    assert response.status_code == 200
    loan = response.json()
    assert loan["status"] == "issued"
    assert loan["due_date"] == (date.today() + timedelta(days=settings.default_loan_days)).isoformat()
    assert client.get(f"/books/{book.id}").json()["available_quantity"] == 1


def test_issue_unavailable_book(client, book, member):
    for _ in range(2):
        assert client.post("/loans", headers=HEADERS, json={"book_id": book.id, "user_id": member.id}).status_code == 200
    response = client.post("/loans", headers=HEADERS, json={"book_id": book.id, "user_id": member.id})
    assert response.status_code == 409


def test_non_librarian_caller_rejected(client, book, member):
    headers = {**HEADERS, "X-Librarian-Id": str(member.id)}
    response = client.post("/loans", headers=headers, json={"book_id": book.id, "user_id": member.id})
    assert response.status_code == 403


def test_return_form_shows_suggested_fine(client, late_loan):
    response = client.get(f"/loans/{late_loan.id}/return", headers=HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["days_overdue"] == 5
    assert body["suggested_fine"] == "5.00"
    assert body["loan"]["title"] == late_loan.title


def test_return_with_fine(client, member, late_loan):
    response = client.post(f"/loans/{late_loan.id}/return", headers=HEADERS, json={"fine_amount": "5.00"})
    assert response.status_code == 200
    receipt = response.json()
    assert receipt["fine_charged"] == "5.00"
    assert receipt["new_available_quantity"] == 2
    assert receipt["notifications_sent"] == 2
    assert receipt["redirect_to"] == "/dashboard"

    fines = client.get("/fines", headers=HEADERS, params={"user_id": member.id}).json()
    assert [(f["amount"], f["status"]) for f in fines] == [("5.00", "pending")]
    inbox = client.get(f"/members/{member.id}/notifications", headers=HEADERS).json()
    assert inbox[0]["message"].endswith("has been returned successfully.")


def test_second_return_redirects_to_dashboard(client, late_loan):
    client.post(f"/loans/{late_loan.id}/return", headers=HEADERS, json={"fine_amount": 0})
    response = client.post(
        f"/loans/{late_loan.id}/return", headers=HEADERS, json={"fine_amount": 0}, follow_redirects=False
    )
    assert response.status_code == 303
    assert response.headers["location"] == "/dashboard"

    form = client.get(f"/loans/{late_loan.id}/return", headers=HEADERS, follow_redirects=False)
    assert form.status_code == 303


def test_return_negative_fine_rejected(client, late_loan):
    response = client.post(f"/loans/{late_loan.id}/return", headers=HEADERS, json={"fine_amount": "-3"})
    assert response.status_code == 422
    assert client.get("/loans", headers=HEADERS, params={"status": "returned"}).json() == []


@pytest.mark.parametrize("loan_id", ["abc", "0", "-4"])
def test_bad_loan_id_redirects_to_dashboard(client, late_loan, loan_id):
    form = client.get(f"/loans/{loan_id}/return", headers=HEADERS, follow_redirects=False)
    assert form.status_code == 303
    assert form.headers["location"] == "/dashboard"

    response = client.post(
        f"/loans/{loan_id}/return", headers=HEADERS, json={"fine_amount": 0}, follow_redirects=False
    )
    assert response.status_code == 303
    assert response.headers["location"] == "/dashboard"
    assert client.get("/loans", headers=HEADERS, params={"status": "returned"}).json() == []


def test_return_fine_too_large_rejected(client, late_loan):
    response = client.post(f"/loans/{late_loan.id}/return", headers=HEADERS, json={"fine_amount": "1e20"})
    assert response.status_code == 422
    assert "too large" in response.json()["detail"]


def test_return_persistence_failure_is_generic(client, late_loan, monkeypatch):
    def broken(*args, **kwargs):
        raise circulation.PersistenceFailure("boom")

    monkeypatch.setattr(circulation, "process_return", broken)
    response = client.post(f"/loans/{late_loan.id}/return", headers=HEADERS, json={"fine_amount": "1"})
    assert response.status_code == 500
    assert "Nothing was changed" in response.json()["detail"]


def test_pay_fine(client, member, late_loan):
    receipt = client.post(f"/loans/{late_loan.id}/return", headers=HEADERS, json={"fine_amount": "5"}).json()
    response = client.post(f"/fines/{receipt['fine_id']}/pay", headers=HEADERS, json={"method": "card"})
    assert response.status_code == 200
    assert response.json()["amount"] == "5.00"
    again = client.post(f"/fines/{receipt['fine_id']}/pay", headers=HEADERS, json={"method": "card"})
    assert again.status_code == 404


def test_sweep_and_dashboard(client, late_loan):
    response = client.post("/loans/overdue-sweep", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["marked_overdue"] == 1

    dashboard = client.get("/dashboard", headers=HEADERS).json()
    assert dashboard["stats"]["issued_copies"] == 1
    assert [(l["id"], l["status"], l["days_overdue"]) for l in dashboard["overdue"]] == [
        (late_loan.id, "overdue", 5)
    ]
    assert dashboard["due_today"] == []


def test_mark_notification_read(client, member, late_loan):
    inbox = client.get(f"/members/{member.id}/notifications", headers=HEADERS).json()
    response = client.post(f"/notifications/{inbox[0]['id']}/read", headers=HEADERS)
    assert response.status_code == 200
    unread = client.get(f"/members/{member.id}/notifications", headers=HEADERS, params={"unread_only": True}).json()
    assert unread == []
