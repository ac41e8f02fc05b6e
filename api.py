import logging
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional, Union

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

import circulation
from circulation import (
    BookUnavailable,
    InvalidInput,
    NotFound,
    NotFoundOrAlreadyReturned,
    PersistenceFailure,
    RequestContext,
)
from config import settings
from database import get_db_connection
from fines import list_fines
from library import Library
from models import Book, Member, Role
from notifications import DatabaseNotificationSink, list_notifications, mark_read

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

library = Library()

app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    return response


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency validating the API key."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def get_request_context(
    api_key: str = Depends(get_api_key),
    librarian_id: Optional[int] = Header(default=None, alias="X-Librarian-Id"),
) -> Iterator[RequestContext]:
    """One connection and one context per request, closed after the response."""
    conn = get_db_connection()
    try:
        if librarian_id is not None:
            row = conn.execute("SELECT role FROM users WHERE id = ?", (librarian_id,)).fetchone()
            if row is None or row["role"] != Role.LIBRARIAN.value:
                raise HTTPException(status_code=403, detail="Librarian access required")
        yield RequestContext(conn=conn, notifier=DatabaseNotificationSink(conn), actor_id=librarian_id)
    finally:
        conn.close()


def _redirect_to_dashboard() -> RedirectResponse:
    return RedirectResponse(url=settings.dashboard_path, status_code=303)


def _parse_loan_id(raw: str) -> Optional[int]:
    """Loan ids arrive as path text; anything but a positive integer is no loan."""
    try:
        loan_id = int(raw)
    except ValueError:
        return None
    return loan_id if loan_id > 0 else None


# --- Models ---
class BookModel(BaseModel):
    id: int
    title: str
    author: str
    isbn: str | None = None
    category: str | None = None
    available_quantity: int
    total_quantity: int


class BookCreateModel(BaseModel):
    title: str
    author: str
    isbn: str | None = None
    category: str | None = None
    total_quantity: int = Field(default=1, ge=1)


class BookUpdateModel(BaseModel):
    title: str | None = None
    author: str | None = None
    category: str | None = None
    total_quantity: int | None = Field(default=None, ge=0)


class MemberModel(BaseModel):
    id: int
    name: str
    email: str
    role: str


class MemberCreateModel(BaseModel):
    name: str
    email: str
    role: Role = Role.STUDENT


class LoanModel(BaseModel):
    id: int
    book_id: int
    user_id: int
    title: str | None = None
    author: str | None = None
    user_name: str | None = None
    issue_date: str
    due_date: str
    actual_return_date: str | None = None
    status: str
    fine_amount: str
    days_overdue: int | None = None


class IssueRequest(BaseModel):
    book_id: int
    user_id: int
    loan_days: int | None = Field(default=None, ge=1)
    due_date: date | None = None


class ReturnPreviewModel(BaseModel):
    loan: LoanModel
    today: str
    days_overdue: int
    suggested_fine: str


class ReturnRequest(BaseModel):
    fine_amount: Union[str, float, None] = Field(default=None, description="Final fine; 0 or empty for none")


class ReceiptModel(BaseModel):
    loan_id: int
    fine_charged: str
    new_available_quantity: int
    days_overdue: int
    fine_id: int | None = None
    message: str
    notifications_sent: int
    undelivered_notifications: List[str] = []
    redirect_to: str


class FineModel(BaseModel):
    id: int
    issued_book_id: int
    user_id: int
    amount: str
    reason: str
    status: str
    created_at: str | None = None


class PaymentRequest(BaseModel):
    method: str = "cash"


class PaymentModel(BaseModel):
    id: int
    fine_id: int
    user_id: int
    amount: str
    payment_date: str
    payment_method: str
    receipt_number: str


class NotificationModel(BaseModel):
    id: int
    user_id: int
    message: str
    is_read: bool
    created_at: str | None = None


class SweepModel(BaseModel):
    marked_overdue: int
    as_of: str


class DashboardModel(BaseModel):
    stats: Dict[str, Any]
    due_today: List[LoanModel]
    overdue: List[LoanModel]


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health endpoint with a quick database round trip."""
    db_ok = True
    try:
        conn = get_db_connection()
        conn.execute("SELECT 1")
        conn.close()
    except Exception:
        logger.exception("Health check could not reach the database")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "db": db_ok,
        "version": settings.app_version,
        "environment": settings.environment,
    }


# --- Catalog ---
@app.get("/books", response_model=List[BookModel])
def get_books(q: Optional[str] = Query(default=None, description="Title or author search")):
    books = library.search_books(q) if q else library.list_books()
    return [BookModel(**b.to_dict()) for b in books]


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: int):
    book = library.find_book(book_id)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    return BookModel(**book.to_dict())


@app.post("/books", response_model=BookModel, dependencies=[Depends(get_api_key)])
def add_book(payload: BookCreateModel):
    try:
        book = library.add_book(Book(**payload.model_dump()))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return BookModel(**book.to_dict())


@app.put("/books/{book_id}", response_model=BookModel, dependencies=[Depends(get_api_key)])
def update_book(book_id: int, payload: BookUpdateModel):
    try:
        book = library.update_book(book_id, **payload.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    return BookModel(**book.to_dict())


@app.delete("/books/{book_id}", dependencies=[Depends(get_api_key)])
def delete_book(book_id: int):
    try:
        removed = library.remove_book(book_id)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not removed:
        raise HTTPException(status_code=404, detail="Book not found.")
    return {"message": f"Book {book_id} removed."}


# --- Members ---
@app.post("/members", response_model=MemberModel, dependencies=[Depends(get_api_key)])
def add_member(payload: MemberCreateModel):
    try:
        member = library.add_member(Member(name=payload.name, email=payload.email, role=payload.role))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return MemberModel(**member.to_dict())


@app.get("/members/{member_id}", response_model=MemberModel, dependencies=[Depends(get_api_key)])
def get_member(member_id: int):
    member = library.find_member(member_id)
    if not member:
        raise HTTPException(status_code=404, detail="Member not found.")
    return MemberModel(**member.to_dict())


# --- Loans ---
@app.post("/loans", response_model=LoanModel)
def issue_loan(payload: IssueRequest, ctx: RequestContext = Depends(get_request_context)):
    try:
        loan = circulation.issue_book(
            ctx, payload.book_id, payload.user_id, loan_days=payload.loan_days, due_date=payload.due_date
        )
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except BookUnavailable as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidInput as e:
        raise HTTPException(status_code=422, detail=str(e))
    except PersistenceFailure as e:
        raise HTTPException(status_code=500, detail=str(e))
    return LoanModel(**loan.to_dict())


@app.get("/loans", response_model=List[LoanModel])
def get_loans(
    status: Optional[str] = Query(default=None, pattern="^(issued|overdue|returned)$"),
    user_id: Optional[int] = None,
    ctx: RequestContext = Depends(get_request_context),
):
    return [LoanModel(**loan.to_dict()) for loan in circulation.list_loans(ctx.conn, status=status, user_id=user_id)]


@app.post("/loans/overdue-sweep", response_model=SweepModel)
def sweep_overdue(ctx: RequestContext = Depends(get_request_context)):
    try:
        count = circulation.mark_overdue_loans(ctx)
    except PersistenceFailure as e:
        raise HTTPException(status_code=500, detail=str(e))
    return SweepModel(marked_overdue=count, as_of=ctx.today.isoformat())


@app.get("/loans/{loan_id}/return", response_model=ReturnPreviewModel)
def get_return_form(loan_id: str, ctx: RequestContext = Depends(get_request_context)):
    """Data for the return form: loan details, overdue days and suggested fine."""
    loan_pk = _parse_loan_id(loan_id)
    if loan_pk is None:
        return _redirect_to_dashboard()
    try:
        preview = circulation.preview_return(ctx, loan_pk)
    except NotFoundOrAlreadyReturned:
        return _redirect_to_dashboard()
    return ReturnPreviewModel(**preview.to_dict())


@app.post("/loans/{loan_id}/return", response_model=ReceiptModel)
def return_loan(loan_id: str, payload: ReturnRequest, ctx: RequestContext = Depends(get_request_context)):
    """Confirm a return with the librarian's final fine amount."""
    loan_pk = _parse_loan_id(loan_id)
    if loan_pk is None:
        return _redirect_to_dashboard()
    try:
        receipt = circulation.process_return(ctx, loan_pk, payload.fine_amount)
    except NotFoundOrAlreadyReturned:
        return _redirect_to_dashboard()
    except InvalidInput as e:
        raise HTTPException(status_code=422, detail=str(e))
    except PersistenceFailure:
        return JSONResponse(
            status_code=500,
            content={"detail": "Error processing return. Nothing was changed; please try again."},
        )
    return ReceiptModel(**receipt.to_dict(), redirect_to=settings.dashboard_path)


# --- Fines ---
@app.get("/fines", response_model=List[FineModel])
def get_fines(
    user_id: Optional[int] = None,
    status: Optional[str] = Query(default=None, pattern="^(pending|paid)$"),
    ctx: RequestContext = Depends(get_request_context),
):
    return [FineModel(**f.to_dict()) for f in list_fines(ctx.conn, user_id=user_id, status=status)]


@app.post("/fines/{fine_id}/pay", response_model=PaymentModel)
def pay_fine(fine_id: int, payload: PaymentRequest, ctx: RequestContext = Depends(get_request_context)):
    try:
        payment = circulation.pay_fine(ctx, fine_id, payload.method)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidInput as e:
        raise HTTPException(status_code=422, detail=str(e))
    except PersistenceFailure as e:
        raise HTTPException(status_code=500, detail=str(e))
    return PaymentModel(**payment.to_dict())


# --- Notifications ---
@app.get("/members/{member_id}/notifications", response_model=List[NotificationModel])
def get_notifications(
    member_id: int, unread_only: bool = False, ctx: RequestContext = Depends(get_request_context)
):
    return [NotificationModel(**n.to_dict()) for n in list_notifications(ctx.conn, member_id, unread_only)]


@app.post("/notifications/{notification_id}/read")
def read_notification(notification_id: int, ctx: RequestContext = Depends(get_request_context)):
    if not mark_read(ctx.conn, notification_id):
        raise HTTPException(status_code=404, detail="Notification not found.")
    return {"message": "Notification marked as read."}


# --- Dashboard ---
@app.get("/dashboard", response_model=DashboardModel)
def dashboard(ctx: RequestContext = Depends(get_request_context)):
    due_today = circulation.loans_due_on(ctx.conn, ctx.today)
    overdue = [
        LoanModel(**loan.to_dict(), days_overdue=days)
        for loan, days in circulation.overdue_loans(ctx.conn, ctx.today)
    ]
    return DashboardModel(
        stats=library.get_statistics(),
        due_today=[LoanModel(**loan.to_dict()) for loan in due_today],
        overdue=overdue,
    )
