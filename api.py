import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from book import Book
from config import settings
from database import get_db_connection
from errors import BookNotFound, BusinessRuleError, LedgerError, LoanNotFound, StorageError
from library import Library
from loan import Loan, utcnow

logger = logging.getLogger(__name__)

library = Library()

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"{settings.app_name} {settings.app_version} starting, database={library.db_file}")
    yield
    logger.info(f"{settings.app_name} shutting down")

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

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
    # Loan state changes on every borrow/return; never serve it from a cache
    if request.url.path.startswith("/loans"):
        response.headers["Cache-Control"] = "no-store"
    return response

# --- Error mapping ---
@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    headers = {}
    if isinstance(exc, (BookNotFound, LoanNotFound)):
        status_code = 404
    elif isinstance(exc, BusinessRuleError):
        status_code = 409
    elif isinstance(exc, StorageError):
        status_code = 503
        headers["Retry-After"] = "1"
    else:
        # Invariant violations were already logged where they were detected
        status_code = 500
    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)

# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
user_id_header = APIKeyHeader(name="X-User-Id", auto_error=False)

def get_api_key(api_key: Optional[str] = Security(api_key_header)):
    """Dependency to validate the admin API key."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")

def get_user_id(user_id: Optional[str] = Security(user_id_header)) -> str:
    """The identity collaborator passes an already validated user id."""
    if not user_id or not user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id.strip()

# --- Models ---
class BookModel(BaseModel):
    book_id: int
    title: str
    author: str
    isbn: Optional[str] = None
    total_copies: int
    copies_available: int

class BookCreateModel(BaseModel):
    title: str
    author: str
    total_copies: int = Field(default=1, ge=0)
    isbn: Optional[str] = Field(default=None, description="ISBN-10 or ISBN-13")

class CopiesUpdateModel(BaseModel):
    total_copies: int = Field(ge=0)

class LoanModel(BaseModel):
    loan_id: int
    user_id: str
    book_id: int
    borrow_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    returned: bool
    fine: int
    status: str
    overdue: bool = False

class BorrowRequest(BaseModel):
    book_id: int

class BorrowResponse(BaseModel):
    loan_id: int
    due_date: datetime

class ReturnRequest(BaseModel):
    loan_id: int

class ReturnResponse(BaseModel):
    loan_id: int
    fine: int
    return_date: datetime

class StatsModel(BaseModel):
    total_books: int
    total_copies: int
    copies_available: int
    total_loans: int
    active_loans: int
    overdue_loans: int
    total_fines: int

class UserSummaryModel(BaseModel):
    user_id: str
    borrow_count: int
    active_loans: int
    total_fines: int

class EventModel(BaseModel):
    event_id: int
    loan_id: int
    user_id: str
    book_id: int
    action: str
    occurred_at: datetime
    details: Optional[str] = None

# --- Helper Functions ---
def _book_model(book: Book) -> BookModel:
    return BookModel(**book.to_dict())

def _loan_model(loan: Loan, now: Optional[datetime] = None) -> LoanModel:
    return LoanModel(**loan.to_dict(), overdue=loan.is_overdue(now))

# --- Health ---
@app.get("/health")
def health():
    """Quick database probe for container health checks."""
    db_ok = True
    try:
        conn = get_db_connection(library.db_file)
        conn.execute("SELECT 1")
        conn.close()
    except Exception:
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
    }

@app.get("/stats", response_model=StatsModel)
def get_library_stats():
    return StatsModel(**library.get_statistics())

# --- Catalog ---
@app.get("/books", response_model=List[BookModel])
def list_books(available: bool = Query(False, description="Only titles with a copy on the shelf")):
    return [_book_model(b) for b in library.catalog.list_books(available_only=available)]

@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: int):
    return _book_model(library.catalog.get_book(book_id))

@app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_book(payload: BookCreateModel):
    try:
        book = library.catalog.add_book(payload.title, payload.author, payload.total_copies, isbn=payload.isbn)
    except ValueError as e:
        return JSONResponse(status_code=400, content={"detail": str(e), "code": "invalid_input"})
    return _book_model(book)

@app.put("/books/{book_id}/copies", response_model=BookModel, dependencies=[Depends(get_api_key)])
def set_total_copies(book_id: int, payload: CopiesUpdateModel):
    return _book_model(library.catalog.set_total_copies(book_id, payload.total_copies))

@app.delete("/books/{book_id}", dependencies=[Depends(get_api_key)])
def remove_book(book_id: int):
    library.catalog.remove_book(book_id)
    return {"status": "deleted", "book_id": book_id}

# --- Loans ---
@app.post("/loans/borrow", response_model=BorrowResponse, status_code=201)
def borrow_book(payload: BorrowRequest, user_id: str = Depends(get_user_id)):
    loan = library.ledger.borrow(user_id, payload.book_id)
    return BorrowResponse(loan_id=loan.loan_id, due_date=loan.due_date)

@app.post("/loans/return", response_model=ReturnResponse)
def return_book(payload: ReturnRequest, user_id: str = Depends(get_user_id)):
    loan = library.ledger.return_loan(payload.loan_id, user_id)
    return ReturnResponse(loan_id=loan.loan_id, fine=loan.fine, return_date=loan.return_date)

@app.get("/loans/active", response_model=List[LoanModel])
def my_active_loans(user_id: str = Depends(get_user_id)):
    now = utcnow()
    return [_loan_model(loan, now) for loan in library.ledger.list_active_loans(user_id)]

@app.get("/loans/mine", response_model=List[LoanModel])
def my_loans(user_id: str = Depends(get_user_id)):
    now = utcnow()
    return [_loan_model(loan, now) for loan in library.ledger.list_all_loans(user_id)]

@app.get("/loans/overdue", response_model=List[LoanModel], dependencies=[Depends(get_api_key)])
def overdue_loans():
    now = utcnow()
    return [_loan_model(loan, now) for loan in library.ledger.list_overdue_loans(now)]

@app.get("/loans", response_model=List[LoanModel], dependencies=[Depends(get_api_key)])
def all_loans(user_id: Optional[str] = Query(None), active: Optional[bool] = Query(None)):
    now = utcnow()
    loans = library.ledger.list_all_loans(user_id)
    if active is not None:
        loans = [loan for loan in loans if loan.active == active]
    return [_loan_model(loan, now) for loan in loans]

@app.get("/loans/{loan_id}", response_model=LoanModel)
def get_loan(
    loan_id: int,
    api_key: Optional[str] = Security(api_key_header),
    user_id: Optional[str] = Security(user_id_header),
):
    """Owners see their own loans; the admin key sees any."""
    if api_key == settings.api_key:
        return _loan_model(library.ledger.get_loan(loan_id))
    owner = get_user_id(user_id)
    return _loan_model(library.ledger.get_loan(loan_id, user_id=owner))

@app.get("/users/{user_id}/summary", response_model=UserSummaryModel, dependencies=[Depends(get_api_key)])
def user_summary(user_id: str):
    return UserSummaryModel(**library.ledger.user_summary(user_id))

@app.get("/events", response_model=List[EventModel], dependencies=[Depends(get_api_key)])
def list_events(user_id: Optional[str] = Query(None), loan_id: Optional[int] = Query(None)):
    return [EventModel(**e.to_dict()) for e in library.ledger.list_events(user_id=user_id, loan_id=loan_id)]
