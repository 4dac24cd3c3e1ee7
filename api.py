import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException, Path, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from pydantic import BaseModel, Field

from config import settings
from library_app.book import Book
from library_app.database import get_db_connection
from library_app.errors import (
    AlreadyReturnedError,
    LibraryError,
    NotFoundError,
    OutOfStockError,
    ValidationError,
)
from library_app.library import Library
from library_app.member import Member
from library_app.seed import seed_demo_data
from library_app.validators import MAX_INTEGER

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

library = Library()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.seed_demo_data:
        seed_demo_data(library)
    yield


app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug, lifespan=lifespan)

# --- Performance middleware ---
# Compress responses larger than 1KB
app.add_middleware(GZipMiddleware, minimum_size=1000)

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
    # Lending data changes on every borrow/return
    if request.method == "GET" and request.url.path.startswith("/borrowings"):
        response.headers["Cache-Control"] = "no-store"
    return response


# --- Models ---
RecordId = Annotated[int, Path(ge=1, le=MAX_INTEGER)]
IdField = Annotated[int, Field(ge=1, le=MAX_INTEGER)]


class BookCreateModel(BaseModel):
    title: str
    author: str
    category: str
    stock: int


class BookUpdateModel(BaseModel):
    title: str | None = None
    author: str | None = None
    category: str | None = None
    stock: int | None = None


class BookModel(BaseModel):
    id: int
    title: str
    author: str
    category: str
    stock: int
    created_at: str | None = None
    updated_at: str | None = None


class MemberCreateModel(BaseModel):
    name: str
    email: str


class MemberUpdateModel(BaseModel):
    name: str | None = None
    email: str | None = None


class MemberModel(BaseModel):
    id: int
    name: str
    email: str
    member_code: str
    created_at: str | None = None
    updated_at: str | None = None


class BorrowingCreateModel(BaseModel):
    member_id: IdField
    book_ids: List[IdField] = Field(..., description="Books to lend, one copy each")
    borrow_date: datetime | None = Field(default=None, description="Defaults to now")
    due_date: datetime | None = Field(default=None, description="Defaults to borrow_date + the loan period")


class ReturnModel(BaseModel):
    return_date: datetime | None = Field(default=None, description="Defaults to now")


class BorrowedBookModel(BaseModel):
    id: int
    title: str
    author: str


class BorrowingModel(BaseModel):
    id: int
    member_id: int
    member_name: str | None = None
    member_email: str | None = None
    member_code: str | None = None
    book_ids: List[int]
    books: List[BorrowedBookModel]
    borrow_date: datetime
    due_date: datetime
    return_date: datetime | None = None
    status: Literal["borrowed", "returned", "overdue"]
    days_overdue: int = 0
    created_at: str | None = None
    updated_at: str | None = None


class StatsModel(BaseModel):
    total_books: int
    copies_in_stock: int
    total_members: int
    total_borrowings: int
    borrowings_by_status: Dict[str, int]


# --- Helpers ---
def _http_error(e: LibraryError) -> HTTPException:
    """Translate a lending-core error into the matching HTTP error."""
    if isinstance(e, NotFoundError):
        status_code = 404
    elif isinstance(e, (OutOfStockError, AlreadyReturnedError)):
        status_code = 409
    elif isinstance(e, ValidationError):
        status_code = 422
    else:
        status_code = 400
    return HTTPException(status_code=status_code, detail=e.to_dict())


def _paginate(response: Response, items: list, limit: int, offset: int) -> list:
    response.headers["X-Total-Count"] = str(len(items))
    return items[offset:offset + limit]


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health endpoint with a quick database round-trip."""
    db_ok = True
    try:
        conn = get_db_connection(library.db_file)
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except Exception:
        logger.exception("Health check could not reach the database")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": library.now().isoformat(),
        "db": db_ok,
        "version": settings.app_version,
    }


@app.get("/stats", response_model=StatsModel)
def get_library_stats():
    """Catalogue, member and borrowing counts."""
    return StatsModel(**library.get_statistics())


# --- Books ---
@app.get("/books", response_model=List[BookModel])
def get_books(
    response: Response,
    q: Optional[str] = Query(None, description="Search in title and author"),
    category: Optional[str] = Query(None, description="Exact category"),
    available: bool = Query(False, description="Only books with stock left"),
    sort_by: str = Query("title", description="title|author|category|stock|created_at"),
    order: str = Query("asc", description="asc|desc"),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    offset: int = Query(0, ge=0),
):
    """List books with search, sorting, limit and offset."""
    try:
        books = library.list_books(q=q, category=category, sort_by=sort_by, order=order, available=available)
    except LibraryError as e:
        raise _http_error(e)
    return [BookModel(**b.to_dict()) for b in _paginate(response, books, limit, offset)]


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: RecordId):
    try:
        return BookModel(**library.get_book(book_id).to_dict())
    except LibraryError as e:
        raise _http_error(e)


@app.post("/books", response_model=BookModel)
def add_book(payload: BookCreateModel):
    """Add a new book title with its initial stock."""
    try:
        book = library.add_book(Book(**payload.model_dump()))
    except LibraryError as e:
        raise _http_error(e)
    return BookModel(**book.to_dict())


@app.put("/books/{book_id}", response_model=BookModel)
def replace_book(book_id: RecordId, payload: BookCreateModel):
    try:
        book = library.update_book(book_id, payload.model_dump())
    except LibraryError as e:
        raise _http_error(e)
    return BookModel(**book.to_dict())


@app.patch("/books/{book_id}", response_model=BookModel)
def update_book(book_id: RecordId, payload: BookUpdateModel):
    try:
        book = library.update_book(book_id, payload.model_dump(exclude_unset=True), partial=True)
    except LibraryError as e:
        raise _http_error(e)
    return BookModel(**book.to_dict())


@app.delete("/books/{book_id}")
def delete_book(book_id: RecordId):
    try:
        removed = library.remove_book(book_id)
    except LibraryError as e:
        raise _http_error(e)
    if not removed:
        raise _http_error(NotFoundError("book", book_id))
    return {"message": "Book removed."}


# --- Members ---
@app.get("/members", response_model=List[MemberModel])
def get_members(
    response: Response,
    q: Optional[str] = Query(None, description="Search in name, email and member code"),
    sort_by: str = Query("member_code", description="name|email|member_code|created_at"),
    order: str = Query("asc", description="asc|desc"),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    offset: int = Query(0, ge=0),
):
    try:
        members = library.list_members(q=q, sort_by=sort_by, order=order)
    except LibraryError as e:
        raise _http_error(e)
    return [MemberModel(**m.to_dict()) for m in _paginate(response, members, limit, offset)]


@app.get("/members/{member_id}", response_model=MemberModel)
def get_member(member_id: RecordId):
    try:
        return MemberModel(**library.get_member(member_id).to_dict())
    except LibraryError as e:
        raise _http_error(e)


@app.post("/members", response_model=MemberModel)
def add_member(payload: MemberCreateModel):
    """Register a member; the member code is assigned here and never changes."""
    try:
        member = library.add_member(Member(name=payload.name, email=payload.email))
    except LibraryError as e:
        raise _http_error(e)
    return MemberModel(**member.to_dict())


@app.put("/members/{member_id}", response_model=MemberModel)
def replace_member(member_id: RecordId, payload: MemberCreateModel):
    try:
        member = library.update_member(member_id, payload.model_dump())
    except LibraryError as e:
        raise _http_error(e)
    return MemberModel(**member.to_dict())


@app.patch("/members/{member_id}", response_model=MemberModel)
def update_member(member_id: RecordId, payload: MemberUpdateModel):
    try:
        member = library.update_member(member_id, payload.model_dump(exclude_unset=True), partial=True)
    except LibraryError as e:
        raise _http_error(e)
    return MemberModel(**member.to_dict())


@app.delete("/members/{member_id}")
def delete_member(member_id: RecordId):
    try:
        removed = library.remove_member(member_id)
    except LibraryError as e:
        raise _http_error(e)
    if not removed:
        raise _http_error(NotFoundError("member", member_id))
    return {"message": "Member removed."}


# --- Borrowings ---
@app.get("/borrowings", response_model=List[BorrowingModel])
def get_borrowings(
    response: Response,
    status: Optional[str] = Query(None, description="borrowed|returned|overdue"),
    member_id: Optional[int] = Query(None, ge=1, le=MAX_INTEGER),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    offset: int = Query(0, ge=0),
):
    """List borrowings, newest first. Overdue status is worked out at read time."""
    try:
        borrowings = library.list_borrowings(status=status, member_id=member_id)
    except LibraryError as e:
        raise _http_error(e)
    return [BorrowingModel(**b.to_dict()) for b in _paginate(response, borrowings, limit, offset)]


@app.get("/borrowings/{borrowing_id}", response_model=BorrowingModel)
def get_borrowing(borrowing_id: RecordId):
    try:
        return BorrowingModel(**library.get_borrowing(borrowing_id).to_dict())
    except LibraryError as e:
        raise _http_error(e)


@app.post("/borrowings", response_model=BorrowingModel)
def create_borrowing(payload: BorrowingCreateModel):
    """Lend books to a member. Either every book is reserved or none is."""
    try:
        borrowing = library.borrow(
            payload.member_id,
            payload.book_ids,
            borrow_date=payload.borrow_date,
            due_date=payload.due_date,
        )
    except LibraryError as e:
        raise _http_error(e)
    return BorrowingModel(**borrowing.to_dict())


@app.post("/borrowings/{borrowing_id}/return", response_model=BorrowingModel)
def return_borrowing(borrowing_id: RecordId, payload: ReturnModel | None = None):
    """Mark a borrowing returned and put its books back in stock."""
    return_date = payload.return_date if payload else None
    try:
        borrowing = library.return_borrowing(borrowing_id, return_date=return_date)
    except LibraryError as e:
        raise _http_error(e)
    return BorrowingModel(**borrowing.to_dict())
