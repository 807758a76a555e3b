import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from starlette.exceptions import HTTPException as StarletteHTTPException

from book import Book, BookPatch, Format, Genre, InvalidBookError, Status, is_valid_rating
from config import settings
from library import BookNotFoundError, DuplicateBookError, Library, StoreError

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests (or an embedding app) may already have attached a library
    if getattr(app.state, "library", None) is None:
        app.state.library = Library(db_file=settings.database_file, json_file=settings.legacy_json_file)
    logger.info(f"{settings.app_name} {settings.app_version} using {app.state.library.db_file} ({settings.environment})")
    yield


app = FastAPI(title=f"{settings.app_name} API", version=settings.app_version, lifespan=lifespan)

# --- Middleware ---
app.add_middleware(GZipMiddleware, minimum_size=1000)
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


def get_library(request: Request) -> Library:
    return request.app.state.library


# --- Models ---
class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _clean_authors(authors: Optional[List[str]]) -> Optional[List[str]]:
    if authors is None:
        return None
    cleaned = [a.strip() for a in authors if a and a.strip()]
    if not cleaned:
        raise ValueError("At least one author is required")
    return cleaned


class BookModel(_CamelModel):
    id: str
    title: str
    authors: List[str]
    genre: Genre
    status: Status
    format: Format
    rating: Optional[float] = None
    description: Optional[str] = None
    published_date: Optional[str] = None
    publisher: Optional[str] = None
    page_count: Optional[int] = None
    categories: List[str] = Field(default_factory=list)
    image_url: Optional[str] = None
    language: Optional[str] = None
    preview_link: Optional[str] = None
    date_added: str
    updated_at: str

    @classmethod
    def from_book(cls, book: Book) -> "BookModel":
        return cls.model_validate(book.to_dict())


class BookCreateModel(_CamelModel):
    """Every record field except id and dateAdded."""
    title: str
    authors: List[str]
    genre: Genre
    status: Status
    format: Format
    rating: Optional[float] = None
    description: Optional[str] = None
    published_date: Optional[str] = None
    publisher: Optional[str] = None
    page_count: Optional[int] = Field(default=None, ge=1)
    categories: List[str] = Field(default_factory=list)
    image_url: Optional[str] = None
    language: Optional[str] = None
    preview_link: Optional[str] = None

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Title is required")
        return v.strip()

    @field_validator("authors")
    @classmethod
    def _authors_not_empty(cls, v: List[str]) -> List[str]:
        return _clean_authors(v)

    @field_validator("rating")
    @classmethod
    def _rating_in_range(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and not is_valid_rating(v):
            raise ValueError("Rating must be between 1 and 5 in half-star steps")
        return v

    @model_validator(mode="after")
    def _read_books_need_rating(self) -> "BookCreateModel":
        if self.status == Status.READ and self.rating is None:
            raise ValueError('Rating is required when status is "read"')
        return self

    def to_book(self) -> Book:
        return Book.from_dict(self.model_dump(mode="json", by_alias=True))


class BookUpdateModel(_CamelModel):
    """Partial update: only fields present in the request body are applied."""
    title: Optional[str] = None
    authors: Optional[List[str]] = None
    genre: Optional[Genre] = None
    status: Optional[Status] = None
    format: Optional[Format] = None
    rating: Optional[float] = None
    description: Optional[str] = None
    published_date: Optional[str] = None
    publisher: Optional[str] = None
    page_count: Optional[int] = Field(default=None, ge=1)
    categories: Optional[List[str]] = None
    image_url: Optional[str] = None
    language: Optional[str] = None
    preview_link: Optional[str] = None

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            raise ValueError("Title cannot be empty")
        return v.strip() if v is not None else v

    @field_validator("authors")
    @classmethod
    def _authors_not_empty(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _clean_authors(v)

    @field_validator("rating")
    @classmethod
    def _rating_in_range(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and not is_valid_rating(v):
            raise ValueError("Rating must be between 1 and 5 in half-star steps")
        return v

    def to_patch(self) -> BookPatch:
        return BookPatch(self.model_dump(mode="json", by_alias=True, exclude_unset=True))


class StatsModel(_CamelModel):
    total_books: int
    read_books: int
    five_star_books: int
    unread_books: int


# --- Error handling ---
_FAILURE_MESSAGES = {
    "GET": "Failed to fetch books",
    "POST": "Failed to create book",
    "PATCH": "Failed to update book",
    "DELETE": "Failed to delete book",
}


def _error_response(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


@app.exception_handler(DuplicateBookError)
async def duplicate_book_handler(request: Request, exc: DuplicateBookError):
    return _error_response(409, str(exc))


@app.exception_handler(BookNotFoundError)
async def book_not_found_handler(request: Request, exc: BookNotFoundError):
    return _error_response(404, str(exc))


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    cause = exc.__cause__ or exc
    logger.error(
        f"{request.method} {request.url.path} failed: {exc} "
        f"(cause: {cause!r}, environment: {settings.environment})",
        exc_info=exc,
    )
    if request.url.path.endswith("/stats"):
        message = "Failed to fetch statistics"
    else:
        message = _FAILURE_MESSAGES.get(request.method, "Request failed")
    if settings.is_production:
        return _error_response(500, message)
    return _error_response(500, message, details=str(cause), environment=settings.environment)


@app.exception_handler(InvalidBookError)
async def invalid_book_handler(request: Request, exc: InvalidBookError):
    return _error_response(422, str(exc))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    message = str(first.get("msg", "Invalid request")).removeprefix("Value error, ")
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    if location:
        message = f"{location}: {message}"
    return _error_response(422, message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return _error_response(exc.status_code, str(exc.detail))


# --- Endpoints ---
@app.get("/health")
def health(library: Library = Depends(get_library)):
    """Lightweight health check with a quick database round trip."""
    try:
        total = library.count_books()
        db_ok = True
    except StoreError:
        logger.exception("Health check could not reach the database")
        total = None
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "totalBooks": total,
        "db": db_ok,
    }


@app.get("/books", response_model=List[BookModel])
def list_books(
    genre: Optional[str] = Query(None, description="Exact genre, e.g. Fantasy"),
    status: Optional[str] = Query(None, description="unread | read | dnf"),
    rating: Optional[float] = Query(None, description="Exact rating"),
    library: Library = Depends(get_library),
):
    """All books ordered by title, optionally filtered. Unknown parameters are ignored."""
    books = library.list_books(genre=genre, status=status, rating=rating)
    return [BookModel.from_book(b) for b in books]


@app.get("/books/stats", response_model=StatsModel)
def get_stats(library: Library = Depends(get_library)):
    return StatsModel.model_validate(library.get_statistics())


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: str, library: Library = Depends(get_library)):
    book = library.find_book(book_id)
    if not book:
        raise BookNotFoundError("Book not found")
    return BookModel.from_book(book)


@app.post("/books", response_model=BookModel, status_code=201)
def add_book(payload: BookCreateModel, library: Library = Depends(get_library)):
    book = library.add_book(payload.to_book())
    return BookModel.from_book(book)


@app.patch("/books/{book_id}", response_model=BookModel)
def update_book(book_id: str, payload: BookUpdateModel, library: Library = Depends(get_library)):
    book = library.update_book(book_id, payload.to_patch())
    return BookModel.from_book(book)


@app.delete("/books/{book_id}")
def delete_book(book_id: str, library: Library = Depends(get_library)):
    library.remove_book(book_id)
    return {"message": "Book deleted successfully"}
