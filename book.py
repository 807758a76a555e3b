from __future__ import annotations

import json
from enum import Enum
from typing import Any, Iterable


class Genre(str, Enum):
    ROMANCE = "Romance"
    DARK_ROMANCE = "Dark Romance"
    FANTASY = "Fantasy"
    HORROR = "Horror"


class Status(str, Enum):
    UNREAD = "unread"
    READ = "read"
    DNF = "dnf"


class Format(str, Enum):
    PHYSICAL = "physical"
    KINDLE = "kindle"
    BOTH = "both"


MIN_RATING = 1.0
MAX_RATING = 5.0
RATING_STEP = 0.5

# JSON (camelCase) name -> SQLite column name
FIELD_TO_COLUMN = {
    "id": "id",
    "title": "title",
    "authors": "authors",
    "genre": "genre",
    "status": "status",
    "format": "format",
    "rating": "rating",
    "description": "description",
    "publishedDate": "published_date",
    "publisher": "publisher",
    "pageCount": "page_count",
    "categories": "categories",
    "imageUrl": "image_url",
    "language": "language",
    "previewLink": "preview_link",
    "dateAdded": "date_added",
    "updatedAt": "updated_at",
}
COLUMN_TO_FIELD = {column: field for field, column in FIELD_TO_COLUMN.items()}

# Fields the caller may change through a partial update
UPDATABLE_FIELDS = frozenset(FIELD_TO_COLUMN) - {"id", "dateAdded", "updatedAt"}
# Fields that may be changed but never cleared
REQUIRED_FIELDS = frozenset({"title", "authors", "genre", "status", "format"})


class InvalidBookError(ValueError):
    """A record or partial update breaks the collection's field rules."""


def is_valid_rating(value: Any) -> bool:
    """Ratings run from 1 to 5 in half-star steps."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if not MIN_RATING <= value <= MAX_RATING:
        return False
    return float(value / RATING_STEP).is_integer()


def _load_list(value: Any) -> list[str]:
    # SQLite keeps list columns as JSON text
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return [value] if value else []
    return [str(item) for item in value]


class Book:
    """A single book record in the collection."""

    def __init__(self, title: str, authors: Iterable[str], genre: str, status: str, format: str,
                 id: str | None = None, rating: float | None = None,
                 description: str | None = None, published_date: str | None = None,
                 publisher: str | None = None, page_count: int | None = None,
                 categories: Iterable[str] | None = None, image_url: str | None = None,
                 language: str | None = None, preview_link: str | None = None,
                 date_added: str | None = None, updated_at: str | None = None) -> None:
        self.id = id
        self.title = (title or "").strip()
        self.authors = [a.strip() for a in authors or [] if a is not None]
        self.genre = Genre(genre).value
        self.status = Status(status).value
        self.format = Format(format).value
        self.rating = float(rating) if rating is not None else None

        self.description = description
        self.published_date = published_date
        self.publisher = publisher
        self.page_count = page_count
        self.categories = list(categories or [])
        self.image_url = image_url
        self.language = language
        self.preview_link = preview_link

        self.date_added = date_added
        self.updated_at = updated_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {', '.join(self.authors)}"

    def __repr__(self) -> str:  # pragma: no cover
        return f"Book(id={self.id!r}, title={self.title!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Book):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    @property
    def first_author(self) -> str:
        return self.authors[0] if self.authors else ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "authors": list(self.authors),
            "genre": self.genre,
            "status": self.status,
            "format": self.format,
            "rating": self.rating,
            "description": self.description,
            "publishedDate": self.published_date,
            "publisher": self.publisher,
            "pageCount": self.page_count,
            "categories": list(self.categories),
            "imageUrl": self.image_url,
            "language": self.language,
            "previewLink": self.preview_link,
            "dateAdded": self.date_added,
            "updatedAt": self.updated_at,
        }

    def to_row(self) -> dict:
        """Column name -> value, with list fields encoded as JSON."""
        row = {FIELD_TO_COLUMN[k]: v for k, v in self.to_dict().items()}
        row["authors"] = json.dumps(self.authors, ensure_ascii=False)
        row["categories"] = json.dumps(self.categories, ensure_ascii=False)
        return row

    @staticmethod
    def from_dict(data: dict) -> "Book":
        """Build a Book from its camelCase JSON form."""
        return Book(
            id=data.get("id"),
            title=data["title"],
            authors=_load_list(data.get("authors")),
            genre=data["genre"],
            status=data["status"],
            format=data["format"],
            rating=data.get("rating"),
            description=data.get("description"),
            published_date=data.get("publishedDate"),
            publisher=data.get("publisher"),
            page_count=data.get("pageCount"),
            categories=_load_list(data.get("categories")),
            image_url=data.get("imageUrl"),
            language=data.get("language"),
            preview_link=data.get("previewLink"),
            date_added=data.get("dateAdded"),
            updated_at=data.get("updatedAt"),
        )

    @staticmethod
    def from_row(row: Any) -> "Book":
        """Build a Book from a sqlite3.Row (or any column-keyed mapping)."""
        data = {COLUMN_TO_FIELD[key]: row[key] for key in row.keys() if key in COLUMN_TO_FIELD}
        return Book.from_dict(data)


class BookPatch:
    """Partial update holding only the fields the caller supplied.

    A field mapped to None clears it; a field that is not in the patch is left
    alone. Required fields can be replaced but not cleared.
    """

    def __init__(self, fields: dict[str, Any] | None = None) -> None:
        fields = dict(fields or {})
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidBookError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        cleared = sorted(k for k in REQUIRED_FIELDS & set(fields) if fields[k] is None)
        if cleared:
            raise InvalidBookError(f"Required fields cannot be cleared: {', '.join(cleared)}")
        self._fields = fields

    def __contains__(self, name: str) -> bool:
        return name in self._fields

    def __len__(self) -> int:
        return len(self._fields)

    def __repr__(self) -> str:  # pragma: no cover
        return f"BookPatch({self._fields!r})"

    def get(self, name: str, default: Any = None) -> Any:
        return self._fields.get(name, default)

    def items(self):
        return self._fields.items()

    def apply(self, book: Book) -> Book:
        """Return a new Book with the patch merged over `book`."""
        merged = book.to_dict()
        for name, value in self._fields.items():
            if name == "categories" and value is None:
                value = []
            merged[name] = value
        try:
            return Book.from_dict(merged)
        except ValueError as e:
            raise InvalidBookError(str(e)) from e


def check_record(book: Book) -> None:
    """Raise InvalidBookError unless the record may be stored."""
    if not book.title:
        raise InvalidBookError("Title is required")
    if not book.authors or not all(book.authors):
        raise InvalidBookError("At least one author is required")
    if book.rating is not None and not is_valid_rating(book.rating):
        raise InvalidBookError("Rating must be between 1 and 5 in half-star steps")


def duplicate_keys(book: Book) -> set[tuple[str, str]]:
    """(title, author) pairs, case-folded, that another record must not share."""
    title = book.title.casefold()
    return {(title, author.casefold()) for author in book.authors}


# Shared by the service's aggregate query and the client's local stats
def is_read(book: Book) -> bool:
    return book.status == Status.READ.value


def is_unread(book: Book) -> bool:
    return book.status == Status.UNREAD.value


def is_five_star(book: Book) -> bool:
    return book.rating == MAX_RATING


def compute_stats(books: Iterable[Book]) -> dict[str, int]:
    books = list(books)
    return {
        "totalBooks": len(books),
        "readBooks": sum(1 for b in books if is_read(b)),
        "fiveStarBooks": sum(1 for b in books if is_five_star(b)),
        "unreadBooks": sum(1 for b in books if is_unread(b)),
    }
