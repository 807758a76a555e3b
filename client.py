import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

import httpx

from book import Book, compute_stats, is_five_star
from config import settings
from utils.validators import BookFormValidator, validate_book_form

logger = logging.getLogger(__name__)


class CollectionError(Exception):
    """A request to the collection service failed."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class BookValidationError(ValueError):
    """A book form failed validation before anything was sent."""

    def __init__(self, errors: Dict[str, str]) -> None:
        super().__init__("; ".join(errors.values()))
        self.errors = errors


def _sort_by_title(books) -> List[Book]:
    # Same order as the service: title by code point, id as tie breaker
    return sorted(books, key=lambda b: (b.title, b.id or ""))


def group_by_first_author(books: Iterable[Book]) -> Dict[str, List[Book]]:
    """Group books by first author, keeping the incoming order in and across groups."""
    groups: Dict[str, List[Book]] = {}
    for book in books:
        groups.setdefault(book.first_author, []).append(book)
    return groups


def _to_payload(data: Mapping[str, Any]) -> Dict[str, Any]:
    payload = {k: getattr(v, "value", v) for k, v in data.items()}
    # Forms use 0 for "no stars"
    if payload.get("rating") == 0:
        payload["rating"] = None
    return payload


class BookCollection:
    """Client-side copy of the collection plus the views built from it.

    The list is kept sorted by title after every fetch and mutation, so callers
    never need to refetch after adding, updating or removing a book. Requests
    are never retried; failures raise CollectionError and leave the local list
    as it was.
    """

    def __init__(self, http: httpx.Client) -> None:
        self._http = http
        self._books: List[Book] = []
        self.is_loading = False
        self.error: Optional[str] = None

    @classmethod
    def connect(cls, base_url: Optional[str] = None, timeout: Optional[float] = None) -> "BookCollection":
        http = httpx.Client(
            base_url=base_url or settings.api_base_url,
            timeout=timeout if timeout is not None else settings.client_timeout,
        )
        return cls(http)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "BookCollection":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ------------------------- Requests ------------------------- #
    def _request(self, method: str, url: str, fallback: str, **kwargs) -> httpx.Response:
        try:
            resp = self._http.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{method} {url} failed: {e}")
            raise CollectionError(f"{fallback}: library service unreachable") from e
        if resp.is_error:
            try:
                message = resp.json().get("error") or fallback
            except ValueError:
                message = fallback
            logger.error(f"{method} {url} returned {resp.status_code}: {message}")
            raise CollectionError(message, resp.status_code)
        return resp

    def fetch(self) -> List[Book]:
        """Replace the local list with the service's current list."""
        self.is_loading = True
        try:
            resp = self._request("GET", "/books", "Failed to fetch books")
            self._books = _sort_by_title(Book.from_dict(item) for item in resp.json())
            self.error = None
            return self.sorted_books()
        except CollectionError as e:
            self.error = e.message
            raise
        finally:
            self.is_loading = False

    def fetch_book(self, book_id: str) -> Book:
        resp = self._request("GET", f"/books/{book_id}", "Failed to fetch book")
        return Book.from_dict(resp.json())

    def add_book(self, data: Mapping[str, Any]) -> Book:
        payload = _to_payload(data)
        errors = validate_book_form(payload)
        if errors:
            raise BookValidationError(errors)

        resp = self._request("POST", "/books", "Failed to add book", json=payload)
        book = Book.from_dict(resp.json())
        self._books = _sort_by_title([*self._books, book])
        return book

    def update_book(self, book_id: str, updates: Mapping[str, Any]) -> Book:
        payload = _to_payload(updates)
        current = self.find(book_id)
        if current is None:
            # Not fetched yet; the update is still checked against the stored record
            current = self.fetch_book(book_id)
        errors = BookFormValidator.validate_updates(payload, current.to_dict())
        if errors:
            raise BookValidationError(errors)

        resp = self._request("PATCH", f"/books/{book_id}", "Failed to update book", json=payload)
        updated = Book.from_dict(resp.json())
        self._books = _sort_by_title(
            [updated if b.id == book_id else b for b in self._books]
        )
        return updated

    def remove_book(self, book_id: str) -> None:
        self._request("DELETE", f"/books/{book_id}", "Failed to delete book")
        self._books = [b for b in self._books if b.id != book_id]

    def refresh_stats(self) -> Dict[str, int]:
        """Statistics as computed by the service's aggregate query."""
        resp = self._request("GET", "/books/stats", "Failed to fetch statistics")
        return resp.json()

    # ------------------------- Derived views ------------------------- #
    @property
    def books(self) -> List[Book]:
        return self.grouped_books()

    def find(self, book_id: str) -> Optional[Book]:
        return next((b for b in self._books if b.id == book_id), None)

    def sorted_books(self) -> List[Book]:
        return _sort_by_title(self._books)

    def grouped_by_author(self) -> Dict[str, List[Book]]:
        """Books keyed by first author.

        Groups appear in the order their first book appears in title order, and
        each group is itself in title order.
        """
        return group_by_first_author(self.sorted_books())

    def grouped_books(self) -> List[Book]:
        return [book for group in self.grouped_by_author().values() for book in group]

    def search(self, query: Optional[str]) -> List[Book]:
        """Case-insensitive match on title or any author, over the grouped list."""
        if not query or not query.strip():
            return self.grouped_books()
        needle = query.strip().casefold()
        return [
            b for b in self.grouped_books()
            if needle in b.title.casefold() or any(needle in a.casefold() for a in b.authors)
        ]

    def books_by_genre(self, genre: str) -> List[Book]:
        genre = getattr(genre, "value", genre)
        return [b for b in self.sorted_books() if b.genre == genre]

    def books_by_status(self, status: str) -> List[Book]:
        status = getattr(status, "value", status)
        return [b for b in self.sorted_books() if b.status == status]

    def five_star_books(self) -> List[Book]:
        return [b for b in self.sorted_books() if is_five_star(b)]

    def filter_books(self, query: Optional[str] = None, genre: Optional[str] = None,
                     status: Optional[str] = None, five_star: bool = False) -> List[Book]:
        """Search first, then narrow by genre, status and five-star."""
        books = self.search(query)
        if genre:
            genre = getattr(genre, "value", genre)
            books = [b for b in books if b.genre == genre]
        if status:
            status = getattr(status, "value", status)
            books = [b for b in books if b.status == status]
        if five_star:
            books = [b for b in books if is_five_star(b)]
        return books

    def stats(self) -> Dict[str, int]:
        """Statistics from the local list, using the service's predicates."""
        return compute_stats(self._books)
