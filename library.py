import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Union

from book import Book, BookPatch, FIELD_TO_COLUMN, MAX_RATING, Status, check_record
from config import settings
from database import get_db_connection, initialize_database

logger = logging.getLogger(__name__)


class LibraryError(Exception):
    """Base class for collection service failures."""


class DuplicateBookError(LibraryError, ValueError):
    """A book with the same title and a shared author already exists."""


class BookNotFoundError(LibraryError, LookupError):
    """No book has the requested id."""


class StoreError(LibraryError):
    """The SQLite store could not be reached or rejected the operation."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _next_timestamp(previous: Optional[str]) -> str:
    """Current UTC time, nudged past `previous` so updatedAt always moves forward."""
    now = _utc_now()
    if previous:
        try:
            prev = datetime.fromisoformat(previous)
        except ValueError:
            prev = None
        if prev is not None:
            if prev.tzinfo is None:
                prev = prev.replace(tzinfo=timezone.utc)
            if now <= prev:
                now = prev + timedelta(microseconds=1)
    return now.isoformat(timespec="microseconds")


class Library:
    """Stateless CRUD and statistics over the books table.

    Every call opens its own connection, so a Library can be shared freely
    between requests.
    """

    def __init__(self, db_file: Optional[str] = None, json_file: Optional[str] = None) -> None:
        self.db_file = db_file or settings.database_file
        try:
            initialize_database(self.db_file, json_file)
        except sqlite3.Error as e:
            raise StoreError("Could not initialize the book database") from e

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = get_db_connection(self.db_file)
        except sqlite3.Error as e:
            raise StoreError("Could not open the book database") from e
        try:
            yield conn
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError("Book database operation failed") from e
        finally:
            conn.close()

    # ------------------------- Core operations ------------------------- #
    def list_books(self, genre: Optional[str] = None, status: Optional[str] = None,
                   rating: Optional[float] = None) -> List[Book]:
        """All books matching the given filters, ordered by title."""
        conditions = []
        params: List[Any] = []
        if genre:
            conditions.append("genre = ?")
            params.append(getattr(genre, "value", genre))
        if status:
            conditions.append("status = ?")
            params.append(getattr(status, "value", status))
        if rating is not None:
            conditions.append("rating = ?")
            params.append(float(rating))

        query = "SELECT * FROM books"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        # BINARY collation: code point order, same as Python's str ordering
        query += " ORDER BY title, id"

        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._to_book(row) for row in rows]

    def find_book(self, book_id: str) -> Optional[Book]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        return self._to_book(row) if row else None

    def add_book(self, book: Book) -> Book:
        """Persist a new book, assigning id and timestamps.

        Raises DuplicateBookError when a book with the same title (ignoring
        case) already lists one of the same authors.
        """
        check_record(book)

        with self._connection() as conn:
            if self._find_duplicate(conn, book.title, book.authors):
                logger.warning(f"Duplicate book rejected: {book.title!r} by {book.authors}")
                raise DuplicateBookError("Book already exists in your library")

            book.id = str(uuid.uuid4())
            book.date_added = _utc_now().isoformat(timespec="microseconds")
            book.updated_at = book.date_added

            row = book.to_row()
            columns = list(row)
            conn.execute(
                f"INSERT INTO books ({', '.join(columns)}) "
                f"VALUES ({', '.join(':' + c for c in columns)})",
                row,
            )
            conn.commit()

        logger.info(f"Book added: {book.id} {book.title!r}")
        return book

    def update_book(self, book_id: str, patch: Union[BookPatch, Dict[str, Any]]) -> Book:
        """Merge the supplied fields into a stored book and return the result."""
        if not isinstance(patch, BookPatch):
            patch = BookPatch(patch)

        with self._connection() as conn:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
            if row is None:
                logger.warning(f"Update for unknown book {book_id}")
                raise BookNotFoundError("Book not found")

            current = self._to_book(row)
            merged = patch.apply(current)
            check_record(merged)
            merged.updated_at = _next_timestamp(current.updated_at)

            new_row = merged.to_row()
            columns = [FIELD_TO_COLUMN[name] for name, _ in patch.items()] + ["updated_at"]
            assignments = ", ".join(f"{c} = :{c}" for c in columns)
            conn.execute(
                f"UPDATE books SET {assignments} WHERE id = :id",
                {**{c: new_row[c] for c in columns}, "id": book_id},
            )
            conn.commit()

        logger.info(f"Book updated: {book_id} fields={sorted(name for name, _ in patch.items())}")
        return merged

    def remove_book(self, book_id: str) -> None:
        """Delete a book. Deleting an unknown id raises BookNotFoundError."""
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
            conn.commit()
            deleted = cursor.rowcount

        if deleted == 0:
            logger.warning(f"Delete for unknown book {book_id}")
            raise BookNotFoundError("Book not found")
        logger.info(f"Book removed: {book_id}")

    def get_statistics(self) -> Dict[str, int]:
        """Collection counts from a single aggregate query."""
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total_books,
                       COALESCE(SUM(CASE WHEN status = ? THEN 1 ELSE 0 END), 0) AS read_books,
                       COALESCE(SUM(CASE WHEN rating = ? THEN 1 ELSE 0 END), 0) AS five_star_books,
                       COALESCE(SUM(CASE WHEN status = ? THEN 1 ELSE 0 END), 0) AS unread_books
                FROM books
                """,
                (Status.READ.value, MAX_RATING, Status.UNREAD.value),
            ).fetchone()

        return {
            "totalBooks": row["total_books"],
            "readBooks": row["read_books"],
            "fiveStarBooks": row["five_star_books"],
            "unreadBooks": row["unread_books"],
        }

    def count_books(self) -> int:
        with self._connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]

    # ------------------------- Utilities ------------------------- #
    @staticmethod
    def _find_duplicate(conn: sqlite3.Connection, title: str, authors: List[str]) -> Optional[str]:
        placeholders = ", ".join("?" * len(authors))
        row = conn.execute(
            f"""
            SELECT b.id FROM books b, json_each(b.authors) a
            WHERE casefold(b.title) = ? AND casefold(a.value) IN ({placeholders})
            LIMIT 1
            """,
            [title.casefold(), *(author.casefold() for author in authors)],
        ).fetchone()
        return row["id"] if row else None

    @staticmethod
    def _to_book(row: sqlite3.Row) -> Book:
        try:
            return Book.from_row(row)
        except (KeyError, ValueError) as e:
            logger.error(f"Stored record {row['id']} is unreadable: {e}")
            raise StoreError("Stored book record is invalid") from e
