import json
import logging
import os
import sqlite3
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from book import Book, check_record, duplicate_keys

# Load .env before config is read by anything importing this module first.
load_dotenv()

logger = logging.getLogger(__name__)


def _casefold(value: Optional[str]) -> Optional[str]:
    return value.casefold() if value is not None else None


def get_db_connection(db_file: str) -> sqlite3.Connection:
    """Open a connection to the SQLite database."""
    conn = sqlite3.connect(db_file)
    conn.row_factory = sqlite3.Row
    # SQLite's lower() only folds ASCII; titles and authors need full Unicode folding
    conn.create_function("casefold", 1, _casefold, deterministic=True)
    return conn


def create_tables(db_file: str) -> None:
    """Create the books table and its indexes if they don't exist."""
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                authors TEXT NOT NULL,
                genre TEXT NOT NULL,
                status TEXT NOT NULL,
                format TEXT NOT NULL,
                rating REAL,
                description TEXT,
                published_date TEXT,
                publisher TEXT,
                page_count INTEGER,
                categories TEXT NOT NULL DEFAULT '[]',
                image_url TEXT,
                language TEXT,
                preview_link TEXT,
                date_added TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # Indexes for the list filters and the title ordering
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_genre ON books(genre)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_status ON books(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_rating ON books(rating)")
        conn.commit()
    finally:
        conn.close()


def migrate_from_json(db_file: str, json_file: str) -> int:
    """Import books from a browser-storage JSON export into an empty database.

    This is a one-time operation: it does nothing when the table already holds
    rows or the file does not exist. Entries missing a title, authors, genre,
    status or format are skipped, as are entries that break the record rules
    and later copies of a book already imported. Returns the number of
    imported rows.
    """
    if not os.path.exists(json_file):
        return 0

    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT COUNT(*) FROM books")
        if cursor.fetchone()[0] > 0:
            return 0

        logger.info(f"Importing books from {json_file}")
        try:
            with open(json_file, "r", encoding="utf-8") as f:
                data: List[Dict[str, Any]] = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Could not read {json_file}: {e}")
            return 0
        if not isinstance(data, list):
            logger.error(f"Could not read {json_file}: expected a list of books, got {type(data).__name__}")
            return 0

        rows = []
        seen = set()
        for item in data:
            if not isinstance(item, dict):
                logger.warning(f"Skipping non-object entry: {item!r}")
                continue
            if not all(item.get(k) for k in ("id", "title", "authors", "genre", "status", "format", "dateAdded")):
                continue
            try:
                book = Book.from_dict(item)
                check_record(book)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping {item.get('title')!r}: {e}")
                continue
            keys = duplicate_keys(book)
            if keys & seen:
                logger.warning(f"Skipping duplicate {book.title!r} by {book.authors}")
                continue
            seen |= keys
            if not book.updated_at:
                book.updated_at = book.date_added
            rows.append(book.to_row())

        if rows:
            columns = list(rows[0])
            cursor.executemany(
                f"INSERT OR IGNORE INTO books ({', '.join(columns)}) "
                f"VALUES ({', '.join(':' + c for c in columns)})",
                rows,
            )
            conn.commit()
        logger.info(f"Imported {len(rows)} books.")
        return len(rows)
    finally:
        conn.close()


def initialize_database(db_file: str, json_file: Optional[str] = None) -> None:
    """Create tables and, when a legacy export is configured, import it."""
    create_tables(db_file)
    if json_file:
        migrate_from_json(db_file, json_file)
