import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from book import Format, Genre, Status, is_valid_rating

logger = logging.getLogger(__name__)


class BookFormValidator:
    """Checks a book form before it is sent to the collection service.

    Messages are keyed by field name so a form can show them next to the
    matching input.
    """

    @staticmethod
    def validate_title(title: Optional[str]) -> Optional[str]:
        if title is None or not str(title).strip():
            return "Title is required"
        return None

    @staticmethod
    def validate_authors(authors: Any) -> Optional[str]:
        if isinstance(authors, str):
            authors = [authors]
        names = [a for a in (authors or []) if isinstance(a, str) and a.strip()]
        if not names:
            return "At least one author is required"
        return None

    @staticmethod
    def validate_choice(value: Any, choices, label: str) -> Optional[str]:
        allowed = [c.value for c in choices]
        if getattr(value, "value", value) not in allowed:
            return f"{label} must be one of: {', '.join(allowed)}"
        return None

    @staticmethod
    def validate_rating(rating: Any, status: Any) -> Optional[str]:
        status = getattr(status, "value", status)
        if rating is None or rating == 0:
            if status == Status.READ.value:
                return 'Rating is required when status is "read"'
            return None
        if not is_valid_rating(rating):
            return "Rating must be between 1 and 5 in half-star steps"
        return None

    @staticmethod
    def validate_page_count(page_count: Any) -> Optional[str]:
        if page_count is None:
            return None
        if isinstance(page_count, bool) or not isinstance(page_count, int) or page_count < 1:
            return "Page count must be a positive whole number"
        return None

    @classmethod
    def validate(cls, data: Mapping[str, Any]) -> Dict[str, str]:
        """Validate a complete new-book form; returns {} when it is acceptable."""
        checks = {
            "title": cls.validate_title(data.get("title")),
            "authors": cls.validate_authors(data.get("authors")),
            "genre": cls.validate_choice(data.get("genre"), Genre, "Genre"),
            "status": cls.validate_choice(data.get("status"), Status, "Status"),
            "format": cls.validate_choice(data.get("format"), Format, "Format"),
            "rating": cls.validate_rating(data.get("rating"), data.get("status")),
            "pageCount": cls.validate_page_count(data.get("pageCount")),
        }
        return {field: message for field, message in checks.items() if message}

    @classmethod
    def validate_updates(cls, updates: Mapping[str, Any], current: Mapping[str, Any]) -> Dict[str, str]:
        """Validate a partial update against the record it will be merged into."""
        merged = {**current, **updates}
        errors = cls.validate(merged)
        # Only report problems the update can be responsible for
        touched = set(updates)
        if "status" in touched:
            touched.add("rating")
        return {field: message for field, message in errors.items() if field in touched}


def validate_book_form(data: Mapping[str, Any]) -> Dict[str, str]:
    return BookFormValidator.validate(data)


def probe_image_url(url: Optional[str], timeout: float = 5.0) -> bool:
    """Check that a pasted cover URL answers with an image.

    Only ever used to warn; the result never decides whether a book is saved.
    """
    if not url or not url.lower().startswith(("http://", "https://")):
        return False
    try:
        resp = httpx.head(url, timeout=timeout, follow_redirects=True)
    except httpx.HTTPError as e:
        logger.info(f"Cover URL probe failed for {url}: {e}")
        return False
    content_type = resp.headers.get("content-type", "")
    return resp.status_code == 200 and content_type.startswith("image/")
