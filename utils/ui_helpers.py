import json
import os
from typing import Any, Dict, List, Mapping

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def format_rating(rating: Any) -> str:
    """Half stars are shown as '½'."""
    if rating is None:
        return "-"
    whole = int(rating)
    return "★" * whole + ("½" if rating - whole else "")


def _book_line(book: Any) -> str:
    authors = ", ".join(book.authors)
    return f"{book.id} - {book.title} by {authors} [{book.genre}, {book.status}, {book.format}] {format_rating(book.rating)}"


def print_list_result(books: List[Any], title: str = "Books") -> None:
    """Print a list of books in the current output mode.
    - plain: one 'id - Title by Authors [...]' line per book, or 'No books in library.'
    - json: JSON array of records
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title=f"📚 {title}", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Authors", style="white")
        table.add_column("Genre")
        table.add_column("Status")
        table.add_column("Format")
        table.add_column("Rating", style="yellow")
        for b in books:
            table.add_row(b.id, b.title, ", ".join(b.authors), b.genre, b.status, b.format, format_rating(b.rating))
        _console.print(table)
    else:
        for b in books:
            print(_book_line(b))


def print_grouped_result(groups: Mapping[str, List[Any]]) -> None:
    """Print books grouped by first author."""
    mode = get_output_mode()

    if not groups:
        print("No books in library.")
        return

    if mode == "json":
        payload = {author: [b.to_dict() for b in books] for author, books in groups.items()}
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        for author, books in groups.items():
            lines = "\n".join(f"{b.title} {format_rating(b.rating)}" for b in books)
            _console.print(Panel.fit(lines, title=author or "Unknown author", border_style="cyan"))
    else:
        for author, books in groups.items():
            print(f"{author or 'Unknown author'}:")
            for b in books:
                print(f"  {_book_line(b)}")


def print_book_detail(book: Any) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(book.to_dict(), ensure_ascii=False))
        return

    lines = [
        f"Title: {book.title}",
        f"Authors: {', '.join(book.authors)}",
        f"Genre: {book.genre}",
        f"Status: {book.status}",
        f"Format: {book.format}",
        f"Rating: {format_rating(book.rating)}",
    ]
    for label, value in (("Publisher", book.publisher), ("Published", book.published_date),
                         ("Pages", book.page_count), ("Cover", book.image_url)):
        if value:
            lines.append(f"{label}: {value}")
    lines.append(f"ID: {book.id}")

    if mode == "rich":
        _console.print(Panel.fit("\n".join(lines), title="🔍 Book", border_style="green"))
    else:
        print("Book Found")
        for line in lines:
            print(line)


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print statistics in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = (
        ("totalBooks", "Total Books"),
        ("readBooks", "Read"),
        ("fiveStarBooks", "Five Star"),
        ("unreadBooks", "Unread"),
    )

    if mode == "json":
        print(json.dumps({key: stats.get(key, 0) for key, _ in labels}, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(key, 0)}" for key, label in labels)
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, label in labels:
            print(f"{label}: {stats.get(key, 0)}")
