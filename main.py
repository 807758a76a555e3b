import logging
from typing import Any, Dict, List, Optional

import typer
import uvicorn

from book import Format, Genre, Status
from client import BookCollection, BookValidationError, CollectionError, group_by_first_author
from config import settings
from utils.ui_helpers import (print_book_detail, print_grouped_result, print_list_result,
                              print_stats_result, set_output_mode)
from utils.validators import probe_image_url

APP_NAME = "Bibliotheca CLI"

# Optional fields `update --clear` may reset
CLEARABLE_FIELDS = {
    "rating": "rating",
    "description": "description",
    "publisher": "publisher",
    "published-date": "publishedDate",
    "page-count": "pageCount",
    "categories": "categories",
    "image-url": "imageUrl",
    "language": "language",
    "preview-link": "previewLink",
}

# --- Typer CLI application ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    ctx: typer.Context,
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    api_url: Optional[str] = typer.Option(
        None,
        "--api-url",
        help=f"Collection service URL (default: {settings.api_base_url})",
    ),
):
    """Global options (output mode, service URL)."""
    if output:
        set_output_mode(output)
    logging.basicConfig(level=settings.log_level)
    # The collection can be handed in through ctx.obj (tests do); otherwise open one here
    if ctx.obj is None:
        collection = BookCollection.connect(api_url)
        ctx.obj = collection
        ctx.call_on_close(collection.close)


def _fail(message: str) -> None:
    print(f"Error: {message}")
    raise typer.Exit(code=1)


def _report_validation(e: BookValidationError) -> None:
    print("Please fix the following:")
    for field, message in e.errors.items():
        print(f"  {field}: {message}")
    raise typer.Exit(code=1)


def _warn_on_bad_cover(image_url: Optional[str]) -> None:
    if image_url and not probe_image_url(image_url, timeout=settings.image_probe_timeout):
        print(f"Warning: could not load a cover image from {image_url}")


def _fetch(collection: BookCollection) -> None:
    try:
        collection.fetch()
    except CollectionError as e:
        _fail(e.message)


@app.command("list")
def cli_list(
    ctx: typer.Context,
    search: Optional[str] = typer.Option(None, "--search", "-s", help="Match title or author"),
    genre: Optional[Genre] = typer.Option(None, "--genre", "-g", help="Only this genre"),
    status: Optional[Status] = typer.Option(None, "--status", help="Only this status"),
    five_star: bool = typer.Option(False, "--five-star", help="Only five-star books"),
    by_author: bool = typer.Option(False, "--by-author", "-a", help="Group by first author"),
):
    """List books, optionally searched and filtered."""
    collection: BookCollection = ctx.obj
    _fetch(collection)
    books = collection.filter_books(search, genre=genre, status=status, five_star=five_star)
    if by_author:
        print_grouped_result(group_by_first_author(books))
    else:
        print_list_result(books)


@app.command("add")
def cli_add(
    ctx: typer.Context,
    title: str = typer.Option("", "--title", "-t", help="Book title"),
    authors: Optional[List[str]] = typer.Option(None, "--author", "-a", help="Author (repeat for several)"),
    genre: Genre = typer.Option(..., "--genre", "-g"),
    status: Status = typer.Option(Status.UNREAD, "--status"),
    format: Format = typer.Option(Format.PHYSICAL, "--format", "-f"),
    rating: Optional[float] = typer.Option(None, "--rating", "-r", help="1-5 in half-star steps"),
    description: Optional[str] = typer.Option(None, "--description"),
    publisher: Optional[str] = typer.Option(None, "--publisher"),
    published_date: Optional[str] = typer.Option(None, "--published-date"),
    page_count: Optional[int] = typer.Option(None, "--page-count"),
    categories: Optional[List[str]] = typer.Option(None, "--category", help="Category (repeat for several)"),
    image_url: Optional[str] = typer.Option(None, "--image-url"),
    language: Optional[str] = typer.Option(None, "--language"),
    preview_link: Optional[str] = typer.Option(None, "--preview-link"),
):
    """Add a book to the library."""
    collection: BookCollection = ctx.obj
    data: Dict[str, Any] = {
        "title": title,
        "authors": list(authors or []),
        "genre": genre,
        "status": status,
        "format": format,
        "rating": rating,
        "description": description,
        "publisher": publisher,
        "publishedDate": published_date,
        "pageCount": page_count,
        "categories": list(categories or []),
        "imageUrl": image_url,
        "language": language,
        "previewLink": preview_link,
    }
    _warn_on_bad_cover(image_url)
    try:
        book = collection.add_book(data)
    except BookValidationError as e:
        _report_validation(e)
    except CollectionError as e:
        _fail(e.message)
    else:
        print(f"Successfully added: {book.title} by {', '.join(book.authors)} ({book.id})")


@app.command("find")
def cli_find(ctx: typer.Context, book_id: str):
    """Show one book by id."""
    collection: BookCollection = ctx.obj
    try:
        book = collection.fetch_book(book_id)
    except CollectionError as e:
        if e.status_code == 404:
            _fail(f"Book with id {book_id} not found.")
        _fail(e.message)
    else:
        print_book_detail(book)


@app.command("update")
def cli_update(
    ctx: typer.Context,
    book_id: str,
    title: Optional[str] = typer.Option(None, "--title", "-t"),
    authors: Optional[List[str]] = typer.Option(None, "--author", "-a", help="Replaces all authors"),
    genre: Optional[Genre] = typer.Option(None, "--genre", "-g"),
    status: Optional[Status] = typer.Option(None, "--status"),
    format: Optional[Format] = typer.Option(None, "--format", "-f"),
    rating: Optional[float] = typer.Option(None, "--rating", "-r"),
    description: Optional[str] = typer.Option(None, "--description"),
    publisher: Optional[str] = typer.Option(None, "--publisher"),
    published_date: Optional[str] = typer.Option(None, "--published-date"),
    page_count: Optional[int] = typer.Option(None, "--page-count"),
    categories: Optional[List[str]] = typer.Option(None, "--category", help="Replaces all categories"),
    image_url: Optional[str] = typer.Option(None, "--image-url"),
    language: Optional[str] = typer.Option(None, "--language"),
    preview_link: Optional[str] = typer.Option(None, "--preview-link"),
    clear: Optional[List[str]] = typer.Option(
        None, "--clear", help=f"Clear an optional field: {', '.join(CLEARABLE_FIELDS)}"
    ),
):
    """Change only the given fields of a book."""
    collection: BookCollection = ctx.obj
    supplied = {
        "title": title,
        "authors": list(authors) if authors else None,
        "genre": genre,
        "status": status,
        "format": format,
        "rating": rating,
        "description": description,
        "publisher": publisher,
        "publishedDate": published_date,
        "pageCount": page_count,
        "categories": list(categories) if categories else None,
        "imageUrl": image_url,
        "language": language,
        "previewLink": preview_link,
    }
    updates = {field: value for field, value in supplied.items() if value is not None}
    for name in clear or []:
        if name not in CLEARABLE_FIELDS:
            _fail(f"Cannot clear '{name}'. Choose from: {', '.join(CLEARABLE_FIELDS)}")
        updates[CLEARABLE_FIELDS[name]] = None
    if not updates:
        _fail("Nothing to update. Provide at least one field.")

    _fetch(collection)
    _warn_on_bad_cover(image_url)
    try:
        book = collection.update_book(book_id, updates)
    except BookValidationError as e:
        _report_validation(e)
    except CollectionError as e:
        _fail(e.message)
    else:
        print(f"Updated: {book.title} by {', '.join(book.authors)}")


@app.command("remove")
def cli_remove(
    ctx: typer.Context,
    book_id: str,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Delete a book by id."""
    collection: BookCollection = ctx.obj
    if not yes and not typer.confirm(f"Delete book {book_id}?", default=False):
        print("Deletion cancelled.")
        return
    try:
        collection.remove_book(book_id)
    except CollectionError as e:
        if e.status_code == 404:
            _fail(f"Book with id {book_id} not found.")
        _fail(e.message)
    else:
        print(f"Book with id {book_id} has been removed.")


@app.command("stats")
def cli_stats(
    ctx: typer.Context,
    local: bool = typer.Option(False, "--local", help="Count from the fetched list instead of asking the service"),
):
    """Show library statistics."""
    collection: BookCollection = ctx.obj
    try:
        if local:
            collection.fetch()
            stats = collection.stats()
        else:
            stats = collection.refresh_stats()
    except CollectionError as e:
        _fail(e.message)
    else:
        print_stats_result(stats)


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Run the collection service with Uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    print(f"Starting {settings.app_name} API on http://{host}:{port}/")
    uvicorn.run("api:app", host=host, port=port, reload=reload, log_level=settings.log_level.lower())


if __name__ == "__main__":
    app()
