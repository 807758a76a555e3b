import json

import pytest
from typer.testing import CliRunner

import main
from main import app
from utils.ui_helpers import OUTPUT_MODE_ENV

runner = CliRunner()


@pytest.fixture(autouse=True)
def plain_output(monkeypatch):
    # --output writes the env var; setenv makes monkeypatch restore it afterwards
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")


@pytest.fixture
def seeded(collection, book_payload):
    collection.add_book(book_payload(title="Persuasion", authors=["Jane Austen"], status="read", rating=5))
    collection.add_book(book_payload(title="Dracula", authors=["Bram Stoker"], genre="Horror"))
    collection.add_book(book_payload(title="Emma", authors=["Jane Austen"]))
    return collection


def invoke(collection, *args, **kwargs):
    return runner.invoke(app, list(args), obj=collection, **kwargs)


def test_list_no_books(collection):
    result = invoke(collection, "list")
    assert result.exit_code == 0
    assert "No books in library." in result.stdout


def test_list_search_and_filter(seeded):
    result = invoke(seeded, "list", "--search", "austen", "--status", "unread")

    assert result.exit_code == 0
    assert "Emma by Jane Austen" in result.stdout
    assert "Persuasion" not in result.stdout
    assert "Dracula" not in result.stdout


def test_list_by_author(seeded):
    result = invoke(seeded, "list", "--by-author")

    assert result.exit_code == 0
    lines = result.stdout.splitlines()
    assert lines[0] == "Bram Stoker:"
    assert "Jane Austen:" in lines
    assert lines.index("Jane Austen:") < next(i for i, line in enumerate(lines) if "Persuasion" in line)


def test_list_json_output(seeded):
    result = invoke(seeded, "--output", "json", "list", "--five-star")

    assert result.exit_code == 0
    records = json.loads(result.stdout)
    assert [r["title"] for r in records] == ["Persuasion"]


def test_add_book_success(collection, monkeypatch):
    monkeypatch.setattr(main, "probe_image_url", lambda url, timeout: True)

    result = invoke(collection, "add", "--title", "Circe", "--author", "Madeline Miller",
                    "--genre", "Fantasy", "--format", "kindle", "--image-url", "https://covers.example/c.jpg")

    assert result.exit_code == 0
    assert "Successfully added: Circe by Madeline Miller" in result.stdout
    assert "Warning" not in result.stdout
    assert [b.title for b in collection.sorted_books()] == ["Circe"]


def test_add_warns_on_unreachable_cover_but_still_saves(collection, monkeypatch):
    monkeypatch.setattr(main, "probe_image_url", lambda url, timeout: False)

    result = invoke(collection, "add", "--title", "Circe", "--author", "Madeline Miller",
                    "--genre", "Fantasy", "--image-url", "https://covers.example/missing.jpg")

    assert result.exit_code == 0
    assert "Warning: could not load a cover image" in result.stdout
    assert collection.refresh_stats()["totalBooks"] == 1


def test_add_read_without_rating_is_rejected(collection):
    result = invoke(collection, "add", "--title", "Circe", "--author", "Madeline Miller",
                    "--genre", "Fantasy", "--status", "read")

    assert result.exit_code == 1
    assert 'rating: Rating is required when status is "read"' in result.stdout
    assert collection.refresh_stats()["totalBooks"] == 0


def test_add_duplicate_reports_service_error(seeded):
    result = invoke(seeded, "add", "--title", "EMMA", "--author", "jane austen", "--genre", "Romance")

    assert result.exit_code == 1
    assert "Error: Book already exists in your library" in result.stdout


def test_find_book(seeded):
    book_id = seeded.search("dracula")[0].id

    result = invoke(seeded, "find", book_id)

    assert result.exit_code == 0
    assert "Book Found" in result.stdout
    assert "Title: Dracula" in result.stdout
    assert f"ID: {book_id}" in result.stdout


def test_find_book_not_found(collection):
    result = invoke(collection, "find", "missing")

    assert result.exit_code == 1
    assert "Book with id missing not found." in result.stdout


def test_update_book(seeded):
    emma = seeded.search("emma")[0]

    result = invoke(seeded, "update", emma.id, "--status", "read", "--rating", "4.5")

    assert result.exit_code == 0
    assert "Updated: Emma by Jane Austen" in result.stdout
    assert seeded.fetch_book(emma.id).rating == 4.5


def test_update_clears_optional_field(seeded):
    persuasion = seeded.search("persuasion")[0]

    result = invoke(seeded, "update", persuasion.id, "--status", "dnf", "--clear", "rating")

    assert result.exit_code == 0
    stored = seeded.fetch_book(persuasion.id)
    assert stored.status == "dnf"
    assert stored.rating is None


def test_update_needs_a_field(seeded):
    emma = seeded.search("emma")[0]

    result = invoke(seeded, "update", emma.id)

    assert result.exit_code == 1
    assert "Nothing to update" in result.stdout


def test_update_rejects_unknown_clear(seeded):
    emma = seeded.search("emma")[0]

    result = invoke(seeded, "update", emma.id, "--clear", "title")

    assert result.exit_code == 1
    assert "Cannot clear 'title'" in result.stdout


def test_remove_book(seeded):
    dracula = seeded.search("dracula")[0]

    result = invoke(seeded, "remove", dracula.id, "--yes")

    assert result.exit_code == 0
    assert f"Book with id {dracula.id} has been removed." in result.stdout
    assert seeded.find(dracula.id) is None


def test_remove_can_be_cancelled(seeded):
    dracula = seeded.search("dracula")[0]

    result = invoke(seeded, "remove", dracula.id, input="n\n")

    assert result.exit_code == 0
    assert "Deletion cancelled." in result.stdout
    assert seeded.fetch_book(dracula.id).title == "Dracula"


def test_remove_book_not_found(collection):
    result = invoke(collection, "remove", "missing", "--yes")

    assert result.exit_code == 1
    assert "Book with id missing not found." in result.stdout


@pytest.mark.parametrize("extra", [[], ["--local"]])
def test_stats(seeded, extra):
    result = invoke(seeded, "stats", *extra)

    assert result.exit_code == 0
    assert "Total Books: 3" in result.stdout
    assert "Read: 1" in result.stdout
    assert "Five Star: 1" in result.stdout
    assert "Unread: 2" in result.stdout


def test_stats_rich_output(seeded):
    result = invoke(seeded, "-o", "rich", "stats")

    assert result.exit_code == 0
    assert "Total Books: 3" in result.stdout
