import pytest
from fastapi.testclient import TestClient

from api import app, get_library
from book import Book
from client import BookCollection
from library import Library


@pytest.fixture
def library(tmp_path):
    # Fresh database file per test
    return Library(db_file=str(tmp_path / "library.db"))


@pytest.fixture
def client(library):
    """TestClient wired to the per-test library; the app lifespan is not run."""
    app.dependency_overrides[get_library] = lambda: library
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def collection(client):
    # TestClient is an httpx.Client, so the collection talks to the app in-process
    return BookCollection(client)


@pytest.fixture
def book_payload():
    def _make(**overrides):
        payload = {
            "title": "Pride and Prejudice",
            "authors": ["Jane Austen"],
            "genre": "Romance",
            "status": "unread",
            "format": "physical",
        }
        payload.update(overrides)
        return payload
    return _make


@pytest.fixture
def make_book(book_payload):
    def _make(**overrides):
        return Book.from_dict(book_payload(**overrides))
    return _make
