import sqlite3

import pytest

import library as library_module
from config import settings


def _create(client, payload):
    response = client.post("/books", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_get_books_empty(client):
    response = client.get("/books")
    assert response.status_code == 200
    assert response.json() == []


def test_create_then_get(client, book_payload):
    payload = book_payload(description="A classic", pageCount=432, imageUrl="https://covers.example/p.jpg")

    created = _create(client, payload)

    assert created["id"]
    assert created["dateAdded"]
    assert created["updatedAt"] == created["dateAdded"]
    for key, value in payload.items():
        assert created[key] == value

    fetched = client.get(f"/books/{created['id']}")
    assert fetched.status_code == 200
    assert fetched.json() == created


def test_get_unknown_book_is_404(client):
    response = client.get("/books/does-not-exist")
    assert response.status_code == 404
    assert response.json() == {"error": "Book not found"}


def test_duplicate_is_409(client, book_payload):
    _create(client, book_payload())

    response = client.post("/books", json=book_payload(title="PRIDE and prejudice", authors=["jane AUSTEN"]))

    assert response.status_code == 409
    assert response.json() == {"error": "Book already exists in your library"}
    assert len(client.get("/books").json()) == 1


@pytest.mark.parametrize("overrides, message", [
    ({"title": "  "}, "Title is required"),
    ({"authors": []}, "At least one author is required"),
    ({"status": "read"}, 'Rating is required when status is "read"'),
    ({"rating": 7}, "half-star"),
    ({"genre": "Cookbooks"}, "genre"),
])
def test_invalid_create_is_422(client, book_payload, overrides, message):
    response = client.post("/books", json=book_payload(**overrides))

    assert response.status_code == 422
    body = response.json()
    assert set(body) == {"error"}
    assert message in body["error"]


def test_list_filters_and_ignores_unknown_keys(client, book_payload):
    _create(client, book_payload(title="Carrie", authors=["Stephen King"], genre="Horror", status="read", rating=5))
    _create(client, book_payload(title="A Court of Thorns and Roses", authors=["Sarah J. Maas"], genre="Fantasy"))

    titles = [b["title"] for b in client.get("/books", params={"unknown": "x"}).json()]
    assert titles == ["A Court of Thorns and Roses", "Carrie"]

    horror = client.get("/books", params={"genre": "Horror", "status": "read", "rating": 5}).json()
    assert [b["title"] for b in horror] == ["Carrie"]


def test_patch_changes_only_supplied_fields(client, book_payload):
    created = _create(client, book_payload(status="read", rating=4, publisher="Penguin"))

    response = client.patch(f"/books/{created['id']}", json={"rating": None, "format": "kindle"})

    assert response.status_code == 200
    updated = response.json()
    assert updated["rating"] is None
    assert updated["format"] == "kindle"
    assert updated["publisher"] == "Penguin"
    assert updated["title"] == created["title"]
    assert updated["updatedAt"] > created["updatedAt"]


def test_patch_cannot_clear_required_field(client, book_payload):
    created = _create(client, book_payload())

    response = client.patch(f"/books/{created['id']}", json={"authors": None})

    assert response.status_code == 422
    assert "authors" in response.json()["error"]


def test_patch_unknown_book_is_404(client):
    response = client.patch("/books/missing", json={"title": "New"})
    assert response.status_code == 404
    assert response.json() == {"error": "Book not found"}


def test_delete_then_get_is_404(client, book_payload):
    created = _create(client, book_payload())

    response = client.delete(f"/books/{created['id']}")
    assert response.status_code == 200
    assert response.json() == {"message": "Book deleted successfully"}

    assert client.get(f"/books/{created['id']}").status_code == 404
    assert client.delete(f"/books/{created['id']}").status_code == 404


def test_stats_endpoint(client, book_payload):
    _create(client, book_payload(title="A", status="read", rating=5))
    _create(client, book_payload(title="B", status="read", rating=2.5))
    _create(client, book_payload(title="C"))
    _create(client, book_payload(title="D"))

    response = client.get("/books/stats")

    assert response.status_code == 200
    assert response.json() == {"totalBooks": 4, "readBooks": 2, "fiveStarBooks": 1, "unreadBooks": 2}


def test_health(client, book_payload):
    _create(client, book_payload())

    body = client.get("/health").json()

    assert body["status"] == "healthy"
    assert body["db"] is True
    assert body["totalBooks"] == 1


def _break_store(monkeypatch):
    def broken(db_file):
        raise sqlite3.OperationalError("database is locked")
    monkeypatch.setattr(library_module, "get_db_connection", broken)


def test_store_failure_outside_production_adds_details(client, monkeypatch):
    _break_store(monkeypatch)
    monkeypatch.setattr(settings, "environment", "development")

    response = client.get("/books")

    assert response.status_code == 500
    assert response.json() == {
        "error": "Failed to fetch books",
        "details": "database is locked",
        "environment": "development",
    }


def test_store_failure_in_production_hides_details(client, monkeypatch, book_payload):
    _break_store(monkeypatch)
    monkeypatch.setattr(settings, "environment", "production")

    assert client.get("/books/stats").json() == {"error": "Failed to fetch statistics"}
    response = client.post("/books", json=book_payload())
    assert response.status_code == 500
    assert response.json() == {"error": "Failed to create book"}


def test_health_reports_degraded_store(client, monkeypatch):
    _break_store(monkeypatch)

    body = client.get("/health").json()

    assert body["status"] == "degraded"
    assert body["db"] is False


def test_security_headers(client):
    response = client.get("/books")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"

def test_corrupt_stored_record_is_500_not_422(client, library, book_payload, monkeypatch):
    created = _create(client, book_payload())
    conn = sqlite3.connect(library.db_file)
    conn.execute("UPDATE books SET genre = 'Cookbooks' WHERE id = ?", (created["id"],))
    conn.commit()
    conn.close()
    monkeypatch.setattr(settings, "environment", "production")

    response = client.get("/books")

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to fetch books"}
