import mongomock
import pytest
from fastapi.testclient import TestClient

from cart import CartEngine
from config import Settings
from database import Store
from locks import KeyedLock
from main import create_app
from orders import OrderEngine

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "admin123"


@pytest.fixture()
def settings():
    return Settings(
        database_name="bookstore_test",
        secret_key="test-secret",
        admin_email=ADMIN_EMAIL,
        admin_password=ADMIN_PASSWORD,
        cart_lock_timeout=1.0,
    )


@pytest.fixture()
def store():
    db = Store(mongomock.MongoClient(), "bookstore_test")
    db.open()
    return db


@pytest.fixture()
def carts(store):
    return CartEngine(store, KeyedLock(timeout=1.0))


@pytest.fixture()
def order_engine(store, carts):
    return OrderEngine(store, carts)


@pytest.fixture()
def add_book(store):
    """Insert a book straight into the store and return its document"""

    def _add(title="Dune", price=10.0, **fields):
        data = {"title": title, "author": "Frank Herbert", "description": "Sand", "price": price, "categories": []}
        data.update(fields)
        book_id = store.create_document("book", data)
        return store.get_document_by_id("book", book_id)

    return _add


@pytest.fixture()
def client(settings, store):
    app = create_app(settings, store=store)
    with TestClient(app) as test_client:
        yield test_client


def _headers(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def register(client):
    """Register a user through the API; returns (auth headers, user json)"""

    def _register(username="alice", email=None, password="secret123"):
        response = client.post(
            "/auth/register",
            json={"username": username, "email": email or f"{username}@example.com", "password": password},
        )
        assert response.status_code == 201, response.text
        body = response.json()
        return _headers(body["token"]), body["user"]

    return _register


@pytest.fixture()
def admin_headers(client):
    response = client.post("/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert response.status_code == 200, response.text
    return _headers(response.json()["token"])


@pytest.fixture()
def create_book(client, admin_headers):
    """Create a book through the admin API and return its json"""

    def _create(title="Dune", price=10.0, **fields):
        payload = {"title": title, "author": "Frank Herbert", "description": "Sand", "price": price}
        payload.update(fields)
        response = client.post("/books", json=payload, headers=admin_headers)
        assert response.status_code == 201, response.text
        return response.json()

    return _create
