from datetime import datetime, timezone

import mongomock
from pymongo.errors import OperationFailure

from admin import last_months

ADDRESS = {"street": "1 Main St", "city": "Springfield", "state": "IL", "zip_code": "62701"}


def _place_order(client, headers, book, quantity):
    client.post("/cart/add", json={"book_id": book["id"], "quantity": quantity}, headers=headers)
    response = client.post("/orders", json={"shipping_address": ADDRESS, "payment_method": "paypal"}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


class TestLastMonths:
    def test_wraps_year(self):
        now = datetime(2026, 2, 14, tzinfo=timezone.utc)
        assert last_months(now, 6) == [(2025, 9), (2025, 10), (2025, 11), (2025, 12), (2026, 1), (2026, 2)]


class TestDashboard:
    def test_requires_admin(self, client, register):
        headers, _ = register()
        assert client.get("/admin/dashboard", headers=headers).status_code == 403
        assert client.get("/admin/dashboard").status_code == 401

    def test_figures(self, client, register, create_book, admin_headers, store):
        headers, _ = register()
        category = client.post("/categories", json={"name": "Sci-Fi"}, headers=admin_headers).json()
        book = create_book(price=10.0, categories=[category["id"]])
        _place_order(client, headers, book, 2)
        cancelled = _place_order(client, headers, book, 1)
        store.update_document("order", cancelled["id"], {"status": "cancelled"})

        body = client.get("/admin/dashboard", headers=admin_headers).json()

        assert body["stats"] == {"books": 1, "users": 2, "orders": 2, "revenue": 20.0}
        assert len(body["monthly_sales"]) == 6
        now = datetime.now(timezone.utc)
        assert body["monthly_sales"][-1]["year"] == now.year
        assert body["monthly_sales"][-1]["count"] == 1
        assert body["monthly_sales"][-1]["revenue"] == 20.0
        assert body["categories"] == [{"name": "Sci-Fi", "count": 1}]
        assert len(body["recent_orders"]) == 2
        assert body["recent_orders"][0]["user"]["username"] == "alice"


class TestUserManagement:
    def test_list_hides_password(self, client, register, admin_headers):
        register()
        users = client.get("/admin/users", headers=admin_headers).json()
        assert len(users) == 2
        assert all("password_hash" not in u for u in users)

    def test_create_duplicate(self, client, admin_headers):
        payload = {"username": "carol", "email": "carol@example.com", "password": "secret123"}
        assert client.post("/admin/users", json=payload, headers=admin_headers).status_code == 201
        assert client.post("/admin/users", json=payload, headers=admin_headers).status_code == 400

    def test_cannot_demote_only_admin(self, client, admin_headers):
        me = client.get("/auth/me", headers=admin_headers).json()
        response = client.put(f"/admin/users/{me['id']}", json={"is_admin": False}, headers=admin_headers)
        assert response.status_code == 400
        assert response.json()["message"] == "Cannot remove the only admin account"

    def test_promote_and_rename(self, client, register, admin_headers):
        _, user = register()
        response = client.put(
            f"/admin/users/{user['id']}", json={"username": "alice2", "is_admin": True}, headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["username"] == "alice2"
        assert response.json()["is_admin"] is True

    def test_delete_guards(self, client, admin_headers):
        me = client.get("/auth/me", headers=admin_headers).json()
        assert client.delete(f"/admin/users/{me['id']}", headers=admin_headers).status_code == 400
        assert client.delete("/admin/users/64b000000000000000000000", headers=admin_headers).status_code == 404

    def test_delete_removes_cart_keeps_orders(self, client, register, create_book, admin_headers, store):
        headers, user = register()
        book = create_book()
        _place_order(client, headers, book, 1)
        client.post("/cart/add", json={"book_id": book["id"]}, headers=headers)

        response = client.delete(f"/admin/users/{user['id']}", headers=admin_headers)

        assert response.status_code == 200
        assert store.count("cart", {"user_id": user["id"]}) == 0
        assert store.count("order", {"user_id": user["id"]}) == 1
        assert client.get("/cart", headers=headers).status_code == 401

    def test_failed_cleanup_keeps_user(self, client, register, create_book, admin_headers, store, monkeypatch):
        headers, user = register()
        client.post("/cart/add", json={"book_id": create_book()["id"]}, headers=headers)

        def unavailable(self, *args, **kwargs):
            raise OperationFailure("node is recovering")

        monkeypatch.setattr(mongomock.Collection, "delete_many", unavailable)

        response = client.delete(f"/admin/users/{user['id']}", headers=admin_headers)

        assert response.status_code == 500
        assert response.json()["message"] == "Error removing user data"
        assert store.get_document_by_id("user", user["id"]) is not None
        assert client.get("/auth/me", headers=headers).status_code == 200
