from datetime import timedelta

from jose import jwt

from auth import ALGORITHM
from database import utcnow


class TestRegisterAndLogin:
    def test_register_returns_token(self, client, register):
        headers, user = register("alice")
        assert user["username"] == "alice"
        assert "password_hash" not in user

        me = client.get("/auth/me", headers=headers)
        assert me.status_code == 200
        assert me.json()["email"] == "alice@example.com"
        assert me.json()["is_admin"] is False

    def test_duplicate_registration(self, client, register):
        register("alice")
        response = client.post(
            "/auth/register", json={"username": "alice", "email": "other@example.com", "password": "secret123"}
        )
        assert response.status_code == 400
        assert response.json()["message"] == "User already exists"

    def test_login(self, client, register):
        register("alice", password="secret123")
        ok = client.post("/auth/login", json={"email": "ALICE@example.com", "password": "secret123"})
        assert ok.status_code == 200
        assert ok.json()["token"]

        bad = client.post("/auth/login", json={"email": "alice@example.com", "password": "wrong"})
        assert bad.status_code == 401
        assert bad.json() == {"message": "Invalid credentials", "error": "Unauthorized"}

    def test_seeded_admin(self, client, admin_headers):
        assert client.get("/auth/me", headers=admin_headers).json()["is_admin"] is True


class TestTokens:
    def test_garbage_token(self, client):
        response = client.get("/auth/me", headers={"Authorization": "Bearer nonsense"})
        assert response.status_code == 401
        assert response.json()["message"] == "Token is not valid"

    def test_expired_token(self, client, register, settings):
        _, user = register()
        token = jwt.encode(
            {"sub": user["id"], "exp": utcnow() - timedelta(minutes=1)}, settings.secret_key, algorithm=ALGORITHM
        )
        response = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_wrong_signature(self, client, register):
        _, user = register()
        token = jwt.encode({"sub": user["id"]}, "someone-else", algorithm=ALGORITHM)
        assert client.get("/cart", headers={"Authorization": f"Bearer {token}"}).status_code == 401
