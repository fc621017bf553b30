"""
Тесты авторизации через Telegram initData и JWT.
"""
import time

from fastapi.testclient import TestClient

from giftflow.core.config import settings
from giftflow.core.security import create_access_token, decode_access_token, verify_init_data
from giftflow.main import app


class TestInitData:
    """Проверка подписи initData."""

    def test_valid_init_data(self, init_data):
        identity = verify_init_data(init_data(42, first_name="Anna", username="anna", language_code="en"))
        assert identity is not None
        assert identity.telegram_id == 42
        assert identity.username == "anna"
        assert identity.language_code == "en"

    def test_tampered_init_data(self, init_data):
        raw = init_data(42)
        tampered = raw.replace("42", "43", 1)
        assert verify_init_data(tampered) is None

    def test_expired_init_data(self, init_data):
        old = int(time.time()) - settings.init_data_max_age_seconds - 60
        assert verify_init_data(init_data(42, auth_date=old)) is None

    def test_missing_hash(self, init_data):
        assert verify_init_data("auth_date=1&user=%7B%22id%22%3A1%7D") is None


class TestAccessToken:
    """JWT токены сессии."""

    def test_round_trip(self):
        payload = decode_access_token(create_access_token("42"))
        assert payload["sub"] == "42"
        assert payload["type"] == "access"

    def test_invalid_token(self):
        assert decode_access_token("not.a.token") is None


class TestAuthApi:
    """POST /auth и текущий пользователь."""

    def test_first_login_registers_user(self, init_data):
        client = TestClient(app)
        res = client.post("/auth", json={"init_data": init_data(555, first_name="Ivan", language_code="en")})
        assert res.status_code == 200, res.text
        data = res.json()
        assert data["created"] is True
        assert data["user"]["telegram_id"] == 555
        assert data["user"]["language"] == "en"
        assert "access_token=" in res.headers.get("set-cookie", "")

        again = client.post("/auth", json={"init_data": init_data(555, first_name="Ivan")})
        assert again.json()["created"] is False

        me = client.get("/auth/me")
        assert me.status_code == 200
        assert me.json()["first_name"] == "Ivan"

    def test_bad_init_data_rejected(self, init_data):
        client = TestClient(app)
        res = client.post("/auth", json={"init_data": "user=%7B%7D&hash=deadbeef"})
        assert res.status_code == 401

    def test_bearer_token(self, init_data):
        client = TestClient(app)
        token = client.post("/auth", json={"init_data": init_data(777)}).json()["access_token"]
        fresh = TestClient(app)
        res = fresh.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 200
        assert res.json()["telegram_id"] == 777

    def test_init_data_header(self, init_data):
        client = TestClient(app)
        res = client.get("/auth/me", headers={"X-Telegram-Init-Data": init_data(888, first_name="Olga")})
        assert res.status_code == 200
        assert res.json()["first_name"] == "Olga"

    def test_me_requires_auth(self, init_data):
        client = TestClient(app)
        assert client.get("/auth/me").status_code == 401
        res = client.get("/auth/me", headers={"Authorization": "Bearer invalid.token.here"})
        assert res.status_code == 401

    def test_token_for_unknown_user(self, init_data):
        client = TestClient(app)
        token = create_access_token("123123123")
        res = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 401

    def test_logout_clears_cookie(self, init_data):
        client = TestClient(app)
        client.post("/auth", json={"init_data": init_data(999)})
        res = client.post("/auth/logout")
        assert res.status_code == 204
        assert "access_token=" in res.headers.get("set-cookie", "")
