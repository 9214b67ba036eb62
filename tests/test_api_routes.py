"""
tests/test_api_routes.py -- Integration tests for the session REST endpoints.

These tests exercise the full stack: FastAPI routing -> request model
validation -> SessionEngine -> SQLite stores -> exception handlers -> response
envelope. Unit testing the route functions alone would miss the error mapping,
which is most of what the HTTP layer does.

Coverage:
  - sign-in: 200 token pair with no-store headers; 400 input errors;
    401 bad_credentials for wrong password and unknown user alike
  - refresh: 200 rotation, 401 on replay
  - validate: 200 subject, 401 on garbage
  - me: 200 with Bearer token, 401 without
  - 503 when the refresh token store fails

Fixtures used (from conftest.py):
  - api_client: (client, session_engine, admin_user). The admin user has
    username="admin", password="password123".
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from auth.errors import AuthError, ErrorKind

SIGN_IN = "/api/v1/auth/sign-in"
REFRESH = "/api/v1/auth/refresh"
VALIDATE = "/api/v1/auth/validate"
ME = "/api/v1/auth/me"

CREDENTIALS = {"username": "admin", "password": "password123"}


def _sign_in(client: TestClient) -> dict:
    resp = client.post(SIGN_IN, json=CREDENTIALS)
    assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
    return resp.json()


class TestSignIn:
    def test_sign_in_returns_token_pair(self, api_client) -> None:
        client, _engine, _admin = api_client
        resp = client.post(SIGN_IN, json=CREDENTIALS)
        assert resp.status_code == 200
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 3600
        assert data["access_token"].count(".") == 2
        assert len(data["refresh_token"]) >= 43

    def test_token_response_not_cacheable(self, api_client) -> None:
        client, _engine, _admin = api_client
        resp = client.post(SIGN_IN, json=CREDENTIALS)
        assert resp.headers["Cache-Control"] == "no-store"
        assert resp.headers["Pragma"] == "no-cache"

    def test_wrong_password_is_401(self, api_client) -> None:
        client, _engine, _admin = api_client
        resp = client.post(SIGN_IN, json={"username": "admin", "password": "wrong-password"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    def test_unknown_user_indistinguishable_from_wrong_password(self, api_client) -> None:
        client, _engine, _admin = api_client
        unknown = client.post(SIGN_IN, json={"username": "nobody", "password": "password123"})
        wrong = client.post(SIGN_IN, json={"username": "admin", "password": "wrong-password"})
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()

    def test_missing_username_is_400(self, api_client) -> None:
        client, _engine, _admin = api_client
        resp = client.post(SIGN_IN, json={"password": "password123"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "missing_username"

    def test_short_username_is_400(self, api_client) -> None:
        client, _engine, _admin = api_client
        resp = client.post(SIGN_IN, json={"username": "ab", "password": "password123"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "username_too_short"

    def test_short_password_is_400(self, api_client) -> None:
        client, _engine, _admin = api_client
        resp = client.post(SIGN_IN, json={"username": "admin", "password": "abc"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "password_too_short"

    def test_over_long_password_is_400(self, api_client) -> None:
        client, _engine, _admin = api_client
        resp = client.post(SIGN_IN, json={"username": "admin", "password": "x" * 100})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "password_too_long"

    def test_oversized_body_is_422(self, api_client) -> None:
        client, _engine, _admin = api_client
        resp = client.post(SIGN_IN, json={"username": "a" * 300, "password": "password123"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestRefresh:
    def test_refresh_rotates(self, api_client) -> None:
        client, _engine, _admin = api_client
        pair = _sign_in(client)
        resp = client.post(
            REFRESH, json={"access_token": pair["access_token"], "refresh_token": pair["refresh_token"]}
        )
        assert resp.status_code == 200
        assert resp.json()["refresh_token"] != pair["refresh_token"]
        assert resp.headers["Cache-Control"] == "no-store"

    def test_replay_is_401(self, api_client) -> None:
        client, _engine, _admin = api_client
        pair = _sign_in(client)
        body = {"access_token": pair["access_token"], "refresh_token": pair["refresh_token"]}
        assert client.post(REFRESH, json=body).status_code == 200

        resp = client.post(REFRESH, json=body)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_refresh_token"

    def test_persistence_failure_is_503(self, api_client, monkeypatch) -> None:
        client, engine, _admin = api_client
        pair = _sign_in(client)

        def failing_upsert(user_id: str, token_value: str) -> None:
            raise AuthError(ErrorKind.PERSISTENCE_ERROR, "database is locked", operation="upsert")

        monkeypatch.setattr(engine.refresh_store, "upsert", failing_upsert)
        resp = client.post(
            REFRESH, json={"access_token": pair["access_token"], "refresh_token": pair["refresh_token"]}
        )
        assert resp.status_code == 503
        error = resp.json()["error"]
        assert error["code"] == "service_unavailable"
        assert "locked" not in error["message"]


class TestValidate:
    def test_validate_returns_subject(self, api_client) -> None:
        client, _engine, admin = api_client
        pair = _sign_in(client)
        resp = client.post(VALIDATE, json={"access_token": pair["access_token"]})
        assert resp.status_code == 200
        assert resp.json() == {"subject": admin.id}

    def test_garbage_token_is_401(self, api_client) -> None:
        client, _engine, _admin = api_client
        resp = client.post(VALIDATE, json={"access_token": "not.a.token"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] in ("token_malformed", "signature_invalid")


class TestMe:
    def test_me_with_bearer_token(self, api_client) -> None:
        client, _engine, admin = api_client
        pair = _sign_in(client)
        resp = client.get(ME, headers={"Authorization": f"Bearer {pair['access_token']}"})
        assert resp.status_code == 200
        assert resp.json() == {"user_id": admin.id, "username": "admin", "email": "admin@example.com"}

    def test_me_unauthenticated(self, api_client) -> None:
        client, _engine, _admin = api_client
        resp = client.get(ME)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_malformed"

    def test_me_wrong_scheme(self, api_client) -> None:
        client, _engine, _admin = api_client
        pair = _sign_in(client)
        resp = client.get(ME, headers={"Authorization": f"Basic {pair['access_token']}"})
        assert resp.status_code == 401
