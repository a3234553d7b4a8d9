"""End-to-end tests for the user administration HTTP API."""

from __future__ import annotations

import asyncio
import logging
import threading
from urllib.parse import parse_qs, urlparse

import pytest
import yaml
from argon2 import PasswordHasher
from argon2.exceptions import VerifyMismatchError
from fastapi.testclient import TestClient

from conftest import ADMIN_HEADERS, FrozenClock
from useradmin.config import Settings
from useradmin.hashing import PasslibHashProvider
from useradmin.service import check_smtp, create_app


@pytest.fixture()
def client(settings: Settings, hasher: PasslibHashProvider, clock: FrozenClock):
    settings = Settings.for_directory(
        settings.config_dir,
        hash_provider="passlib",
        base_url="https://auth.example.com",
    )
    app = create_app(settings=settings, hasher=hasher, clock=clock)
    with TestClient(app) as test_client:
        yield test_client


def _create(client: TestClient, username: str, password: str = "secret1", **extra) -> None:
    response = client.post(
        "/api/users",
        headers=ADMIN_HEADERS,
        json={"username": username, "password": password, **extra},
    )
    assert response.status_code == 200, response.text
    assert response.json() == {"ok": True}


def test_health_is_public(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_admin_endpoints_require_groups_header(client: TestClient) -> None:
    response = client.get("/api/users")

    assert response.status_code == 403
    assert response.json() == {"error": "forbidden (no groups)"}


def test_admin_endpoints_require_admin_group(client: TestClient) -> None:
    for method, path in [
        ("get", "/api/users"),
        ("post", "/api/users"),
        ("put", "/api/users/alice"),
        ("delete", "/api/users/alice"),
        ("post", "/api/users/alice/password"),
        ("post", "/api/invite"),
        ("get", "/api/invites"),
        ("get", "/api/logfile"),
    ]:
        kwargs = {"json": {}} if method in {"post", "put"} else {}
        response = getattr(client, method)(path, headers={"Remote-Groups": "users"}, **kwargs)
        assert response.status_code == 403, (method, path)
        assert response.json() == {"error": "forbidden (not admin)"}


def test_user_lifecycle_and_password_change(client: TestClient, settings: Settings) -> None:
    _create(client, "alice", "secret1", email="alice@example.com")

    listing = client.get("/api/users", headers=ADMIN_HEADERS)
    assert listing.status_code == 200
    assert listing.json() == {
        "alice": {"displayname": "alice", "email": "alice@example.com", "groups": ["users"]},
    }
    assert "password" not in listing.json()["alice"]

    changed = client.post(
        "/api/users/alice/password",
        headers=ADMIN_HEADERS,
        json={"password": "secret2"},
    )
    assert changed.status_code == 200, changed.text

    stored = yaml.safe_load(settings.users_file.read_text())["users"]["alice"]["password"]
    assert PasswordHasher().verify(stored, "secret2")
    with pytest.raises(VerifyMismatchError):
        PasswordHasher().verify(stored, "secret1")

    updated = client.put(
        "/api/users/alice",
        headers=ADMIN_HEADERS,
        json={"displayname": "Alice Liddell", "groups": "admins"},
    )
    assert updated.status_code == 200, updated.text
    assert client.get("/api/users/alice", headers=ADMIN_HEADERS).json() == {
        "displayname": "Alice Liddell",
        "email": "alice@example.com",
        "groups": ["admins"],
    }

    deleted = client.delete("/api/users/alice", headers=ADMIN_HEADERS)
    assert deleted.status_code == 200
    assert client.get("/api/users", headers=ADMIN_HEADERS).json() == {}


def test_create_user_validation_and_conflict(client: TestClient) -> None:
    missing = client.post("/api/users", headers=ADMIN_HEADERS, json={"username": "alice"})
    assert missing.status_code == 400
    assert missing.json() == {"error": "password is required"}

    _create(client, "alice")
    duplicate = client.post(
        "/api/users",
        headers=ADMIN_HEADERS,
        json={"username": "alice", "password": "x"},
    )
    assert duplicate.status_code == 400
    assert "already exists" in duplicate.json()["error"]


def test_unknown_user_returns_404(client: TestClient) -> None:
    for method, path, body in [
        ("put", "/api/users/ghost", {"email": "ghost@example.com"}),
        ("post", "/api/users/ghost/password", {"password": "pw"}),
        ("delete", "/api/users/ghost", None),
        ("get", "/api/users/ghost", None),
    ]:
        kwargs = {"json": body} if body is not None else {}
        response = getattr(client, method)(path, headers=ADMIN_HEADERS, **kwargs)
        assert response.status_code == 404, (method, path)
        assert response.json() == {"error": "User not found"}


def test_corrupt_users_file_surfaces_as_server_error(client: TestClient, settings: Settings) -> None:
    settings.users_file.write_text("users: [broken\n")

    response = client.get("/api/users", headers=ADMIN_HEADERS)

    assert response.status_code == 500
    assert "error" in response.json()
    assert settings.users_file.read_text() == "users: [broken\n"


def test_invite_and_accept_flow(client: TestClient) -> None:
    created = client.post(
        "/api/invite",
        headers=ADMIN_HEADERS,
        json={"email": "bob@example.com", "groups": ["users"], "displayname": "Bob"},
    )
    assert created.status_code == 200, created.text
    payload = created.json()
    assert payload["ok"] is True
    assert parse_qs(urlparse(payload["link"]).query) == {"token": [payload["token"]]}
    assert payload["link"].startswith("https://auth.example.com/admin/invite/accept.html?")

    pending = client.get("/api/invites", headers=ADMIN_HEADERS).json()
    assert pending[payload["token"]]["email"] == "bob@example.com"

    accepted = client.post(
        "/api/invite/accept",
        json={"token": payload["token"], "username": "bob", "password": "pw"},
    )
    assert accepted.status_code == 200, accepted.text

    users = client.get("/api/users", headers=ADMIN_HEADERS).json()
    assert users["bob"] == {"displayname": "Bob", "email": "bob@example.com", "groups": ["users"]}

    replay = client.post(
        "/api/invite/accept",
        json={"token": payload["token"], "username": "bob2", "password": "pw"},
    )
    assert replay.status_code == 400
    assert replay.json() == {"error": "invalid token"}


def test_expired_invite_is_rejected(client: TestClient, clock: FrozenClock) -> None:
    created = client.post(
        "/api/invite",
        headers=ADMIN_HEADERS,
        json={"email": "bob@example.com", "groups": ["users"], "expiresMinutes": 1},
    )
    token = created.json()["token"]
    clock.advance(minutes=2)

    expired = client.post("/api/invite/accept", json={"token": token, "username": "bob", "password": "pw"})
    assert expired.status_code == 400
    assert expired.json() == {"error": "token expired"}

    again = client.post("/api/invite/accept", json={"token": token, "username": "bob", "password": "pw"})
    assert again.json() == {"error": "invalid token"}


def test_accept_rejects_existing_username(client: TestClient) -> None:
    _create(client, "bob")
    token = client.post("/api/invite", headers=ADMIN_HEADERS, json={"email": "b@example.com"}).json()["token"]

    response = client.post("/api/invite/accept", json={"token": token, "username": "bob", "password": "pw"})

    assert response.status_code == 400
    assert "already exists" in response.json()["error"]


def test_invite_request_validation(client: TestClient) -> None:
    no_email = client.post("/api/invite", headers=ADMIN_HEADERS, json={"groups": ["users"]})
    assert no_email.status_code == 400
    assert no_email.json() == {"error": "email is required"}

    bad_expiry = client.post(
        "/api/invite",
        headers=ADMIN_HEADERS,
        json={"email": "a@example.com", "expiresMinutes": "soon"},
    )
    assert bad_expiry.status_code == 400
    assert "expiresMinutes" in bad_expiry.json()["error"]

    missing = client.post("/api/invite/accept", json={"token": "t"})
    assert missing.status_code == 400
    assert missing.json() == {"error": "token/username/password required"}


def test_revoke_invite(client: TestClient) -> None:
    token = client.post("/api/invite", headers=ADMIN_HEADERS, json={"email": "a@example.com"}).json()["token"]

    revoked = client.delete(f"/api/invite/{token}", headers=ADMIN_HEADERS)
    assert revoked.status_code == 200

    accepted = client.post("/api/invite/accept", json={"token": token, "username": "a", "password": "pw"})
    assert accepted.json() == {"error": "invalid token"}


def test_logfile_endpoint(client: TestClient, settings: Settings) -> None:
    missing = client.get("/api/logfile", headers=ADMIN_HEADERS)
    assert missing.status_code == 404
    assert missing.json() == {"error": "no logfile"}

    settings.log_file.write_text("2024-05-01 INFO: started\n")
    present = client.get("/api/logfile", headers=ADMIN_HEADERS)
    assert present.status_code == 200
    assert "started" in present.text


class BrokenMailer:
    def verify(self) -> bool:
        raise RuntimeError("relay exploded")


class BlockingMailer:
    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()

    def verify(self) -> bool:
        self.started.set()
        self.release.wait(timeout=5)
        return True


def test_smtp_check_logs_unexpected_errors(caplog) -> None:
    with caplog.at_level(logging.ERROR, logger="useradmin.service"):
        assert asyncio.run(check_smtp(BrokenMailer())) is False

    assert "SMTP verify raised unexpectedly" in caplog.text
    assert "relay exploded" in caplog.text


def test_shutdown_cancels_pending_smtp_check(settings: Settings, hasher: PasslibHashProvider) -> None:
    mailer = BlockingMailer()
    app = create_app(settings=settings, hasher=hasher, mailer=mailer)

    try:
        with TestClient(app) as test_client:
            assert mailer.started.wait(timeout=5)
            assert test_client.get("/health").status_code == 200
    finally:
        mailer.release.set()
