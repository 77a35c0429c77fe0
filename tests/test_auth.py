from __future__ import annotations

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
from google.auth.exceptions import TransportError
from google.oauth2.credentials import Credentials

from receiptsync import auth
from receiptsync.auth import AuthenticationRequired, AuthSession, AuthUnavailable, MemberNotAllowedError


def _write_token(path: Path, *, expiry: str = "2999-01-01T00:00:00Z") -> None:
    path.write_text(
        json.dumps(
            {
                "token": "access-123",
                "refresh_token": "refresh-456",
                "client_id": "client.apps.googleusercontent.com",
                "client_secret": "secret",
                "expiry": expiry,
            }
        ),
        encoding="utf-8",
    )


def test_member_for_uses_allow_list_case_insensitively(tmp_path):
    session = AuthSession(
        str(tmp_path / "client.json"),
        str(tmp_path / "token.json"),
        allowed_members={"Alex@Example.com": "Alex"},
    )

    assert session.member_for("alex@example.com") == "Alex"
    assert session.member_for("  ALEX@EXAMPLE.COM ") == "Alex"
    with pytest.raises(MemberNotAllowedError):
        session.member_for("mallory@example.com")


def test_missing_token_means_reauthorisation(tmp_path):
    session = AuthSession(str(tmp_path / "client.json"), str(tmp_path / "token.json"))

    assert session.get_access_token() is None
    with pytest.raises(AuthenticationRequired):
        session.credentials()


def test_stored_token_is_used_while_valid(tmp_path):
    token_path = tmp_path / "token.json"
    _write_token(token_path)
    session = AuthSession(str(tmp_path / "client.json"), str(token_path))

    assert session.get_access_token() == "access-123"


def test_unreadable_token_file_is_treated_as_signed_out(tmp_path):
    token_path = tmp_path / "token.json"
    token_path.write_text(json.dumps({"token": "only"}), encoding="utf-8")
    session = AuthSession(str(tmp_path / "client.json"), str(token_path))

    assert session.get_access_token() is None


def test_sign_out_removes_the_token(tmp_path):
    token_path = tmp_path / "token.json"
    _write_token(token_path)
    session = AuthSession(str(tmp_path / "client.json"), str(token_path))
    assert session.get_access_token() == "access-123"

    session.sign_out()

    assert not token_path.exists()
    assert session.get_access_token() is None


def test_sign_in_requires_client_secret_file(tmp_path):
    session = AuthSession(str(tmp_path / "missing.json"), str(tmp_path / "token.json"))

    with pytest.raises(FileNotFoundError):
        session.sign_in()


def test_unreachable_refresh_is_not_a_sign_in_problem(tmp_path, monkeypatch):
    token_path = tmp_path / "token.json"
    _write_token(token_path, expiry="2000-01-01T00:00:00Z")

    def offline_refresh(self, request):
        raise TransportError("Failed to establish a new connection")

    monkeypatch.setattr(Credentials, "refresh", offline_refresh)
    session = AuthSession(str(tmp_path / "client.json"), str(token_path))

    with pytest.raises(AuthUnavailable):
        session.get_access_token()


class _Request:
    def __init__(self, payload):
        self._payload = payload

    def execute(self):
        return self._payload


class _ProfileService:
    def __init__(self, payload):
        self._payload = payload

    def userinfo(self):
        return self

    def get(self):
        return _Request(self._payload)


def _stub_profile(monkeypatch, payload):
    monkeypatch.setattr(auth, "build", lambda *args, **kwargs: _ProfileService(payload))


def test_identity_is_remembered_for_offline_use(tmp_path, monkeypatch):
    token_path = tmp_path / "token.json"
    _write_token(token_path)
    members = {"alex@example.com": "Alex"}
    _stub_profile(monkeypatch, {"email": "Alex@Example.com", "name": "Alex Doe"})
    session = AuthSession(str(tmp_path / "client.json"), str(token_path), allowed_members=members)
    assert session.cached_identity() is None

    fetched = session.fetch_identity()

    offline = AuthSession(str(tmp_path / "client.json"), str(token_path), allowed_members=members)
    assert offline.cached_identity() == fetched
    assert fetched.member == "Alex"


def test_cached_identity_follows_the_allow_list(tmp_path, monkeypatch):
    token_path = tmp_path / "token.json"
    _write_token(token_path)
    _stub_profile(monkeypatch, {"email": "alex@example.com", "name": "Alex"})
    AuthSession(str(tmp_path / "c.json"), str(token_path), allowed_members={"alex@example.com": "Alex"}).fetch_identity()

    removed = AuthSession(str(tmp_path / "c.json"), str(token_path), allowed_members={})

    with pytest.raises(MemberNotAllowedError):
        removed.cached_identity()


def test_sign_out_forgets_the_identity(tmp_path, monkeypatch):
    token_path = tmp_path / "token.json"
    _write_token(token_path)
    _stub_profile(monkeypatch, {"email": "alex@example.com", "name": "Alex"})
    session = AuthSession(str(tmp_path / "c.json"), str(token_path), allowed_members={"alex@example.com": "Alex"})
    session.fetch_identity()

    session.sign_out()

    assert not session.identity_path.exists()
    assert session.cached_identity() is None
