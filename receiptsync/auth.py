"""OAuth credentials and member allow-list for Receipt Sync."""
from __future__ import annotations

import http.client
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

logger = logging.getLogger(__name__)

SCOPES: List[str] = [
    "https://www.googleapis.com/auth/drive.file",
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
    "openid",
]


class AuthenticationRequired(RuntimeError):
    """Raised when no usable access token exists and the user must sign in."""


class MemberNotAllowedError(PermissionError):
    """Raised when a verified Google account is not on the allow-list."""


class AuthUnavailable(ConnectionError):
    """Raised when Google could not be reached to refresh a token or read the profile."""


@dataclass(frozen=True)
class Identity:
    email: str
    name: str
    member: str


class AuthSession:
    """Load, refresh and persist the user's OAuth token."""

    def __init__(
        self,
        client_secret_path: str,
        token_path: str,
        *,
        allowed_members: Optional[Mapping[str, str]] = None,
        scopes: Optional[List[str]] = None,
    ) -> None:
        self._client_secret_path = client_secret_path
        self._token_path = token_path
        self._scopes = scopes or SCOPES
        self._allowed: Dict[str, str] = {
            email.strip().lower(): label for email, label in (allowed_members or {}).items()
        }
        self._credentials: Optional[Credentials] = None

    # ------------------------------------------------------------------
    # Token handling
    # ------------------------------------------------------------------
    def _load_cached(self) -> Optional[Credentials]:
        if self._credentials is not None:
            return self._credentials
        if self._token_path and os.path.exists(self._token_path):
            try:
                self._credentials = Credentials.from_authorized_user_file(self._token_path, self._scopes)
            except ValueError as exc:
                logger.warning("Stored token %s is unreadable: %s", self._token_path, exc)
                return None
        return self._credentials

    def _save(self, credentials: Credentials) -> None:
        if not self._token_path:
            return
        os.makedirs(os.path.dirname(self._token_path) or ".", exist_ok=True)
        with open(self._token_path, "w", encoding="utf-8") as handle:
            handle.write(credentials.to_json())

    def credentials(self) -> Credentials:
        """Return valid credentials, refreshing them when a refresh token exists."""

        credentials = self._load_cached()
        if credentials is None:
            raise AuthenticationRequired("Not signed in to Google.")
        if credentials.valid:
            return credentials
        if credentials.expired and credentials.refresh_token:
            try:
                credentials.refresh(Request())
            except RefreshError as exc:
                self._credentials = None
                raise AuthenticationRequired(f"Google sign-in expired: {exc}") from exc
            except TransportError as exc:
                raise AuthUnavailable(f"Could not reach Google to refresh the token: {exc}") from exc
            self._save(credentials)
            logger.info("Refreshed Google access token")
            return credentials
        raise AuthenticationRequired("Google sign-in expired.")

    def get_access_token(self) -> Optional[str]:
        """Return the current access token or ``None`` when re-authentication is needed.

        :class:`AuthUnavailable` propagates so callers can treat it as offline.
        """

        try:
            return self.credentials().token
        except AuthenticationRequired as exc:
            logger.info("No access token: %s", exc)
            return None

    def sign_in(self) -> Credentials:
        """Run the installed-app OAuth flow and persist the resulting token."""

        if not os.path.exists(self._client_secret_path):
            raise FileNotFoundError(f"Client secret file not found: {self._client_secret_path}")
        flow = InstalledAppFlow.from_client_secrets_file(self._client_secret_path, self._scopes)
        credentials = flow.run_local_server(port=0)
        self._credentials = credentials
        self._save(credentials)
        return credentials

    def sign_out(self) -> None:
        self._credentials = None
        if self._token_path:
            Path(self._token_path).unlink(missing_ok=True)
            self.identity_path.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Allow-list
    # ------------------------------------------------------------------
    def member_for(self, email: str) -> str:
        """Return the member label for ``email`` or raise :class:`MemberNotAllowedError`."""

        label = self._allowed.get((email or "").strip().lower())
        if not label:
            raise MemberNotAllowedError(f"Email {email} is not authorized.")
        return label

    def fetch_identity(self) -> Identity:
        """Return the signed-in account and its member label.

        The identity is remembered beside the token so :meth:`cached_identity`
        can answer without a network round trip.
        """

        service = build("oauth2", "v2", credentials=self.credentials(), cache_discovery=False)
        try:
            profile = service.userinfo().get().execute()
        except HttpError as exc:
            raise AuthenticationRequired(f"Could not read Google profile: {exc}") from exc
        except (TransportError, httplib2.HttpLib2Error, http.client.HTTPException, OSError) as exc:
            raise AuthUnavailable(f"Could not read Google profile: {exc}") from exc
        email = str(profile.get("email", ""))
        identity = Identity(email=email, name=str(profile.get("name", "")), member=self.member_for(email))
        self._remember(identity)
        return identity

    # ------------------------------------------------------------------
    # Identity cache
    # ------------------------------------------------------------------
    @property
    def identity_path(self) -> Path:
        token_path = Path(self._token_path)
        return token_path.with_name(f"{token_path.stem}.identity.json")

    def _remember(self, identity: Identity) -> None:
        if not self._token_path:
            return
        path = self.identity_path
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"email": identity.email, "name": identity.name}
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def cached_identity(self) -> Optional[Identity]:
        """Return the identity saved by the last :meth:`fetch_identity`, if any.

        The member label is looked up again so allow-list edits apply;
        :class:`MemberNotAllowedError` is raised when the account was removed.
        """

        if not self._token_path or not self.identity_path.exists():
            return None
        try:
            payload = json.loads(self.identity_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Stored identity %s is unreadable: %s", self.identity_path, exc)
            return None
        email = str(payload.get("email", ""))
        if not email:
            return None
        return Identity(email=email, name=str(payload.get("name", "")), member=self.member_for(email))


__all__ = [
    "AuthSession",
    "AuthUnavailable",
    "AuthenticationRequired",
    "Identity",
    "MemberNotAllowedError",
    "SCOPES",
]
