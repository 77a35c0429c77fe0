"""Google Drive helpers for storing receipt documents."""
from __future__ import annotations

import http.client
import io
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseUpload

from receiptsync.sheets_client import http_status

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = ["https://www.googleapis.com/auth/drive.file"]
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"


class DriveClientError(RuntimeError):
    """Base error raised for Drive API failures."""


class DriveAuthError(DriveClientError):
    """Raised when Drive rejected the access token (HTTP 401)."""


class DriveApiResponseError(DriveClientError):
    """Raised for transient Drive failures such as network errors or 5xx responses."""


@dataclass(frozen=True)
class UploadedFile:
    id: str
    view_link: str
    name: str = ""


def _translate_error(exc: Exception, description: str) -> DriveClientError:
    if isinstance(exc, HttpError):
        status = http_status(exc)
        if status == 401:
            return DriveAuthError(f"Drive {description} rejected the access token: {exc}")
        return DriveApiResponseError(f"Drive {description} failed with HTTP {status}: {exc}")
    if isinstance(exc, RefreshError):
        return DriveAuthError(f"Drive {description} could not refresh credentials: {exc}")
    return DriveApiResponseError(f"Drive {description} failed: {exc}")


_TRANSLATED_ERRORS = (
    HttpError,
    RefreshError,
    TransportError,
    httplib2.HttpLib2Error,
    http.client.HTTPException,
    OSError,
)


def _execute(request, description: str) -> Dict:
    try:
        return request.execute()
    except _TRANSLATED_ERRORS as exc:
        error = _translate_error(exc, description)
        logger.warning("%s", error)
        raise error from exc


def _escape(name: str) -> str:
    return name.replace("\\", "\\\\").replace("'", "\\'")


def build_service(credentials):
    """Return a Drive v3 service for ``credentials``."""

    return build("drive", "v3", credentials=credentials, cache_discovery=False)


class DriveClient:
    """Upload receipts beneath a root folder, creating sub-folders on demand."""

    def __init__(self, root_folder_id: Optional[str] = None, *, credentials=None, service=None) -> None:
        if service is None:
            if credentials is None:
                raise DriveAuthError("No credentials available for Google Drive.")
            service = build_service(credentials)
        self._service = service
        self._root_folder_id = root_folder_id or "root"
        self._folder_cache: Dict[Tuple[str, str], str] = {}

    def ensure_folder(self, name: str, parent_id: Optional[str] = None) -> str:
        """Ensure that a folder with the given name exists and return its ID."""

        parent_ref = parent_id or self._root_folder_id
        cache_key = (parent_ref, name)
        cached = self._folder_cache.get(cache_key)
        if cached:
            return cached

        query = " and ".join(
            [
                f"mimeType = '{FOLDER_MIME_TYPE}'",
                "trashed = false",
                f"name = '{_escape(name)}'",
                f"'{parent_ref}' in parents",
            ]
        )
        response = _execute(
            self._service.files().list(q=query, spaces="drive", fields="files(id, name)"),
            "files.list",
        )
        files = response.get("files", [])
        if files:
            folder_id = files[0]["id"]
        else:
            metadata = {
                "name": name,
                "mimeType": FOLDER_MIME_TYPE,
                "parents": [parent_ref],
            }
            created = _execute(self._service.files().create(body=metadata, fields="id"), "files.create")
            folder_id = created["id"]
            logger.info("Created Drive folder %r under %s", name, parent_ref)
        self._folder_cache[cache_key] = folder_id
        return folder_id

    def ensure_path(self, segments: Sequence[str]) -> str:
        """Walk ``segments`` below the root folder and return the leaf folder ID."""

        parent = self._root_folder_id
        for segment in segments:
            cleaned = (segment or "").strip()
            if not cleaned:
                continue
            parent = self.ensure_folder(cleaned, parent)
        return parent

    def upload(
        self,
        data: bytes,
        content_type: str,
        folder_path: Sequence[str],
        filename: str,
    ) -> UploadedFile:
        """Upload ``data`` as ``filename`` inside ``folder_path``."""

        parent_id = self.ensure_path(folder_path)
        media = MediaIoBaseUpload(io.BytesIO(data), mimetype=content_type, resumable=False)
        metadata = {"name": filename, "parents": [parent_id]}
        created = _execute(
            self._service.files().create(
                body=metadata,
                media_body=media,
                fields="id, name, webViewLink",
            ),
            "files.create",
        )
        uploaded = UploadedFile(
            id=created["id"],
            view_link=created.get("webViewLink", ""),
            name=created.get("name", filename),
        )
        logger.info("Uploaded %s to Drive as %s", filename, uploaded.id)
        return uploaded


__all__ = [
    "DEFAULT_SCOPES",
    "DriveApiResponseError",
    "DriveAuthError",
    "DriveClient",
    "DriveClientError",
    "UploadedFile",
    "build_service",
]
