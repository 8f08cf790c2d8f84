"""Google Drive adapter for note synchronization.

Notes are stored as JSON files inside a single app-owned Drive folder named
``feather_notes``. The folder is found or created lazily. Remote paths for
this backend are Drive file ids; the ``note_<id>.json`` file name carries the
note id.

Authentication uses an OAuth 2.0 refresh token. A fresh bearer token is
obtained before each batch of calls and whenever the API answers 401.
"""

import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..sync_adapter import (
    AuthenticationError,
    ConnectivityError,
    ProtocolError,
    SyncAdapter,
)
from ..sync_models import (
    FolderSnapshot,
    NoteSnapshot,
    RemoteEntry,
    SyncProvider,
    folder_file_name,
    note_file_name,
    parse_folder_id,
    parse_note_id,
)
from ..utils.datetime import now_utc, parse_timestamp, to_iso_string, to_rfc3339


logger = logging.getLogger(__name__)


class GoogleDriveAdapter(SyncAdapter):
    """Google Drive adapter backed by the Drive REST API v3.

    Configuration keys: ``client_id``, ``client_secret``, ``refresh_token``,
    and optionally a cached ``access_token`` with its ``token_expiry``.
    """

    PROVIDER = SyncProvider.GOOGLE_DRIVE
    REQUIRED_FIELDS = ("client_id",)
    SECRET_FIELDS = ("client_secret", "refresh_token", "access_token")

    API_URL = "https://www.googleapis.com/drive/v3"
    UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    REVOKE_URL = "https://oauth2.googleapis.com/revoke"

    FOLDER_NAME = "feather_notes"
    FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
    SCOPES = ["https://www.googleapis.com/auth/drive.file"]

    # Refresh this long before the reported expiry
    TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)

    def __init__(self, config=None, **kwargs):
        super().__init__(config, **kwargs)
        self._folder_id: Optional[str] = None
        self._file_ids: Dict[str, str] = {}

    def _on_configured(self):
        self._folder_id = None
        self._file_ids = {}

    def missing_fields(self) -> List[str]:
        missing = super().missing_fields()
        if not (self.config.get("refresh_token") or self.config.get("access_token")):
            missing.append("refresh_token")
        return missing

    async def is_configured(self) -> bool:
        """Check mandatory fields, then silently make sure a token is usable."""
        if self.missing_fields():
            return False
        try:
            await self._ensure_token()
        except (AuthenticationError, ProtocolError) as e:
            self.logger.warning(f"Google Drive silent authentication failed: {e}")
            return False
        except ConnectivityError:
            # Offline: credentials are present, let the caller decide
            return True
        return True

    def auth_headers(self) -> Dict[str, str]:
        token = self.config.get("access_token")
        return {"Authorization": f"Bearer {token}"} if token else {}

    # OAuth

    def _token_valid(self) -> bool:
        if not self.config.get("access_token"):
            return False
        expiry = parse_timestamp(self.config.get("token_expiry"))
        if expiry is None:
            # Without a refresh token an undated access token is all we have
            return not self.config.get("refresh_token")
        return expiry - self.TOKEN_EXPIRY_MARGIN > now_utc()

    async def _ensure_token(self, force: bool = False):
        """Refresh the bearer token when missing, expiring, or forced."""
        if not force and self._token_valid():
            return
        await self.refresh_access_token()

    async def refresh_access_token(self) -> str:
        """Exchange the refresh token for a new access token.

        Raises:
            AuthenticationError: If no refresh token exists or it was rejected
        """
        refresh_token = self.config.get("refresh_token")
        if not refresh_token:
            raise AuthenticationError("Google Drive access token expired and no refresh token is stored")

        data = {
            "client_id": self.config.get("client_id"),
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        client_secret = self.config.get("client_secret")
        if client_secret:
            data["client_secret"] = client_secret

        response = await self.request("POST", self.TOKEN_URL, authenticated=False, data=data)
        if response.status_code in (400, 401):
            raise AuthenticationError(
                f"Google token refresh rejected ({response.status_code})",
                status_code=response.status_code,
            )
        self.raise_for_status(response, "refresh access token")

        try:
            payload = response.json()
            access_token = payload["access_token"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise ProtocolError(f"Malformed token response: {e}") from e

        expires_in = int(payload.get("expires_in", 3600))
        self.config.set("access_token", access_token)
        self.config.set("token_expiry", to_iso_string(now_utc() + timedelta(seconds=expires_in)))
        self.logger.debug("Refreshed Google Drive access token")
        return access_token

    async def _api_request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Authenticated Drive call, refreshing and retrying once on 401."""
        self.require_configured()
        await self._ensure_token()
        response = await self.request(method, url, **kwargs)
        if response.status_code == 401 and self.config.get("refresh_token"):
            await self._ensure_token(force=True)
            response = await self.request(method, url, **kwargs)
        return response

    # Folder and file lookup

    async def ensure_namespace(self):
        """Refresh the token for this batch and locate the app folder."""
        self.require_configured()
        await self._ensure_token()
        await self._ensure_folder()

    async def _ensure_folder(self) -> str:
        if self._folder_id:
            return self._folder_id

        files = await self._query(
            f"name='{self.FOLDER_NAME}' and mimeType='{self.FOLDER_MIME_TYPE}' and trashed=false"
        )
        if files:
            self._folder_id = files[0]["id"]
            return self._folder_id

        response = await self._api_request(
            "POST",
            f"{self.API_URL}/files",
            params={"fields": "id"},
            json={"name": self.FOLDER_NAME, "mimeType": self.FOLDER_MIME_TYPE},
        )
        self.raise_for_status(response, "create Drive folder")
        self._folder_id = self._json(response, "create Drive folder")["id"]
        self.logger.info(f"Created Google Drive folder {self.FOLDER_NAME}")
        return self._folder_id

    async def _query(self, q: str) -> List[Dict[str, Any]]:
        """Run a paged files.list query."""
        files: List[Dict[str, Any]] = []
        page_token = None
        while True:
            params = {
                "q": q,
                "spaces": "drive",
                "fields": "nextPageToken, files(id, name, modifiedTime, size)",
                "pageSize": 1000,
            }
            if page_token:
                params["pageToken"] = page_token
            response = await self._api_request("GET", f"{self.API_URL}/files", params=params)
            self.raise_for_status(response, "list Drive files")
            data = self._json(response, "list Drive files")
            files.extend(data.get("files") or [])
            page_token = data.get("nextPageToken")
            if not page_token:
                return files

    async def _find_file(self, name: str) -> Optional[str]:
        if name in self._file_ids:
            return self._file_ids[name]
        folder_id = await self._ensure_folder()
        files = await self._query(f"'{folder_id}' in parents and name='{name}' and trashed=false")
        if not files:
            return None
        self._file_ids[name] = files[0]["id"]
        return files[0]["id"]

    def _json(self, response: httpx.Response, action: str) -> Dict[str, Any]:
        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(f"Malformed response while trying to {action}: {e}") from e
        if not isinstance(data, dict):
            raise ProtocolError(f"Unexpected response while trying to {action}")
        return data

    # Listing

    async def _list_prefixed(self, prefix: str, name_parser) -> Dict[str, RemoteEntry]:
        folder_id = await self._ensure_folder()
        files = await self._query(
            f"'{folder_id}' in parents and name contains '{prefix}' and trashed=false"
        )
        entries: Dict[str, RemoteEntry] = {}
        for item in files:
            file_id = item.get("id")
            name = item.get("name")
            if not file_id or not name or name_parser(name) is None:
                continue
            size = item.get("size")
            entries[file_id] = RemoteEntry(
                remote_path=file_id,
                name=name,
                modified_at=parse_timestamp(item.get("modifiedTime")),
                size_bytes=int(size) if size is not None else None,
            )
            self._file_ids[name] = file_id
        return entries

    async def list_notes(self) -> Dict[str, RemoteEntry]:
        return await self._list_prefixed("note_", parse_note_id)

    async def list_folders(self) -> Dict[str, RemoteEntry]:
        return await self._list_prefixed("folder_", parse_folder_id)

    # Content

    @staticmethod
    def _multipart(metadata: Dict[str, Any], content: bytes) -> Tuple[bytes, str]:
        """Build a multipart/related body carrying metadata and media."""
        boundary = f"feather_sync_{uuid.uuid4().hex}"
        body = b"".join([
            f"--{boundary}\r\nContent-Type: application/json; charset=UTF-8\r\n\r\n".encode("utf-8"),
            json.dumps(metadata).encode("utf-8"),
            f"\r\n--{boundary}\r\nContent-Type: application/json\r\n\r\n".encode("utf-8"),
            content,
            f"\r\n--{boundary}--\r\n".encode("utf-8"),
        ])
        return body, f"multipart/related; boundary={boundary}"

    async def _upload_file(self, name: str, payload: Dict[str, Any],
                           modified_at: Optional[datetime]) -> str:
        folder_id = await self._ensure_folder()
        content = json.dumps(payload).encode("utf-8")
        metadata: Dict[str, Any] = {"name": name}
        if modified_at is not None:
            metadata["modifiedTime"] = to_rfc3339(modified_at)

        file_id = await self._find_file(name)
        if file_id is not None:
            body, content_type = self._multipart(metadata, content)
            response = await self._api_request(
                "PATCH",
                f"{self.UPLOAD_URL}/files/{file_id}",
                params={"uploadType": "multipart", "fields": "id"},
                headers={"Content-Type": content_type},
                content=body,
            )
            if response.status_code != 404:
                self.raise_for_status(response, f"update {name}")
                return file_id
            # Stale cached id; the file was removed remotely
            self._file_ids.pop(name, None)

        metadata["parents"] = [folder_id]
        body, content_type = self._multipart(metadata, content)
        response = await self._api_request(
            "POST",
            f"{self.UPLOAD_URL}/files",
            params={"uploadType": "multipart", "fields": "id"},
            headers={"Content-Type": content_type},
            content=body,
        )
        self.raise_for_status(response, f"upload {name}")
        file_id = self._json(response, f"upload {name}")["id"]
        self._file_ids[name] = file_id
        return file_id

    async def _download_file(self, file_id: str) -> Optional[Dict[str, Any]]:
        response = await self._api_request(
            "GET", f"{self.API_URL}/files/{file_id}", params={"alt": "media"}
        )
        if response.status_code == 404:
            return None
        self.raise_for_status(response, f"download {file_id}")
        return self._json(response, f"download {file_id}")

    async def _delete_file(self, file_id: str):
        response = await self._api_request("DELETE", f"{self.API_URL}/files/{file_id}")
        if response.status_code in (200, 204, 404):
            self._file_ids = {k: v for k, v in self._file_ids.items() if v != file_id}
            return
        self.raise_for_status(response, f"delete {file_id}")

    async def test_connection(self) -> bool:
        self.require_configured()
        await self._ensure_token()
        await self._ensure_folder()
        return True

    async def upload_note(self, note: NoteSnapshot) -> str:
        return await self._upload_file(note_file_name(note.id), note.to_payload(), note.modified_at)

    async def download_note(self, remote_path: str) -> Optional[Dict[str, Any]]:
        return await self._download_file(remote_path)

    async def delete_note(self, remote_path: str):
        await self._delete_file(remote_path)

    async def get_last_modified(self, remote_path: str) -> Optional[datetime]:
        response = await self._api_request(
            "GET", f"{self.API_URL}/files/{remote_path}", params={"fields": "modifiedTime"}
        )
        if response.status_code == 404:
            return None
        self.raise_for_status(response, f"read metadata of {remote_path}")
        return parse_timestamp(self._json(response, "read metadata").get("modifiedTime"))

    async def upload_folder(self, folder: FolderSnapshot) -> str:
        return await self._upload_file(
            folder_file_name(folder.id), folder.to_payload(), folder.modified_at
        )

    async def download_folder(self, remote_path: str) -> Optional[Dict[str, Any]]:
        return await self._download_file(remote_path)

    async def delete_folder(self, remote_path: str):
        await self._delete_file(remote_path)

    async def disconnect(self):
        """Revoke the stored token, then forget the configuration."""
        token = self.config.get("refresh_token") or self.config.get("access_token")
        if token:
            try:
                response = await self.request(
                    "POST", self.REVOKE_URL, authenticated=False, params={"token": token}
                )
                if response.status_code >= 400:
                    self.logger.warning(f"Google token revocation returned {response.status_code}")
            except ConnectivityError as e:
                self.logger.warning(f"Could not revoke Google token: {e}")
        await super().disconnect()
