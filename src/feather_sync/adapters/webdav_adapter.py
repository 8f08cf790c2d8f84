"""WebDAV adapters for note synchronization.

This module talks to remote-filesystem style servers over WebDAV: a generic
WebDAV endpoint, Nextcloud (which nests each user's files under
``remote.php/dav/files/<user>``) and iCloud Drive.

Notes live in ``/feather_notes/note_<id>.json`` and folders in
``/feather_notes/folders/folder_<id>.json`` relative to the DAV root.
"""

import base64
import json
import logging
import posixpath
import xml.etree.ElementTree as ET
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote, unquote, urlparse

import httpx

from ..sync_adapter import ProtocolError, SyncAdapter
from ..sync_models import (
    BASE_PATH,
    FOLDERS_PATH,
    FolderSnapshot,
    NoteSnapshot,
    RemoteEntry,
    SyncProvider,
    parse_folder_id,
    parse_note_id,
)
from ..utils.datetime import parse_http_date


logger = logging.getLogger(__name__)

DAV_NS = "DAV:"
NS = {"d": DAV_NS}

PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop>'
    '<d:getlastmodified/><d:getcontentlength/><d:resourcetype/>'
    '</d:prop></d:propfind>'
)


class DavResource:
    """One ``<d:response>`` element of a multistatus document."""

    def __init__(self, href: str, last_modified: Optional[datetime],
                 content_length: Optional[int], is_collection: bool):
        self.href = href
        self.last_modified = last_modified
        self.content_length = content_length
        self.is_collection = is_collection


def parse_multistatus(body: bytes) -> List[DavResource]:
    """Parse a PROPFIND multistatus response.

    Elements are resolved against the ``DAV:`` namespace only; a document
    that is not a ``DAV:multistatus`` is rejected rather than guessed at.

    Raises:
        ProtocolError: If the body is not a well-formed multistatus document
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise ProtocolError(f"Malformed PROPFIND response: {e}") from e

    if root.tag != f"{{{DAV_NS}}}multistatus":
        raise ProtocolError(f"Unexpected PROPFIND root element: {root.tag}")

    resources = []
    for response in root.findall("d:response", NS):
        href = response.findtext("d:href", namespaces=NS)
        if not href:
            continue

        last_modified = None
        content_length = None
        is_collection = href.endswith("/")
        for propstat in response.findall("d:propstat", NS):
            status = propstat.findtext("d:status", default="", namespaces=NS)
            if status and " 200 " not in f"{status} ":
                continue
            prop = propstat.find("d:prop", NS)
            if prop is None:
                continue
            modified_text = prop.findtext("d:getlastmodified", namespaces=NS)
            if modified_text:
                last_modified = parse_http_date(modified_text)
            length_text = prop.findtext("d:getcontentlength", namespaces=NS)
            if length_text:
                try:
                    content_length = int(length_text.strip())
                except ValueError:
                    content_length = None
            if prop.find("d:resourcetype/d:collection", NS) is not None:
                is_collection = True

        resources.append(DavResource(href.strip(), last_modified, content_length, is_collection))
    return resources


class WebDAVAdapter(SyncAdapter):
    """Generic WebDAV adapter using HTTP basic authentication.

    Configuration keys: ``server_url``, ``username`` and one of
    ``app_password`` (preferred) or ``password``.
    """

    PROVIDER = SyncProvider.WEBDAV
    REQUIRED_FIELDS = ("server_url", "username")
    SECRET_FIELDS = ("password", "app_password")

    def __init__(self, config=None, **kwargs):
        super().__init__(config, **kwargs)
        self._namespace_ready = False
        # remote_path -> whether the last PUT kept the X-OC-Mtime we sent
        self._mtime_accepted: Dict[str, bool] = {}

    def _on_configured(self):
        server_url = self.config.get("server_url")
        if server_url and server_url.endswith("/"):
            self.config.set("server_url", server_url.rstrip("/"))
        self._namespace_ready = False

    def missing_fields(self) -> List[str]:
        missing = super().missing_fields()
        if not self._secret():
            missing.append("app_password or password")
        return missing

    # Layout

    def dav_root(self) -> str:
        """Base URL that remote paths are appended to."""
        return (self.config.get("server_url") or "").rstrip("/")

    def _username(self) -> str:
        return self.config.get("username") or ""

    def _secret(self) -> Optional[str]:
        return self.config.get("app_password") or self.config.get("password")

    def _url(self, remote_path: str) -> str:
        return self.dav_root() + quote(remote_path, safe="/")

    def auth_headers(self) -> Dict[str, str]:
        credentials = f"{self._username()}:{self._secret() or ''}"
        token = base64.b64encode(credentials.encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {token}"}

    def _relative_path(self, href: str) -> str:
        """Turn a multistatus href into a path relative to the DAV root."""
        path = urlparse(href).path if href.startswith(("http://", "https://")) else href
        path = unquote(path)
        root_path = unquote(urlparse(self.dav_root()).path).rstrip("/")
        if root_path and path.startswith(root_path + "/"):
            path = path[len(root_path):]
        return path

    # Requests

    async def _propfind(self, remote_path: str, depth: str) -> httpx.Response:
        return await self.request(
            "PROPFIND",
            self._url(remote_path),
            headers={"Depth": depth, "Content-Type": "application/xml; charset=utf-8"},
            content=PROPFIND_BODY.encode("utf-8"),
        )

    async def _mkcol(self, remote_path: str):
        response = await self.request("MKCOL", self._url(remote_path))
        # 201 = created, 405 = already exists
        if response.status_code == 405 or 200 <= response.status_code < 300:
            return
        if response.status_code in (401, 403):
            self.raise_for_status(response, f"create collection {remote_path}")
        raise ProtocolError(
            f"Could not create collection {remote_path}: "
            f"{response.status_code} {response.reason_phrase}",
            status_code=response.status_code,
        )

    async def test_connection(self) -> bool:
        self.require_configured()
        response = await self._propfind("/", depth="0")
        if response.status_code in (200, 207):
            return True
        self.raise_for_status(response, "connect")
        raise ProtocolError(
            f"Connection failed: {response.status_code} {response.reason_phrase}",
            status_code=response.status_code,
        )

    async def ensure_namespace(self):
        """Create the app collections (MKCOL is idempotent)."""
        self.require_configured()
        if self._namespace_ready:
            return
        await self._mkcol(f"{BASE_PATH}/")
        await self._mkcol(f"{FOLDERS_PATH}/")
        self._namespace_ready = True

    async def _list_collection(self, collection: str, name_parser) -> Dict[str, RemoteEntry]:
        self.require_configured()
        response = await self._propfind(f"{collection}/", depth="1")

        if response.status_code == 404:
            self.logger.debug(f"{collection} not found, treating as empty")
            return {}
        if response.status_code not in (200, 207):
            self.raise_for_status(response, f"list {collection}")

        entries: Dict[str, RemoteEntry] = {}
        for resource in parse_multistatus(response.content):
            if resource.is_collection:
                continue
            remote_path = self._relative_path(resource.href)
            if posixpath.dirname(remote_path) != collection:
                continue
            name = posixpath.basename(remote_path)
            if name_parser(name) is None:
                continue
            entries[remote_path] = RemoteEntry(
                remote_path=remote_path,
                name=name,
                modified_at=resource.last_modified,
                size_bytes=resource.content_length,
            )
        return entries

    async def list_notes(self) -> Dict[str, RemoteEntry]:
        return await self._list_collection(BASE_PATH, parse_note_id)

    async def list_folders(self) -> Dict[str, RemoteEntry]:
        return await self._list_collection(FOLDERS_PATH, parse_folder_id)

    async def _put_json(self, remote_path: str, payload: Dict[str, Any],
                        modified_at: Optional[datetime]) -> str:
        self.require_configured()
        headers = {"Content-Type": "application/json"}
        if modified_at is not None:
            # Nextcloud/ownCloud keep the client's mtime when given this header
            headers["X-OC-Mtime"] = str(int(modified_at.timestamp()))
        response = await self.request(
            "PUT",
            self._url(remote_path),
            headers=headers,
            content=json.dumps(payload).encode("utf-8"),
        )
        self.raise_for_status(response, f"upload {remote_path}")
        self._mtime_accepted[remote_path] = (
            modified_at is not None
            and response.headers.get("X-OC-MTime", "").lower() == "accepted"
        )
        return remote_path

    async def _get_json(self, remote_path: str) -> Optional[Dict[str, Any]]:
        self.require_configured()
        response = await self.request("GET", self._url(remote_path))
        if response.status_code == 404:
            return None
        self.raise_for_status(response, f"download {remote_path}")
        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(f"Failed to parse {remote_path}: {e}") from e
        if not isinstance(data, dict):
            raise ProtocolError(f"Unexpected content in {remote_path}: expected a JSON object")
        return data

    async def _delete(self, remote_path: str):
        self.require_configured()
        response = await self.request("DELETE", self._url(remote_path))
        if response.status_code in (200, 204, 404):
            return
        self.raise_for_status(response, f"delete {remote_path}")

    async def upload_note(self, note: NoteSnapshot) -> str:
        return await self._put_json(note.remote_path, note.to_payload(), note.modified_at)

    async def download_note(self, remote_path: str) -> Optional[Dict[str, Any]]:
        return await self._get_json(remote_path)

    async def delete_note(self, remote_path: str):
        await self._delete(remote_path)

    async def get_last_modified(self, remote_path: str) -> Optional[datetime]:
        self.require_configured()
        response = await self._propfind(remote_path, depth="0")
        if response.status_code != 207:
            return None
        try:
            resources = parse_multistatus(response.content)
        except ProtocolError as e:
            self.logger.warning(f"Could not read modification time of {remote_path}: {e}")
            return None
        return resources[0].last_modified if resources else None

    async def stored_modified_at(self, remote_path: str,
                                 requested: Optional[datetime]) -> Optional[datetime]:
        """Read back the server's mtime unless it confirmed the one we sent."""
        if self._mtime_accepted.pop(remote_path, False):
            return requested
        stored = await self.get_last_modified(remote_path)
        return stored if stored is not None else requested

    async def upload_folder(self, folder: FolderSnapshot) -> str:
        return await self._put_json(folder.remote_path, folder.to_payload(), folder.modified_at)

    async def download_folder(self, remote_path: str) -> Optional[Dict[str, Any]]:
        return await self._get_json(remote_path)

    async def delete_folder(self, remote_path: str):
        await self._delete(remote_path)


class NextcloudAdapter(WebDAVAdapter):
    """Nextcloud / ownCloud server, files under ``remote.php/dav/files/<user>``."""

    PROVIDER = SyncProvider.NEXTCLOUD

    def dav_root(self) -> str:
        server_url = (self.config.get("server_url") or "").rstrip("/")
        return f"{server_url}/remote.php/dav/files/{quote(self._username())}"


class ICloudAdapter(WebDAVAdapter):
    """iCloud Drive over WebDAV, authenticated with an app-specific password."""

    PROVIDER = SyncProvider.ICLOUD
    REQUIRED_FIELDS = ("apple_id", "app_specific_password")
    SECRET_FIELDS = ("app_specific_password",)

    WEBDAV_URL = "https://webdav.icloud.com"

    def missing_fields(self) -> List[str]:
        return self.config.missing_fields(self.REQUIRED_FIELDS)

    def dav_root(self) -> str:
        return self.config.get("server_url") or self.WEBDAV_URL

    def _username(self) -> str:
        return self.config.get("apple_id") or ""

    def _secret(self) -> Optional[str]:
        return self.config.get("app_specific_password")
