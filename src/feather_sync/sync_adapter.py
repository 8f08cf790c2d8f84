"""Abstract base class for remote storage adapters.

This module defines the interface every backend (WebDAV servers, OAuth
object stores) implements, the error taxonomy shared by the sync engine, and
the reconciliation loop that drives a full sync pass. The loop lives here,
not in the adapters, so all backends apply the same conflict rule.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from .conflict_detector import ConflictDetector
from .sync_models import (
    ApplyCreate,
    ApplyFolderCreate,
    ApplyFolderUpdate,
    ApplyTimestamp,
    ApplyUpdate,
    FolderSnapshot,
    FolderSyncResult,
    NoteSnapshot,
    ProviderConfig,
    RemoteEntry,
    SyncAction,
    SyncConflict,
    SyncProvider,
    SyncResult,
)
from .utils.datetime import parse_timestamp, to_epoch_ms, truncate_to_seconds


logger = logging.getLogger(__name__)


def same_second(a: Optional[datetime], b: Optional[datetime]) -> bool:
    return truncate_to_seconds(a) == truncate_to_seconds(b)


def stamp_note_payload(payload: Dict[str, Any], modified_at: Optional[datetime]) -> Dict[str, Any]:
    """Return the payload with ``note.modified_at`` set to the remote file time.

    A downloaded note takes the time the backend reports for its file, so
    the next pass compares equal even on servers that pick their own mtime.
    """
    note = payload.get("note")
    if modified_at is None or not isinstance(note, dict):
        return payload
    if same_second(parse_timestamp(note.get("modified_at")), modified_at):
        return payload
    stamped = dict(payload)
    stamped["note"] = dict(note, modified_at=to_epoch_ms(modified_at))
    return stamped


def stamp_folder_payload(payload: Dict[str, Any], modified_at: Optional[datetime]) -> Dict[str, Any]:
    if modified_at is None or same_second(parse_timestamp(payload.get("modified_at")), modified_at):
        return payload
    return dict(payload, modified_at=to_epoch_ms(modified_at))


class SyncError(Exception):
    """Base exception for sync operations."""
    pass


class ConfigurationError(SyncError):
    """Adapter is missing mandatory configuration."""
    pass


class ConnectivityError(SyncError):
    """The remote service could not be reached."""
    pass


class ProtocolError(SyncError):
    """Unexpected HTTP status or malformed response content."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(SyncError):
    """Credentials were rejected by the remote service."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RetryExhaustedError(SyncError):
    """A queued operation was dropped after too many failed attempts."""

    def __init__(self, operation):
        super().__init__(
            f"Gave up on {operation.kind.value} of note {operation.note_id} "
            f"after {operation.retry_count} failed attempts"
        )
        self.operation = operation


class SyncAdapter(ABC):
    """Base class for all remote storage adapters.

    Subclasses map the abstract note and folder operations onto a backend
    protocol. Every network call goes through :meth:`request`, which applies
    the configured timeout and turns transport failures into
    :class:`ConnectivityError`.
    """

    PROVIDER: SyncProvider
    REQUIRED_FIELDS: Tuple[str, ...] = ()
    SECRET_FIELDS: Tuple[str, ...] = ()

    def __init__(self, config: Optional[ProviderConfig] = None, *,
                 timeout_seconds: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """Initialize the adapter.

        Args:
            config: Provider configuration, may be supplied later via configure()
            timeout_seconds: Timeout applied to every HTTP request
            transport: Optional httpx transport, used by tests
        """
        self.config = config or ProviderConfig(provider=self.PROVIDER)
        self.timeout_seconds = timeout_seconds
        self.detector = ConflictDetector()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.logger = logging.getLogger(f"{self.__class__.__module__}.{self.__class__.__name__}")

    @property
    def provider(self) -> SyncProvider:
        return self.PROVIDER

    @property
    def provider_name(self) -> str:
        return self.PROVIDER.display_name

    # Configuration

    async def configure(self, config: ProviderConfig):
        """Store credentials and settings. Performs no network I/O."""
        if config.provider != self.PROVIDER:
            raise ConfigurationError(
                f"{self.provider_name} adapter cannot use {config.provider.value} configuration"
            )
        self.config = config
        self._on_configured()

    def _on_configured(self):
        """Hook for subclasses to derive state from a new configuration."""
        pass

    def missing_fields(self) -> List[str]:
        return self.config.missing_fields(self.REQUIRED_FIELDS)

    async def is_configured(self) -> bool:
        """True when every backend-mandatory field is present."""
        return not self.missing_fields()

    def require_configured(self):
        """Raise ConfigurationError unless mandatory fields are present."""
        missing = self.missing_fields()
        if missing:
            raise ConfigurationError(
                f"{self.provider_name} provider not configured (missing: {', '.join(missing)})"
            )

    def get_configuration(self) -> Optional[Dict[str, Any]]:
        """Non-secret view of the configuration for display."""
        if self.missing_fields():
            return None
        plain, secret = self.config.split(self.SECRET_FIELDS)
        view: Dict[str, Any] = dict(plain)
        for key in self.SECRET_FIELDS:
            view[f"has_{key}"] = key in secret
        return view

    async def disconnect(self):
        """Forget credentials and release the HTTP client."""
        self.config = ProviderConfig(provider=self.PROVIDER)
        self._on_configured()
        await self.aclose()

    # HTTP plumbing

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            kwargs: Dict[str, Any] = {"timeout": self.timeout_seconds}
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._client = httpx.AsyncClient(**kwargs)
        return self._client

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def request(self, method: str, url: str, *, authenticated: bool = True,
                      **kwargs) -> httpx.Response:
        """Send an HTTP request, mapping transport failures.

        Args:
            method: HTTP verb, including WebDAV verbs such as PROPFIND
            url: Absolute URL
            authenticated: Whether to add the adapter's auth headers

        Raises:
            ConnectivityError: If the request timed out or the host is unreachable
        """
        headers = dict(self.auth_headers()) if authenticated else {}
        headers.update(kwargs.pop("headers", None) or {})
        try:
            return await self._get_client().request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise ConnectivityError(f"{self.provider_name} request timed out: {method} {url}") from e
        except httpx.TransportError as e:
            raise ConnectivityError(f"{self.provider_name} request failed: {e}") from e

    def auth_headers(self) -> Dict[str, str]:
        """Authentication headers added to every request."""
        return {}

    def raise_for_status(self, response: httpx.Response, action: str):
        """Translate a non-success response into the error taxonomy."""
        if 200 <= response.status_code < 300:
            return
        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"{self.provider_name} rejected credentials while trying to {action} "
                f"({response.status_code})",
                status_code=response.status_code,
            )
        raise ProtocolError(
            f"Failed to {action}: {response.status_code} {response.reason_phrase}",
            status_code=response.status_code,
        )

    # Backend operations

    @abstractmethod
    async def test_connection(self) -> bool:
        """Check that the service is reachable with the stored credentials.

        Raises:
            ConfigurationError: If the adapter is not configured
            AuthenticationError: If credentials are rejected
            ConnectivityError: If the service is unreachable
        """
        pass

    async def ensure_namespace(self):
        """Create the app namespace on the remote side if needed."""
        pass

    @abstractmethod
    async def list_notes(self) -> Dict[str, RemoteEntry]:
        """List note files in the app namespace.

        A missing namespace is reported as an empty mapping.
        """
        pass

    @abstractmethod
    async def upload_note(self, note: NoteSnapshot) -> str:
        """Create or replace the remote copy of a note.

        Returns:
            The canonical remote path or file id
        """
        pass

    @abstractmethod
    async def download_note(self, remote_path: str) -> Optional[Dict[str, Any]]:
        """Fetch a note payload, or None if it does not exist.

        Raises:
            ProtocolError: On unexpected status or undecodable content
        """
        pass

    @abstractmethod
    async def delete_note(self, remote_path: str):
        """Delete a remote note. Missing files count as deleted."""
        pass

    @abstractmethod
    async def get_last_modified(self, remote_path: str) -> Optional[datetime]:
        pass

    @abstractmethod
    async def upload_folder(self, folder: FolderSnapshot) -> str:
        pass

    @abstractmethod
    async def download_folder(self, remote_path: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_folders(self) -> Dict[str, RemoteEntry]:
        pass

    @abstractmethod
    async def delete_folder(self, remote_path: str):
        pass

    async def stored_modified_at(self, remote_path: str,
                                 requested: Optional[datetime]) -> Optional[datetime]:
        """Modification time the backend kept for a file just uploaded.

        Backends that store the time the client sent return it unchanged.
        """
        return requested

    async def upload_and_confirm(self, note: NoteSnapshot) -> Optional[ApplyTimestamp]:
        """Upload a note and report the time the local copy has to adopt.

        Returns:
            ApplyTimestamp when the backend kept a different modification
            time than the note carries, otherwise None
        """
        remote_path = await self.upload_note(note)
        stored = await self.stored_modified_at(remote_path, note.modified_at)
        if stored is None or same_second(stored, note.modified_at):
            return None
        self.logger.debug(f"Note {note.id} stored remotely at {stored.isoformat()}")
        return ApplyTimestamp(note_id=note.id, modified_at=stored)

    async def fetch_note(self, entry: RemoteEntry) -> Optional[Dict[str, Any]]:
        """Download a listed note, stamped with the listing's modification time."""
        payload = await self.download_note(entry.remote_path)
        if payload is None:
            return None
        return stamp_note_payload(payload, entry.modified_at)

    # Reconciliation

    async def sync_all(self, local_notes: Iterable[NoteSnapshot],
                       excluded_ids: Iterable[int] = ()) -> SyncResult:
        """Reconcile local notes with the remote namespace.

        The remote side is listed once. Each local note is classified by the
        conflict detector; remote notes with no local counterpart become
        create instructions. Nothing is ever deleted here.

        Args:
            local_notes: Snapshots of the notes eligible for this pass
            excluded_ids: Ids of local notes left out of this pass; their
                remote files are neither reconciled nor created locally

        Returns:
            SyncResult with counters, conflicts and apply instructions

        Raises:
            ConnectivityError: If the service becomes unreachable mid-pass
        """
        result = SyncResult()

        if not await self.is_configured():
            result.error = f"{self.provider_name} provider not configured"
            result.complete()
            return result

        notes: Dict[int, NoteSnapshot] = {}
        for note in local_notes:
            notes[note.id] = note

        try:
            await self.ensure_namespace()
            remote_entries = await self.list_notes()
        except ConnectivityError:
            raise
        except SyncError as e:
            self.logger.error(f"{self.provider_name} listing failed: {e}")
            result.error = str(e)
            result.complete()
            return result

        excluded = set(excluded_ids) - set(notes)
        remote_by_id: Dict[int, RemoteEntry] = {}
        for entry in remote_entries.values():
            note_id = entry.note_id
            if note_id is not None and note_id not in excluded:
                remote_by_id[note_id] = entry
        self.logger.info(
            f"{self.provider_name} sync - {len(notes)} local, {len(remote_by_id)} remote notes"
        )

        try:
            for note in notes.values():
                await self._reconcile_note(note, remote_by_id.get(note.id), result)

            for note_id, entry in remote_by_id.items():
                if note_id in notes:
                    continue
                await self._fetch_new_note(note_id, entry, result)
        except (AuthenticationError, ConfigurationError) as e:
            self.logger.error(f"{self.provider_name} sync aborted: {e}")
            result.error = str(e)

        result.complete()
        self.logger.info(
            f"{self.provider_name} sync - uploaded {result.uploaded}, "
            f"downloaded {result.downloaded}, conflicts {result.conflicts}"
        )
        return result

    async def _reconcile_note(self, note: NoteSnapshot, entry: Optional[RemoteEntry],
                              result: SyncResult):
        action = self.detector.classify(note.modified_at, entry)
        try:
            if action is SyncAction.UPLOAD:
                stamp = await self.upload_and_confirm(note)
                if stamp is not None:
                    result.instructions.append(stamp)
                result.uploaded += 1
            elif action is SyncAction.CONFLICT:
                remote_payload = await self.fetch_note(entry)
                if remote_payload is None:
                    self.logger.warning(f"Note {note.id} vanished remotely during sync")
                    return
                result.conflict_list.append(SyncConflict(
                    note_id=note.id,
                    title=note.title,
                    local_snapshot=note,
                    remote_payload=remote_payload,
                    local_modified=note.modified_at,
                    remote_modified=entry.modified_at,
                    remote_path=entry.remote_path,
                ))
            elif action is SyncAction.DOWNLOAD:
                remote_payload = await self.fetch_note(entry)
                if remote_payload is not None:
                    result.instructions.append(ApplyUpdate(note_id=note.id, payload=remote_payload))
                    result.downloaded += 1
            else:
                self.logger.debug(f"Note {note.id} already in sync")
        except ProtocolError as e:
            self.logger.warning(f"Skipping note {note.id} ({action.value}): {e}")

    async def _fetch_new_note(self, note_id: int, entry: RemoteEntry, result: SyncResult):
        try:
            remote_payload = await self.fetch_note(entry)
        except ProtocolError as e:
            self.logger.warning(f"Skipping new remote note {note_id}: {e}")
            return
        if remote_payload is None:
            self.logger.warning(f"Remote note {note_id} listed but not downloadable")
            return
        result.instructions.append(ApplyCreate(payload=remote_payload, source_note_id=note_id))
        result.downloaded += 1

    async def sync_folders(self, local_folders: Iterable[FolderSnapshot]) -> FolderSyncResult:
        """Reconcile local folders with remote folder files.

        Folders have no conflict path: the strictly newer side wins.
        """
        result = FolderSyncResult()
        if not await self.is_configured():
            result.error = f"{self.provider_name} provider not configured"
            return result

        try:
            await self.ensure_namespace()
            remote_entries = await self.list_folders()
        except ConnectivityError:
            raise
        except SyncError as e:
            result.error = str(e)
            return result

        remote_by_id = {
            entry.folder_id: entry for entry in remote_entries.values()
            if entry.folder_id is not None
        }
        local_by_id = {folder.id: folder for folder in local_folders}

        try:
            for folder in local_by_id.values():
                entry = remote_by_id.get(folder.id)
                try:
                    if entry is not None and self.detector.should_download(
                            folder.modified_at, entry.modified_at):
                        payload = await self.download_folder(entry.remote_path)
                        if payload is not None:
                            payload = stamp_folder_payload(payload, entry.modified_at)
                            result.instructions.append(
                                ApplyFolderUpdate(folder_id=folder.id, payload=payload))
                            result.downloaded += 1
                    elif self.detector.classify(folder.modified_at, entry) is not SyncAction.SKIP:
                        await self.upload_folder(folder)
                        result.uploaded += 1
                except ProtocolError as e:
                    self.logger.warning(f"Skipping folder {folder.id}: {e}")

            for folder_id, entry in remote_by_id.items():
                if folder_id in local_by_id:
                    continue
                try:
                    payload = await self.download_folder(entry.remote_path)
                except ProtocolError as e:
                    self.logger.warning(f"Skipping new remote folder {folder_id}: {e}")
                    continue
                if payload is not None:
                    payload = stamp_folder_payload(payload, entry.modified_at)
                    result.instructions.append(
                        ApplyFolderCreate(payload=payload, source_folder_id=folder_id))
                    result.downloaded += 1
        except (AuthenticationError, ConfigurationError) as e:
            result.error = str(e)

        return result


# Convenience alias matching the capability name used by callers
RemoteStoreAdapter = SyncAdapter
