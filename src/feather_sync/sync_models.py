"""Data models and structures for the note synchronization engine.

This module contains the core data structures shared by the adapters, the
offline queue and the sync manager: note and folder snapshots, remote
listing entries, conflicts, queued operations, sync results and the apply
instructions handed back to the local store.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from .utils.datetime import (
    ensure_aware,
    from_epoch_ms,
    now_utc,
    parse_timestamp,
    to_epoch_ms,
    to_iso_string,
)


BASE_PATH = "/feather_notes"
FOLDERS_PATH = f"{BASE_PATH}/folders"
EXPORT_VERSION = "1.0"

IDENTITY_MATRIX: List[float] = [
    1.0, 0.0, 0.0, 0.0,
    0.0, 1.0, 0.0, 0.0,
    0.0, 0.0, 1.0, 0.0,
    0.0, 0.0, 0.0, 1.0,
]

_NOTE_FILE_RE = re.compile(r"^note_(\d+)\.json$")
_FOLDER_FILE_RE = re.compile(r"^folder_(\d+)\.json$")


class SyncProvider(Enum):
    """Supported remote storage providers."""
    NEXTCLOUD = "nextcloud"
    WEBDAV = "webdav"
    ICLOUD = "icloud"
    GOOGLE_DRIVE = "google_drive"

    @property
    def display_name(self) -> str:
        return {
            SyncProvider.NEXTCLOUD: "Nextcloud",
            SyncProvider.WEBDAV: "WebDAV",
            SyncProvider.ICLOUD: "iCloud Drive",
            SyncProvider.GOOGLE_DRIVE: "Google Drive",
        }[self]


class SyncStatus(Enum):
    """Session status exposed to the host UI."""
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"
    CONFLICT = "conflict"


class SyncAction(Enum):
    """Per-note decision produced by the conflict detector."""
    UPLOAD = "upload"
    DOWNLOAD = "download"
    CONFLICT = "conflict"
    SKIP = "skip"


class OperationType(Enum):
    """Kinds of operations that can wait in the offline queue."""
    UPLOAD = "upload"
    DOWNLOAD = "download"
    DELETE = "delete"


class ConflictResolution(Enum):
    """Ways a caller can settle a sync conflict."""
    USE_LOCAL = "use_local"
    USE_REMOTE = "use_remote"
    KEEP_BOTH = "keep_both"


def note_file_name(note_id: int) -> str:
    return f"note_{note_id}.json"


def note_remote_path(note_id: int) -> str:
    """Deterministic remote key for a note."""
    return f"{BASE_PATH}/{note_file_name(note_id)}"


def folder_file_name(folder_id: int) -> str:
    return f"folder_{folder_id}.json"


def folder_remote_path(folder_id: int) -> str:
    return f"{FOLDERS_PATH}/{folder_file_name(folder_id)}"


def parse_note_id(name: str) -> Optional[int]:
    """Extract the note id from a ``note_<id>.json`` file name or path."""
    match = _NOTE_FILE_RE.match(name.rsplit("/", 1)[-1])
    return int(match.group(1)) if match else None


def parse_folder_id(name: str) -> Optional[int]:
    """Extract the folder id from a ``folder_<id>.json`` file name or path."""
    match = _FOLDER_FILE_RE.match(name.rsplit("/", 1)[-1])
    return int(match.group(1)) if match else None


def _coerce_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return None


@dataclass
class CanvasPayload:
    """Opaque canvas state carried alongside a note."""

    strokes: List[Any] = field(default_factory=list)
    text_elements: List[Any] = field(default_factory=list)
    matrix: List[float] = field(default_factory=lambda: list(IDENTITY_MATRIX))
    scale: float = 1.0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'CanvasPayload':
        """Create from the exported canvas structure.

        The matrix may arrive either as a list or as a JSON-encoded string,
        which is how the local store persists it.
        """
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("canvas must be an object")

        matrix = data.get("matrix")
        if isinstance(matrix, str):
            try:
                matrix = json.loads(matrix)
            except json.JSONDecodeError as e:
                raise ValueError(f"canvas matrix is not valid JSON: {e}") from e
        if matrix is None:
            matrix = list(IDENTITY_MATRIX)
        if not isinstance(matrix, list) or len(matrix) != 16:
            raise ValueError("canvas matrix must contain 16 values")

        scale = data.get("scale")
        return cls(
            strokes=list(data.get("strokes") or []),
            text_elements=list(data.get("text_elements") or []),
            matrix=[float(v) for v in matrix],
            scale=float(scale) if scale is not None else 1.0,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strokes": list(self.strokes),
            "text_elements": list(self.text_elements),
            "matrix": list(self.matrix),
            "scale": self.scale,
        }


@dataclass
class NoteSnapshot:
    """Read-only view of a local note as handed to the sync engine."""

    id: int
    title: str
    tags: Set[str] = field(default_factory=set)
    modified_at: Optional[datetime] = None
    canvas: CanvasPayload = field(default_factory=CanvasPayload)
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.modified_at = ensure_aware(self.modified_at)
        self.created_at = ensure_aware(self.created_at)
        self.tags = set(self.tags)

    @property
    def remote_path(self) -> str:
        return note_remote_path(self.id)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'NoteSnapshot':
        """Build a snapshot from the ``{note, canvas}`` export structure.

        Raises:
            ValueError: If the note section or its id is missing or invalid
        """
        if not isinstance(payload, dict):
            raise ValueError("note payload must be an object")
        note = payload.get("note")
        if not isinstance(note, dict):
            raise ValueError("note payload is missing the 'note' section")

        note_id = _coerce_id(note.get("id"))
        if note_id is None:
            raise ValueError(f"note payload has an invalid id: {note.get('id')!r}")

        title = note.get("title")
        tags = note.get("tags") or []
        return cls(
            id=note_id,
            title=str(title) if title is not None else "Untitled",
            tags={str(t) for t in tags},
            modified_at=parse_timestamp(note.get("modified_at")),
            canvas=CanvasPayload.from_dict(payload.get("canvas")),
            created_at=parse_timestamp(note.get("created_at")),
        )

    def to_payload(self) -> Dict[str, Any]:
        """Serialize to the export structure uploaded to remote storage."""
        note: Dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "modified_at": to_epoch_ms(self.modified_at),
            "tags": sorted(self.tags),
        }
        if self.created_at is not None:
            note["created_at"] = to_epoch_ms(self.created_at)
        return {
            "version": EXPORT_VERSION,
            "note": note,
            "canvas": self.canvas.to_dict(),
        }


@dataclass
class FolderSnapshot:
    """Local folder as handed to folder synchronization."""

    id: int
    name: str
    modified_at: Optional[datetime] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.modified_at = ensure_aware(self.modified_at)

    @property
    def remote_path(self) -> str:
        return folder_remote_path(self.id)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FolderSnapshot':
        folder_id = _coerce_id(data.get("id"))
        if folder_id is None:
            raise ValueError(f"folder has an invalid id: {data.get('id')!r}")
        modified = data.get("modified_at", data.get("created_at"))
        return cls(
            id=folder_id,
            name=str(data.get("name") or ""),
            modified_at=parse_timestamp(modified),
            data=dict(data),
        )

    def to_payload(self) -> Dict[str, Any]:
        payload = dict(self.data)
        payload["id"] = self.id
        payload["name"] = self.name
        if self.modified_at is not None:
            payload["modified_at"] = to_epoch_ms(self.modified_at)
        return payload


@dataclass
class RemoteEntry:
    """One file from an adapter's directory listing."""

    remote_path: str
    name: str
    modified_at: Optional[datetime] = None
    size_bytes: Optional[int] = None

    def __post_init__(self):
        self.modified_at = ensure_aware(self.modified_at)

    @property
    def note_id(self) -> Optional[int]:
        return parse_note_id(self.name)

    @property
    def folder_id(self) -> Optional[int]:
        return parse_folder_id(self.name)


@dataclass
class SyncConflict:
    """A note changed remotely after the local copy was last modified."""

    note_id: int
    title: str
    local_snapshot: NoteSnapshot
    remote_payload: Dict[str, Any]
    local_modified: Optional[datetime]
    remote_modified: datetime
    remote_path: str = ""
    detected_at: datetime = field(default_factory=now_utc)

    def describe(self) -> str:
        """Get human-readable description of the conflict."""
        return (
            f"Note '{self.title}' (#{self.note_id}) was modified remotely at "
            f"{to_iso_string(self.remote_modified)} after the local copy "
            f"({to_iso_string(self.local_modified) or 'unknown'})"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'note_id': self.note_id,
            'title': self.title,
            'remote_path': self.remote_path,
            'local_modified': to_iso_string(self.local_modified),
            'remote_modified': to_iso_string(self.remote_modified),
            'detected_at': to_iso_string(self.detected_at),
        }


@dataclass
class QueuedOperation:
    """A network operation deferred until connectivity returns."""

    kind: OperationType
    note_id: int
    remote_path: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=now_utc)
    retry_count: int = 0
    id: int = 0

    def to_row(self) -> Dict[str, Any]:
        """Convert to the column mapping used by the queue table."""
        return {
            'type': self.kind.value,
            'note_id': self.note_id,
            'remote_path': self.remote_path,
            'note_data': json.dumps(self.payload) if self.payload is not None else None,
            'created_at': to_epoch_ms(self.created_at),
            'retry_count': self.retry_count,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'QueuedOperation':
        note_data = row.get('note_data')
        return cls(
            id=row['id'],
            kind=OperationType(row['type']),
            note_id=row['note_id'],
            remote_path=row.get('remote_path'),
            payload=json.loads(note_data) if note_data else None,
            created_at=from_epoch_ms(row['created_at']),
            retry_count=row.get('retry_count') or 0,
        )


@dataclass
class ApplyUpdate:
    """Overwrite an existing local note with a remote payload."""
    note_id: int
    payload: Dict[str, Any]


@dataclass
class ApplyCreate:
    """Create a local note from a remote payload."""
    payload: Dict[str, Any]
    source_note_id: Optional[int] = None


@dataclass
class ApplyTimestamp:
    """Set a local note's modification time to what the backend stored.

    Emitted after an upload to a server that keeps its own mtime instead of
    the one the client sent, so the next pass sees the note as converged.
    """
    note_id: int
    modified_at: datetime

    def __post_init__(self):
        self.modified_at = ensure_aware(self.modified_at)


@dataclass
class ApplyFolderUpdate:
    folder_id: int
    payload: Dict[str, Any]


@dataclass
class ApplyFolderCreate:
    payload: Dict[str, Any]
    source_folder_id: Optional[int] = None


ApplyInstruction = Union[ApplyUpdate, ApplyCreate, ApplyTimestamp]
FolderInstruction = Union[ApplyFolderUpdate, ApplyFolderCreate]


@dataclass
class SyncResult:
    """Result of a sync pass."""

    uploaded: int = 0
    downloaded: int = 0
    conflict_list: List[SyncConflict] = field(default_factory=list)
    error: Optional[str] = None
    instructions: List[ApplyInstruction] = field(default_factory=list)
    dropped_operations: List[QueuedOperation] = field(default_factory=list)
    queued: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @classmethod
    def failure(cls, error: str, queued: int = 0) -> 'SyncResult':
        result = cls(error=error, queued=queued)
        result.complete()
        return result

    @property
    def conflicts(self) -> int:
        return len(self.conflict_list)

    @property
    def has_error(self) -> bool:
        return self.error is not None

    @property
    def has_conflicts(self) -> bool:
        return self.conflicts > 0

    @property
    def updates(self) -> List[ApplyUpdate]:
        return [i for i in self.instructions if isinstance(i, ApplyUpdate)]

    @property
    def creates(self) -> List[ApplyCreate]:
        return [i for i in self.instructions if isinstance(i, ApplyCreate)]

    @property
    def stamps(self) -> List[ApplyTimestamp]:
        return [i for i in self.instructions if isinstance(i, ApplyTimestamp)]

    @property
    def duration_seconds(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    def complete(self):
        """Mark sync as completed."""
        self.completed_at = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'uploaded': self.uploaded,
            'downloaded': self.downloaded,
            'conflicts': self.conflicts,
            'conflict_list': [c.to_dict() for c in self.conflict_list],
            'error': self.error,
            'queued': self.queued,
            'dropped_operations': len(self.dropped_operations),
            'started_at': to_iso_string(self.started_at),
            'completed_at': to_iso_string(self.completed_at),
            'duration_seconds': self.duration_seconds,
        }


@dataclass
class FolderSyncResult:
    """Result of a folder sync pass."""

    uploaded: int = 0
    downloaded: int = 0
    instructions: List[FolderInstruction] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def has_error(self) -> bool:
        return self.error is not None


@dataclass
class ProviderConfig:
    """Adapter configuration: server URL, account identifiers and secrets."""

    provider: SyncProvider
    values: Dict[str, str] = field(default_factory=dict)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self.values.get(key)
        return value if value not in (None, "") else default

    def set(self, key: str, value: Optional[str]):
        if value is None:
            self.values.pop(key, None)
        else:
            self.values[key] = str(value)

    def missing_fields(self, required: Iterable[str]) -> List[str]:
        """Required keys that are absent or empty."""
        return [key for key in required if not self.get(key)]

    def split(self, secret_keys: Iterable[str]) -> Tuple[Dict[str, str], Dict[str, str]]:
        """Split into (non-secret, secret) mappings."""
        secret_keys = set(secret_keys)
        plain = {k: v for k, v in self.values.items() if k not in secret_keys and v is not None}
        secret = {k: v for k, v in self.values.items() if k in secret_keys and v}
        return plain, secret


@dataclass
class QueueDrainResult:
    """Outcome of replaying the offline queue."""

    processed: int = 0
    failed: int = 0
    skipped: int = 0
    dropped: List[QueuedOperation] = field(default_factory=list)
    instructions: List[ApplyInstruction] = field(default_factory=list)
