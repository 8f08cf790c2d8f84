"""Local note store contract and helpers that apply sync results to it.

The sync engine never writes local notes itself. It hands back apply
instructions, and :class:`NoteApplier` executes them against any object
implementing :class:`LocalNoteStore`. :class:`ExportFileNoteStore` is a
file-backed store over the notes export document, used by the CLI.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from .sync_models import (
    EXPORT_VERSION,
    ApplyCreate,
    ApplyInstruction,
    ApplyTimestamp,
    ApplyUpdate,
    CanvasPayload,
    NoteSnapshot,
    _coerce_id,
)
from .utils.datetime import now_utc, to_epoch_ms


logger = logging.getLogger(__name__)


class NoteNotFoundError(KeyError):
    """Raised when a note id does not exist in the local store."""
    pass


class LocalNoteStore(Protocol):
    """What the sync engine needs from the application's note database."""

    async def get_all_notes(self, search_query: Optional[str] = None,
                            sort_by: str = "modified",
                            filter_tags: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        ...

    async def export_note(self, note_id: int) -> Dict[str, Any]:
        ...

    async def import_note(self, payload: Dict[str, Any], preserve_id: bool = False) -> int:
        ...

    async def update_note_title(self, note_id: int, title: str):
        ...

    async def set_note_tags(self, note_id: int, tags: Iterable[str]):
        ...

    async def save_canvas_data(self, note_id: int, canvas: CanvasPayload):
        ...

    async def set_note_modified_at(self, note_id: int, modified_at: Optional[datetime]):
        ...


async def load_snapshots(store: LocalNoteStore,
                         note_ids: Optional[Iterable[int]] = None) -> List[NoteSnapshot]:
    """Export notes from a store as snapshots for a sync pass.

    Notes whose export cannot be parsed are logged and left out.
    """
    wanted: Optional[Set[int]] = set(note_ids) if note_ids is not None else None
    snapshots = []
    for note in await store.get_all_notes():
        note_id = note.get("id")
        if wanted is not None and note_id not in wanted:
            continue
        try:
            snapshots.append(NoteSnapshot.from_payload(await store.export_note(note_id)))
        except ValueError as e:
            logger.warning(f"Skipping note {note_id}, export is not usable: {e}")
    return snapshots


class NoteApplier:
    """Executes apply instructions against a local store.

    The bound methods :meth:`on_note_updated`, :meth:`on_note_created` and
    :meth:`on_note_stamped` match the callbacks accepted by ``SyncManager.sync``.
    """

    def __init__(self, store: LocalNoteStore):
        self.store = store
        self.logger = logging.getLogger(__name__)

    async def on_note_updated(self, note_id: int, payload: Dict[str, Any]):
        """Overwrite an existing note with a remote payload.

        Raises:
            ValueError: If the payload is not a valid note export
        """
        snapshot = NoteSnapshot.from_payload(payload)
        await self.store.update_note_title(note_id, snapshot.title)
        await self.store.set_note_tags(note_id, snapshot.tags)
        await self.store.save_canvas_data(note_id, snapshot.canvas)
        # Take the remote timestamp so the next pass sees the note as converged
        await self.store.set_note_modified_at(note_id, snapshot.modified_at)
        self.logger.debug(f"Applied remote update to note {note_id}")

    async def on_note_created(self, payload: Dict[str, Any],
                              preserve_id: bool = True) -> int:
        note_id = await self.store.import_note(payload, preserve_id=preserve_id)
        self.logger.debug(f"Created note {note_id} from remote payload")
        return note_id

    async def on_note_stamped(self, note_id: int, modified_at: datetime):
        await self.store.set_note_modified_at(note_id, modified_at)
        self.logger.debug(f"Note {note_id} now modified at {modified_at.isoformat()}")

    async def apply(self, instruction: ApplyInstruction) -> Optional[int]:
        """Execute one instruction, returning the affected local note id."""
        if isinstance(instruction, ApplyUpdate):
            await self.on_note_updated(instruction.note_id, instruction.payload)
            return instruction.note_id
        if isinstance(instruction, ApplyCreate):
            return await self.on_note_created(
                instruction.payload, preserve_id=instruction.source_note_id is not None
            )
        if isinstance(instruction, ApplyTimestamp):
            await self.on_note_stamped(instruction.note_id, instruction.modified_at)
            return instruction.note_id
        raise TypeError(f"Unsupported instruction: {instruction!r}")

    async def apply_all(self, instructions: Iterable[ApplyInstruction]) -> int:
        """Execute instructions in order, skipping ones with invalid payloads.

        Returns:
            Number of instructions applied
        """
        applied = 0
        for instruction in instructions:
            try:
                await self.apply(instruction)
                applied += 1
            except (ValueError, NoteNotFoundError) as e:
                self.logger.warning(f"Could not apply {type(instruction).__name__}: {e}")
        return applied


class ExportFileNoteStore:
    """Note store kept in a single export document on disk.

    The file has the shape ``{"version", "export_date", "notes": [...]}``
    where each entry is a per-note export ``{version, note, canvas}``.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.logger = logging.getLogger(__name__)
        self._notes: Dict[int, Dict[str, Any]] = {}
        self.load()

    def load(self):
        if not self.path.exists():
            self._notes = {}
            return
        with open(self.path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        notes: Dict[int, Dict[str, Any]] = {}
        for entry in data.get("notes") or []:
            note_id = _coerce_id((entry.get("note") or {}).get("id"))
            if note_id is None:
                self.logger.warning("Ignoring exported note without an id")
                continue
            notes[note_id] = entry
        self._notes = notes
        self.logger.debug(f"Loaded {len(notes)} notes from {self.path}")

    def export_all(self) -> Dict[str, Any]:
        return {
            "version": EXPORT_VERSION,
            "export_date": to_epoch_ms(now_utc()),
            "notes": [self._notes[k] for k in sorted(self._notes)],
        }

    def save(self):
        """Write the document with an atomic rename."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.path.with_suffix('.tmp')
        with open(temp_file, 'w', encoding='utf-8') as f:
            json.dump(self.export_all(), f, indent=2)
        temp_file.replace(self.path)

    def _entry(self, note_id: int) -> Dict[str, Any]:
        try:
            return self._notes[note_id]
        except KeyError:
            raise NoteNotFoundError(note_id) from None

    async def create_note(self, title: str) -> int:
        note_id = max(self._notes, default=0) + 1
        now = to_epoch_ms(now_utc())
        self._notes[note_id] = {
            "version": EXPORT_VERSION,
            "note": {"id": note_id, "title": title, "created_at": now,
                     "modified_at": now, "tags": []},
            "canvas": CanvasPayload().to_dict(),
        }
        self.save()
        return note_id

    async def get_all_notes(self, search_query: Optional[str] = None,
                            sort_by: str = "modified",
                            filter_tags: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        notes = [dict(entry["note"]) for entry in self._notes.values()]

        if search_query:
            needle = search_query.lower()
            notes = [n for n in notes if needle in str(n.get("title") or "").lower()]
        if filter_tags:
            wanted = set(filter_tags)
            notes = [n for n in notes if wanted & set(n.get("tags") or [])]

        if sort_by == "title":
            notes.sort(key=lambda n: str(n.get("title") or "").lower())
        elif sort_by == "created":
            notes.sort(key=lambda n: n.get("created_at") or 0, reverse=True)
        else:
            notes.sort(key=lambda n: n.get("modified_at") or 0, reverse=True)
        return notes

    async def export_note(self, note_id: int) -> Dict[str, Any]:
        return json.loads(json.dumps(self._entry(note_id)))

    async def import_note(self, payload: Dict[str, Any], preserve_id: bool = False) -> int:
        """Add a note from an export payload.

        With ``preserve_id`` the payload's id is kept when it is free, along
        with its timestamps. Otherwise the note gets a new id and is stamped
        as modified now.
        """
        snapshot = NoteSnapshot.from_payload(payload)
        if preserve_id and snapshot.id not in self._notes:
            note_id = snapshot.id
        else:
            note_id = max(self._notes, default=0) + 1
            snapshot.modified_at = now_utc()
            snapshot.created_at = snapshot.modified_at

        snapshot.id = note_id
        self._notes[note_id] = snapshot.to_payload()
        self.save()
        return note_id

    async def update_note_title(self, note_id: int, title: str):
        note = self._entry(note_id)["note"]
        note["title"] = title
        note["modified_at"] = to_epoch_ms(now_utc())
        self.save()

    async def set_note_tags(self, note_id: int, tags: Iterable[str]):
        self._entry(note_id)["note"]["tags"] = sorted(set(tags))
        self.save()

    async def save_canvas_data(self, note_id: int, canvas: CanvasPayload):
        # Canvas edits do not touch modified_at
        self._entry(note_id)["canvas"] = canvas.to_dict()
        self.save()

    async def set_note_modified_at(self, note_id: int, modified_at: Optional[datetime]):
        self._entry(note_id)["note"]["modified_at"] = to_epoch_ms(modified_at)
        self.save()

    async def delete_note(self, note_id: int):
        self._entry(note_id)
        del self._notes[note_id]
        self.save()
