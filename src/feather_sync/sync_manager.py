"""Main orchestration for note synchronization.

This module provides the SyncManager class that owns the active remote
adapter, the session status, the offline queue and the background schedule.
Hosts construct one manager and pass local note snapshots to :meth:`sync`;
the manager hands back apply instructions instead of writing local notes.
"""

import asyncio
import inspect
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from .adapters import ADAPTER_CLASSES
from .credential_manager import CredentialStore
from .offline_queue import OfflineQueue
from .sync_adapter import (
    ConfigurationError,
    ConnectivityError,
    RetryExhaustedError,
    SyncAdapter,
    SyncError,
)
from .sync_config import SyncConfigManager
from .sync_models import (
    ApplyCreate,
    ApplyInstruction,
    ApplyTimestamp,
    ApplyUpdate,
    ConflictResolution,
    FolderSnapshot,
    FolderSyncResult,
    NoteSnapshot,
    OperationType,
    ProviderConfig,
    QueueDrainResult,
    QueuedOperation,
    SyncConflict,
    SyncProvider,
    SyncResult,
    SyncStatus,
)
from .utils.datetime import now_utc


logger = logging.getLogger(__name__)

# Outcomes of a pass that fall back to idle after the reset delay.
# last_error survives the reset so callers can still report it.
SETTLED_STATES = (SyncStatus.SUCCESS, SyncStatus.ERROR, SyncStatus.CONFLICT)


async def _call(callback: Callable, *args) -> Any:
    """Invoke a host callback that may be a plain function or a coroutine."""
    result = callback(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class ConnectivityChecker:
    """Cheap online probe based on a DNS lookup."""

    def __init__(self, host: str = "google.com", timeout_seconds: float = 5.0):
        self.host = host
        self.timeout_seconds = timeout_seconds
        self.logger = logging.getLogger(__name__)

    async def is_online(self) -> bool:
        loop = asyncio.get_running_loop()
        try:
            infos = await asyncio.wait_for(
                loop.getaddrinfo(self.host, 443), timeout=self.timeout_seconds
            )
        except (OSError, asyncio.TimeoutError) as e:
            self.logger.debug(f"Connectivity probe for {self.host} failed: {e}")
            return False
        return bool(infos)


class SyncManager:
    """Coordinates one active remote adapter with the local note store.

    This class provides:
    - Provider selection, configuration and credential persistence
    - Sync passes with selective sync and offline queueing
    - Conflict resolution and explicit remote deletion
    - Session status for the host UI, with listener callbacks
    """

    def __init__(self, config_manager: Optional[SyncConfigManager] = None,
                 credential_store: Optional[CredentialStore] = None,
                 queue: Optional[OfflineQueue] = None,
                 connectivity: Optional[ConnectivityChecker] = None,
                 adapter_classes: Optional[Dict[SyncProvider, type]] = None):
        """Initialize the sync manager.

        Args:
            config_manager: Settings persistence, defaults to the data directory
            credential_store: Provider configuration and secrets
            queue: Offline operation queue
            connectivity: Online probe used before each pass
            adapter_classes: Adapter class per provider
        """
        self.config_manager = config_manager or SyncConfigManager()
        self.credential_store = credential_store or CredentialStore(self.config_manager)
        self.queue = queue or OfflineQueue()
        self.connectivity = connectivity or ConnectivityChecker(
            host=self.settings.connectivity_probe_host
        )
        self.adapter_classes = dict(adapter_classes or ADAPTER_CLASSES)
        self.logger = logging.getLogger(__name__)

        self.adapters: Dict[SyncProvider, SyncAdapter] = {}
        self.adapter: Optional[SyncAdapter] = None

        self.status = SyncStatus.IDLE
        self.last_error: Optional[str] = None
        self.last_result: Optional[SyncResult] = None
        self.last_sync_at: Optional[datetime] = None
        self.selected_note_ids: Set[int] = set(self.settings.selected_note_ids)

        # Host-facing listeners
        self.on_status_changed: Optional[Callable[[SyncStatus], Any]] = None
        self.on_conflicts: Optional[Callable[[List[SyncConflict]], Any]] = None
        self.on_retry_exhausted: Optional[Callable[[QueuedOperation], Any]] = None

        self._lock = asyncio.Lock()
        self._reset_task: Optional[asyncio.Task] = None
        self._saved_config: Dict[str, str] = {}
        self.scheduler = BackgroundSyncScheduler(self)

    @property
    def settings(self):
        return self.config_manager.settings

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    # Status

    def _set_status(self, status: SyncStatus, error: Optional[str] = None):
        if self._reset_task is not None and not self._reset_task.done():
            self._reset_task.cancel()
        self._reset_task = None

        self.status = status
        if status is SyncStatus.ERROR:
            self.last_error = error
        elif status is SyncStatus.SUCCESS:
            self.last_error = None

        if self.on_status_changed is not None:
            try:
                self.on_status_changed(status)
            except Exception as e:
                self.logger.error(f"Status listener failed: {e}")

        if status in SETTLED_STATES:
            self._reset_task = asyncio.get_running_loop().create_task(
                self._reset_status_later(self.settings.status_reset_delay_seconds)
            )

    async def _reset_status_later(self, delay: float):
        await asyncio.sleep(delay)
        if self.status in SETTLED_STATES:
            self._reset_task = None
            self._set_status(SyncStatus.IDLE)

    def clear_status(self):
        """Acknowledge an error or conflict and return to idle."""
        self.last_error = None
        if self.status in (SyncStatus.ERROR, SyncStatus.CONFLICT, SyncStatus.SUCCESS):
            self._set_status(SyncStatus.IDLE)

    def get_sync_status(self) -> Dict[str, Any]:
        """Summary for display."""
        return {
            'status': self.status.value,
            'provider': self.adapter.provider.value if self.adapter else None,
            'last_error': self.last_error,
            'last_sync_at': self.last_sync_at.isoformat() if self.last_sync_at else None,
            'last_result': self.last_result.to_dict() if self.last_result else None,
            'selected_note_ids': sorted(self.selected_note_ids),
            'background_sync_enabled': self.settings.background_sync_enabled,
            'background_sync_interval_minutes': self.settings.background_sync_interval_minutes,
        }

    # Provider management

    def available_providers(self) -> List[SyncProvider]:
        return list(self.adapter_classes.keys())

    def register_adapter(self, adapter: SyncAdapter):
        """Use a specific adapter instance for its provider."""
        self.adapters[adapter.provider] = adapter
        self.logger.debug(f"Registered adapter for {adapter.provider.value}")

    def get_adapter(self, provider: SyncProvider) -> SyncAdapter:
        if provider not in self.adapters:
            try:
                adapter_class = self.adapter_classes[provider]
            except KeyError:
                raise ConfigurationError(f"Unsupported sync provider: {provider.value}") from None
            self.adapters[provider] = adapter_class(timeout_seconds=self.settings.timeout_seconds)
        return self.adapters[provider]

    async def initialize(self):
        """Restore the provider, its configuration and the background schedule."""
        config = self.credential_store.load()
        if config is not None:
            self.adapter = self.get_adapter(config.provider)
            await self.adapter.configure(config)
            self._saved_config = dict(config.values)
            self.logger.info(f"Restored {config.provider.display_name} sync provider")

        self.selected_note_ids = set(self.settings.selected_note_ids)
        if self.settings.background_sync_enabled:
            self.scheduler.start()

    async def set_provider(self, provider: SyncProvider) -> SyncAdapter:
        """Make a provider active. Its configuration is kept only if it was already active."""
        adapter = self.get_adapter(provider)
        if self.settings.active_provider is not provider:
            self.config_manager.update(active_provider=provider, provider_config={})
            await adapter.configure(ProviderConfig(provider=provider))
            self._saved_config = {}
        self.adapter = adapter
        return adapter

    async def configure_provider(self, values: Dict[str, Optional[str]]) -> ProviderConfig:
        """Configure the active provider and persist its settings and secrets.

        Raises:
            ConfigurationError: If no provider is selected
        """
        if self.adapter is None:
            raise ConfigurationError("Select a sync provider before configuring it")

        config = ProviderConfig(provider=self.adapter.provider)
        for key, value in values.items():
            config.set(key, value)

        await self.adapter.configure(config)
        self.credential_store.save(config)
        self._saved_config = dict(config.values)
        return config

    def _persist_adapter_config(self):
        """Save configuration the adapter changed itself, such as refreshed tokens."""
        if self.adapter is None:
            return
        values = self.adapter.config.values
        if values != self._saved_config and not self.adapter.missing_fields():
            self.credential_store.save(self.adapter.config)
            self._saved_config = dict(values)

    async def is_configured(self) -> bool:
        return self.adapter is not None and await self.adapter.is_configured()

    async def test_connection(self) -> bool:
        """Check the active provider, recording any failure in ``last_error``."""
        if self.adapter is None:
            self.last_error = "No sync provider selected"
            return False
        try:
            ok = await self.adapter.test_connection()
        except SyncError as e:
            self.logger.warning(f"Connection test failed: {e}")
            self.last_error = str(e)
            return False
        self._persist_adapter_config()
        return ok

    async def disconnect(self):
        """Forget the provider, its secrets and queued operations."""
        self.scheduler.stop()
        if self.adapter is not None:
            await self.adapter.disconnect()
        self.credential_store.clear()
        await self.queue.clear()
        self.adapter = None
        self.selected_note_ids = set()
        self._saved_config = {}
        self.last_result = None
        self.clear_status()
        self.logger.info("Disconnected sync provider")

    async def aclose(self):
        self.scheduler.stop()
        if self._reset_task is not None and not self._reset_task.done():
            self._reset_task.cancel()
        for adapter in self.adapters.values():
            await adapter.aclose()

    # Selective sync

    def set_selected_note_ids(self, note_ids: Iterable[int]):
        """Restrict syncing to these notes; an empty set means all notes."""
        self.selected_note_ids = set(note_ids)
        self.config_manager.update(selected_note_ids=sorted(self.selected_note_ids))

    def _filter_selected(self, notes: List[NoteSnapshot]) -> List[NoteSnapshot]:
        if not self.selected_note_ids:
            return notes
        return [note for note in notes if note.id in self.selected_note_ids]

    # Sync

    async def sync(self, local_notes: Iterable[NoteSnapshot],
                   on_note_updated: Optional[Callable] = None,
                   on_note_created: Optional[Callable] = None,
                   process_queue: bool = True,
                   on_note_stamped: Optional[Callable] = None) -> Optional[SyncResult]:
        """Run one sync pass.

        Args:
            local_notes: Snapshots of the local notes
            on_note_updated: Optional ``(note_id, payload)`` callback executing updates
            on_note_created: Optional ``(payload)`` callback executing creates
            process_queue: Whether to replay the offline queue afterwards
            on_note_stamped: Optional ``(note_id, modified_at)`` callback that
                adopts the modification time a backend stored for an upload

        Returns:
            The pass result, or None if a sync was already running
        """
        if self._lock.locked():
            self.logger.info("Sync already in progress, ignoring request")
            return None

        async with self._lock:
            self._set_status(SyncStatus.SYNCING)
            try:
                result = await self._run_sync(list(local_notes), process_queue)
            except Exception as e:
                self.logger.error(f"Sync failed unexpectedly: {e}")
                self._set_status(SyncStatus.ERROR, str(e))
                raise

            await self._apply_instructions(result, on_note_updated, on_note_created,
                                           on_note_stamped)

            self.last_result = result
            self.last_sync_at = now_utc()
            if result.has_error:
                self._set_status(SyncStatus.ERROR, result.error)
            elif result.has_conflicts:
                self._set_status(SyncStatus.CONFLICT)
            else:
                self._set_status(SyncStatus.SUCCESS)

            if result.dropped_operations and not result.has_error:
                self.last_error = str(RetryExhaustedError(result.dropped_operations[-1]))
            return result

    async def _run_sync(self, notes: List[NoteSnapshot], process_queue: bool) -> SyncResult:
        if not await self.is_configured():
            return SyncResult.failure("No sync provider configured")

        excluded = {note.id for note in notes}
        notes = self._filter_selected(notes)
        excluded -= {note.id for note in notes}

        if not await self.connectivity.is_online():
            queued = await self._queue_uploads(notes)
            return SyncResult.failure(f"Offline: {queued} operations queued", queued=queued)

        try:
            result = await self.adapter.sync_all(notes, excluded_ids=excluded)
        except ConnectivityError as e:
            self.logger.warning(f"Lost connectivity during sync: {e}")
            queued = await self._queue_uploads(notes)
            return SyncResult.failure(f"Connection lost: {queued} operations queued", queued=queued)

        if result.conflict_list and self.on_conflicts is not None:
            try:
                await _call(self.on_conflicts, list(result.conflict_list))
            except Exception as e:
                self.logger.error(f"Conflict listener failed: {e}")

        if process_queue and not result.has_error:
            drained = await self._drain_queue(reconciled={note.id for note in notes})
            result.dropped_operations.extend(drained.dropped)
            result.instructions.extend(drained.instructions)

        self._persist_adapter_config()
        return result

    async def _queue_uploads(self, notes: List[NoteSnapshot]) -> int:
        for note in notes:
            await self.queue.enqueue(QueuedOperation(
                kind=OperationType.UPLOAD,
                note_id=note.id,
                remote_path=note.remote_path,
                payload=note.to_payload(),
            ))
        if notes:
            self.logger.info(f"Queued {len(notes)} uploads for later")
        return len(notes)

    async def _apply_instructions(self, result: SyncResult,
                                  on_note_updated: Optional[Callable],
                                  on_note_created: Optional[Callable],
                                  on_note_stamped: Optional[Callable] = None):
        for instruction in result.instructions:
            try:
                if isinstance(instruction, ApplyUpdate) and on_note_updated is not None:
                    await _call(on_note_updated, instruction.note_id, instruction.payload)
                elif isinstance(instruction, ApplyCreate) and on_note_created is not None:
                    await _call(on_note_created, instruction.payload)
                elif isinstance(instruction, ApplyTimestamp) and on_note_stamped is not None:
                    await _call(on_note_stamped, instruction.note_id, instruction.modified_at)
            except Exception as e:
                self.logger.error(f"Applying {type(instruction).__name__} failed: {e}")

    # Offline queue

    async def queued_operations_count(self) -> int:
        return await self.queue.count()

    async def process_queue(self) -> QueueDrainResult:
        """Replay queued operations against the active provider."""
        if not await self.is_configured():
            return QueueDrainResult()
        if not await self.connectivity.is_online():
            self.logger.debug("Offline, leaving queue untouched")
            return QueueDrainResult()
        drained = await self._drain_queue()
        if drained.dropped:
            self.last_error = str(RetryExhaustedError(drained.dropped[-1]))
        return drained

    async def _drain_queue(self, reconciled: Optional[Set[int]] = None) -> QueueDrainResult:
        drained = QueueDrainResult()
        reconciled = reconciled or set()

        for operation in await self.queue.list_all():
            if operation.kind is OperationType.UPLOAD and operation.note_id in reconciled:
                # The pass just reconciled this note from its current state
                await self.queue.dequeue(operation.id)
                drained.skipped += 1
                continue

            try:
                await self._replay(operation, drained)
            except (SyncError, ValueError) as e:
                drained.failed += 1
                count = await self.queue.increment_retry(operation.id)
                self.logger.warning(
                    f"Queued {operation.kind.value} of note {operation.note_id} failed "
                    f"(attempt {count}): {e}"
                )
                if count >= self.queue.MAX_RETRIES:
                    await self.queue.dequeue(operation.id)
                    operation.retry_count = count
                    drained.dropped.append(operation)
                    self.logger.error(str(RetryExhaustedError(operation)))
                    if self.on_retry_exhausted is not None:
                        try:
                            await _call(self.on_retry_exhausted, operation)
                        except Exception as cb_error:
                            self.logger.error(f"Retry-exhausted listener failed: {cb_error}")
                if isinstance(e, ConnectivityError):
                    break
                continue

            await self.queue.dequeue(operation.id)
            drained.processed += 1

        if drained.processed or drained.failed:
            self.logger.info(
                f"Offline queue: {drained.processed} replayed, {drained.failed} failed, "
                f"{len(drained.dropped)} dropped"
            )
        return drained

    async def _replay(self, operation: QueuedOperation, drained: QueueDrainResult):
        if operation.kind is OperationType.UPLOAD:
            if operation.payload is None:
                raise ValueError("queued upload has no note data")
            stamp = await self.adapter.upload_and_confirm(NoteSnapshot.from_payload(operation.payload))
            if stamp is not None:
                drained.instructions.append(stamp)
        elif operation.kind is OperationType.DELETE:
            await self._delete_remote(operation.note_id)
        elif operation.kind is OperationType.DOWNLOAD:
            entry = await self._find_remote_entry(operation.note_id)
            payload = await self.adapter.fetch_note(entry) if entry else None
            if payload is not None:
                drained.instructions.append(ApplyUpdate(note_id=operation.note_id, payload=payload))

    async def _find_remote_entry(self, note_id: int):
        for entry in (await self.adapter.list_notes()).values():
            if entry.note_id == note_id:
                return entry
        return None

    async def _delete_remote(self, note_id: int) -> bool:
        entry = await self._find_remote_entry(note_id)
        if entry is None:
            return False
        await self.adapter.delete_note(entry.remote_path)
        return True

    # Explicit operations

    async def delete_remote_note(self, note_id: int) -> bool:
        """Delete a note's remote copy, queueing the deletion when offline.

        Returns:
            True if the remote file was deleted now, False if it did not
            exist or the deletion was queued
        """
        if not await self.is_configured():
            raise ConfigurationError("No sync provider configured")

        await self.queue.clear_for_note(note_id, OperationType.UPLOAD)
        if await self.connectivity.is_online():
            try:
                return await self._delete_remote(note_id)
            except ConnectivityError as e:
                self.logger.warning(f"Lost connectivity deleting note {note_id}: {e}")

        await self.queue.enqueue(QueuedOperation(kind=OperationType.DELETE, note_id=note_id))
        return False

    async def resolve_conflict(self, conflict: SyncConflict,
                               resolution: ConflictResolution) -> List[ApplyInstruction]:
        """Settle a conflict.

        ``use_local`` uploads the local snapshot (queued when offline).
        ``use_remote`` returns an update instruction for the local note.
        ``keep_both`` uploads the local snapshot and adds a create
        instruction for a copy of the remote version.

        Returns:
            Instructions for the local store, in order. An upload to a
            backend that kept its own modification time adds an
            ``ApplyTimestamp`` for the local note.
        """
        instructions: List[ApplyInstruction] = []
        if resolution is ConflictResolution.USE_REMOTE:
            instructions.append(ApplyUpdate(note_id=conflict.note_id, payload=conflict.remote_payload))
        else:
            stamp = await self._upload_or_queue(conflict.local_snapshot)
            if stamp is not None:
                instructions.append(stamp)
            if resolution is ConflictResolution.KEEP_BOTH:
                instructions.append(ApplyCreate(payload=conflict.remote_payload, source_note_id=None))

        if self.status is SyncStatus.CONFLICT:
            self._set_status(SyncStatus.IDLE)
        self.logger.info(f"Resolved conflict on note {conflict.note_id} with {resolution.value}")
        return instructions

    async def _upload_or_queue(self, note: NoteSnapshot) -> Optional[ApplyTimestamp]:
        if self.adapter is None:
            raise ConfigurationError("No sync provider configured")
        try:
            if not await self.connectivity.is_online():
                raise ConnectivityError("offline")
            return await self.adapter.upload_and_confirm(note)
        except ConnectivityError:
            await self._queue_uploads([note])
        return None

    async def sync_folders(self, local_folders: Iterable[FolderSnapshot]) -> FolderSyncResult:
        """Reconcile folders with the active provider."""
        if not await self.is_configured():
            return FolderSyncResult(error="No sync provider configured")
        if not await self.connectivity.is_online():
            return FolderSyncResult(error="Offline")
        try:
            return await self.adapter.sync_folders(list(local_folders))
        except ConnectivityError as e:
            return FolderSyncResult(error=str(e))

    # Background sync

    async def set_background_sync_enabled(self, enabled: bool):
        self.config_manager.update(background_sync_enabled=enabled)
        if enabled:
            self.scheduler.restart()
        else:
            self.scheduler.stop()

    async def set_background_sync_interval(self, minutes: int):
        """Change the interval.

        Raises:
            ValueError: If minutes is outside 5-720
        """
        self.config_manager.update(background_sync_interval_minutes=minutes)
        if self.scheduler.is_running:
            self.scheduler.restart()

    async def trigger_background_sync(self, local_notes: Iterable[NoteSnapshot],
                                      **kwargs) -> Optional[SyncResult]:
        """Run a sync only when background sync is enabled and the session is idle."""
        if not self.settings.background_sync_enabled:
            return None
        if self.status is not SyncStatus.IDLE or self.is_syncing:
            self.logger.debug(f"Skipping background sync while {self.status.value}")
            return None
        if not await self.is_configured():
            return None
        return await self.sync(local_notes, **kwargs)


class BackgroundSyncScheduler:
    """Periodic timer that tells the host when a background sync is due.

    The scheduler never performs network I/O; the host's ``on_tick``
    callback gathers local notes and calls
    :meth:`SyncManager.trigger_background_sync`.
    """

    def __init__(self, manager: SyncManager, on_tick: Optional[Callable[[], Any]] = None):
        self.manager = manager
        self.on_tick = on_tick
        self.logger = logging.getLogger(__name__)
        self._task: Optional[asyncio.Task] = None

    @property
    def interval_seconds(self) -> float:
        return self.manager.settings.background_sync_interval_minutes * 60

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        self.logger.info(
            f"Background sync every {self.manager.settings.background_sync_interval_minutes} minutes"
        )

    def stop(self):
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def restart(self):
        self.stop()
        self.start()

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.tick()

    async def tick(self) -> bool:
        """Fire ``on_tick`` if a background sync may run now."""
        if self.on_tick is None:
            return False
        if self.manager.status is not SyncStatus.IDLE or self.manager.is_syncing:
            return False
        if not await self.manager.is_configured():
            return False
        try:
            await _call(self.on_tick)
        except Exception as e:
            self.logger.error(f"Background sync tick failed: {e}")
        return True
