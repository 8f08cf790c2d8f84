"""Tests for SyncManager orchestration: status, offline queue, conflicts, background sync."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest
import yaml

from fakes import InMemoryAdapter, StaticConnectivity, make_note
from feather_sync.adapters import WebDAVAdapter
from feather_sync.note_store import ExportFileNoteStore, NoteApplier, load_snapshots
from feather_sync.offline_queue import OfflineQueue
from feather_sync.sync_adapter import ConfigurationError
from feather_sync.sync_config import SyncConfigManager
from feather_sync.sync_manager import SyncManager
from feather_sync.sync_models import (
    ApplyCreate,
    ApplyTimestamp,
    ApplyUpdate,
    ConflictResolution,
    FolderSnapshot,
    OperationType,
    QueuedOperation,
    SyncProvider,
    SyncStatus,
    note_remote_path,
)


T0 = datetime(2024, 5, 4, 10, 0, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(hours=1)


class GatedConnectivity:
    """Connectivity probe that blocks until released."""

    def __init__(self):
        self.gate = asyncio.Event()

    async def is_online(self) -> bool:
        await self.gate.wait()
        return True


@pytest.fixture
def remote():
    return InMemoryAdapter()


@pytest.fixture
def connectivity():
    return StaticConnectivity(online=True)


@pytest.fixture
def config_manager(tmp_path):
    manager = SyncConfigManager(tmp_path / "config")
    manager.update(status_reset_delay_seconds=0.05)
    return manager


@pytest.fixture
def manager(tmp_path, config_manager, remote, connectivity):
    manager = SyncManager(
        config_manager=config_manager,
        queue=OfflineQueue(tmp_path / "queue.db"),
        connectivity=connectivity,
    )
    manager.register_adapter(remote)
    manager.adapter = remote
    return manager


def queued_upload(note_id, title="Queued", modified_at=T0):
    note = make_note(note_id, title, modified_at)
    return QueuedOperation(kind=OperationType.UPLOAD, note_id=note_id,
                           remote_path=note.remote_path, payload=note.to_payload())


@pytest.mark.asyncio
class TestSyncPass:

    async def test_offline_pass_queues_uploads(self, manager, remote, connectivity):
        connectivity.online = False
        notes = [make_note(i, f"Note {i}", T0) for i in (1, 2, 3)]

        result = await manager.sync(notes)

        assert result.error == "Offline: 3 operations queued"
        assert result.queued == 3
        assert await manager.queued_operations_count() == 3
        assert remote.uploaded_ids == []
        assert manager.status is SyncStatus.ERROR
        assert manager.last_error == result.error

    async def test_success_returns_to_idle(self, manager):
        statuses = []
        manager.on_status_changed = statuses.append

        result = await manager.sync([make_note(1, "Hello", T0)])

        assert result.uploaded == 1
        assert manager.status is SyncStatus.SUCCESS
        assert manager.last_sync_at is not None

        await asyncio.sleep(0.2)

        assert manager.status is SyncStatus.IDLE
        assert statuses == [SyncStatus.SYNCING, SyncStatus.SUCCESS, SyncStatus.IDLE]

    async def test_conflicts_set_status_and_notify(self, manager, remote):
        remote.put_note(1, "Remote edit", T1)
        seen = []

        async def on_conflicts(conflicts):
            seen.extend(conflicts)

        manager.on_conflicts = on_conflicts
        result = await manager.sync([make_note(1, "Local edit", T0)])

        assert result.conflicts == 1
        assert manager.status is SyncStatus.CONFLICT
        assert [c.note_id for c in seen] == [1]
        assert remote.remote_title(1) == "Remote edit"

        manager.clear_status()
        assert manager.status is SyncStatus.IDLE

    async def test_connection_lost_mid_pass(self, manager, remote):
        remote.offline = True

        result = await manager.sync([make_note(1, "A", T0), make_note(2, "B", T0)])

        assert result.error.startswith("Connection lost")
        assert result.queued == 2
        assert manager.status is SyncStatus.ERROR

    async def test_unconfigured_provider(self, manager):
        manager.adapter = None

        result = await manager.sync([make_note(1, "A", T0)])

        assert result.error == "No sync provider configured"
        assert manager.last_error == "No sync provider configured"

    async def test_selected_notes_only(self, manager, remote, config_manager, tmp_path):
        manager.set_selected_note_ids([2])

        await manager.sync([make_note(i, f"Note {i}", T0) for i in (1, 2, 3)])

        assert remote.uploaded_ids == [2]
        assert SyncConfigManager(tmp_path / "config").settings.selected_note_ids == [2]

    async def test_unselected_notes_are_not_duplicated(self, manager, remote, tmp_path):
        store = ExportFileNoteStore(tmp_path / "notes.json")
        await store.create_note("one")
        await store.create_note("two")
        for snapshot in await load_snapshots(store):
            await remote.upload_note(snapshot)
        applier = NoteApplier(store)
        manager.set_selected_note_ids([1])

        for _ in range(2):
            result = await manager.sync(
                await load_snapshots(store),
                on_note_updated=applier.on_note_updated,
                on_note_created=applier.on_note_created,
            )
            assert result.downloaded == 0

        titles = sorted(note["title"] for note in await store.get_all_notes())
        assert titles == ["one", "two"]

    async def test_server_time_is_adopted_locally(self, manager, remote, tmp_path):
        store = ExportFileNoteStore(tmp_path / "notes.json")
        note_id = await store.create_note("Draft")
        await store.set_note_modified_at(note_id, T0)
        applier = NoteApplier(store)
        remote.server_time = T0 + timedelta(minutes=5)

        first = await manager.sync(await load_snapshots(store),
                                   on_note_stamped=applier.on_note_stamped)
        second = await manager.sync(await load_snapshots(store),
                                    on_note_stamped=applier.on_note_stamped)

        assert first.uploaded == 1
        assert (second.uploaded, second.downloaded, second.conflicts) == (0, 0, 0)
        assert remote.uploaded_ids == [note_id]
        [snapshot] = await load_snapshots(store)
        assert snapshot.modified_at == T0 + timedelta(minutes=5)

    async def test_callbacks_receive_instructions(self, manager, remote):
        remote.put_note(1, "Remote title", T0)
        remote.put_note(5, "Remote only", T0)
        updated = []
        created = []

        async def on_created(payload):
            created.append(payload["note"]["id"])

        result = await manager.sync(
            [make_note(1, "Local", None)],
            on_note_updated=lambda note_id, payload: updated.append((note_id, payload["note"]["title"])),
            on_note_created=on_created,
        )

        assert result.downloaded == 2
        assert updated == [(1, "Remote title")]
        assert created == [5]

    async def test_failing_callback_does_not_abort(self, manager, remote):
        remote.put_note(5, "Remote only", T0)

        def explode(payload):
            raise RuntimeError("disk full")

        result = await manager.sync([], on_note_created=explode)

        assert result.error is None
        assert manager.status is SyncStatus.SUCCESS

    async def test_concurrent_sync_is_ignored(self, manager):
        gated = GatedConnectivity()
        manager.connectivity = gated

        first = asyncio.ensure_future(manager.sync([make_note(1, "A", T0)]))
        await asyncio.sleep(0)

        assert manager.is_syncing
        assert await manager.sync([make_note(1, "A", T0)]) is None

        gated.gate.set()
        result = await first
        assert result.uploaded == 1


@pytest.mark.asyncio
class TestOfflineQueueReplay:

    async def test_queue_drains_on_next_sync(self, manager, remote, connectivity):
        connectivity.online = False
        await manager.sync([make_note(8, "Written offline", T0)])

        connectivity.online = True
        result = await manager.sync([])

        assert result.error is None
        assert remote.uploaded_ids == [8]
        assert await manager.queued_operations_count() == 0

    async def test_process_queue(self, manager, remote):
        await manager.queue.enqueue(queued_upload(4))

        drained = await manager.process_queue()

        assert drained.processed == 1
        assert remote.remote_title(4) == "Queued"

    async def test_process_queue_offline_leaves_queue(self, manager, connectivity):
        await manager.queue.enqueue(queued_upload(4))
        connectivity.online = False

        drained = await manager.process_queue()

        assert drained.processed == 0
        assert await manager.queued_operations_count() == 1

    async def test_reconciled_notes_skip_stale_queued_upload(self, manager, remote, connectivity):
        connectivity.online = False
        await manager.sync([make_note(1, "old", T0)])

        connectivity.online = True
        await manager.sync([make_note(1, "new", T1)])

        assert remote.remote_title(1) == "new"
        assert remote.uploaded_ids == [1]
        assert await manager.queued_operations_count() == 0

    async def test_operation_dropped_after_five_failures(self, manager, remote):
        await manager.queue.enqueue(queued_upload(4))
        remote.broken_paths.add(note_remote_path(4))
        exhausted = Mock()
        manager.on_retry_exhausted = exhausted

        for _ in range(4):
            drained = await manager.process_queue()
            assert drained.failed == 1
            assert drained.dropped == []

        [operation] = await manager.queue.list_all()
        assert operation.retry_count == 4

        drained = await manager.process_queue()

        assert [op.note_id for op in drained.dropped] == [4]
        exhausted.assert_called_once()
        assert exhausted.call_args.args[0].note_id == 4
        assert await manager.queued_operations_count() == 0
        assert "after 5 failed attempts" in manager.last_error

    async def test_dropped_operation_reported_by_sync(self, manager, remote):
        op_id = await manager.queue.enqueue(queued_upload(4))
        for _ in range(4):
            await manager.queue.increment_retry(op_id)
        remote.broken_paths.add(note_remote_path(4))

        result = await manager.sync([])

        assert len(result.dropped_operations) == 1
        assert manager.status is SyncStatus.SUCCESS
        assert "upload of note 4" in manager.last_error

    async def test_queued_download_produces_update(self, manager, remote):
        remote.put_note(6, "Fresh", T0)
        await manager.queue.enqueue(QueuedOperation(kind=OperationType.DOWNLOAD, note_id=6))

        drained = await manager.process_queue()

        assert drained.processed == 1
        assert isinstance(drained.instructions[0], ApplyUpdate)
        assert drained.instructions[0].payload["note"]["title"] == "Fresh"


@pytest.mark.asyncio
class TestExplicitOperations:

    async def _conflict(self, manager, remote):
        remote.put_note(1, "Remote edit", T1)
        result = await manager.sync([make_note(1, "Local edit", T0)])
        return result.conflict_list[0]

    async def test_use_remote(self, manager, remote):
        conflict = await self._conflict(manager, remote)

        [instruction] = await manager.resolve_conflict(conflict, ConflictResolution.USE_REMOTE)

        assert isinstance(instruction, ApplyUpdate)
        assert instruction.note_id == 1
        assert instruction.payload["note"]["title"] == "Remote edit"
        assert remote.uploaded_ids == []
        assert manager.status is SyncStatus.IDLE

    async def test_use_local(self, manager, remote):
        conflict = await self._conflict(manager, remote)

        instructions = await manager.resolve_conflict(conflict, ConflictResolution.USE_LOCAL)

        assert instructions == []
        assert remote.remote_title(1) == "Local edit"

    async def test_use_local_adopts_server_time(self, manager, remote):
        conflict = await self._conflict(manager, remote)
        remote.server_time = T1 + timedelta(minutes=5)

        instructions = await manager.resolve_conflict(conflict, ConflictResolution.USE_LOCAL)

        assert instructions == [ApplyTimestamp(note_id=1, modified_at=T1 + timedelta(minutes=5))]

    async def test_keep_both(self, manager, remote):
        conflict = await self._conflict(manager, remote)

        [instruction] = await manager.resolve_conflict(conflict, ConflictResolution.KEEP_BOTH)

        assert isinstance(instruction, ApplyCreate)
        assert instruction.source_note_id is None
        assert instruction.payload["note"]["title"] == "Remote edit"
        assert remote.remote_title(1) == "Local edit"

    async def test_use_local_offline_is_queued(self, manager, remote, connectivity):
        conflict = await self._conflict(manager, remote)
        connectivity.online = False

        await manager.resolve_conflict(conflict, ConflictResolution.USE_LOCAL)

        assert remote.remote_title(1) == "Remote edit"
        [operation] = await manager.queue.list_all()
        assert operation.kind is OperationType.UPLOAD
        assert operation.payload["note"]["title"] == "Local edit"

    async def test_delete_remote_note_online(self, manager, remote):
        remote.put_note(3, "Doomed", T0)
        await manager.queue.enqueue(queued_upload(3))

        assert await manager.delete_remote_note(3) is True
        assert note_remote_path(3) not in remote.files
        assert await manager.queued_operations_count() == 0

    async def test_delete_remote_note_offline(self, manager, remote, connectivity):
        remote.put_note(3, "Doomed", T0)
        connectivity.online = False

        assert await manager.delete_remote_note(3) is False
        [operation] = await manager.queue.list_all()
        assert operation.kind is OperationType.DELETE

        connectivity.online = True
        await manager.process_queue()
        assert note_remote_path(3) not in remote.files

    async def test_delete_requires_provider(self, manager):
        manager.adapter = None
        with pytest.raises(ConfigurationError):
            await manager.delete_remote_note(3)

    async def test_sync_folders(self, manager, remote, connectivity):
        result = await manager.sync_folders([FolderSnapshot(id=1, name="Work", modified_at=T0)])
        assert result.uploaded == 1

        connectivity.online = False
        result = await manager.sync_folders([])
        assert result.error == "Offline"


@pytest.mark.asyncio
class TestBackgroundSync:

    async def test_trigger_requires_enabled(self, manager):
        assert await manager.trigger_background_sync([make_note(1, "A", T0)]) is None

    async def test_trigger_runs_when_idle(self, manager):
        await manager.set_background_sync_enabled(True)
        try:
            assert manager.scheduler.is_running
            result = await manager.trigger_background_sync([make_note(1, "A", T0)])
            assert result.uploaded == 1
        finally:
            await manager.aclose()

    async def test_trigger_skipped_while_not_idle(self, manager):
        manager.config_manager.update(background_sync_enabled=True)
        manager.status = SyncStatus.CONFLICT

        assert await manager.trigger_background_sync([make_note(1, "A", T0)]) is None

    async def test_trigger_runs_after_offline_pass(self, manager, remote, connectivity):
        manager.config_manager.update(background_sync_enabled=True)
        connectivity.online = False
        await manager.sync([make_note(1, "A", T0)])
        assert manager.status is SyncStatus.ERROR

        await asyncio.sleep(0.2)

        assert manager.status is SyncStatus.IDLE
        assert manager.last_error.startswith("Offline")

        connectivity.online = True
        result = await manager.trigger_background_sync([make_note(1, "A", T0)])

        assert result.uploaded == 1
        assert remote.uploaded_ids == [1]
        assert await manager.queued_operations_count() == 0
        assert manager.last_error is None

    async def test_conflict_status_falls_back_to_idle(self, manager, remote):
        remote.put_note(1, "Remote edit", T1)
        await manager.sync([make_note(1, "Local edit", T0)])
        assert manager.status is SyncStatus.CONFLICT

        await asyncio.sleep(0.2)

        assert manager.status is SyncStatus.IDLE

    async def test_interval_bounds(self, manager):
        with pytest.raises(ValueError):
            await manager.set_background_sync_interval(3)
        with pytest.raises(ValueError):
            await manager.set_background_sync_interval(721)

        await manager.set_background_sync_interval(30)
        assert manager.scheduler.interval_seconds == 1800

    async def test_tick_only_when_idle(self, manager):
        on_tick = AsyncMock()
        manager.scheduler.on_tick = on_tick

        assert await manager.scheduler.tick() is True

        manager.status = SyncStatus.ERROR
        assert await manager.scheduler.tick() is False

        manager.status = SyncStatus.IDLE
        manager.adapter = None
        assert await manager.scheduler.tick() is False
        on_tick.assert_awaited_once()

    async def test_disable_stops_scheduler(self, manager):
        await manager.set_background_sync_enabled(True)
        await manager.set_background_sync_enabled(False)

        assert not manager.scheduler.is_running
        assert manager.settings.background_sync_enabled is False


@pytest.mark.asyncio
class TestProviderLifecycle:

    @pytest.fixture
    def fresh_manager(self, tmp_path, connectivity):
        return SyncManager(
            config_manager=SyncConfigManager(tmp_path / "config"),
            queue=OfflineQueue(tmp_path / "queue.db"),
            connectivity=connectivity,
        )

    async def test_all_providers_available(self, fresh_manager):
        assert set(fresh_manager.available_providers()) == set(SyncProvider)
        assert fresh_manager.adapter is None

    async def test_configure_requires_provider(self, fresh_manager):
        with pytest.raises(ConfigurationError):
            await fresh_manager.configure_provider({"server_url": "https://dav.example.com"})

    async def test_configure_persists_without_secrets_on_disk(self, fresh_manager, tmp_path,
                                                              memory_keyring, connectivity):
        adapter = await fresh_manager.set_provider(SyncProvider.WEBDAV)
        assert isinstance(adapter, WebDAVAdapter)

        await fresh_manager.configure_provider({
            "server_url": "https://dav.example.com/",
            "username": "ann",
            "password": "s3cret",
        })

        config_text = (tmp_path / "config" / "sync.yaml").read_text()
        assert "s3cret" not in config_text
        assert yaml.safe_load(config_text)["provider_config"]["username"] == "ann"
        assert "s3cret" in memory_keyring.passwords.values()

        restored = SyncManager(
            config_manager=SyncConfigManager(tmp_path / "config"),
            queue=OfflineQueue(tmp_path / "queue.db"),
            connectivity=connectivity,
        )
        await restored.initialize()

        assert restored.adapter.provider is SyncProvider.WEBDAV
        assert restored.adapter.config.get("password") == "s3cret"
        assert restored.adapter.config.get("server_url") == "https://dav.example.com"
        assert await restored.is_configured()
        await restored.aclose()

    async def test_disconnect_forgets_everything(self, fresh_manager, memory_keyring):
        await fresh_manager.set_provider(SyncProvider.WEBDAV)
        await fresh_manager.configure_provider({
            "server_url": "https://dav.example.com",
            "username": "ann",
            "app_password": "app-pass",
        })
        await fresh_manager.queue.enqueue(queued_upload(1))

        await fresh_manager.disconnect()

        assert fresh_manager.adapter is None
        assert fresh_manager.settings.active_provider is None
        assert await fresh_manager.queued_operations_count() == 0
        assert "app-pass" not in memory_keyring.passwords.values()
        assert fresh_manager.status is SyncStatus.IDLE

    async def test_switching_provider_resets_configuration(self, fresh_manager):
        await fresh_manager.set_provider(SyncProvider.WEBDAV)
        await fresh_manager.configure_provider({
            "server_url": "https://dav.example.com",
            "username": "ann",
            "password": "pw",
        })

        adapter = await fresh_manager.set_provider(SyncProvider.NEXTCLOUD)

        assert adapter.provider is SyncProvider.NEXTCLOUD
        assert fresh_manager.settings.provider_config == {}
        assert not await fresh_manager.is_configured()
