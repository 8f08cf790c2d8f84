"""Tests for the shared reconciliation loop in SyncAdapter.sync_all."""

from datetime import datetime, timedelta, timezone

import pytest

from fakes import InMemoryAdapter, make_note
from feather_sync.sync_adapter import AuthenticationError, ConnectivityError
from feather_sync.sync_models import (
    ApplyCreate,
    ApplyFolderCreate,
    ApplyFolderUpdate,
    ApplyTimestamp,
    ApplyUpdate,
    FolderSnapshot,
    ProviderConfig,
    SyncProvider,
    note_remote_path,
)
from feather_sync.utils.datetime import to_epoch_ms


T0 = datetime(2024, 5, 4, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def adapter():
    return InMemoryAdapter()


@pytest.mark.asyncio
class TestReconciliation:

    async def test_local_only_note_is_uploaded(self, adapter):
        result = await adapter.sync_all([make_note(7, "Groceries", T0)])

        assert result.uploaded == 1
        assert result.downloaded == 0
        assert note_remote_path(7) in adapter.files
        assert adapter.remote_title(7) == "Groceries"

    async def test_remote_newer_is_conflict_without_changes(self, adapter):
        adapter.put_note(9, "Remote edit", T0 + timedelta(hours=1))
        local = make_note(9, "Local edit", T0)

        result = await adapter.sync_all([local])

        assert result.uploaded == 0
        assert result.conflicts == 1
        conflict = result.conflict_list[0]
        assert conflict.note_id == 9
        assert conflict.local_snapshot is local
        assert conflict.remote_payload["note"]["title"] == "Remote edit"
        assert conflict.remote_modified == T0 + timedelta(hours=1)
        assert result.updates == []
        assert adapter.remote_title(9) == "Remote edit"

    async def test_remote_only_note_is_created_once(self, adapter):
        payload = adapter.put_note(42, "From phone", T0)

        result = await adapter.sync_all([])

        assert result.downloaded == 1
        assert result.creates == [ApplyCreate(payload=payload, source_note_id=42)]

    async def test_excluded_remote_notes_are_not_created(self, adapter):
        adapter.put_note(1, "Selected", T0)
        adapter.put_note(2, "Not selected", T0)

        result = await adapter.sync_all([make_note(1, "Selected", T0)], excluded_ids=[2])

        assert result.instructions == []
        assert result.downloaded == 0

    async def test_download_carries_remote_file_time(self, adapter):
        note = make_note(4, "Synced elsewhere", T0)
        adapter.files[note.remote_path] = (note.to_payload(), T0 + timedelta(minutes=3))

        result = await adapter.sync_all([])

        [create] = result.creates
        assert create.payload["note"]["modified_at"] == to_epoch_ms(T0 + timedelta(minutes=3))
        assert adapter.files[note.remote_path][0]["note"]["modified_at"] == to_epoch_ms(T0)

    async def test_upload_stored_at_server_time_is_stamped(self, adapter):
        adapter.server_time = T0 + timedelta(seconds=30)

        result = await adapter.sync_all([make_note(6, "Draft", T0)])

        assert result.instructions == [ApplyTimestamp(note_id=6, modified_at=T0 + timedelta(seconds=30))]

    async def test_sub_second_server_time_is_not_stamped(self, adapter):
        adapter.server_time = T0 + timedelta(milliseconds=400)

        result = await adapter.sync_all([make_note(6, "Draft", T0)])

        assert result.uploaded == 1
        assert result.instructions == []

    async def test_missing_local_timestamp_downloads(self, adapter):
        payload = adapter.put_note(3, "Good copy", T0)

        result = await adapter.sync_all([make_note(3, "Broken", None)])

        assert result.instructions == [ApplyUpdate(note_id=3, payload=payload)]
        assert result.downloaded == 1
        assert result.uploaded == 0

    async def test_local_newer_uploads(self, adapter):
        adapter.put_note(5, "Old", T0)

        result = await adapter.sync_all([make_note(5, "New", T0 + timedelta(minutes=1))])

        assert result.uploaded == 1
        assert adapter.remote_title(5) == "New"

    async def test_second_pass_is_idempotent(self, adapter):
        adapter.put_note(42, "From phone", T0)
        notes = [make_note(1, "a", T0), make_note(2, "b", T0 + timedelta(seconds=1))]
        await adapter.sync_all(notes)
        notes.append(make_note(42, "From phone", T0))

        result = await adapter.sync_all(notes)

        assert (result.uploaded, result.downloaded, result.conflicts) == (0, 0, 0)
        assert result.instructions == []

    async def test_nothing_is_deleted(self, adapter):
        adapter.put_note(8, "Remote", T0)
        await adapter.sync_all([])
        assert note_remote_path(8) in adapter.files
        assert adapter.deleted_paths == []

    async def test_protocol_error_skips_one_note(self, adapter):
        adapter.broken_paths.add(note_remote_path(1))

        result = await adapter.sync_all([make_note(1, "bad", T0), make_note(2, "good", T0)])

        assert result.error is None
        assert result.uploaded == 1
        assert adapter.uploaded_ids == [2]

    async def test_connectivity_error_propagates(self, adapter):
        adapter.offline = True
        with pytest.raises(ConnectivityError):
            await adapter.sync_all([make_note(1, "a", T0)])

    async def test_authentication_error_aborts_pass(self, adapter):
        async def reject(note):
            raise AuthenticationError("expired", status_code=401)

        adapter.upload_note = reject
        result = await adapter.sync_all([make_note(1, "a", T0), make_note(2, "b", T0)])

        assert result.error == "expired"
        assert result.uploaded == 0

    async def test_unconfigured_adapter_returns_error(self, adapter):
        await adapter.configure(ProviderConfig(provider=SyncProvider.WEBDAV))

        result = await adapter.sync_all([make_note(1, "a", T0)])

        assert result.has_error
        assert adapter.files == {}
        assert result.completed_at is not None


@pytest.mark.asyncio
class TestFolderReconciliation:

    async def test_folders_upload_and_download(self, adapter):
        newer_remote = FolderSnapshot(id=1, name="Work (renamed)", modified_at=T0 + timedelta(hours=1))
        remote_only = FolderSnapshot(id=2, name="Travel", modified_at=T0)
        adapter.files[newer_remote.remote_path] = (newer_remote.to_payload(), newer_remote.modified_at)
        adapter.files[remote_only.remote_path] = (remote_only.to_payload(), remote_only.modified_at)

        result = await adapter.sync_folders([
            FolderSnapshot(id=1, name="Work", modified_at=T0),
            FolderSnapshot(id=3, name="Home", modified_at=T0),
        ])

        assert result.uploaded == 1
        assert result.downloaded == 2
        assert ApplyFolderUpdate(folder_id=1, payload=newer_remote.to_payload()) in result.instructions
        assert ApplyFolderCreate(payload=remote_only.to_payload(), source_folder_id=2) in result.instructions
        assert "/feather_notes/folders/folder_3.json" in adapter.files

    async def test_converged_folder_is_skipped(self, adapter):
        folder = FolderSnapshot(id=1, name="Work", modified_at=T0)
        adapter.files[folder.remote_path] = (folder.to_payload(), T0)

        result = await adapter.sync_folders([folder])

        assert (result.uploaded, result.downloaded) == (0, 0)
