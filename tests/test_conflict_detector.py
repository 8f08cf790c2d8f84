"""Tests for timestamp-based conflict classification."""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from feather_sync.conflict_detector import ConflictDetector, classify
from feather_sync.sync_models import RemoteEntry, SyncAction


BASE = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def entry(modified_at):
    return RemoteEntry(remote_path="/feather_notes/note_1.json", name="note_1.json",
                       modified_at=modified_at)


@pytest.fixture
def detector():
    return ConflictDetector()


class TestClassify:
    """Each rule of the classification table."""

    def test_missing_remote_uploads(self, detector):
        assert detector.classify(BASE, None) is SyncAction.UPLOAD

    def test_missing_remote_uploads_even_without_local_time(self, detector):
        assert detector.classify(None, None) is SyncAction.UPLOAD

    def test_missing_local_time_downloads(self, detector):
        assert detector.classify(None, entry(BASE)) is SyncAction.DOWNLOAD

    def test_unknown_remote_time_uploads(self, detector):
        assert detector.classify(BASE, entry(None)) is SyncAction.UPLOAD

    def test_remote_newer_is_conflict(self, detector):
        assert detector.classify(BASE, entry(BASE + timedelta(minutes=5))) is SyncAction.CONFLICT

    def test_equal_is_skip(self, detector):
        assert detector.classify(BASE, entry(BASE)) is SyncAction.SKIP

    def test_local_newer_uploads(self, detector):
        assert detector.classify(BASE + timedelta(hours=1), entry(BASE)) is SyncAction.UPLOAD

    def test_sub_second_differences_are_ignored(self, detector):
        local = BASE.replace(microsecond=250000)
        remote = BASE.replace(microsecond=900000)
        assert detector.classify(local, entry(remote)) is SyncAction.SKIP

    def test_naive_local_time_is_treated_as_utc(self, detector):
        naive = datetime(2024, 3, 1, 12, 0, 0)
        assert detector.classify(naive, entry(BASE)) is SyncAction.SKIP

    def test_other_timezones_compare_by_instant(self, detector):
        plus_two = BASE.astimezone(timezone(timedelta(hours=2)))
        assert detector.classify(plus_two, entry(BASE)) is SyncAction.SKIP

    def test_module_shortcut(self):
        assert classify(BASE, entry(BASE + timedelta(seconds=1))) is SyncAction.CONFLICT

    def test_each_decision_is_logged(self, detector, caplog):
        with caplog.at_level(logging.DEBUG, logger="feather_sync.conflict_detector"):
            detector.classify(BASE, entry(BASE + timedelta(seconds=1)))

        [record] = caplog.records
        assert "/feather_notes/note_1.json" in record.getMessage()
        assert record.getMessage().endswith("-> conflict")


class TestShouldDownload:

    def test_remote_strictly_newer(self, detector):
        assert detector.should_download(BASE, BASE + timedelta(seconds=1))

    def test_equal_or_older_remote(self, detector):
        assert not detector.should_download(BASE, BASE)
        assert not detector.should_download(BASE, BASE - timedelta(days=1))

    def test_unknown_times(self, detector):
        assert detector.should_download(None, BASE)
        assert not detector.should_download(BASE, None)
