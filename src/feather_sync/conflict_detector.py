"""Timestamp-based conflict detection for note synchronization.

The detector is the single place that decides what happens to a note during
a sync pass. Adapters never compare timestamps themselves, so every backend
follows the same rule.
"""

import logging
from datetime import datetime
from typing import Optional

from .sync_models import RemoteEntry, SyncAction
from .utils.datetime import truncate_to_seconds


class ConflictDetector:
    """Classifies a local note against its remote counterpart.

    Rules, in order:

    * no remote entry: upload
    * local timestamp missing or unparseable: download (the remote copy
      repairs corrupt local state)
    * remote timestamp unknown: upload
    * remote strictly newer: conflict
    * equal: skip, the note has converged
    * local newer: upload

    Timestamps are compared at whole-second precision because WebDAV
    servers only report ``getlastmodified`` to the second.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def classify(self, local_modified: Optional[datetime],
                 remote: Optional[RemoteEntry]) -> SyncAction:
        """Decide the action for one local note.

        Args:
            local_modified: Modification time of the local note, if known
            remote: Listing entry for the note's remote file, if any

        Returns:
            The action the reconciliation loop should take
        """
        action = self._decide(local_modified, remote)
        if remote is None:
            self.logger.debug(f"No remote copy, local {local_modified} -> {action.value}")
        else:
            self.logger.debug(
                f"{remote.remote_path}: local {local_modified}, "
                f"remote {remote.modified_at} -> {action.value}"
            )
        return action

    def _decide(self, local_modified: Optional[datetime],
                remote: Optional[RemoteEntry]) -> SyncAction:
        if remote is None:
            return SyncAction.UPLOAD

        local = truncate_to_seconds(local_modified)
        if local is None:
            return SyncAction.DOWNLOAD

        remote_modified = truncate_to_seconds(remote.modified_at)
        if remote_modified is None:
            return SyncAction.UPLOAD

        if remote_modified > local:
            return SyncAction.CONFLICT
        if remote_modified == local:
            return SyncAction.SKIP
        return SyncAction.UPLOAD

    def should_download(self, local_modified: Optional[datetime],
                        remote_modified: Optional[datetime]) -> bool:
        """True when a remote copy should replace an existing local item.

        Used where there is no conflict path (folders): remote wins when it
        is strictly newer or when the local time is unknown.
        """
        remote = truncate_to_seconds(remote_modified)
        if remote is None:
            return False
        local = truncate_to_seconds(local_modified)
        if local is None:
            return True
        return remote > local


_default_detector = ConflictDetector()


def classify(local_modified: Optional[datetime], remote: Optional[RemoteEntry]) -> SyncAction:
    """Module-level shortcut for :meth:`ConflictDetector.classify`."""
    return _default_detector.classify(local_modified, remote)
