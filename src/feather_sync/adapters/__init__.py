"""Remote storage adapters.

This package contains the concrete SyncAdapter implementations for WebDAV
servers (generic, Nextcloud, iCloud Drive) and Google Drive.
"""

from ..sync_models import SyncProvider
from .google_drive_adapter import GoogleDriveAdapter
from .webdav_adapter import ICloudAdapter, NextcloudAdapter, WebDAVAdapter

ADAPTER_CLASSES = {
    SyncProvider.NEXTCLOUD: NextcloudAdapter,
    SyncProvider.WEBDAV: WebDAVAdapter,
    SyncProvider.ICLOUD: ICloudAdapter,
    SyncProvider.GOOGLE_DRIVE: GoogleDriveAdapter,
}

__all__ = [
    'ADAPTER_CLASSES',
    'GoogleDriveAdapter',
    'ICloudAdapter',
    'NextcloudAdapter',
    'WebDAVAdapter',
]
