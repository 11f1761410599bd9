"""File sync between the local project and release containers."""
from .base import BaseSyncEngine, SyncExcludes, SyncHandle, is_excluded
from .upload import TarUploadSyncEngine

__all__ = [
    "BaseSyncEngine",
    "SyncExcludes",
    "SyncHandle",
    "is_excluded",
    "TarUploadSyncEngine",
]
