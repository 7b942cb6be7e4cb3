"""
photo-migrator - Exactly-once migration of a local media library to a remote store.

Usage:
    from photo_migrator import MigrationOrchestrator, UploadConfig
    from photo_migrator.services import Database, DirectoryAccessor

    async with MigrationOrchestrator(db, accessor, credentials, UploadConfig()) as migrator:
        await migrator.scan()
        results = await migrator.run()
"""
__version__ = "0.1.0"

from .errors import (
    ErrorKind,
    InvalidTransitionError,
    MigratorError,
    ReauthenticationRequired,
)
from .models import (
    BatchDescriptor,
    BatchStatus,
    Credential,
    ItemFilter,
    ItemStatus,
    MediaClass,
    MediaItem,
    UploadConfig,
)
from .orchestrator import CycleResult, MigrationOrchestrator, StatusReport

__all__ = [
    # Main
    "MigrationOrchestrator",
    "CycleResult",
    "StatusReport",
    # Models
    "BatchDescriptor",
    "BatchStatus",
    "Credential",
    "ItemFilter",
    "ItemStatus",
    "MediaClass",
    "MediaItem",
    "UploadConfig",
    # Errors
    "ErrorKind",
    "InvalidTransitionError",
    "MigratorError",
    "ReauthenticationRequired",
]
