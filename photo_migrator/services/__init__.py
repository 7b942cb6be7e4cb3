"""Services for photo_migrator."""
from .accessor import DirectoryAccessor
from .credentials import CredentialCoordinator, CredentialStore, TokenEndpointClient
from .database import Database
from .fingerprint import FingerprintService, blake3_file
from .item_store import ItemStore
from .remote_store import RemoteStoreClient

__all__ = [
    "DirectoryAccessor",
    "CredentialCoordinator",
    "CredentialStore",
    "TokenEndpointClient",
    "Database",
    "FingerprintService",
    "blake3_file",
    "ItemStore",
    "RemoteStoreClient",
]
