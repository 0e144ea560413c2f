"""
MindVault Time Vault Module

Sealed content that becomes readable only after a chosen unlock date.

Features:
- AES-256-GCM encryption with one key per item
- Keys held in a device-bound secure key store (OS keyring or wrapped files)
- Encrypted blob storage, one directory per item
- SQLite item repository with forward-only status
- Batch unlock scans at startup and in the background
"""

from .config import VaultConfig, load_config
from .exceptions import (
    BlobError,
    BlobNotFoundError,
    BlobReadError,
    BlobWriteError,
    CryptoError,
    DecryptionError,
    EncryptionError,
    InvalidTransitionError,
    ItemValidationError,
    KeyCustodyError,
    KeyDeletionError,
    KeyGenerationError,
    KeyNotFoundError,
    KeyRetrievalError,
    KeyStorageError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryWriteError,
    UnlockCancelledError,
    VaultError,
    VaultNotInitializedError,
)
from .index import ItemRepository, RepositoryBatch
from .keys import (
    FileKeyStore,
    KeyCustodian,
    KeyHandle,
    KeyringKeyStore,
    MemoryKeyStore,
    SecureKeyStore,
)
from .models import (
    ItemQuery,
    ItemSort,
    MediaType,
    UnlockStatus,
    VaultItem,
    media_types_matching,
)
from .notifications import (
    InMemoryNotificationGateway,
    NotificationGateway,
    NullNotificationGateway,
    UnlockNotification,
    build_unlock_notification,
)
from .scheduler import (
    BackgroundUnlockRunner,
    DeferredTask,
    UnlockRunResult,
    UnlockScheduler,
)
from .sealer import Sealer
from .storage import BlobStore
from .vault import (
    CreateResult,
    DeletionResult,
    DeletionStatus,
    OpenResult,
    TimeVault,
    create_vault,
)

__all__ = [
    # Facade
    "TimeVault",
    "VaultConfig",
    "create_vault",
    "load_config",
    "CreateResult",
    "OpenResult",
    "DeletionResult",
    "DeletionStatus",
    # Model
    "MediaType",
    "UnlockStatus",
    "VaultItem",
    "ItemQuery",
    "ItemSort",
    "media_types_matching",
    # Keys
    "SecureKeyStore",
    "KeyringKeyStore",
    "FileKeyStore",
    "MemoryKeyStore",
    "KeyCustodian",
    "KeyHandle",
    # Sealing and storage
    "Sealer",
    "BlobStore",
    "ItemRepository",
    "RepositoryBatch",
    # Unlocking
    "UnlockScheduler",
    "UnlockRunResult",
    "DeferredTask",
    "BackgroundUnlockRunner",
    # Notifications
    "NotificationGateway",
    "UnlockNotification",
    "InMemoryNotificationGateway",
    "NullNotificationGateway",
    "build_unlock_notification",
    # Exceptions
    "VaultError",
    "VaultNotInitializedError",
    "KeyCustodyError",
    "KeyGenerationError",
    "KeyStorageError",
    "KeyRetrievalError",
    "KeyNotFoundError",
    "KeyDeletionError",
    "CryptoError",
    "EncryptionError",
    "DecryptionError",
    "BlobError",
    "BlobNotFoundError",
    "BlobReadError",
    "BlobWriteError",
    "RepositoryError",
    "RepositoryNotFoundError",
    "RepositoryWriteError",
    "ItemValidationError",
    "InvalidTransitionError",
    "UnlockCancelledError",
]
