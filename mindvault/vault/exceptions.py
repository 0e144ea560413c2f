"""
MindVault Exceptions

Custom exceptions for vault operations providing consistent error handling.
"""

from typing import Optional


class VaultError(Exception):
    """Base exception for vault operations."""

    pass


class VaultNotInitializedError(VaultError):
    """Operation attempted on an uninitialized vault."""

    def __init__(self, operation: str = "access"):
        super().__init__(f"Cannot {operation}: Vault not initialized")
        self.operation = operation


# =============================================================================
# Key custody
# =============================================================================


class KeyCustodyError(VaultError):
    """Base exception for key custodian errors."""

    def __init__(
        self,
        message: str,
        item_id: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.item_id = item_id
        self.original_error = original_error
        super().__init__(message)


class KeyGenerationError(KeyCustodyError):
    """The secure random source failed to produce key material."""

    pass


class KeyStorageError(KeyCustodyError):
    """Key material could not be written to the secure key store."""

    pass


class KeyRetrievalError(KeyCustodyError):
    """Key material could not be read from the secure key store."""

    pass


class KeyNotFoundError(KeyRetrievalError):
    """No key exists for the requested item."""

    def __init__(self, item_id: str):
        super().__init__(f"Key not found for item: {item_id}", item_id=item_id)


class KeyDeletionError(KeyCustodyError):
    """The secure key store refused to delete an existing key."""

    pass


# =============================================================================
# Sealing
# =============================================================================


class CryptoError(VaultError):
    """Base exception for seal/open failures."""

    def __init__(
        self,
        message: str,
        item_id: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.item_id = item_id
        self.original_error = original_error
        super().__init__(message)


class EncryptionError(CryptoError):
    """Content could not be sealed."""

    pass


class DecryptionError(CryptoError):
    """Blob failed authentication or is malformed."""

    pass


# =============================================================================
# Blob storage
# =============================================================================


class BlobError(VaultError):
    """Base exception for blob storage errors."""

    pass


class BlobNotFoundError(BlobError):
    """Requested blob does not exist."""

    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f"Blob not found: {ref}")


class BlobReadError(BlobError):
    """Stored blob exists but could not be read."""

    def __init__(
        self,
        message: str,
        ref: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.ref = ref
        self.original_error = original_error
        super().__init__(message)


class BlobWriteError(BlobError):
    """Blob bytes could not be persisted."""

    def __init__(
        self,
        message: str,
        item_id: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.item_id = item_id
        self.original_error = original_error
        super().__init__(message)


# =============================================================================
# Item repository
# =============================================================================


class RepositoryError(VaultError):
    """Base exception for item repository errors."""

    pass


class RepositoryNotFoundError(RepositoryError):
    """No record exists for the requested item."""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Item not found: {item_id}")


class RepositoryWriteError(RepositoryError):
    """A repository write or commit failed; nothing was applied."""

    def __init__(
        self,
        message: str,
        item_id: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.item_id = item_id
        self.original_error = original_error
        super().__init__(message)


# =============================================================================
# Item rules
# =============================================================================


class ItemValidationError(VaultError):
    """Input for a vault item is not acceptable."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class InvalidTransitionError(ItemValidationError):
    """A mutation would break the item lifecycle rules."""

    pass


class UnlockCancelledError(VaultError):
    """An unlock scan was revoked before its batch was committed."""

    def __init__(self, pending: int = 0):
        self.pending = pending
        super().__init__(f"Unlock scan cancelled before commit ({pending} pending)")
