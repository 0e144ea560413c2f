"""
MindVault Key Custodian

Generates one 256-bit key per vault item and keeps it in a secure key store
that is separate from the item repository, so that a copy of the records and
blobs alone is not enough to recover any plaintext.

Key store backends:
- KeyringKeyStore: the operating system keyring (Keychain, Secret Service,
  Windows Credential Locker) via the keyring library
- FileKeyStore: per-item key files wrapped with a machine-bound key
- MemoryKeyStore: process-local storage for tests and ephemeral vaults
"""

import base64
import getpass
import logging
import os
import platform
import re
import secrets
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

import keyring
from keyring.errors import KeyringError, KeyringLocked, PasswordDeleteError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..utils.timefmt import utcnow
from .exceptions import (
    KeyCustodyError,
    KeyDeletionError,
    KeyGenerationError,
    KeyNotFoundError,
    KeyRetrievalError,
    KeyStorageError,
)

logger = logging.getLogger(__name__)


KEY_SIZE = 32  # 256 bits
DEFAULT_KEYRING_SERVICE = "com.mindvault.encryption"

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class SecureKeyStore(ABC):
    """
    Device-bound storage for raw key material, keyed by item id.

    Implementations keep keys in a private namespace and never hand them to
    anything other than the key custodian.
    """

    namespace: str = ""

    @abstractmethod
    def put(self, item_id: str, key: bytes) -> None:
        """Store (or replace) the key for an item."""

    @abstractmethod
    def get(self, item_id: str) -> Optional[bytes]:
        """Return the key for an item, or None if absent."""

    @abstractmethod
    def delete(self, item_id: str) -> bool:
        """Delete the key for an item. Returns False if it was absent."""


class MemoryKeyStore(SecureKeyStore):
    """Process-local key store. Keys are lost when the process exits."""

    def __init__(self, namespace: str = "memory"):
        self.namespace = namespace
        self._keys: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, item_id: str, key: bytes) -> None:
        with self._lock:
            self._keys[item_id] = bytes(key)

    def get(self, item_id: str) -> Optional[bytes]:
        with self._lock:
            return self._keys.get(item_id)

    def delete(self, item_id: str) -> bool:
        with self._lock:
            return self._keys.pop(item_id, None) is not None

    def __len__(self) -> int:
        return len(self._keys)


class KeyringKeyStore(SecureKeyStore):
    """
    Key store backed by the operating system keyring.

    Each key is a generic password entry under the configured service name,
    with the item id as the account. Availability follows the keyring's own
    lock state: a locked keyring refuses reads and writes.
    """

    def __init__(self, service: str = DEFAULT_KEYRING_SERVICE):
        self.namespace = service

    def put(self, item_id: str, key: bytes) -> None:
        try:
            keyring.set_password(
                self.namespace, item_id, base64.b64encode(key).decode("ascii")
            )
        except KeyringLocked as e:
            raise KeyStorageError(
                "Keyring is locked", item_id=item_id, original_error=e
            ) from e
        except KeyringError as e:
            raise KeyStorageError(
                f"Keyring write failed: {e}", item_id=item_id, original_error=e
            ) from e

    def get(self, item_id: str) -> Optional[bytes]:
        try:
            value = keyring.get_password(self.namespace, item_id)
        except KeyringLocked as e:
            raise KeyRetrievalError(
                "Keyring is locked", item_id=item_id, original_error=e
            ) from e
        except KeyringError as e:
            raise KeyRetrievalError(
                f"Keyring read failed: {e}", item_id=item_id, original_error=e
            ) from e

        if value is None:
            return None
        try:
            return base64.b64decode(value, validate=True)
        except ValueError as e:
            raise KeyRetrievalError(
                "Keyring entry is not valid key material",
                item_id=item_id,
                original_error=e,
            ) from e

    def delete(self, item_id: str) -> bool:
        try:
            keyring.delete_password(self.namespace, item_id)
            return True
        except PasswordDeleteError:
            return False
        except KeyringError as e:
            raise KeyDeletionError(
                f"Keyring delete failed: {e}", item_id=item_id, original_error=e
            ) from e


class FileKeyStore(SecureKeyStore):
    """
    Key store that keeps one wrapped key file per item.

    Keys are wrapped with AES-256-GCM under a wrapping key derived from
    machine-specific identifiers, with the item id as associated data.
    The key directory is created 0700 and each key file 0600. Copying the
    directory to another machine does not yield usable keys.

    File format: MAGIC | NONCE (12) | CIPHERTEXT+TAG
    """

    MAGIC = b"MVKEY1:"
    NONCE_SIZE = 12
    WRAP_ITERATIONS = 100000

    def __init__(self, key_dir: Path, namespace: str = "file"):
        self.namespace = namespace
        self._key_dir = Path(key_dir)
        self._lock = threading.RLock()
        self._wrapping_key: Optional[bytes] = None

        self._key_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self._key_dir, 0o700)

    def put(self, item_id: str, key: bytes) -> None:
        path = self._key_path(item_id)
        nonce = secrets.token_bytes(self.NONCE_SIZE)
        wrapped = AESGCM(self._get_wrapping_key()).encrypt(
            nonce, key, item_id.encode("utf-8")
        )

        tmp_path = path.with_suffix(".tmp")
        try:
            with self._lock:
                fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
                with os.fdopen(fd, "wb") as f:
                    f.write(self.MAGIC + nonce + wrapped)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, path)
        except OSError as e:
            raise KeyStorageError(
                f"Failed to write key file: {e}", item_id=item_id, original_error=e
            ) from e

    def get(self, item_id: str) -> Optional[bytes]:
        path = self._key_path(item_id)
        try:
            stored = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise KeyRetrievalError(
                f"Failed to read key file: {e}", item_id=item_id, original_error=e
            ) from e

        if not stored.startswith(self.MAGIC):
            raise KeyRetrievalError("Invalid key file format", item_id=item_id)

        data = stored[len(self.MAGIC):]
        nonce = data[:self.NONCE_SIZE]
        wrapped = data[self.NONCE_SIZE:]
        try:
            return AESGCM(self._get_wrapping_key()).decrypt(
                nonce, wrapped, item_id.encode("utf-8")
            )
        except InvalidTag as e:
            raise KeyRetrievalError(
                "Key file cannot be unwrapped on this device",
                item_id=item_id,
                original_error=e,
            ) from e

    def delete(self, item_id: str) -> bool:
        path = self._key_path(item_id)
        with self._lock:
            try:
                size = path.stat().st_size
                with open(path, "r+b") as f:
                    f.write(secrets.token_bytes(size))
                    f.flush()
                    os.fsync(f.fileno())
                path.unlink()
                return True
            except FileNotFoundError:
                return False
            except OSError as e:
                raise KeyDeletionError(
                    f"Failed to delete key file: {e}", item_id=item_id, original_error=e
                ) from e

    def _key_path(self, item_id: str) -> Path:
        if not _SAFE_ID.match(item_id):
            raise KeyStorageError(f"Invalid item id for key store: {item_id!r}")
        return self._key_dir / f"{item_id}.key"

    def _get_wrapping_key(self) -> bytes:
        """Derive (once) the machine-bound key wrapping every stored key."""
        with self._lock:
            if self._wrapping_key is None:
                kdf = PBKDF2HMAC(
                    algorithm=hashes.SHA256(),
                    length=KEY_SIZE,
                    salt=self._get_or_create_salt(),
                    iterations=self.WRAP_ITERATIONS,
                )
                self._wrapping_key = kdf.derive(self._machine_identity())
            return self._wrapping_key

    def _get_or_create_salt(self) -> bytes:
        salt_path = self._key_dir / "store.salt"
        if salt_path.exists():
            return salt_path.read_bytes()

        salt = secrets.token_bytes(32)
        fd = os.open(salt_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(salt)
        return salt

    @staticmethod
    def _machine_identity() -> bytes:
        try:
            user = getpass.getuser()
        except (OSError, KeyError):
            user = ""
        parts = [
            platform.node(),
            user,
            os.path.expanduser("~"),
            platform.machine(),
        ]
        return ":".join(parts).encode("utf-8")


@dataclass
class KeyHandle:
    """Key material for one item. The raw key is kept out of repr()."""

    item_id: str
    key: bytes = field(repr=False)
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if len(self.key) != KEY_SIZE:
            raise KeyRetrievalError(
                f"Key for item {self.item_id} has invalid length {len(self.key)}",
                item_id=self.item_id,
            )


class KeyCustodian:
    """
    Owns the per-item keys of the vault.

    Responsibilities:
    - Fresh 256-bit key per item from the OS CSPRNG, never reused or derived
    - Storage in the injected secure key store
    - Retrieval for decryption
    - Idempotent deletion
    """

    def __init__(self, store: SecureKeyStore):
        """
        Initialize key custodian.

        Args:
            store: Secure key store backend
        """
        self._store = store
        self._lock = threading.RLock()

    @property
    def store(self) -> SecureKeyStore:
        return self._store

    def generate_and_store(self, item_id: str) -> KeyHandle:
        """
        Generate a new key for an item and store it.

        Args:
            item_id: Item identifier

        Returns:
            KeyHandle with the new key material

        Raises:
            KeyGenerationError: The random source failed
            KeyStorageError: The key store rejected the key
        """
        try:
            raw_key = secrets.token_bytes(KEY_SIZE)
        except Exception as e:
            raise KeyGenerationError(
                f"Key generation failed: {e}", item_id=item_id, original_error=e
            ) from e

        with self._lock:
            try:
                if self._store.get(item_id) is not None:
                    logger.warning(f"Replacing existing key for item: {item_id}")
                self._store.put(item_id, raw_key)
            except KeyStorageError:
                raise
            except Exception as e:
                raise KeyStorageError(
                    f"Key storage failed: {e}", item_id=item_id, original_error=e
                ) from e

        logger.info(f"Generated key for item: {item_id} (store={self._store.namespace})")
        return KeyHandle(item_id=item_id, key=raw_key, created_at=utcnow())

    def retrieve(self, item_id: str) -> KeyHandle:
        """
        Retrieve the key for an item.

        Raises:
            KeyNotFoundError: No key stored for the item
            KeyRetrievalError: The key store could not be read
        """
        try:
            raw_key = self._store.get(item_id)
        except KeyCustodyError:
            raise
        except Exception as e:
            raise KeyRetrievalError(
                f"Key retrieval failed: {e}", item_id=item_id, original_error=e
            ) from e

        if raw_key is None:
            raise KeyNotFoundError(item_id)

        return KeyHandle(item_id=item_id, key=raw_key)

    def delete(self, item_id: str) -> None:
        """
        Delete the key for an item. A missing key is not an error.

        Raises:
            KeyDeletionError: The key store failed to delete an existing key
        """
        with self._lock:
            try:
                existed = self._store.delete(item_id)
            except KeyDeletionError:
                raise
            except Exception as e:
                raise KeyDeletionError(
                    f"Key deletion failed: {e}", item_id=item_id, original_error=e
                ) from e

        if existed:
            logger.info(f"Key deleted for item: {item_id}")
        else:
            logger.debug(f"No key to delete for item: {item_id}")

    def has_key(self, item_id: str) -> bool:
        """Check whether a key is stored for an item."""
        try:
            return self._store.get(item_id) is not None
        except KeyCustodyError:
            return False
