"""
MindVault Cryptographic Sealer

Seals content with AES-256-GCM under a fresh per-item key obtained from the
key custodian, producing one self-contained blob:

    NONCE (12 bytes) | CIPHERTEXT (len(plaintext) bytes) | TAG (16 bytes)

The item id (UTF-8) is bound as associated data, so a blob only opens under
the item it was sealed for. Opening fails closed: any authentication failure,
truncation or missing key raises, and no plaintext is returned.
"""

import logging
import secrets
from typing import Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .exceptions import (
    DecryptionError,
    EncryptionError,
    KeyCustodyError,
)
from .keys import KeyCustodian

logger = logging.getLogger(__name__)


NONCE_SIZE = 12  # 96 bits for GCM
TAG_SIZE = 16  # 128 bits for GCM authentication tag
MIN_BLOB_SIZE = NONCE_SIZE + TAG_SIZE


def split_blob(blob: bytes) -> Tuple[bytes, bytes, bytes]:
    """
    Split a sealed blob into (nonce, ciphertext, tag).

    Raises:
        DecryptionError: Blob is too short to contain nonce and tag
    """
    if len(blob) < MIN_BLOB_SIZE:
        raise DecryptionError(
            f"Malformed blob: {len(blob)} bytes, need at least {MIN_BLOB_SIZE}"
        )
    return blob[:NONCE_SIZE], blob[NONCE_SIZE:-TAG_SIZE], blob[-TAG_SIZE:]


class Sealer:
    """
    Authenticated encryption of opaque content for vault items.

    The sealer never accepts caller-supplied keys: every seal() generates and
    stores a new key for the item through the custodian.
    """

    def __init__(self, key_custodian: KeyCustodian):
        """
        Initialize sealer.

        Args:
            key_custodian: Custodian that owns the per-item keys
        """
        self._custodian = key_custodian

    def seal(self, plaintext: bytes, item_id: str) -> bytes:
        """
        Encrypt content for an item under a freshly generated key.

        Args:
            plaintext: Content bytes
            item_id: Item identifier (also the key identifier)

        Returns:
            Sealed blob (nonce | ciphertext | tag)

        Raises:
            KeyGenerationError, KeyStorageError: Key could not be created
            EncryptionError: Encryption failed (the new key is removed again)
        """
        handle = self._custodian.generate_and_store(item_id)

        try:
            nonce = secrets.token_bytes(NONCE_SIZE)
            ciphertext_and_tag = AESGCM(handle.key).encrypt(
                nonce, bytes(plaintext), item_id.encode("utf-8")
            )
        except Exception as e:
            logger.error(f"Encryption failed for item: {item_id}")
            self._discard_key(item_id)
            raise EncryptionError(
                f"Encryption failed: {e}", item_id=item_id, original_error=e
            ) from e

        blob = nonce + ciphertext_and_tag
        logger.debug(f"Sealed item {item_id} ({len(plaintext)} -> {len(blob)} bytes)")
        return blob

    def open(self, blob: bytes, item_id: str) -> bytes:
        """
        Authenticate and decrypt a sealed blob.

        Args:
            blob: Sealed blob produced by seal()
            item_id: Item the blob was sealed for

        Returns:
            Original plaintext

        Raises:
            KeyNotFoundError: No key exists for the item
            KeyRetrievalError: The key store could not be read
            DecryptionError: Blob is malformed or failed authentication
        """
        nonce, ciphertext, tag = split_blob(blob)
        handle = self._custodian.retrieve(item_id)

        try:
            return AESGCM(handle.key).decrypt(
                nonce, ciphertext + tag, item_id.encode("utf-8")
            )
        except InvalidTag as e:
            logger.error(f"Decryption failed (integrity check): {item_id}")
            raise DecryptionError(
                "Blob failed authentication", item_id=item_id, original_error=e
            ) from e

    def _discard_key(self, item_id: str) -> None:
        try:
            self._custodian.delete(item_id)
        except KeyCustodyError as e:
            logger.warning(f"Could not discard key after failed seal for {item_id}: {e}")
