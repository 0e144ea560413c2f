"""
MindVault Blob Store

Durable byte storage for sealed content and optional preview thumbnails.

Layout (one isolated directory per item):

    {root}/{item_id}/blob
    {root}/{item_id}/thumbnail

The store never transforms bytes. Callers hand it already-sealed data and get
the same bytes back. Deleting an item removes its whole directory.
"""

import logging
import os
import re
import secrets
import shutil
import threading
from pathlib import Path
from typing import Any, Dict, List

from .exceptions import BlobNotFoundError, BlobReadError, BlobWriteError

logger = logging.getLogger(__name__)


BLOB_NAME = "blob"
THUMBNAIL_NAME = "thumbnail"

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_ENTRY_NAMES = (BLOB_NAME, THUMBNAIL_NAME)


class BlobStore:
    """
    Per-item blob storage on the local filesystem.

    Features:
    - Atomic writes (temporary file + rename)
    - Path isolation: ids and refs cannot escape the store root
    - Idempotent per-item deletion
    - Optional overwrite before unlink
    """

    def __init__(self, root: Path, secure_delete: bool = True):
        """
        Initialize blob store.

        Args:
            root: Directory holding one sub-directory per item
            secure_delete: Overwrite files before removing them
        """
        self._root = Path(root)
        self._secure_delete = secure_delete
        self._lock = threading.RLock()

        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def write(self, item_id: str, data: bytes) -> str:
        """
        Persist an item's sealed blob.

        Returns:
            Reference to pass to read()

        Raises:
            BlobWriteError: The bytes could not be written
        """
        return self._write_entry(item_id, BLOB_NAME, data)

    def write_thumbnail(self, item_id: str, data: bytes) -> str:
        """Persist an item's preview thumbnail and return its reference."""
        return self._write_entry(item_id, THUMBNAIL_NAME, data)

    def read(self, ref: str) -> bytes:
        """
        Load bytes by reference.

        Raises:
            BlobNotFoundError: Nothing is stored under the reference
            BlobReadError: The file exists but reading it failed
        """
        try:
            path = self._resolve_ref(ref)
        except ValueError:
            raise BlobNotFoundError(ref)

        try:
            return path.read_bytes()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise BlobNotFoundError(ref)
        except OSError as e:
            raise BlobReadError(
                f"Failed to read blob {ref}: {e}", ref=ref, original_error=e
            ) from e

    def exists(self, ref: str) -> bool:
        try:
            return self._resolve_ref(ref).is_file()
        except ValueError:
            return False

    def delete_all(self, item_id: str) -> None:
        """
        Remove every file stored for an item. A missing directory is fine.
        """
        item_dir = self._item_dir(item_id)

        with self._lock:
            if not item_dir.exists():
                logger.debug(f"No blob directory to delete for item: {item_id}")
                return

            if self._secure_delete:
                for path in item_dir.iterdir():
                    if path.is_file():
                        self._secure_delete_file(path)
            shutil.rmtree(item_dir, ignore_errors=False)

        logger.info(f"Deleted blobs for item: {item_id} (secure={self._secure_delete})")

    def item_ids(self) -> List[str]:
        """Item ids that currently own a storage directory."""
        return sorted(p.name for p in self._root.iterdir() if p.is_dir())

    def get_storage_stats(self) -> Dict[str, Any]:
        """Get storage statistics."""
        stats = {
            "total_items": 0,
            "blob_bytes": 0,
            "thumbnail_bytes": 0,
            "thumbnails": 0,
        }

        for item_dir in self._root.iterdir():
            if not item_dir.is_dir():
                continue
            stats["total_items"] += 1

            blob_path = item_dir / BLOB_NAME
            if blob_path.is_file():
                stats["blob_bytes"] += blob_path.stat().st_size

            thumb_path = item_dir / THUMBNAIL_NAME
            if thumb_path.is_file():
                stats["thumbnails"] += 1
                stats["thumbnail_bytes"] += thumb_path.stat().st_size

        return stats

    def _write_entry(self, item_id: str, name: str, data: bytes) -> str:
        try:
            item_dir = self._item_dir(item_id)
        except ValueError as e:
            raise BlobWriteError(str(e), item_id=item_id, original_error=e) from e
        path = item_dir / name
        tmp_path = item_dir / f".{name}.{secrets.token_hex(4)}.tmp"

        try:
            with self._lock:
                item_dir.mkdir(parents=True, exist_ok=True)
                with open(tmp_path, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            logger.error(f"Failed to write {name} for item {item_id}: {e}")
            raise BlobWriteError(
                f"Failed to write {name}: {e}", item_id=item_id, original_error=e
            ) from e

        ref = f"{item_id}/{name}"
        logger.info(f"Stored {name}: {ref} ({len(data)} bytes)")
        return ref

    def _item_dir(self, item_id: str) -> Path:
        if not _SAFE_ID.match(item_id):
            raise ValueError(f"Invalid item id for blob store: {item_id!r}")
        return self._root / item_id

    def _resolve_ref(self, ref: str) -> Path:
        parts = ref.split("/")
        if len(parts) != 2 or parts[1] not in _ENTRY_NAMES:
            raise ValueError(f"Invalid blob reference: {ref!r}")
        return self._item_dir(parts[0]) / parts[1]

    def _secure_delete_file(self, path: Path) -> None:
        """Overwrite a file with random data, then zeros, before removal."""
        file_size = path.stat().st_size

        with open(path, "r+b") as f:
            f.write(secrets.token_bytes(file_size))
            f.flush()
            os.fsync(f.fileno())

        with open(path, "r+b") as f:
            f.write(b"\x00" * file_size)
            f.flush()
            os.fsync(f.fileno())

        path.unlink()
