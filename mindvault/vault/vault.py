"""
MindVault Time Vault API

Main facade for the time-locked vault providing:
- All-or-nothing item creation (seal, store, record)
- Editing while locked, explicit archiving
- Opening unlocked content
- Best-effort deletion of every trace of an item
- Startup and background unlock scans
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import urlparse

from ..utils.timefmt import ensure_utc, format_time_remaining, utcnow
from .config import VaultConfig
from .exceptions import (
    InvalidTransitionError,
    ItemValidationError,
    RepositoryNotFoundError,
    VaultError,
    VaultNotInitializedError,
)
from .index import ItemRepository
from .keys import KeyCustodian, SecureKeyStore
from .models import ItemQuery, ItemSort, MediaType, UnlockStatus, VaultItem
from .notifications import (
    NotificationGateway,
    NullNotificationGateway,
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

logger = logging.getLogger(__name__)


CONTENT_UNAVAILABLE = "Content unavailable"
CONTENT_LOCKED = "Content is still locked"


@dataclass
class CreateResult:
    """Result of an item creation."""

    success: bool
    item_id: Optional[str] = None
    item: Optional[VaultItem] = None
    notification_scheduled: bool = False
    error: Optional[str] = None


@dataclass
class OpenResult:
    """Result of opening an item's content."""

    success: bool
    item_id: Optional[str] = None
    media_type: Optional[MediaType] = None
    data: Optional[bytes] = None
    text: Optional[str] = None
    error: Optional[str] = None


class DeletionStatus(Enum):
    """Status of an item deletion."""
    COMPLETED = auto()
    PARTIAL = auto()
    FAILED = auto()


@dataclass
class DeletionResult:
    """Result of an item deletion. Every step is attempted."""
    item_id: str
    status: DeletionStatus = DeletionStatus.COMPLETED
    notification_cancelled: bool = False
    record_deleted: bool = False
    blobs_deleted: bool = False
    key_deleted: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == DeletionStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "status": self.status.name,
            "notification_cancelled": self.notification_cancelled,
            "record_deleted": self.record_deleted,
            "blobs_deleted": self.blobs_deleted,
            "key_deleted": self.key_deleted,
            "errors": list(self.errors),
        }


def normalize_message(message: Optional[str]) -> Optional[str]:
    """Blank custom messages are stored as none."""
    if message is None or not message.strip():
        return None
    return message


def validate_url(content: bytes) -> None:
    """
    Raises:
        ItemValidationError: Content is not a URL with scheme and host
    """
    try:
        text = content.decode("utf-8").strip()
    except UnicodeDecodeError as e:
        raise ItemValidationError("URL is not valid UTF-8", field="content") from e

    parsed = urlparse(text)
    if not parsed.scheme or not parsed.netloc:
        raise ItemValidationError(f"Invalid URL: {text!r}", field="content")


class TimeVault:
    """
    Time Vault - sealed content that opens only after its unlock date.

    This is the main API for MindVault.

    Features:
    - AES-256-GCM with one key per item, held by the key custodian
    - One isolated blob directory per item
    - SQLite item repository as the single source of truth for status
    - Batch unlock scans at startup and in the background
    - Unlock alerts through a notification gateway
    """

    def __init__(
        self,
        config: VaultConfig,
        key_store: Optional[SecureKeyStore] = None,
        notifications: Optional[NotificationGateway] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize Time Vault.

        Args:
            config: Vault configuration
            key_store: Secure key store (default: built from config)
            notifications: Alert gateway (default: alerts are discarded)
            clock: Returns the current time (default: system UTC clock)
        """
        self._config = config
        self._key_store = key_store
        self._notifications = notifications or NullNotificationGateway()
        self._clock = clock or utcnow

        # Components (initialized in initialize())
        self._custodian: Optional[KeyCustodian] = None
        self._sealer: Optional[Sealer] = None
        self._blobs: Optional[BlobStore] = None
        self._repository: Optional[ItemRepository] = None
        self._scheduler: Optional[UnlockScheduler] = None
        self._runner: Optional[BackgroundUnlockRunner] = None

        self._initialized = False
        self._startup_result: Optional[UnlockRunResult] = None

    def initialize(self) -> bool:
        """
        Initialize the vault and run the startup unlock scan.

        Returns:
            True if initialization successful
        """
        try:
            self._config.vault_path.mkdir(parents=True, exist_ok=True)

            if self._key_store is None:
                self._key_store = self._config.create_key_store()
            self._custodian = KeyCustodian(self._key_store)
            self._sealer = Sealer(self._custodian)

            self._blobs = BlobStore(
                self._config.blob_path,
                secure_delete=self._config.secure_delete,
            )
            self._repository = ItemRepository(self._config.db_path)
            self._scheduler = UnlockScheduler(self._repository, clock=self.now)
        except Exception as e:
            logger.error(f"Vault initialization failed: {e}")
            return False

        self._initialized = True

        if self._config.run_startup_scan:
            self._startup_result = self._scheduler.run_at_startup()

        if self._config.enable_background_unlock:
            self._runner = BackgroundUnlockRunner(
                self._scheduler,
                interval=self._config.background_interval,
                time_budget=self._config.task_time_budget,
            )
            self._runner.start()

        logger.info(f"Time Vault initialized: {self._config.vault_path}")
        return True

    def shutdown(self) -> None:
        """Shutdown the vault."""
        if self._runner:
            self._runner.stop()
            self._runner = None

        if self._repository:
            self._repository.close()

        self._initialized = False
        logger.info("Time Vault shutdown complete")

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    def _require_initialized(self, operation: str) -> None:
        if not self._initialized:
            raise VaultNotInitializedError(operation)

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_item(
        self,
        content: Union[bytes, str],
        media_type: Union[MediaType, str],
        unlock_date: datetime,
        custom_message: Optional[str] = None,
        metadata: Optional[bytes] = None,
        thumbnail: Optional[bytes] = None,
    ) -> CreateResult:
        """
        Seal content into a new locked item.

        Either the key, blob and record all exist afterwards, or none of
        them do. A failed unlock alert does not undo the item.

        Args:
            content: Content to seal
            media_type: Kind of content
            unlock_date: When the item becomes readable
            custom_message: Optional unlock alert text
            metadata: Optional opaque bytes stored with the record
            thumbnail: Optional preview (image and video only)

        Returns:
            CreateResult
        """
        if not self._initialized:
            return CreateResult(success=False, error="Vault not initialized")

        try:
            media_type = MediaType(media_type)
        except ValueError:
            return CreateResult(success=False, error=f"Unknown media type: {media_type}")

        if isinstance(content, str):
            content = content.encode("utf-8")

        now = self.now()
        unlock_date = ensure_utc(unlock_date)

        try:
            self._validate_new_item(content, media_type, now, unlock_date, thumbnail)
        except ItemValidationError as e:
            return CreateResult(success=False, error=str(e))

        item_id = str(uuid.uuid4())

        try:
            blob = self._sealer.seal(bytes(content), item_id)
            blob_ref = self._blobs.write(item_id, blob)
            thumbnail_ref = None
            if thumbnail is not None:
                thumbnail_ref = self._blobs.write_thumbnail(item_id, thumbnail)

            item = self._repository.insert(
                VaultItem(
                    item_id=item_id,
                    media_type=media_type,
                    creation_date=now,
                    unlock_date=unlock_date,
                    encrypted_blob_ref=blob_ref,
                    custom_message=normalize_message(custom_message),
                    metadata=bytes(metadata) if metadata is not None else None,
                    thumbnail_ref=thumbnail_ref,
                )
            )
        except Exception as e:
            logger.error(f"Create failed for item {item_id}: {e}")
            self._rollback_creation(item_id)
            return CreateResult(success=False, item_id=item_id, error=str(e))

        scheduled = self._schedule_notification(item)

        logger.info(
            f"Created {media_type.value} item {item_id}, "
            f"unlocks {unlock_date.isoformat()}"
        )
        return CreateResult(
            success=True,
            item_id=item_id,
            item=item,
            notification_scheduled=scheduled,
        )

    def create_text_item(
        self,
        text: str,
        unlock_date: datetime,
        media_type: Union[MediaType, str] = MediaType.TEXT,
        **kwargs,
    ) -> CreateResult:
        """Seal text, a URL or code in the vault."""
        return self.create_item(text.encode("utf-8"), media_type, unlock_date, **kwargs)

    def _validate_new_item(
        self,
        content: bytes,
        media_type: MediaType,
        now: datetime,
        unlock_date: datetime,
        thumbnail: Optional[bytes],
    ) -> None:
        if not content:
            raise ItemValidationError("Content is empty", field="content")

        if media_type == MediaType.URL:
            validate_url(content)

        if unlock_date < now:
            raise ItemValidationError(
                "Unlock date cannot be earlier than creation date", field="unlock_date"
            )

        if thumbnail is not None and not media_type.is_visual:
            raise ItemValidationError(
                f"Thumbnails are only stored for images and videos, not {media_type.value}",
                field="thumbnail",
            )

    def _rollback_creation(self, item_id: str) -> None:
        """Remove the key and blobs of a creation that did not complete."""
        try:
            self._custodian.delete(item_id)
        except VaultError as e:
            logger.warning(f"Rollback could not delete key for {item_id}: {e}")

        try:
            self._blobs.delete_all(item_id)
        except (OSError, ValueError) as e:
            logger.warning(f"Rollback could not delete blobs for {item_id}: {e}")

    # -------------------------------------------------------------------------
    # Reading and listing
    # -------------------------------------------------------------------------

    def get_item(self, item_id: str) -> VaultItem:
        """
        Raises:
            RepositoryNotFoundError: No such item
        """
        self._require_initialized("get item")
        return self._repository.get(item_id)

    def list_locked(self) -> List[VaultItem]:
        """Locked items, soonest unlock first."""
        self._require_initialized("list items")
        return self._repository.query(
            ItemQuery.by_status(UnlockStatus.LOCKED), ItemSort.UNLOCK_ASC
        )

    def list_unlocked(self) -> List[VaultItem]:
        """Unlocked items, most recently unlocked first."""
        self._require_initialized("list items")
        return self._repository.query(
            ItemQuery.by_status(UnlockStatus.UNLOCKED), ItemSort.UNLOCK_DESC
        )

    def list_archived(self) -> List[VaultItem]:
        self._require_initialized("list items")
        return self._repository.query(
            ItemQuery.by_status(UnlockStatus.ARCHIVED), ItemSort.UNLOCK_DESC
        )

    def search(
        self,
        text: str,
        status: Optional[UnlockStatus] = None,
    ) -> List[VaultItem]:
        """Items whose media type label matches the text."""
        self._require_initialized("search")
        return self._repository.query(ItemQuery.search(text, status), ItemSort.UNLOCK_ASC)

    def query(
        self,
        query: Optional[ItemQuery] = None,
        sort: ItemSort = ItemSort.UNLOCK_ASC,
    ) -> List[VaultItem]:
        self._require_initialized("query")
        return self._repository.query(query, sort)

    def time_remaining(self, item: VaultItem) -> str:
        """Countdown text until the item unlocks ("2d 3h", "Unlocked")."""
        if not item.is_locked:
            return "Unlocked"
        return format_time_remaining(self.now(), item.unlock_date)

    def open_item(self, item_id: str) -> OpenResult:
        """
        Decrypt an item's content.

        Only items that are no longer locked can be opened. Any failure to
        read or authenticate the content is reported as unavailable and is
        never retried.

        Returns:
            OpenResult
        """
        if not self._initialized:
            return OpenResult(success=False, item_id=item_id, error="Vault not initialized")

        try:
            item = self._repository.get(item_id)
        except RepositoryNotFoundError:
            return OpenResult(success=False, item_id=item_id, error="Item not found")

        if item.is_locked:
            return OpenResult(
                success=False,
                item_id=item_id,
                media_type=item.media_type,
                error=CONTENT_LOCKED,
            )

        try:
            blob = self._blobs.read(item.encrypted_blob_ref)
            data = self._sealer.open(blob, item_id)
        except VaultError as e:
            logger.error(f"Open failed for item {item_id}: {e}")
            return OpenResult(
                success=False,
                item_id=item_id,
                media_type=item.media_type,
                error=CONTENT_UNAVAILABLE,
            )

        result = OpenResult(
            success=True,
            item_id=item_id,
            media_type=item.media_type,
            data=data,
        )

        if item.media_type.is_textual:
            try:
                result.text = data.decode("utf-8")
            except UnicodeDecodeError:
                logger.warning(f"Content of {item_id} is not valid UTF-8")

        return result

    def read_thumbnail(self, item_id: str) -> Optional[bytes]:
        """Preview bytes of an item, or None when it has none."""
        self._require_initialized("read thumbnail")
        item = self._repository.get(item_id)
        if item.thumbnail_ref is None:
            return None
        return self._blobs.read(item.thumbnail_ref)

    # -------------------------------------------------------------------------
    # Editing
    # -------------------------------------------------------------------------

    def edit_unlock_date(self, item_id: str, unlock_date: datetime) -> VaultItem:
        """
        Move the unlock date of a locked item and re-schedule its alert.

        Raises:
            RepositoryNotFoundError: No such item
            InvalidTransitionError: Item is not locked, or the date precedes creation
        """
        self._require_initialized("edit item")
        unlock_date = ensure_utc(unlock_date)

        def mutation(item: VaultItem) -> None:
            if not item.is_locked:
                raise InvalidTransitionError(
                    f"Unlock date of item {item_id} can only change while locked",
                    field="unlock_date",
                )
            item.unlock_date = unlock_date

        item = self._repository.update(item_id, mutation)
        self._update_notification(item)
        logger.info(f"Unlock date of {item_id} set to {unlock_date.isoformat()}")
        return item

    def edit_custom_message(self, item_id: str, message: Optional[str]) -> VaultItem:
        """
        Change an item's custom message. Allowed in any state.

        Raises:
            RepositoryNotFoundError: No such item
        """
        self._require_initialized("edit item")
        message = normalize_message(message)

        def mutation(item: VaultItem) -> None:
            item.custom_message = message

        item = self._repository.update(item_id, mutation)
        if item.is_locked:
            self._update_notification(item)
        return item

    def archive_item(self, item_id: str) -> VaultItem:
        """
        Move an unlocked item to the archive.

        Raises:
            RepositoryNotFoundError: No such item
            InvalidTransitionError: Item is still locked
        """
        self._require_initialized("archive item")

        def mutation(item: VaultItem) -> None:
            if item.status == UnlockStatus.LOCKED:
                raise InvalidTransitionError(
                    f"Item {item_id} is locked and cannot be archived", field="status"
                )
            item.status = UnlockStatus.ARCHIVED

        item = self._repository.update(item_id, mutation)
        logger.info(f"Archived item: {item_id}")
        return item

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    def delete_item(self, item_id: str) -> DeletionResult:
        """
        Delete an item's alert, record, blobs and key.

        Every step is attempted even when an earlier one fails; a missing
        piece counts as already deleted.

        Returns:
            DeletionResult
        """
        self._require_initialized("delete item")
        result = DeletionResult(item_id=item_id)
        attempted = 0

        attempted += 1
        try:
            self._notifications.cancel(item_id)
            result.notification_cancelled = True
        except Exception as e:
            result.errors.append(f"notification: {e}")

        attempted += 1
        try:
            if not self._repository.delete(item_id):
                logger.debug(f"No record to delete for item: {item_id}")
            result.record_deleted = True
        except Exception as e:
            result.errors.append(f"record: {e}")

        attempted += 1
        try:
            self._blobs.delete_all(item_id)
            result.blobs_deleted = True
        except Exception as e:
            result.errors.append(f"blobs: {e}")

        attempted += 1
        try:
            self._custodian.delete(item_id)
            result.key_deleted = True
        except Exception as e:
            result.errors.append(f"key: {e}")

        if not result.errors:
            result.status = DeletionStatus.COMPLETED
            logger.info(f"Deleted item: {item_id}")
        elif len(result.errors) < attempted:
            result.status = DeletionStatus.PARTIAL
            logger.warning(f"Partial deletion of {item_id}: {result.errors}")
        else:
            result.status = DeletionStatus.FAILED
            logger.error(f"Deletion of {item_id} failed: {result.errors}")

        return result

    # -------------------------------------------------------------------------
    # Unlocking
    # -------------------------------------------------------------------------

    def process_unlocks(self, now: Optional[datetime] = None) -> UnlockRunResult:
        """Unlock every due item now."""
        self._require_initialized("process unlocks")
        return self._scheduler.run(now=now)

    def handle_background_task(self, task: DeferredTask) -> UnlockRunResult:
        """Run an unlock scan for a host deferred task."""
        self._require_initialized("process unlocks")
        return self._scheduler.handle_deferred_task(task)

    @property
    def startup_result(self) -> Optional[UnlockRunResult]:
        """Outcome of the scan run by initialize()."""
        return self._startup_result

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    def _schedule_notification(self, item: VaultItem) -> bool:
        try:
            self._notifications.schedule(
                build_unlock_notification(item, self._config.notification_title)
            )
            return True
        except Exception as e:
            logger.warning(f"Could not schedule unlock alert for {item.item_id}: {e}")
            return False

    def _update_notification(self, item: VaultItem) -> bool:
        try:
            self._notifications.update(
                build_unlock_notification(item, self._config.notification_title)
            )
            return True
        except Exception as e:
            logger.warning(f"Could not update unlock alert for {item.item_id}: {e}")
            return False

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def get_statistics(self) -> Dict[str, Any]:
        """Get vault statistics."""
        if not self._initialized:
            return {}

        return {
            "vault_path": str(self._config.vault_path),
            "initialized": self._initialized,
            "key_store": self._key_store.namespace,
            "repository": self._repository.get_statistics(),
            "storage": self._blobs.get_storage_stats(),
            "background_unlock": self._runner is not None and self._runner.is_running,
        }

    @property
    def config(self) -> VaultConfig:
        return self._config

    @property
    def is_initialized(self) -> bool:
        """Check if vault is initialized."""
        return self._initialized


def create_vault(
    config: Optional[VaultConfig] = None,
    key_store: Optional[SecureKeyStore] = None,
    notifications: Optional[NotificationGateway] = None,
) -> TimeVault:
    """
    Convenience function to create and initialize a vault.

    Raises:
        VaultError: Initialization failed
    """
    vault = TimeVault(
        config or VaultConfig.from_env(),
        key_store=key_store,
        notifications=notifications,
    )
    if not vault.initialize():
        raise VaultError("Failed to initialize vault")
    return vault
