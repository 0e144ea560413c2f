"""
MindVault Notification Gateway

Interface to the host's local alert facility. The vault schedules one alert
per locked item, keyed by item id, to fire at the item's unlock date.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from ..utils.timefmt import ensure_utc
from .models import VaultItem

logger = logging.getLogger(__name__)


DEFAULT_NOTIFICATION_TITLE = "Your time capsule is ready!"


@dataclass
class UnlockNotification:
    """A pending unlock alert for one item."""

    item_id: str
    title: str
    body: str
    fire_at: datetime

    def __post_init__(self) -> None:
        self.fire_at = ensure_utc(self.fire_at)


def build_unlock_notification(
    item: VaultItem,
    title: str = DEFAULT_NOTIFICATION_TITLE,
) -> UnlockNotification:
    """Alert for an item: the custom message if set, else the media type phrase."""
    return UnlockNotification(
        item_id=item.item_id,
        title=title,
        body=item.custom_message or item.media_type.unlock_phrase,
        fire_at=item.unlock_date,
    )


class NotificationGateway(ABC):
    """
    Host alert scheduling.

    Implementations may raise any exception; the vault treats alert delivery
    as best-effort and never lets it undo an item operation.
    """

    @abstractmethod
    def schedule(self, notification: UnlockNotification) -> None:
        """Schedule an alert, replacing any pending one for the same item."""
        pass

    @abstractmethod
    def cancel(self, item_id: str) -> None:
        """Cancel the pending alert for an item. Unknown ids are ignored."""
        pass

    def update(self, notification: UnlockNotification) -> None:
        """Re-schedule an item's alert with new content or time."""
        self.cancel(notification.item_id)
        self.schedule(notification)


class InMemoryNotificationGateway(NotificationGateway):
    """Records pending alerts in process memory."""

    def __init__(self):
        self._pending: Dict[str, UnlockNotification] = {}
        self._lock = threading.Lock()

    def schedule(self, notification: UnlockNotification) -> None:
        with self._lock:
            self._pending[notification.item_id] = notification
        logger.debug(
            f"Scheduled unlock alert for {notification.item_id} "
            f"at {notification.fire_at.isoformat()}"
        )

    def cancel(self, item_id: str) -> None:
        with self._lock:
            removed = self._pending.pop(item_id, None)
        if removed is not None:
            logger.debug(f"Cancelled unlock alert for {item_id}")

    def get(self, item_id: str) -> Optional[UnlockNotification]:
        with self._lock:
            return self._pending.get(item_id)

    def pending(self) -> List[UnlockNotification]:
        """Pending alerts ordered by fire time."""
        with self._lock:
            return sorted(self._pending.values(), key=lambda n: n.fire_at)

    def due(self, now: datetime) -> List[UnlockNotification]:
        """Pending alerts whose fire time is at or before now."""
        now = ensure_utc(now)
        return [n for n in self.pending() if n.fire_at <= now]

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


class NullNotificationGateway(NotificationGateway):
    """Discards every alert."""

    def schedule(self, notification: UnlockNotification) -> None:
        pass

    def cancel(self, item_id: str) -> None:
        pass
