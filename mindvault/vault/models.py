"""
MindVault Item Model

Closed enumerations for media type and unlock status, the VaultItem record,
and the query/sort descriptors understood by the item repository.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.timefmt import ensure_utc


class MediaType(str, Enum):
    """Kind of content sealed in a vault item."""

    TEXT = "text"
    URL = "url"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    VOICE = "voice"
    CODE = "code"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def unlock_phrase(self) -> str:
        """Default body of the unlock notification."""
        return _UNLOCK_PHRASES[self]

    @property
    def is_visual(self) -> bool:
        """Visual media may carry a preview thumbnail."""
        return self in (MediaType.IMAGE, MediaType.VIDEO)

    @property
    def is_textual(self) -> bool:
        """Textual media decode to a UTF-8 string when opened."""
        return self in (MediaType.TEXT, MediaType.URL, MediaType.CODE)


_DISPLAY_NAMES: Dict[MediaType, str] = {
    MediaType.TEXT: "Text",
    MediaType.URL: "URL",
    MediaType.IMAGE: "Image",
    MediaType.VIDEO: "Video",
    MediaType.AUDIO: "Audio",
    MediaType.VOICE: "Voice Memo",
    MediaType.CODE: "Code File",
}

_UNLOCK_PHRASES: Dict[MediaType, str] = {
    MediaType.TEXT: "A Text item has unlocked.",
    MediaType.URL: "A URL item has unlocked.",
    MediaType.IMAGE: "An Image has unlocked.",
    MediaType.VIDEO: "A Video has unlocked.",
    MediaType.AUDIO: "An Audio file has unlocked.",
    MediaType.VOICE: "A Voice Memo has unlocked.",
    MediaType.CODE: "A Code File has unlocked.",
}


def media_types_matching(text: str) -> List[MediaType]:
    """
    Media types whose display label (or raw value) contains the search text.

    Matching is case-insensitive; empty text matches every type.
    """
    needle = text.strip().lower()
    if not needle:
        return list(MediaType)
    return [
        m for m in MediaType
        if needle in m.display_name.lower() or needle in m.value
    ]


class UnlockStatus(str, Enum):
    """Lifecycle state of a vault item. Transitions only move forward."""

    LOCKED = "locked"
    UNLOCKED = "unlocked"
    ARCHIVED = "archived"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER[self]

    def can_transition_to(self, target: "UnlockStatus") -> bool:
        """True for staying put or advancing exactly one step."""
        return target.rank - self.rank in (0, 1)


_STATUS_ORDER: Dict[UnlockStatus, int] = {
    UnlockStatus.LOCKED: 0,
    UnlockStatus.UNLOCKED: 1,
    UnlockStatus.ARCHIVED: 2,
}


@dataclass
class VaultItem:
    """A single sealed, time-locked artifact and its metadata."""

    item_id: str
    media_type: MediaType
    creation_date: datetime
    unlock_date: datetime
    encrypted_blob_ref: str
    status: UnlockStatus = UnlockStatus.LOCKED
    custom_message: Optional[str] = None
    metadata: Optional[bytes] = None
    thumbnail_ref: Optional[str] = None
    version: int = 0

    def __post_init__(self) -> None:
        self.creation_date = ensure_utc(self.creation_date)
        self.unlock_date = ensure_utc(self.unlock_date)

    @property
    def is_locked(self) -> bool:
        return self.status == UnlockStatus.LOCKED

    def is_due(self, now: datetime) -> bool:
        """True when the item is locked and its unlock time has passed."""
        return self.is_locked and self.unlock_date <= ensure_utc(now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "media_type": self.media_type.value,
            "creation_date": self.creation_date.isoformat(),
            "unlock_date": self.unlock_date.isoformat(),
            "status": self.status.value,
            "encrypted_blob_ref": self.encrypted_blob_ref,
            "custom_message": self.custom_message,
            "has_metadata": self.metadata is not None,
            "thumbnail_ref": self.thumbnail_ref,
            "version": self.version,
        }


class ItemSort(Enum):
    """Result ordering for repository queries."""

    UNLOCK_ASC = ("unlock_us", "ASC")
    UNLOCK_DESC = ("unlock_us", "DESC")
    CREATED_ASC = ("created_us", "ASC")
    CREATED_DESC = ("created_us", "DESC")

    @property
    def column(self) -> str:
        return self.value[0]

    @property
    def direction(self) -> str:
        return self.value[1]


@dataclass
class ItemQuery:
    """
    Predicate for repository queries. All set fields must match.

    Attributes:
        status: Only items in this state
        unlock_before: Only items whose unlock date is at or before this time
        media_type: Only items of this media type
        search_text: Free-text match against the media type display label
        limit: Maximum number of results (None for all)
    """

    status: Optional[UnlockStatus] = None
    unlock_before: Optional[datetime] = None
    media_type: Optional[MediaType] = None
    search_text: Optional[str] = None
    limit: Optional[int] = None

    @classmethod
    def by_status(cls, status: UnlockStatus) -> "ItemQuery":
        return cls(status=status)

    @classmethod
    def due_for_unlock(cls, now: datetime) -> "ItemQuery":
        """Locked items whose unlock time is at or before now."""
        return cls(status=UnlockStatus.LOCKED, unlock_before=now)

    @classmethod
    def by_media_type(cls, media_type: MediaType) -> "ItemQuery":
        return cls(media_type=media_type)

    @classmethod
    def search(cls, text: str, status: Optional[UnlockStatus] = None) -> "ItemQuery":
        return cls(search_text=text, status=status)
