"""
MindVault Utilities

Shared helpers for filesystem locations and time handling.
"""

from .paths import get_config_dir, get_data_dir
from .timefmt import (
    ensure_utc,
    format_time_remaining,
    from_epoch_micros,
    time_remaining,
    to_epoch_micros,
    utcnow,
)

__all__ = [
    "get_config_dir",
    "get_data_dir",
    "ensure_utc",
    "format_time_remaining",
    "from_epoch_micros",
    "time_remaining",
    "to_epoch_micros",
    "utcnow",
]
