"""
MindVault Configuration

Settings for a vault instance, from defaults, MINDVAULT_* environment
variables, or a YAML/JSON file.
"""

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from ..utils.paths import get_data_dir
from .keys import (
    DEFAULT_KEYRING_SERVICE,
    FileKeyStore,
    KeyringKeyStore,
    MemoryKeyStore,
    SecureKeyStore,
)
from .notifications import DEFAULT_NOTIFICATION_TITLE


KEY_STORE_TYPES = ("keyring", "file", "memory")

_TRUE_VALUES = ("1", "true", "yes", "on")


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in _TRUE_VALUES


@dataclass
class VaultConfig:
    """Configuration for a time-locked vault."""

    # Storage
    vault_path: Path = field(default_factory=get_data_dir)
    secure_delete: bool = True

    # Key custody
    key_store: str = "keyring"  # keyring, file, memory
    keyring_service: str = DEFAULT_KEYRING_SERVICE

    # Unlocking
    run_startup_scan: bool = True
    enable_background_unlock: bool = False
    background_interval: float = 3600  # seconds
    task_time_budget: float = 30  # seconds

    # Notifications
    notification_title: str = DEFAULT_NOTIFICATION_TITLE

    def __post_init__(self) -> None:
        self.vault_path = Path(self.vault_path).expanduser()
        if self.key_store not in KEY_STORE_TYPES:
            raise ValueError(
                f"Unknown key store '{self.key_store}'. "
                f"Use one of: {', '.join(KEY_STORE_TYPES)}"
            )
        if self.background_interval <= 0:
            raise ValueError("background_interval must be positive")
        if self.task_time_budget <= 0:
            raise ValueError("task_time_budget must be positive")

    @property
    def db_path(self) -> Path:
        return self.vault_path / "vault.db"

    @property
    def blob_path(self) -> Path:
        return self.vault_path / "EncryptedMedia"

    @property
    def key_path(self) -> Path:
        return self.vault_path / "keys"

    def create_key_store(self) -> SecureKeyStore:
        """Build the secure key store selected by key_store."""
        if self.key_store == "keyring":
            return KeyringKeyStore(service=self.keyring_service)
        if self.key_store == "file":
            return FileKeyStore(self.key_path)
        return MemoryKeyStore()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VaultConfig":
        """Create configuration from a mapping; unknown keys are rejected."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
        return cls(**data)

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create configuration from environment variables."""
        return cls(
            vault_path=get_data_dir(),
            secure_delete=_env_flag("MINDVAULT_SECURE_DELETE", True),
            key_store=os.getenv("MINDVAULT_KEY_STORE", "keyring"),
            keyring_service=os.getenv("MINDVAULT_KEYRING_SERVICE", DEFAULT_KEYRING_SERVICE),
            run_startup_scan=_env_flag("MINDVAULT_STARTUP_SCAN", True),
            enable_background_unlock=_env_flag("MINDVAULT_BACKGROUND_UNLOCK", False),
            background_interval=float(os.getenv("MINDVAULT_BACKGROUND_INTERVAL", "3600")),
            task_time_budget=float(os.getenv("MINDVAULT_TASK_TIME_BUDGET", "30")),
            notification_title=os.getenv(
                "MINDVAULT_NOTIFICATION_TITLE", DEFAULT_NOTIFICATION_TITLE
            ),
        )

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "VaultConfig":
        """
        Load configuration from a YAML or JSON file.

        Raises:
            FileNotFoundError: File does not exist
            ValueError: File is empty, malformed or has unknown keys
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        content = path.read_text(encoding="utf-8")
        if not content.strip():
            raise ValueError(f"Config file {path} is empty")

        try:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(content)
            elif path.suffix == ".json":
                data = json.loads(content)
            else:
                raise ValueError(f"Unsupported config format: {path.suffix}")
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in config file {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in config file {path}: {e}") from e

        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")

        try:
            return cls.from_dict(data)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid configuration in {path}: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["vault_path"] = str(self.vault_path)
        return data


def load_config(path: Optional[Union[str, Path]] = None) -> VaultConfig:
    """Configuration from a file when given, else from the environment."""
    if path is not None:
        return VaultConfig.from_file(path)
    return VaultConfig.from_env()
