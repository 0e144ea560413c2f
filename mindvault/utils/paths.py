"""
Configurable paths for MindVault.

All file-system locations are routed through get_data_dir() and
get_config_dir(), which respect:

  1. MINDVAULT_DATA_DIR / MINDVAULT_CONFIG_DIR  (explicit override)
  2. XDG_DATA_HOME / XDG_CONFIG_HOME            (XDG fallback)
  3. ~/.local/share/mindvault, ~/.config/mindvault (default)
"""

import os
from pathlib import Path


def get_data_dir() -> Path:
    """Return the directory holding the vault (records, blobs, key files)."""
    data_dir = os.environ.get("MINDVAULT_DATA_DIR")
    if data_dir:
        return Path(data_dir)
    xdg_data = os.environ.get("XDG_DATA_HOME", os.path.expanduser("~/.local/share"))
    return Path(xdg_data) / "mindvault"


def get_config_dir() -> Path:
    """Return the MindVault config directory, configurable via env var."""
    config_dir = os.environ.get("MINDVAULT_CONFIG_DIR")
    if config_dir:
        return Path(config_dir)
    xdg_config = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(xdg_config) / "mindvault"


def get_default_config_path() -> Path:
    """Return the default location of the YAML config file."""
    return get_config_dir() / "config.yaml"
