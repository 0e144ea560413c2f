"""
MindVault - Time-Locked Secure Vault

This package provides the core implementation of MindVault, including:
- Per-item key custody in a device-bound secure key store
- AES-256-GCM sealing of arbitrary content
- Encrypted blob storage organized per item
- SQLite item repository and the unlock state machine
"""

__version__ = "0.1.0"
__author__ = "MindVault Contributors"
