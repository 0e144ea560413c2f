"""
Pytest Configuration and Shared Fixtures

This module provides centralized fixtures for testing MindVault components.
Every component takes its collaborators as constructor arguments, so tests
wire in-memory key stores, temporary directories and a controllable clock.
"""

import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

import pytest

from mindvault.vault.config import VaultConfig
from mindvault.vault.index import ItemRepository
from mindvault.vault.keys import KeyCustodian, MemoryKeyStore
from mindvault.vault.models import MediaType, VaultItem
from mindvault.vault.notifications import InMemoryNotificationGateway
from mindvault.vault.sealer import Sealer
from mindvault.vault.storage import BlobStore
from mindvault.vault.vault import TimeVault


FIXED_NOW = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock returning aware UTC datetimes."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# =============================================================================
# Environment Setup
# =============================================================================


@pytest.fixture(autouse=True)
def clean_environment():
    """Ensure clean environment for each test."""
    original_env = os.environ.copy()

    yield

    os.environ.clear()
    os.environ.update(original_env)


# =============================================================================
# Temporary Directory Fixtures
# =============================================================================


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory that's cleaned up after the test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def key_store() -> MemoryKeyStore:
    return MemoryKeyStore()


@pytest.fixture
def custodian(key_store) -> KeyCustodian:
    return KeyCustodian(key_store)


@pytest.fixture
def sealer(custodian) -> Sealer:
    return Sealer(custodian)


@pytest.fixture
def blob_store(temp_dir) -> BlobStore:
    return BlobStore(temp_dir / "blobs")


@pytest.fixture
def repository(temp_dir) -> Generator[ItemRepository, None, None]:
    repo = ItemRepository(temp_dir / "items.db")
    yield repo
    repo.close()


@pytest.fixture
def notifications() -> InMemoryNotificationGateway:
    return InMemoryNotificationGateway()


@pytest.fixture
def make_item():
    """Factory for VaultItem records (not sealed, for repository tests)."""

    def _make(
        unlock_in: timedelta = timedelta(days=1),
        media_type: MediaType = MediaType.TEXT,
        created: datetime = FIXED_NOW,
        **kwargs,
    ) -> VaultItem:
        item_id = kwargs.pop("item_id", str(uuid.uuid4()))
        return VaultItem(
            item_id=item_id,
            media_type=media_type,
            creation_date=created,
            unlock_date=created + unlock_in,
            encrypted_blob_ref=f"{item_id}/blob",
            **kwargs,
        )

    return _make


# =============================================================================
# Vault Fixtures
# =============================================================================


@pytest.fixture
def vault_config(temp_dir) -> VaultConfig:
    return VaultConfig(
        vault_path=temp_dir / "vault",
        key_store="memory",
        run_startup_scan=True,
        enable_background_unlock=False,
    )


@pytest.fixture
def vault(vault_config, key_store, notifications, clock) -> Generator[TimeVault, None, None]:
    """Create and initialize a vault with a fixed clock."""
    tv = TimeVault(
        vault_config,
        key_store=key_store,
        notifications=notifications,
        clock=clock,
    )
    assert tv.initialize()
    yield tv
    tv.shutdown()
