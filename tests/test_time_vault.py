"""
Tests for the MindVault TimeVault facade.

Covers:
- Item creation, validation and rollback (creation atomicity)
- Opening content (round trip, locked items, tampered blobs)
- Editing before unlock
- Archiving
- Deletion completeness and best-effort deletion
- Unlock alerts
- Startup scan and deferred tasks
"""

import threading
from datetime import timedelta
from unittest.mock import patch

import pytest

from mindvault.vault.config import VaultConfig
from mindvault.vault.exceptions import (
    BlobWriteError,
    InvalidTransitionError,
    KeyDeletionError,
    KeyStorageError,
    RepositoryNotFoundError,
    RepositoryWriteError,
    VaultNotInitializedError,
)
from mindvault.vault.keys import MemoryKeyStore
from mindvault.vault.models import MediaType, UnlockStatus
from mindvault.vault.notifications import InMemoryNotificationGateway
from mindvault.vault.scheduler import DeferredTask
from mindvault.vault.vault import (
    CONTENT_LOCKED,
    CONTENT_UNAVAILABLE,
    DeletionStatus,
    TimeVault,
    create_vault,
)


def seal_text(vault, clock, text="hello future", hours=24, **kwargs):
    result = vault.create_text_item(text, clock() + timedelta(hours=hours), **kwargs)
    assert result.success, result.error
    return result.item_id


def blob_dir(vault, item_id):
    return vault.config.blob_path / item_id


# ============================================================================
# Creation Tests
# ============================================================================


class TestCreateItem:
    """Tests for item creation."""

    def test_create_text_item(self, vault, clock, key_store):
        result = vault.create_text_item("hello", clock() + timedelta(days=1))

        assert result.success
        item = vault.get_item(result.item_id)
        assert item.status == UnlockStatus.LOCKED
        assert item.media_type == MediaType.TEXT
        assert item.creation_date == clock()
        assert item.encrypted_blob_ref == f"{result.item_id}/blob"
        assert key_store.get(result.item_id) is not None

    def test_plaintext_never_persisted(self, vault, clock):
        secret = b"the treasure is buried under the oak"
        result = vault.create_item(secret, MediaType.TEXT, clock() + timedelta(days=1))

        for path in vault.config.vault_path.rglob("*"):
            if path.is_file():
                assert secret not in path.read_bytes()
        assert result.success

    def test_unlock_date_may_equal_creation(self, vault, clock):
        assert vault.create_text_item("now", clock()).success

    def test_unlock_date_before_creation(self, vault, clock):
        result = vault.create_text_item("past", clock() - timedelta(seconds=1))
        assert not result.success
        assert "earlier" in result.error

    def test_empty_content(self, vault, clock):
        result = vault.create_item(b"", MediaType.IMAGE, clock() + timedelta(days=1))
        assert not result.success
        assert "empty" in result.error

    @pytest.mark.parametrize("url", ["not a url", "example.com", "https://", "mailto"])
    def test_invalid_url(self, vault, clock, url):
        result = vault.create_text_item(url, clock() + timedelta(days=1), media_type=MediaType.URL)
        assert not result.success

    def test_valid_url(self, vault, clock):
        result = vault.create_text_item(
            "https://example.com/letter", clock() + timedelta(days=1), media_type=MediaType.URL
        )
        assert result.success

    def test_unknown_media_type(self, vault, clock):
        result = vault.create_item(b"x", "spreadsheet", clock() + timedelta(days=1))
        assert not result.success

    def test_thumbnail_for_visual_media(self, vault, clock):
        result = vault.create_item(
            b"\x89PNG...", MediaType.IMAGE, clock() + timedelta(days=1), thumbnail=b"thumb"
        )
        assert result.success
        assert result.item.thumbnail_ref == f"{result.item_id}/thumbnail"
        assert vault.read_thumbnail(result.item_id) == b"thumb"

    def test_thumbnail_rejected_for_text(self, vault, clock):
        result = vault.create_text_item("x", clock() + timedelta(days=1), thumbnail=b"thumb")
        assert not result.success

    def test_blank_message_stored_as_none(self, vault, clock):
        item_id = seal_text(vault, clock, custom_message="   ")
        assert vault.get_item(item_id).custom_message is None

    def test_metadata_stored(self, vault, clock):
        item_id = seal_text(vault, clock, metadata=b'{"duration": 12}')
        assert vault.get_item(item_id).metadata == b'{"duration": 12}'

    def test_not_initialized(self, vault_config, clock):
        tv = TimeVault(vault_config, key_store=MemoryKeyStore())
        result = tv.create_text_item("x", clock() + timedelta(days=1))
        assert not result.success
        with pytest.raises(VaultNotInitializedError):
            tv.list_locked()


class TestCreationAtomicity:
    """A failed creation leaves no key, blob or record behind."""

    def assert_no_trace(self, vault, key_store):
        assert len(key_store) == 0
        assert vault._blobs.item_ids() == []
        assert vault.query() == []

    def test_key_storage_failure(self, vault, clock, key_store):
        with patch.object(key_store, "put", side_effect=KeyStorageError("locked")):
            result = vault.create_text_item("x", clock() + timedelta(days=1))

        assert not result.success
        self.assert_no_trace(vault, key_store)

    def test_blob_write_failure(self, vault, clock, key_store):
        with patch.object(vault._blobs, "write", side_effect=BlobWriteError("disk full")):
            result = vault.create_text_item("x", clock() + timedelta(days=1))

        assert not result.success
        assert "disk full" in result.error
        self.assert_no_trace(vault, key_store)

    def test_thumbnail_write_failure(self, vault, clock, key_store):
        with patch.object(vault._blobs, "write_thumbnail", side_effect=BlobWriteError("disk full")):
            result = vault.create_item(
                b"img", MediaType.IMAGE, clock() + timedelta(days=1), thumbnail=b"t"
            )

        assert not result.success
        self.assert_no_trace(vault, key_store)

    def test_repository_failure(self, vault, clock, key_store):
        with patch.object(vault._repository, "insert", side_effect=RepositoryWriteError("io")):
            result = vault.create_text_item("x", clock() + timedelta(days=1))

        assert not result.success
        self.assert_no_trace(vault, key_store)

    def test_notification_failure_keeps_item(self, vault, clock, notifications):
        with patch.object(notifications, "schedule", side_effect=RuntimeError("denied")):
            result = vault.create_text_item("x", clock() + timedelta(days=1))

        assert result.success
        assert result.notification_scheduled is False
        assert vault.get_item(result.item_id).is_locked


# ============================================================================
# Open Tests
# ============================================================================


class TestOpenItem:
    """Tests for opening content."""

    def test_locked_item_cannot_be_opened(self, vault, clock):
        item_id = seal_text(vault, clock)
        result = vault.open_item(item_id)
        assert not result.success
        assert result.error == CONTENT_LOCKED

    def test_round_trip_after_unlock(self, vault, clock):
        item_id = seal_text(vault, clock, text="dear future me", hours=1)
        clock.advance(hours=1)
        vault.process_unlocks()

        result = vault.open_item(item_id)
        assert result.success
        assert result.data == b"dear future me"
        assert result.text == "dear future me"

    def test_binary_media_has_no_text(self, vault, clock):
        data = bytes(range(256))
        result = vault.create_item(data, MediaType.AUDIO, clock() + timedelta(minutes=5))
        clock.advance(minutes=5)
        vault.process_unlocks()

        opened = vault.open_item(result.item_id)
        assert opened.data == data
        assert opened.text is None

    def test_tampered_blob_is_unavailable(self, vault, clock):
        item_id = seal_text(vault, clock, hours=1)
        clock.advance(hours=1)
        vault.process_unlocks()

        path = blob_dir(vault, item_id) / "blob"
        data = bytearray(path.read_bytes())
        data[-1] ^= 0xFF
        path.write_bytes(bytes(data))

        result = vault.open_item(item_id)
        assert not result.success
        assert result.error == CONTENT_UNAVAILABLE
        assert result.data is None

    def test_missing_key_is_unavailable(self, vault, clock, key_store):
        item_id = seal_text(vault, clock, hours=1)
        clock.advance(hours=1)
        vault.process_unlocks()
        key_store.delete(item_id)

        result = vault.open_item(item_id)
        assert result.error == CONTENT_UNAVAILABLE

    def test_unreadable_blob_is_unavailable(self, vault, clock):
        item_id = seal_text(vault, clock, hours=1)
        clock.advance(hours=1)
        vault.process_unlocks()

        with patch("pathlib.Path.read_bytes", side_effect=PermissionError("denied")):
            result = vault.open_item(item_id)

        assert not result.success
        assert result.error == CONTENT_UNAVAILABLE
        assert result.data is None

    def test_missing_item(self, vault):
        result = vault.open_item("missing")
        assert not result.success
        assert result.error == "Item not found"


# ============================================================================
# Edit and Archive Tests
# ============================================================================


class TestEditItem:
    """Tests for editing items."""

    def test_edit_before_unlock(self, vault, clock):
        """Moving the unlock date later keeps the item locked past the old date."""
        item_id = seal_text(vault, clock, hours=1)
        vault.edit_unlock_date(item_id, clock() + timedelta(hours=5))

        clock.advance(hours=3)
        assert vault.process_unlocks().count == 0
        assert vault.get_item(item_id).is_locked

        clock.advance(hours=2)
        assert vault.process_unlocks().unlocked_ids == [item_id]

    def test_edit_unlock_date_after_unlock(self, vault, clock):
        item_id = seal_text(vault, clock, hours=1)
        clock.advance(hours=1)
        vault.process_unlocks()

        with pytest.raises(InvalidTransitionError):
            vault.edit_unlock_date(item_id, clock() + timedelta(days=1))

    def test_edit_unlock_date_before_creation(self, vault, clock):
        item_id = seal_text(vault, clock)
        with pytest.raises(InvalidTransitionError):
            vault.edit_unlock_date(item_id, clock() - timedelta(days=1))

    def test_edit_reschedules_notification(self, vault, clock, notifications):
        item_id = seal_text(vault, clock, hours=1)
        new_date = clock() + timedelta(days=2)
        vault.edit_unlock_date(item_id, new_date)

        assert notifications.get(item_id).fire_at == new_date
        assert len(notifications) == 1

    def test_edit_message_updates_notification(self, vault, clock, notifications):
        item_id = seal_text(vault, clock)
        vault.edit_custom_message(item_id, "Happy birthday!")

        assert vault.get_item(item_id).custom_message == "Happy birthday!"
        assert notifications.get(item_id).body == "Happy birthday!"

    def test_clear_message_restores_default_body(self, vault, clock, notifications):
        item_id = seal_text(vault, clock, custom_message="hi")
        vault.edit_custom_message(item_id, "")

        assert vault.get_item(item_id).custom_message is None
        assert notifications.get(item_id).body == MediaType.TEXT.unlock_phrase

    def test_edit_missing(self, vault, clock):
        with pytest.raises(RepositoryNotFoundError):
            vault.edit_custom_message("missing", "x")

    def test_edit_racing_unlock_scan(self, vault, clock):
        """Each record ends either edited and locked, or unlocked with its old date."""
        ids = [seal_text(vault, clock, hours=1) for _ in range(30)]
        clock.advance(hours=2)
        now = clock()
        postponed = now + timedelta(days=1)
        edited, rejected, errors = [], [], []
        start = threading.Barrier(2)

        def editor():
            start.wait()
            for item_id in ids:
                try:
                    vault.edit_unlock_date(item_id, postponed)
                    edited.append(item_id)
                except InvalidTransitionError:
                    rejected.append(item_id)
                except Exception as e:
                    errors.append(e)

        def scanner():
            start.wait()
            for _ in range(5):
                result = vault.process_unlocks()
                if not result.success:
                    errors.append(result.error)

        threads = [threading.Thread(target=editor), threading.Thread(target=scanner)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sorted(edited + rejected) == sorted(ids)
        for item_id in ids:
            item = vault.get_item(item_id)
            if item.status == UnlockStatus.UNLOCKED:
                assert item_id in rejected
                assert item.unlock_date <= now
            else:
                assert item_id in edited
                assert item.status == UnlockStatus.LOCKED
                assert item.unlock_date == postponed


class TestArchiveItem:
    """Tests for archiving."""

    def test_archive_unlocked(self, vault, clock):
        item_id = seal_text(vault, clock, hours=1)
        clock.advance(hours=1)
        vault.process_unlocks()

        assert vault.archive_item(item_id).status == UnlockStatus.ARCHIVED
        assert vault.list_unlocked() == []
        assert [i.item_id for i in vault.list_archived()] == [item_id]

    def test_archive_locked_rejected(self, vault, clock):
        item_id = seal_text(vault, clock)
        with pytest.raises(InvalidTransitionError):
            vault.archive_item(item_id)
        assert vault.get_item(item_id).is_locked

    def test_archived_item_still_opens(self, vault, clock):
        item_id = seal_text(vault, clock, text="kept", hours=1)
        clock.advance(hours=1)
        vault.process_unlocks()
        vault.archive_item(item_id)

        assert vault.open_item(item_id).text == "kept"


# ============================================================================
# Deletion Tests
# ============================================================================


class TestDeleteItem:
    """Tests for deletion."""

    def test_deletion_completeness(self, vault, clock, key_store, notifications):
        """No record, blob directory, key or alert remains."""
        result = vault.create_item(
            b"img", MediaType.IMAGE, clock() + timedelta(days=1), thumbnail=b"t"
        )
        item_id = result.item_id

        deletion = vault.delete_item(item_id)

        assert deletion.status == DeletionStatus.COMPLETED
        with pytest.raises(RepositoryNotFoundError):
            vault.get_item(item_id)
        assert not blob_dir(vault, item_id).exists()
        assert key_store.get(item_id) is None
        assert notifications.get(item_id) is None

    def test_delete_twice(self, vault, clock):
        item_id = seal_text(vault, clock)
        assert vault.delete_item(item_id).success
        assert vault.delete_item(item_id).success

    def test_delete_continues_after_key_failure(self, vault, clock, key_store):
        item_id = seal_text(vault, clock)

        with patch.object(key_store, "delete", side_effect=KeyDeletionError("keyring locked")):
            deletion = vault.delete_item(item_id)

        assert deletion.status == DeletionStatus.PARTIAL
        assert deletion.record_deleted
        assert deletion.blobs_deleted
        assert not deletion.key_deleted
        assert len(deletion.errors) == 1
        assert not blob_dir(vault, item_id).exists()

    def test_delete_continues_after_record_failure(self, vault, clock, key_store):
        item_id = seal_text(vault, clock)

        with patch.object(vault._repository, "delete", side_effect=RepositoryWriteError("io")):
            deletion = vault.delete_item(item_id)

        assert deletion.status == DeletionStatus.PARTIAL
        assert deletion.key_deleted
        assert key_store.get(item_id) is None

    def test_deletion_result_to_dict(self, vault, clock):
        item_id = seal_text(vault, clock)
        data = vault.delete_item(item_id).to_dict()
        assert data["status"] == "COMPLETED"
        assert data["errors"] == []


# ============================================================================
# Listing and Notifications
# ============================================================================


class TestListing:
    """Tests for list views and search."""

    def test_locked_view_soonest_first(self, vault, clock):
        later = seal_text(vault, clock, hours=48)
        sooner = seal_text(vault, clock, hours=2)
        assert [i.item_id for i in vault.list_locked()] == [sooner, later]

    def test_unlocked_view_latest_first(self, vault, clock):
        first = seal_text(vault, clock, hours=1)
        second = seal_text(vault, clock, hours=2)
        clock.advance(hours=2)
        vault.process_unlocks()
        assert [i.item_id for i in vault.list_unlocked()] == [second, first]

    def test_search(self, vault, clock):
        seal_text(vault, clock)
        voice = vault.create_item(b"ogg", MediaType.VOICE, clock() + timedelta(days=1))
        assert [i.item_id for i in vault.search("voice memo")] == [voice.item_id]
        assert vault.search("nothing-matches") == []

    def test_time_remaining(self, vault, clock):
        item_id = seal_text(vault, clock, hours=50)
        assert vault.time_remaining(vault.get_item(item_id)) == "2d 2h"
        clock.advance(hours=50)
        vault.process_unlocks()
        assert vault.time_remaining(vault.get_item(item_id)) == "Unlocked"

    def test_statistics(self, vault, clock):
        seal_text(vault, clock)
        stats = vault.get_statistics()
        assert stats["key_store"] == "memory"
        assert stats["repository"]["total_items"] == 1
        assert stats["storage"]["total_items"] == 1


class TestNotifications:
    """Tests for unlock alerts."""

    def test_alert_scheduled_at_unlock_date(self, vault, clock, notifications):
        unlock = clock() + timedelta(days=3)
        result = vault.create_item(b"img", MediaType.IMAGE, unlock)

        alert = notifications.get(result.item_id)
        assert result.notification_scheduled
        assert alert.title == "Your time capsule is ready!"
        assert alert.body == "An Image has unlocked."
        assert alert.fire_at == unlock

    def test_custom_message_is_body(self, vault, clock, notifications):
        item_id = seal_text(vault, clock, custom_message="Open me!")
        assert notifications.get(item_id).body == "Open me!"

    def test_configured_title(self, temp_dir, clock):
        gateway = InMemoryNotificationGateway()
        config = VaultConfig(
            vault_path=temp_dir / "titled",
            key_store="memory",
            notification_title="Ready",
        )
        tv = TimeVault(config, key_store=MemoryKeyStore(), notifications=gateway, clock=clock)
        assert tv.initialize()
        try:
            item_id = seal_text(tv, clock)
            assert gateway.get(item_id).title == "Ready"
        finally:
            tv.shutdown()


# ============================================================================
# Lifecycle Tests
# ============================================================================


class TestVaultLifecycle:
    """Tests for startup scan and deferred tasks."""

    def test_startup_scan_unlocks_due_items(self, vault_config, key_store, clock):
        tv = TimeVault(vault_config, key_store=key_store, clock=clock)
        assert tv.initialize()
        item_id = seal_text(tv, clock, hours=1)
        tv.shutdown()

        clock.advance(hours=2)
        reopened = TimeVault(vault_config, key_store=key_store, clock=clock)
        assert reopened.initialize()
        try:
            assert reopened.startup_result.unlocked_ids == [item_id]
            assert not reopened.get_item(item_id).is_locked
        finally:
            reopened.shutdown()

    def test_startup_scan_disabled(self, vault_config, key_store, clock):
        vault_config.run_startup_scan = False
        tv = TimeVault(vault_config, key_store=key_store, clock=clock)
        assert tv.initialize()
        try:
            assert tv.startup_result is None
        finally:
            tv.shutdown()

    def test_handle_background_task(self, vault, clock):
        item_id = seal_text(vault, clock, hours=1)
        clock.advance(hours=1)
        outcomes = []

        result = vault.handle_background_task(DeferredTask(on_complete=outcomes.append))

        assert result.unlocked_ids == [item_id]
        assert outcomes == [True]

    def test_background_runner_started(self, vault_config, key_store, clock):
        vault_config.enable_background_unlock = True
        tv = TimeVault(vault_config, key_store=key_store, clock=clock)
        assert tv.initialize()
        try:
            assert tv.get_statistics()["background_unlock"] is True
        finally:
            tv.shutdown()

    def test_create_vault(self, vault_config):
        tv = create_vault(vault_config, key_store=MemoryKeyStore())
        try:
            assert tv.is_initialized
        finally:
            tv.shutdown()
        assert not tv.is_initialized
