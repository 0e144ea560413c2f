"""
MindVault Item Repository

SQLite-based record store for vault item metadata:
- Point lookup, predicate queries and sorted listings
- Validated, atomic updates (forward-only status, immutable fields)
- Batches committed as a single transaction

Dates are stored as integer microseconds since the Unix epoch (UTC), so the
unlock cutoff comparison is exact. Every write runs inside BEGIN IMMEDIATE,
which takes SQLite's writer lock up front; concurrent writers to the same
record are serialized, and readers only ever see committed rows.
"""

import dataclasses
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from ..utils.timefmt import from_epoch_micros, to_epoch_micros, utcnow
from .exceptions import (
    InvalidTransitionError,
    RepositoryNotFoundError,
    RepositoryWriteError,
)
from .models import (
    ItemQuery,
    ItemSort,
    MediaType,
    UnlockStatus,
    VaultItem,
    media_types_matching,
)

logger = logging.getLogger(__name__)


Mutation = Callable[[VaultItem], Optional[VaultItem]]

_SCHEMA_V1 = [
    """
    CREATE TABLE IF NOT EXISTS items (
        item_id TEXT PRIMARY KEY,
        media_type TEXT NOT NULL,
        created_us INTEGER NOT NULL,
        unlock_us INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'locked',
        blob_ref TEXT NOT NULL,
        custom_message TEXT,
        metadata BLOB,
        thumbnail_ref TEXT,
        version INTEGER NOT NULL DEFAULT 1,
        updated_us INTEGER NOT NULL,
        CHECK (unlock_us >= created_us),
        CHECK (status IN ('locked', 'unlocked', 'archived'))
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_items_status_unlock ON items(status, unlock_us)",
    "CREATE INDEX IF NOT EXISTS idx_items_media_type ON items(media_type)",
    "CREATE INDEX IF NOT EXISTS idx_items_created ON items(created_us)",
    "INSERT INTO schema_version (version, applied_at) VALUES (1, datetime('now'))",
]


def check_mutation(before: VaultItem, after: VaultItem) -> None:
    """
    Validate a proposed change to an item.

    Raises:
        InvalidTransitionError: The change breaks an item invariant
    """
    for name in ("item_id", "media_type", "creation_date", "encrypted_blob_ref"):
        if getattr(before, name) != getattr(after, name):
            raise InvalidTransitionError(f"Field '{name}' is immutable", field=name)

    if not before.status.can_transition_to(after.status):
        raise InvalidTransitionError(
            f"Cannot move item {before.item_id} from "
            f"{before.status.value} back to {after.status.value}",
            field="status",
        )

    if after.unlock_date != before.unlock_date and before.status != UnlockStatus.LOCKED:
        raise InvalidTransitionError(
            f"Unlock date of item {before.item_id} can only change while locked",
            field="unlock_date",
        )

    if after.unlock_date < after.creation_date:
        raise InvalidTransitionError(
            "Unlock date cannot be earlier than creation date", field="unlock_date"
        )

    if before.metadata is not None and after.metadata != before.metadata:
        raise InvalidTransitionError("Metadata is write-once", field="metadata")

    if before.thumbnail_ref is not None and after.thumbnail_ref != before.thumbnail_ref:
        raise InvalidTransitionError("Thumbnail reference is write-once", field="thumbnail_ref")


class RepositoryBatch:
    """
    Operations sharing one open write transaction.

    Obtained from ItemRepository.batch(); the transaction commits when the
    with-block exits normally and rolls back on any exception.
    """

    def __init__(self, repository: "ItemRepository", conn: sqlite3.Connection):
        self._repository = repository
        self._conn = conn
        self.updated: List[str] = []

    def get(self, item_id: str) -> VaultItem:
        return self._repository._get_in(self._conn, item_id)

    def query(
        self,
        query: Optional[ItemQuery] = None,
        sort: ItemSort = ItemSort.UNLOCK_ASC,
    ) -> List[VaultItem]:
        return self._repository._query_in(self._conn, query, sort)

    def update(self, item_id: str, mutation: Mutation) -> VaultItem:
        item, changed = self._repository._update_in(self._conn, item_id, mutation)
        if changed:
            self.updated.append(item_id)
        return item


class ItemRepository:
    """
    Durable record store for vault items.

    The repository is the single source of truth for item status.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path, busy_timeout: float = 5.0):
        """
        Initialize item repository.

        Args:
            db_path: Path to SQLite database
            busy_timeout: Seconds to wait for another writer to finish
        """
        self._db_path = Path(db_path)
        self._busy_timeout = busy_timeout
        self._local = threading.local()
        self._lock = threading.RLock()
        self._conn_lock = threading.Lock()
        self._connections: List[sqlite3.Connection] = []

        self._initialize_database()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if getattr(self._local, "connection", None) is None:
            conn = sqlite3.connect(
                str(self._db_path),
                timeout=self._busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA synchronous=FULL")
            self._local.connection = conn
            with self._conn_lock:
                self._connections.append(conn)
        return self._local.connection

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction: BEGIN IMMEDIATE ... COMMIT, ROLLBACK on error."""
        conn = self._get_connection()
        with self._lock:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    def _initialize_database(self) -> None:
        """Initialize database schema."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # Persistent; readers never block the writer
        self._get_connection().execute("PRAGMA journal_mode=WAL")

        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
            """
            )

            cursor = conn.execute("SELECT MAX(version) FROM schema_version")
            current_version = cursor.fetchone()[0] or 0

            if current_version < self.SCHEMA_VERSION:
                self._apply_migrations(conn, current_version)

    def _apply_migrations(self, conn: sqlite3.Connection, from_version: int) -> None:
        """Apply database migrations."""
        if from_version < 1:
            for statement in _SCHEMA_V1:
                conn.execute(statement)

        logger.info(f"Item database migrated to version {self.SCHEMA_VERSION}")

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def insert(self, item: VaultItem) -> VaultItem:
        """
        Insert a new item record.

        Returns:
            The stored item (version set to 1)

        Raises:
            InvalidTransitionError: Unlock date precedes creation date
            RepositoryWriteError: Duplicate id or database failure
        """
        if item.unlock_date < item.creation_date:
            raise InvalidTransitionError(
                "Unlock date cannot be earlier than creation date", field="unlock_date"
            )

        stored = dataclasses.replace(item, version=1)
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO items (
                        item_id, media_type, created_us, unlock_us, status,
                        blob_ref, custom_message, metadata, thumbnail_ref,
                        version, updated_us
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    self._item_params(stored),
                )
        except sqlite3.IntegrityError as e:
            raise RepositoryWriteError(
                f"Item already exists or violates constraints: {item.item_id}",
                item_id=item.item_id,
                original_error=e,
            ) from e
        except sqlite3.Error as e:
            raise RepositoryWriteError(
                f"Insert failed: {e}", item_id=item.item_id, original_error=e
            ) from e

        logger.info(
            f"Inserted item: {item.item_id} "
            f"(type={item.media_type.value}, unlock={item.unlock_date.isoformat()})"
        )
        return stored

    def get(self, item_id: str) -> VaultItem:
        """
        Get an item by id.

        Raises:
            RepositoryNotFoundError: No such item
        """
        return self._get_in(self._get_connection(), item_id)

    def exists(self, item_id: str) -> bool:
        conn = self._get_connection()
        cursor = conn.execute("SELECT 1 FROM items WHERE item_id = ?", (item_id,))
        return cursor.fetchone() is not None

    def query(
        self,
        query: Optional[ItemQuery] = None,
        sort: ItemSort = ItemSort.UNLOCK_ASC,
    ) -> List[VaultItem]:
        """
        Query items matching a predicate.

        Args:
            query: Predicate (None for all items)
            sort: Result ordering

        Returns:
            Matching items
        """
        return self._query_in(self._get_connection(), query, sort)

    def count(self, query: Optional[ItemQuery] = None) -> int:
        """Count items matching a predicate."""
        where, params = self._build_where(query)
        if where is None:
            return 0
        conn = self._get_connection()
        cursor = conn.execute(f"SELECT COUNT(*) FROM items WHERE {where}", params)
        return cursor.fetchone()[0]

    def update(self, item_id: str, mutation: Mutation) -> VaultItem:
        """
        Atomically apply a mutation to one item.

        The mutation receives a copy of the current record and either edits
        it in place or returns a replacement. The result is validated before
        it is written; a mutation that changes nothing writes nothing.

        Raises:
            RepositoryNotFoundError: No such item
            InvalidTransitionError: The change breaks an item invariant
            RepositoryWriteError: Database failure (nothing applied)
        """
        try:
            with self._transaction() as conn:
                item, changed = self._update_in(conn, item_id, mutation)
        except sqlite3.Error as e:
            raise RepositoryWriteError(
                f"Update failed: {e}", item_id=item_id, original_error=e
            ) from e

        if changed:
            logger.debug(f"Updated item: {item_id} (version={item.version})")
        return item

    def delete(self, item_id: str) -> bool:
        """
        Delete an item record.

        Returns:
            True if a record was removed

        Raises:
            RepositoryWriteError: Database failure
        """
        try:
            with self._transaction() as conn:
                cursor = conn.execute("DELETE FROM items WHERE item_id = ?", (item_id,))
                removed = cursor.rowcount > 0
        except sqlite3.Error as e:
            raise RepositoryWriteError(
                f"Delete failed: {e}", item_id=item_id, original_error=e
            ) from e

        if removed:
            logger.info(f"Deleted item record: {item_id}")
        return removed

    @contextmanager
    def batch(self) -> Iterator[RepositoryBatch]:
        """
        Group reads and updates into one transaction with a single commit.

        Any exception raised inside the block rolls back every change made
        in it. Database failures surface as RepositoryWriteError.
        """
        try:
            with self._transaction() as conn:
                yield RepositoryBatch(self, conn)
        except sqlite3.Error as e:
            raise RepositoryWriteError(f"Batch commit failed: {e}", original_error=e) from e

    def get_statistics(self) -> Dict[str, Any]:
        """Get repository statistics."""
        conn = self._get_connection()

        stats: Dict[str, Any] = {}

        cursor = conn.execute("SELECT COUNT(*) FROM items")
        stats["total_items"] = cursor.fetchone()[0]

        cursor = conn.execute("SELECT status, COUNT(*) FROM items GROUP BY status")
        stats["items_by_status"] = {row[0]: row[1] for row in cursor.fetchall()}

        cursor = conn.execute("SELECT media_type, COUNT(*) FROM items GROUP BY media_type")
        stats["items_by_media_type"] = {row[0]: row[1] for row in cursor.fetchall()}

        cursor = conn.execute("SELECT MIN(unlock_us) FROM items WHERE status = 'locked'")
        next_unlock = cursor.fetchone()[0]
        stats["next_unlock"] = (
            from_epoch_micros(next_unlock).isoformat() if next_unlock is not None else None
        )

        return stats

    def close(self) -> None:
        """Close all database connections opened by this repository."""
        with self._conn_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    # -------------------------------------------------------------------------
    # Connection-scoped helpers (shared with RepositoryBatch)
    # -------------------------------------------------------------------------

    def _get_in(self, conn: sqlite3.Connection, item_id: str) -> VaultItem:
        cursor = conn.execute("SELECT * FROM items WHERE item_id = ?", (item_id,))
        row = cursor.fetchone()
        if row is None:
            raise RepositoryNotFoundError(item_id)
        return self._row_to_item(row)

    def _query_in(
        self,
        conn: sqlite3.Connection,
        query: Optional[ItemQuery],
        sort: ItemSort,
    ) -> List[VaultItem]:
        where, params = self._build_where(query)
        if where is None:
            return []

        sql = (
            f"SELECT * FROM items WHERE {where} "
            f"ORDER BY {sort.column} {sort.direction}, item_id ASC"
        )
        if query is not None and query.limit is not None:
            sql += " LIMIT ?"
            params.append(query.limit)

        cursor = conn.execute(sql, params)
        return [self._row_to_item(row) for row in cursor.fetchall()]

    def _update_in(
        self,
        conn: sqlite3.Connection,
        item_id: str,
        mutation: Mutation,
    ) -> Tuple[VaultItem, bool]:
        before = self._get_in(conn, item_id)
        draft = dataclasses.replace(before)
        result = mutation(draft)
        after = result if result is not None else draft

        if after == before:
            return before, False

        check_mutation(before, after)

        after = dataclasses.replace(after, version=before.version + 1)
        cursor = conn.execute(
            """
            UPDATE items
            SET unlock_us = ?, status = ?, custom_message = ?, metadata = ?,
                thumbnail_ref = ?, version = ?, updated_us = ?
            WHERE item_id = ? AND version = ?
        """,
            (
                to_epoch_micros(after.unlock_date),
                after.status.value,
                after.custom_message,
                after.metadata,
                after.thumbnail_ref,
                after.version,
                to_epoch_micros(utcnow()),
                item_id,
                before.version,
            ),
        )
        if cursor.rowcount != 1:
            raise RepositoryWriteError(
                f"Concurrent modification of item: {item_id}", item_id=item_id
            )
        return after, True

    @staticmethod
    def _build_where(query: Optional[ItemQuery]) -> Tuple[Optional[str], List[Any]]:
        """
        Translate a predicate into a WHERE clause.

        Returns (None, []) when the predicate cannot match anything.
        """
        clauses = ["1=1"]
        params: List[Any] = []

        if query is None:
            return clauses[0], params

        if query.status is not None:
            clauses.append("status = ?")
            params.append(query.status.value)

        if query.unlock_before is not None:
            clauses.append("unlock_us <= ?")
            params.append(to_epoch_micros(query.unlock_before))

        if query.media_type is not None:
            clauses.append("media_type = ?")
            params.append(query.media_type.value)

        if query.search_text:
            matches = media_types_matching(query.search_text)
            if not matches:
                return None, []
            placeholders = ",".join("?" * len(matches))
            clauses.append(f"media_type IN ({placeholders})")
            params.extend(m.value for m in matches)

        return " AND ".join(clauses), params

    @staticmethod
    def _item_params(item: VaultItem) -> Tuple[Any, ...]:
        return (
            item.item_id,
            item.media_type.value,
            to_epoch_micros(item.creation_date),
            to_epoch_micros(item.unlock_date),
            item.status.value,
            item.encrypted_blob_ref,
            item.custom_message,
            item.metadata,
            item.thumbnail_ref,
            item.version,
            to_epoch_micros(utcnow()),
        )

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> VaultItem:
        """Convert database row to VaultItem."""
        metadata = row["metadata"]
        return VaultItem(
            item_id=row["item_id"],
            media_type=MediaType(row["media_type"]),
            creation_date=from_epoch_micros(row["created_us"]),
            unlock_date=from_epoch_micros(row["unlock_us"]),
            encrypted_blob_ref=row["blob_ref"],
            status=UnlockStatus(row["status"]),
            custom_message=row["custom_message"],
            metadata=bytes(metadata) if metadata is not None else None,
            thumbnail_ref=row["thumbnail_ref"],
            version=row["version"],
        )
