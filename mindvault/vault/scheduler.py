"""
MindVault Unlock Scheduler

Transitions locked items whose unlock time has passed to unlocked:

1. Capture the current time once
2. Query locked items with unlock date at or before that time
3. Mark each one unlocked
4. Commit all changes as one batch

The scan runs synchronously at startup and from recurring deferred tasks.
A task that expires mid-scan rolls the batch back, so either every due item
is unlocked or none is. Re-running is harmless: already-unlocked items no
longer match the query.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..utils.timefmt import ensure_utc, utcnow
from .exceptions import RepositoryError, UnlockCancelledError
from .index import ItemRepository
from .models import ItemQuery, ItemSort, UnlockStatus, VaultItem

logger = logging.getLogger(__name__)


UNLOCK_TASK_IDENTIFIER = "com.mindvault.unlock"

Clock = Callable[[], datetime]


@dataclass
class UnlockRunResult:
    """Outcome of one unlock scan."""

    now: datetime
    unlocked_ids: List[str] = field(default_factory=list)
    success: bool = True
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def count(self) -> int:
        return len(self.unlocked_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "now": self.now.isoformat(),
            "unlocked_ids": list(self.unlocked_ids),
            "success": self.success,
            "cancelled": self.cancelled,
            "error": self.error,
        }


class DeferredTask:
    """
    A unit of deferred background work granted by the host.

    The host may revoke the task at any time by calling expire(); the task
    is also considered expired once its deadline passes. Completion is
    reported at most once, whichever of the worker or the expiration handler
    gets there first.
    """

    def __init__(
        self,
        identifier: str = UNLOCK_TASK_IDENTIFIER,
        deadline: Optional[datetime] = None,
        on_complete: Optional[Callable[[bool], None]] = None,
        clock: Clock = utcnow,
    ):
        self.identifier = identifier
        self.deadline = ensure_utc(deadline) if deadline is not None else None
        self.expiration_handler: Optional[Callable[[], None]] = None

        self._on_complete = on_complete
        self._clock = clock
        self._expired = threading.Event()
        self._lock = threading.Lock()
        self._completed = False
        self._success: Optional[bool] = None

    @classmethod
    def with_budget(
        cls,
        seconds: float,
        identifier: str = UNLOCK_TASK_IDENTIFIER,
        on_complete: Optional[Callable[[bool], None]] = None,
    ) -> "DeferredTask":
        """Task whose deadline is the given number of seconds from now."""
        return cls(
            identifier=identifier,
            deadline=utcnow() + timedelta(seconds=seconds),
            on_complete=on_complete,
        )

    @property
    def is_expired(self) -> bool:
        if self._expired.is_set():
            return True
        return self.deadline is not None and self._clock() >= self.deadline

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def success(self) -> Optional[bool]:
        return self._success

    def expire(self) -> None:
        """Revoke the task and run its expiration handler."""
        if self._expired.is_set():
            return
        self._expired.set()
        logger.warning(f"Deferred task expired: {self.identifier}")
        if self.expiration_handler is not None:
            self.expiration_handler()

    def set_completed(self, success: bool) -> bool:
        """
        Report completion to the host.

        Returns:
            False if completion had already been reported
        """
        with self._lock:
            if self._completed:
                return False
            self._completed = True
            self._success = success

        logger.debug(f"Deferred task {self.identifier} completed (success={success})")
        if self._on_complete is not None:
            self._on_complete(success)
        return True


def _mark_unlocked(item: VaultItem) -> None:
    item.status = UnlockStatus.UNLOCKED


class UnlockScheduler:
    """Runs unlock scans against the item repository."""

    def __init__(self, repository: ItemRepository, clock: Clock = utcnow):
        """
        Initialize unlock scheduler.

        Args:
            repository: Item repository (source of truth for status)
            clock: Returns the current UTC time
        """
        self._repository = repository
        self._clock = clock

    def run(
        self,
        now: Optional[datetime] = None,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> UnlockRunResult:
        """
        Unlock every due item in a single batch.

        Args:
            now: Cutoff time (defaults to the clock, read once)
            cancel_check: Returns True when the scan must be abandoned

        Returns:
            UnlockRunResult; on failure or cancellation nothing was applied
        """
        now = ensure_utc(now) if now is not None else self._clock()
        result = UnlockRunResult(now=now)
        unlocked: List[str] = []

        try:
            with self._repository.batch() as batch:
                due = batch.query(ItemQuery.due_for_unlock(now), ItemSort.UNLOCK_ASC)
                for item in due:
                    if cancel_check is not None and cancel_check():
                        raise UnlockCancelledError(pending=len(due))
                    batch.update(item.item_id, _mark_unlocked)
                    unlocked.append(item.item_id)

                if cancel_check is not None and cancel_check():
                    raise UnlockCancelledError(pending=len(due))
        except UnlockCancelledError as e:
            logger.warning(f"Unlock scan rolled back: {e}")
            result.success = False
            result.cancelled = True
            result.error = str(e)
            return result
        except RepositoryError as e:
            logger.error(f"Unlock scan failed: {e}")
            result.success = False
            result.error = str(e)
            return result

        result.unlocked_ids = unlocked
        if unlocked:
            logger.info(f"Unlocked {len(unlocked)} item(s) at {now.isoformat()}")
        return result

    def run_at_startup(self) -> UnlockRunResult:
        """Synchronous scan performed when the vault opens."""
        result = self.run()
        if not result.success:
            logger.warning(f"Startup unlock scan did not complete: {result.error}")
        return result

    def handle_deferred_task(self, task: DeferredTask) -> UnlockRunResult:
        """
        Run a scan on behalf of a host deferred task.

        Expiration reports failure immediately and makes the scan roll back.
        If the task expires after the batch has committed but before
        completion is reported, the host is told the run failed even though
        the unlocks were applied. The next scan finds nothing left to do for
        those items, so the report only costs a redundant run.
        """

        def on_expire() -> None:
            task.set_completed(False)

        task.expiration_handler = on_expire

        if task.is_expired:
            task.set_completed(False)
            return UnlockRunResult(
                now=self._clock(),
                success=False,
                cancelled=True,
                error="Task expired before the scan started",
            )

        result = self.run(cancel_check=lambda: task.is_expired)
        task.set_completed(result.success)
        return result


class BackgroundUnlockRunner:
    """
    In-process stand-in for the host's recurring deferred execution.

    Every interval a DeferredTask with the configured time budget is handed
    to the scheduler.
    """

    def __init__(
        self,
        scheduler: UnlockScheduler,
        interval: float = 3600,  # 1 hour
        time_budget: float = 30,
    ):
        """
        Initialize background runner.

        Args:
            scheduler: Unlock scheduler instance
            interval: Seconds between scans
            time_budget: Seconds each scan may run before it expires
        """
        self._scheduler = scheduler
        self._interval = interval
        self._time_budget = time_budget

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._last_result: Optional[UnlockRunResult] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_result(self) -> Optional[UnlockRunResult]:
        return self._last_result

    def start(self) -> None:
        """Start background unlock scans."""
        if self._running:
            return

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name=UNLOCK_TASK_IDENTIFIER, daemon=True
        )
        self._thread.start()
        logger.info(f"Background unlock runner started (interval={self._interval}s)")

    def stop(self) -> None:
        """Stop background unlock scans."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("Background unlock runner stopped")

    def trigger_now(self) -> UnlockRunResult:
        """Run one deferred scan immediately in the calling thread."""
        task = DeferredTask.with_budget(self._time_budget)
        result = self._scheduler.handle_deferred_task(task)
        self._last_result = result
        return result

    def _run_loop(self) -> None:
        """Main runner loop."""
        while not self._stop_event.wait(self._interval):
            try:
                self.trigger_now()
            except Exception as e:
                logger.error(f"Background unlock error: {e}")
