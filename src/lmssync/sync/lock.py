"""
In-process single-slot lock for sync runs.

At most one sync (or one chain of syncs) runs at a time. A slot older than
stale_after is presumed to belong to a crashed run and is cleared by the next
acquire() without operator action. Staleness is measured on an injectable
monotonic clock so tests can move time forward.

Clearing a slot (stale or forced) cancels its token; the run that owned it
stops after its current page. Releasing a slot that has already been
superseded does nothing, so a late finisher cannot free a newer run's lock.

Single process only: two service instances each have their own lock.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from lmssync.errors import SyncConflictError
from lmssync.timeutil import utcnow

logger = logging.getLogger(__name__)


class CancelToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class LockSlot:
    type: str
    mode: str
    acquired_at: float  # monotonic
    started_at: datetime = field(default_factory=utcnow)
    status: str = "running"
    progress: Dict[str, Any] = field(default_factory=dict)
    cancel_token: CancelToken = field(default_factory=CancelToken)

    def snapshot(self, now: Optional[float] = None) -> Dict[str, Any]:
        snap = {
            "type": self.type,
            "mode": self.mode,
            "status": self.status,
            "startedAt": self.started_at.isoformat() + "Z",
            "progress": dict(self.progress),
        }
        if now is not None:
            snap["elapsedSeconds"] = round(now - self.acquired_at, 1)
        return snap


class SyncLock:
    def __init__(self, stale_after: float = 30 * 60, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            stale_after: Seconds after which a held slot may be taken over.
            clock: Monotonic time source.
        """
        self.stale_after = stale_after
        self._clock = clock
        self._mutex = threading.Lock()
        self._slot: Optional[LockSlot] = None

    def _is_stale(self, slot: LockSlot) -> bool:
        return self._clock() - slot.acquired_at >= self.stale_after

    def _clear_if_stale(self) -> None:
        slot = self._slot
        if slot is not None and self._is_stale(slot):
            logger.warning(
                "Clearing stale %s sync lock held for %.0fs",
                slot.type, self._clock() - slot.acquired_at,
            )
            slot.cancel_token.cancel()
            self._slot = None

    def acquire(self, entity_type: str, mode: str = "full") -> LockSlot:
        """Occupy the slot.

        Raises:
            SyncConflictError: if a non-stale run holds the slot. The error
                carries a snapshot of that run.
        """
        with self._mutex:
            self._clear_if_stale()
            if self._slot is not None:
                raise SyncConflictError(self._slot.snapshot(self._clock()))
            self._slot = LockSlot(type=entity_type, mode=mode, acquired_at=self._clock())
            logger.info("Sync lock acquired for %s (%s)", entity_type, mode)
            return self._slot

    def release(self, slot: LockSlot) -> bool:
        """Empty the slot if it is still held by slot. Returns True if released."""
        with self._mutex:
            if self._slot is not slot:
                logger.info("Sync lock for %s already cleared, nothing to release", slot.type)
                return False
            self._slot = None
            logger.info("Sync lock released for %s", slot.type)
            return True

    def force_clear(self) -> Optional[Dict[str, Any]]:
        """Empty the slot unconditionally and cancel its run.

        Returns a snapshot of the cleared slot, or None if it was empty.
        """
        with self._mutex:
            slot = self._slot
            if slot is None:
                return None
            slot.cancel_token.cancel()
            self._slot = None
            logger.warning("Sync lock for %s force-cleared", slot.type)
            return slot.snapshot(self._clock())

    def current(self) -> Optional[LockSlot]:
        with self._mutex:
            self._clear_if_stale()
            return self._slot

    def snapshot(self) -> Optional[Dict[str, Any]]:
        slot = self.current()
        return slot.snapshot(self._clock()) if slot is not None else None

    @property
    def locked(self) -> bool:
        return self.current() is not None
