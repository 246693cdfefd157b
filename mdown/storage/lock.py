"""
Single-instance lock for a working directory.
"""

import logging
import os
import time
from pathlib import Path
from typing import Callable

import psutil

from mdown import __version__
from mdown.exceptions import LockHeldError
from mdown.models.catalog import LockRecord

log = logging.getLogger(__name__)

DEFAULT_MAX_AGE = 24 * 60 * 60

# A marker that cannot be parsed may still be in the middle of being written.
UNREADABLE_GRACE = 5.0


class LockManager:
    """
    Guards a working directory with an exclusively created marker file.

    The marker holds the owner's pid and creation time. A marker whose owner
    is gone, whose age exceeds `max_age`, or whose content is unreadable counts
    as stale and is taken over.
    """

    def __init__(
        self,
        path: Path,
        clock: Callable[[], float] = time.time,
        max_age: float = DEFAULT_MAX_AGE,
        pid: int | None = None,
    ):
        self.path = path
        self._clock = clock
        self.max_age = max_age
        self.pid = pid if pid is not None else os.getpid()
        self._record: LockRecord | None = None

    @property
    def held(self) -> bool:
        return self._record is not None

    def read(self) -> LockRecord | None:
        """Returns the current marker's record, or None if there is no marker."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return LockRecord.from_json(raw, self.path)

    def is_stale(self, record: LockRecord | None) -> bool:
        if record is None:
            return True
        if self._clock() - record.created_at > self.max_age:
            return True
        return not psutil.pid_exists(record.pid)

    def _unreadable_for_long(self, path: Path) -> bool:
        try:
            return self._clock() - path.stat().st_mtime > UNREADABLE_GRACE
        except FileNotFoundError:
            return True

    def _inspect(self) -> tuple[LockRecord | None, bool]:
        """Returns the current record (None if absent or unreadable) and if stale."""
        try:
            record = self.read()
            return record, self.is_stale(record)
        except (ValueError, KeyError, OSError):
            return None, self._unreadable_for_long(self.path)

    def _take_over(self, inspected: LockRecord | None) -> bool:
        """
        Removes a stale marker under a short-lived takeover guard.

        The marker is re-inspected while the guard is held and removed only if
        it is still the stale marker seen by the caller, so a fresh marker
        written by a concurrent takeover is never deleted.
        """
        guard = self.path.with_name(self.path.name + ".takeover")
        try:
            os.close(os.open(guard, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644))
        except FileExistsError:
            if self._unreadable_for_long(guard):
                log.debug(f"Removing abandoned takeover guard {guard}")
                guard.unlink(missing_ok=True)
            return False
        try:
            current, stale = self._inspect()
            if not stale or not _same_owner(current, inspected):
                return False
            self._unlink()
            return True
        finally:
            guard.unlink(missing_ok=True)

    def _create(self) -> LockRecord:
        record = LockRecord(
            pid=self.pid, created_at=self._clock(), path=self.path, version=__version__
        )
        fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(record.to_json())
        return record

    def acquire(self) -> LockRecord:
        """
        Creates the marker. Exactly one of several concurrent callers succeeds.

        Raises:
            LockHeldError: If a live, fresh marker already exists.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(2):
            try:
                self._record = self._create()
                log.debug(f"Acquired lock {self.path} (pid {self.pid})")
                return self._record
            except FileExistsError:
                pass
            existing, stale = self._inspect()
            if attempt == 0 and stale and self._take_over(existing):
                log.warning(
                    "[yellow]Removed stale lock left by a previous run"
                    f" ({self.path.name}).[/yellow]"
                )
                continue
            owner = f"pid {existing.pid}" if existing else "another process"
            raise LockHeldError(
                f"Cannot run multiple instances: {self.path} is held by {owner}."
            )
        raise LockHeldError(f"Cannot run multiple instances: {self.path} is held.")

    def release(self) -> None:
        """Removes the marker if it is still the one this manager created."""
        if self._record is None:
            return
        try:
            current = self.read()
        except (ValueError, KeyError, OSError):
            current = None
        if (
            current is not None
            and current.pid == self._record.pid
            and current.created_at == self._record.created_at
        ):
            self._unlink()
            log.debug(f"Released lock {self.path}")
        self._record = None

    def force_delete(self) -> bool:
        """
        Removes the marker regardless of its owner.
        This can break a legitimately running instance.
        """
        existed = self._unlink()
        self._record = None
        return existed

    def _unlink(self) -> bool:
        try:
            self.path.unlink()
            return True
        except FileNotFoundError:
            return False

    def __enter__(self) -> "LockManager":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class SharedSessionLock:
    """
    Lock used by long-lived shared sessions. It takes no marker; the session is
    ended only through an explicit terminate call.
    """

    held = False

    def acquire(self) -> None:
        return None

    def release(self) -> None:
        return None

    def force_delete(self) -> bool:
        return False

    def __enter__(self) -> "SharedSessionLock":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


def _same_owner(a: LockRecord | None, b: LockRecord | None) -> bool:
    if a is None or b is None:
        return a is b
    return (a.pid, a.created_at) == (b.pid, b.created_at)
