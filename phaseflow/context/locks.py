"""Directory-creation based named locks with stale reclaim."""

from __future__ import annotations

import json
import logging
import os
import shutil
import socket
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional

from pydantic import BaseModel

from ..constants import (
    DEFAULT_LOCK_RETRIES,
    DEFAULT_MAX_WAIT_MS,
    DEFAULT_MIN_WAIT_MS,
    DEFAULT_STALE_AFTER_MS,
)
from ..errors import LockTimeout
from ..utils.retry import jittered_delay

logger = logging.getLogger(__name__)

HOLDER_FILE = "holder.json"


def _identity(st: os.stat_result) -> tuple:
    return (st.st_ino, st.st_mtime_ns)


class Lock(BaseModel):
    """A held lock. Exists only between acquire and release."""

    name: str
    path: Path
    holder_id: str
    acquired_at: datetime


class DirectoryLockManager:
    """Hands out named locks backed by ``mkdir`` in ``lock_dir``.

    ``mkdir`` either creates the directory or fails with ``FileExistsError``,
    which makes it an atomic create-if-absent across processes on one host.
    A lock directory older than ``stale_after_ms`` is considered abandoned and
    may be broken by an acquirer; breakers serialize on a ``.breaking`` guard
    so only one of them removes it.
    """

    def __init__(
        self,
        lock_dir: str | Path,
        stale_after_ms: int = DEFAULT_STALE_AFTER_MS,
        retries: int = DEFAULT_LOCK_RETRIES,
        min_wait_ms: int = DEFAULT_MIN_WAIT_MS,
        max_wait_ms: int = DEFAULT_MAX_WAIT_MS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.lock_dir = Path(lock_dir)
        self.stale_after_ms = stale_after_ms
        self.retries = retries
        self.min_wait_ms = min_wait_ms
        self.max_wait_ms = max_wait_ms
        self._sleep = sleep
        self._clock = clock
        self.lock_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, lock_name: str) -> Path:
        return self.lock_dir / lock_name

    def acquire(
        self,
        lock_name: str,
        stale_after_ms: Optional[int] = None,
        retries: Optional[int] = None,
        min_wait_ms: Optional[int] = None,
        max_wait_ms: Optional[int] = None,
    ) -> Lock:
        """Acquire ``lock_name`` or raise :class:`LockTimeout`.

        Stale locks are broken and retried immediately without consuming an
        attempt. Live locks, and stale locks another process is already
        breaking, cost one attempt plus a jittered wait.
        """
        stale_after_ms = self.stale_after_ms if stale_after_ms is None else stale_after_ms
        retries = self.retries if retries is None else retries
        min_wait_ms = self.min_wait_ms if min_wait_ms is None else min_wait_ms
        max_wait_ms = self.max_wait_ms if max_wait_ms is None else max_wait_ms
        if retries < 1:
            raise ValueError(f"retries must be at least 1, got {retries}")

        lock_path = self.path_for(lock_name)
        attempt = 0
        while attempt < retries:
            try:
                lock_path.mkdir()
            except FileExistsError:
                try:
                    seen = lock_path.stat()
                except FileNotFoundError:
                    # released between mkdir and stat
                    continue
                age_ms = (self._clock() - seen.st_mtime) * 1000
                if age_ms > stale_after_ms:
                    logger.warning(
                        f"Breaking stale lock {lock_name} (age {age_ms:.0f}ms > {stale_after_ms}ms)"
                    )
                    if self._break_stale(lock_name, seen, stale_after_ms):
                        continue
                delay_ms = jittered_delay(min_wait_ms, max_wait_ms)
                self._sleep(delay_ms / 1000)
                attempt += 1
                continue
            return self._claim(lock_name, lock_path)

        raise LockTimeout(lock_name, retries)

    def _break_stale(
        self, lock_name: str, seen: os.stat_result, stale_after_ms: int
    ) -> bool:
        """Remove the stale lock directory that ``seen`` was read from.

        Breakers serialize on ``<lock_name>.breaking``. Under that guard the
        lock is re-checked, moved aside to a unique tombstone and only then
        deleted, so a lock that was replaced since ``seen`` was taken is
        never removed. Returns ``False`` when this process lost the race.
        """
        lock_path = self.path_for(lock_name)
        guard = self.path_for(f"{lock_name}.breaking")
        try:
            guard.mkdir()
        except FileExistsError:
            self._clear_abandoned_guard(guard, stale_after_ms)
            logger.debug(f"Another process is breaking {lock_name}")
            return False

        try:
            try:
                current = lock_path.stat()
            except FileNotFoundError:
                return True
            age_ms = (self._clock() - current.st_mtime) * 1000
            if _identity(current) != _identity(seen) or age_ms <= stale_after_ms:
                logger.debug(f"Lock {lock_name} was replaced before it could be broken")
                return False

            tombstone = self.path_for(f"{lock_name}.stale-{uuid.uuid4().hex[:12]}")
            try:
                os.rename(lock_path, tombstone)
            except FileNotFoundError:
                return True
            if tombstone.stat().st_ino != seen.st_ino:
                # a fresh lock slipped in after the re-check; hand it back
                logger.warning(f"Lock {lock_name} changed while breaking it; restoring")
                self._restore(tombstone, lock_path)
                return False
            shutil.rmtree(tombstone)
            return True
        finally:
            try:
                guard.rmdir()
            except FileNotFoundError:
                pass

    def _clear_abandoned_guard(self, guard: Path, stale_after_ms: int) -> None:
        try:
            age_ms = (self._clock() - guard.stat().st_mtime) * 1000
        except FileNotFoundError:
            return
        if age_ms > stale_after_ms:
            logger.warning(f"Removing abandoned break guard {guard.name}")
            try:
                guard.rmdir()
            except FileNotFoundError:
                pass

    @staticmethod
    def _restore(tombstone: Path, lock_path: Path) -> None:
        try:
            lock_path.mkdir()
        except FileExistsError:
            logger.error(
                f"Could not restore {lock_path.name}: a new holder already owns it"
            )
            shutil.rmtree(tombstone)
            return
        for entry in tombstone.iterdir():
            os.rename(entry, lock_path / entry.name)
        tombstone.rmdir()

    def _claim(self, lock_name: str, lock_path: Path) -> Lock:
        lock = Lock(
            name=lock_name,
            path=lock_path,
            holder_id=f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:12]}",
            acquired_at=datetime.now(timezone.utc),
        )
        try:
            (lock_path / HOLDER_FILE).write_text(
                json.dumps(
                    {
                        "holder_id": lock.holder_id,
                        "acquired_at": lock.acquired_at.isoformat(),
                    }
                ),
                encoding="utf-8",
            )
        except OSError:
            shutil.rmtree(lock_path, ignore_errors=True)
            raise
        return lock

    def holder_of(self, lock_name: str) -> Optional[str]:
        """Return the holder id recorded in the lock directory, if any."""
        try:
            data = json.loads((self.path_for(lock_name) / HOLDER_FILE).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return data.get("holder_id")

    def release(self, lock: Lock) -> None:
        """Release ``lock`` unless it is no longer recorded as ours."""
        if not lock.path.exists():
            return
        holder = self.holder_of(lock.name)
        if holder != lock.holder_id:
            logger.warning(
                f"Lock {lock.name} is now held by {holder or 'an unclaimed acquirer'}; "
                "leaving it in place"
            )
            return
        try:
            shutil.rmtree(lock.path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error(f"Failed to release lock {lock.name}: {exc}")

    @contextmanager
    def hold(self, lock_name: str, **options: int) -> Iterator[Lock]:
        """Context manager form of acquire/release."""
        lock = self.acquire(lock_name, **options)
        try:
            yield lock
        finally:
            self.release(lock)
