"""Locked key/value access to shared context files."""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, List, Optional, TypeVar

from ..config import CircuitConfig, PhaseflowConfig
from ..constants import WORKFLOW_COMPONENT
from ..statelog import VersionedStateLog, normalize_key
from .circuit import CircuitBreakerState
from .locks import DirectoryLockManager, Lock

T = TypeVar("T")

logger = logging.getLogger(__name__)

CIRCUIT_PREFIX = "circuit-breaker"


class AtomicContextStore:
    """Reads and writes named context blobs under per-key locks.

    Files live under ``root_dir``. When a :class:`VersionedStateLog` is
    attached, writes are also appended to it and reads prefer it, falling
    back to the file for keys written before the log was enabled.
    """

    def __init__(
        self,
        root_dir: str | Path,
        locks: Optional[DirectoryLockManager] = None,
        state_log: Optional[VersionedStateLog] = None,
        circuit: Optional[CircuitConfig] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.root_dir = Path(root_dir)
        self.locks = locks or DirectoryLockManager(self.root_dir / ".locks")
        self.state_log = state_log
        self.circuit = circuit or CircuitConfig()
        self._clock = clock

    @classmethod
    def from_config(cls, config: PhaseflowConfig) -> "AtomicContextStore":
        root = Path(config.root_dir)
        lock_dir = Path(config.locks.lock_dir)
        if not lock_dir.is_absolute():
            lock_dir = root / lock_dir
        locks = DirectoryLockManager(
            lock_dir,
            stale_after_ms=config.locks.stale_after_ms,
            retries=config.locks.retries,
            min_wait_ms=config.locks.min_wait_ms,
            max_wait_ms=config.locks.max_wait_ms,
        )
        state_log = None
        if config.state_log.enabled:
            state_log = VersionedStateLog(root, ref_name=config.state_log.ref_name)
        store = cls(root, locks=locks, state_log=state_log, circuit=config.circuit)
        if state_log is not None:
            with store.lock(store.state_ref_lock_name()):
                state_log.init()
        return store

    # ------------------------------------------------------------------
    # Locking
    @staticmethod
    def lock_name_for(key: str) -> str:
        """Derive a filesystem-safe lock name from a resource key."""
        return hashlib.md5(normalize_key(key).encode("utf-8")).hexdigest() + ".lock"

    def state_ref_lock_name(self) -> str:
        ref = self.state_log.ref_name if self.state_log else "state"
        return f"ref-{ref}.lock"

    def acquire(self, lock_name: str, **options: int) -> Lock:
        return self.locks.acquire(lock_name, **options)

    def release(self, lock: Lock) -> None:
        self.locks.release(lock)

    @contextmanager
    def lock(self, lock_name: str, **options: int) -> Iterator[Lock]:
        with self.locks.hold(lock_name, **options) as held:
            yield held

    def with_lock(self, lock_name: str, operation: Callable[[], T], **options: int) -> T:
        """Run ``operation`` while holding ``lock_name``; always release."""
        with self.lock(lock_name, **options):
            return operation()

    # ------------------------------------------------------------------
    # Key/value access
    @staticmethod
    def compute_hash(content: bytes) -> str:
        return hashlib.sha256(content).hexdigest()

    def path_for(self, key: str) -> Path:
        return self.root_dir / normalize_key(key)

    def read(self, key: str) -> Optional[bytes]:
        return self.with_lock(self.lock_name_for(key), lambda: self._read_unlocked(key))

    def write(self, key: str, content: bytes | str) -> str:
        """Persist ``content`` at ``key`` and return its sha256 hex digest."""
        data = content.encode("utf-8") if isinstance(content, str) else bytes(content)
        return self.with_lock(
            self.lock_name_for(key), lambda: self._write_unlocked(key, data)
        )

    def delete(self, key: str) -> bool:
        """Remove ``key``. Returns ``True`` if anything was removed."""
        return self.with_lock(self.lock_name_for(key), lambda: self._delete_unlocked(key))

    def list_keys(self, prefix: str = "") -> List[str]:
        """Keys stored under ``prefix`` (files and, if enabled, the state log)."""
        keys = set()
        base = self.root_dir / prefix if prefix else self.root_dir
        if base.is_dir():
            for path in base.rglob("*"):
                if path.is_file() and not path.name.startswith(".phaseflow-tmp-"):
                    rel = path.relative_to(self.root_dir)
                    # .git, lock and report directories are not context
                    if rel.parts[0].startswith(".") or rel.parts[0] == self.locks.lock_dir.name:
                        continue
                    keys.add(rel.as_posix())
        if self.state_log is not None:
            normalized = prefix.rstrip("/") + "/" if prefix else ""
            keys.update(k for k in self.state_log.list() if k.startswith(normalized))
        return sorted(keys)

    def _read_unlocked(self, key: str) -> Optional[bytes]:
        if self.state_log is not None:
            content = self.state_log.read(key)
            if content is not None:
                return content
        path = self.path_for(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def _write_unlocked(self, key: str, data: bytes) -> str:
        if self.state_log is not None:
            with self.lock(self.state_ref_lock_name()):
                self.state_log.write(key, data)

        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".phaseflow-tmp-", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        return self.compute_hash(data)

    def _delete_unlocked(self, key: str) -> bool:
        removed = False
        if self.state_log is not None:
            with self.lock(self.state_ref_lock_name()):
                removed = self.state_log.remove(key) is not None
        path = self.path_for(key)
        if path.exists():
            path.unlink()
            removed = True
        return removed

    # ------------------------------------------------------------------
    # Circuit breaker
    @staticmethod
    def _circuit_key(component: str) -> str:
        return f"{CIRCUIT_PREFIX}/{component}.json"

    def _load_circuit(self, key: str, component: str) -> CircuitBreakerState:
        raw = self._read_unlocked(key)
        if raw:
            try:
                return CircuitBreakerState.model_validate_json(raw)
            except ValueError:
                logger.warning(f"Ignoring unreadable circuit breaker state at {key}")
        return CircuitBreakerState(component=component)

    def circuit_state(self, component: str = WORKFLOW_COMPONENT) -> CircuitBreakerState:
        key = self._circuit_key(component)
        return self.with_lock(
            self.lock_name_for(key), lambda: self._load_circuit(key, component)
        )

    def record_failure(self, component: str = WORKFLOW_COMPONENT) -> CircuitBreakerState:
        key = self._circuit_key(component)

        def _record() -> CircuitBreakerState:
            state = self._load_circuit(key, component)
            was_open = state.is_open
            state.record_failure(
                self._clock(),
                threshold=self.circuit.threshold,
                window_seconds=self.circuit.window_seconds,
            )
            self._write_unlocked(key, state.model_dump_json(indent=2).encode("utf-8"))
            if state.is_open and not was_open:
                logger.error(
                    f"Circuit breaker for {component} opened after "
                    f"{state.failure_count} failures"
                )
            return state

        return self.with_lock(self.lock_name_for(key), _record)

    def reset_failure(self, component: str = WORKFLOW_COMPONENT) -> CircuitBreakerState:
        key = self._circuit_key(component)
        state = CircuitBreakerState(component=component)
        self.write(key, state.model_dump_json(indent=2))
        return state

    def is_circuit_open(self, component: str = WORKFLOW_COMPONENT) -> bool:
        return self.circuit_state(component).is_open
