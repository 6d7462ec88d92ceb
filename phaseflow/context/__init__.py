"""Atomic context store: named locks, locked key/value access and circuit breaker."""

from .circuit import CircuitBreakerState
from .locks import DirectoryLockManager, Lock
from .store import AtomicContextStore

__all__ = [
    "AtomicContextStore",
    "CircuitBreakerState",
    "DirectoryLockManager",
    "Lock",
]
