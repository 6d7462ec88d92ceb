"""Phaseflow: Resumable multi-phase pipeline orchestration."""

from .commits import CommitHandler
from .context import AtomicContextStore, DirectoryLockManager
from .contracts import PhaseInstruction, RecoveryResult
from .engine import RunResult, WorkflowEngine
from .health import check_health
from .itinerary import PhaseSpec, SequentialPhaseProvider
from .persistence import RunStatus, WorkflowRun, get_repository
from .statelog import VersionedStateLog

__version__ = "0.1.0"
__all__ = [
    "AtomicContextStore",
    "CommitHandler",
    "DirectoryLockManager",
    "PhaseInstruction",
    "PhaseSpec",
    "RecoveryResult",
    "RunResult",
    "RunStatus",
    "SequentialPhaseProvider",
    "VersionedStateLog",
    "WorkflowEngine",
    "WorkflowRun",
    "check_health",
    "get_repository",
]
