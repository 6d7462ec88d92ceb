"""Persistence layer for run checkpoints."""

from __future__ import annotations

from typing import Optional

from ..config import PhaseflowConfig, load_config
from ..context import AtomicContextStore
from .context import ContextCheckpointRepository
from .inmemory import InMemoryCheckpointRepository
from .models import PhaseMetric, RunStatus, WorkflowRun, run_id_for
from .repository import CheckpointRepository


def get_repository(
    store: Optional[AtomicContextStore] = None,
    config: Optional[PhaseflowConfig] = None,
    backend: Optional[str] = None,
) -> CheckpointRepository:
    """Factory function to obtain a checkpoint repository.

    ``backend`` is ``"context"`` (default) or ``"inmemory"``. The context
    backend stores checkpoints through ``store``, which is built from
    ``config`` when not supplied.
    """

    config = config or load_config()
    backend = (backend or "context").lower()

    if backend == "inmemory":
        return InMemoryCheckpointRepository()
    if backend == "context":
        store = store or AtomicContextStore.from_config(config)
        return ContextCheckpointRepository(store, prefix=config.workflow.checkpoint_prefix)
    raise ValueError(f"Unsupported checkpoint backend: {backend}")


__all__ = [
    "CheckpointRepository",
    "ContextCheckpointRepository",
    "InMemoryCheckpointRepository",
    "PhaseMetric",
    "RunStatus",
    "WorkflowRun",
    "get_repository",
    "run_id_for",
]
