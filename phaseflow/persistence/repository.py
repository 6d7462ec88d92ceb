"""Repository abstraction for run checkpoint persistence."""

from __future__ import annotations

from typing import Protocol

from .models import WorkflowRun


class CheckpointRepository(Protocol):
    """Protocol for checkpoint persistence backends."""

    def load(self, run_id: str) -> WorkflowRun | None:
        """Return the checkpoint for ``run_id`` if one exists."""

    def save(self, run: WorkflowRun) -> None:
        """Persist the full checkpoint, replacing any previous one."""

    def delete(self, run_id: str) -> bool:
        """Remove the checkpoint. Returns ``True`` when one existed."""

    def list_runs(self) -> list[WorkflowRun]:
        """Return all persisted checkpoints."""
