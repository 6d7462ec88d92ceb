"""In-memory implementation of the checkpoint repository."""

from __future__ import annotations

from typing import Dict

from .models import WorkflowRun
from .repository import CheckpointRepository


class InMemoryCheckpointRepository(CheckpointRepository):
    """Store checkpoints in local memory.

    Useful for tests or one-shot runs. Data is not persisted across process
    restarts.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, str] = {}

    def load(self, run_id: str) -> WorkflowRun | None:
        raw = self._runs.get(run_id)
        return WorkflowRun.model_validate_json(raw) if raw is not None else None

    def save(self, run: WorkflowRun) -> None:
        # stored serialized so callers never share a mutable instance
        self._runs[run.run_id] = run.model_dump_json()

    def delete(self, run_id: str) -> bool:
        return self._runs.pop(run_id, None) is not None

    def list_runs(self) -> list[WorkflowRun]:
        return [WorkflowRun.model_validate_json(raw) for raw in self._runs.values()]
