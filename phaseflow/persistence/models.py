"""Data models for persisted run checkpoints."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..errors import InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    NEW = "new"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMEOUT = "timeout"
    MAX_STEPS = "max_steps"
    FAILED = "failed"
    RECOVERED = "recovered"
    RECOVERY_FAILED = "recovery_failed"

    @property
    def is_terminal(self) -> bool:
        return self not in (RunStatus.NEW, RunStatus.RUNNING)


_TRANSITIONS = {
    RunStatus.NEW: {RunStatus.RUNNING},
    RunStatus.RUNNING: {
        RunStatus.RUNNING,
        RunStatus.COMPLETED,
        RunStatus.TIMEOUT,
        RunStatus.MAX_STEPS,
        RunStatus.FAILED,
    },
    RunStatus.FAILED: {RunStatus.RECOVERED, RunStatus.RECOVERY_FAILED},
}


class PhaseMetric(BaseModel):
    """Outcome of the most recent execution of one phase."""

    status: str
    duration_ms: int = 0
    error: Optional[str] = None
    completed_at: Optional[datetime] = None
    output: Optional[Any] = None


def run_id_for(target_id: str | int) -> str:
    """Derive the run id for a target work item."""
    return f"run-{target_id}"


class WorkflowRun(BaseModel):
    """Persisted checkpoint of one pipeline run."""

    run_id: str
    target_id: str
    status: RunStatus = RunStatus.NEW
    step_count: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    attempt_started_at: datetime = Field(default_factory=utcnow)
    last_checkpoint_at: Optional[datetime] = None
    resume_count: int = 0
    phase_metrics: Dict[str, PhaseMetric] = Field(default_factory=dict)
    terminal_error: Optional[str] = None
    recovery_error: Optional[str] = None

    def transition(self, status: RunStatus, force: bool = False) -> None:
        """Move to ``status``; only a forced resume may leave a terminal state."""
        if force and self.status.is_terminal and status is RunStatus.RUNNING:
            self.status = status
            return
        if status not in _TRANSITIONS.get(self.status, set()):
            raise InvalidTransition(
                f"Run {self.run_id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status

    def completed_phases(self) -> list[str]:
        return [
            name
            for name, metric in self.phase_metrics.items()
            if metric.status == "completed"
        ]
