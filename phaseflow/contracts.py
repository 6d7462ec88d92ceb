"""Boundary contracts for the collaborators the engine drives."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from .persistence.models import WorkflowRun

logger = logging.getLogger(__name__)


class PhaseInstruction(BaseModel):
    """Next phase chosen by the decision function."""

    handler_id: str
    params: Dict[str, Any] = Field(default_factory=dict)


class RecoveryResult(BaseModel):
    recovered: bool
    detail: str = ""


@runtime_checkable
class PhaseHandlerProvider(Protocol):
    """Supplies the decision function and the phase handlers."""

    def decide_next(self, run: WorkflowRun) -> Optional[PhaseInstruction]:
        """Return the next phase, or ``None`` when no action is available."""

    def execute_handler(self, handler_id: str, params: Dict[str, Any]) -> Any:
        """Run one phase. Any exception is treated as a phase failure."""


@runtime_checkable
class RecoveryHandlerProvider(Protocol):
    """Attempts automated recovery of a failed run.

    Implementations must be idempotent and bounded in time; the engine does
    not impose its own recovery timeout.
    """

    def attempt_recovery(self, run_id: str) -> RecoveryResult:
        ...


class TrackingClient(Protocol):
    """Remote work-item tracker. Used by phase handlers only."""

    def get_item(self, item_id: str) -> Dict[str, Any]:
        ...

    def update_item(self, item_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def comment(self, item_id: str, body: str) -> None:
        ...


class NoopRecoveryProvider:
    """Recovery provider used when none is configured; never recovers."""

    def attempt_recovery(self, run_id: str) -> RecoveryResult:
        logger.warning(f"No recovery provider configured for {run_id}")
        return RecoveryResult(recovered=False, detail="no recovery provider configured")
