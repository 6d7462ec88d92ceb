"""Watchdog check over persisted checkpoints."""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from pydantic import BaseModel, Field

from .config import PhaseflowConfig
from .constants import WORKFLOW_COMPONENT
from .context import AtomicContextStore
from .persistence import CheckpointRepository
from .persistence.models import RunStatus, utcnow

logger = logging.getLogger(__name__)


class HealthVerdict(str, Enum):
    HEALTHY = "healthy"
    IDLE = "idle"
    RESUME_NEEDED = "resume_needed"
    CIRCUIT_OPEN = "circuit_open"


class HealthReport(BaseModel):
    verdict: HealthVerdict
    run_ids: List[str] = Field(default_factory=list)
    detail: str = ""


def check_health(
    store: AtomicContextStore,
    repository: CheckpointRepository,
    config: Optional[PhaseflowConfig] = None,
    clock: Callable[[], datetime] = utcnow,
) -> HealthReport:
    """Classify the current state of all runs.

    A ``RUNNING`` checkpoint older than ``stall_after_seconds`` counts as a
    stalled run: it is reported for resumption and recorded as a circuit
    breaker failure, so a run that keeps stalling eventually opens the
    breaker.
    """
    config = config or PhaseflowConfig()
    if store.is_circuit_open(WORKFLOW_COMPONENT):
        logger.error("Circuit breaker is open; manual intervention required")
        return HealthReport(
            verdict=HealthVerdict.CIRCUIT_OPEN,
            detail="circuit breaker is open",
        )

    runs = repository.list_runs()
    if not runs:
        logger.info("No checkpoints found")
        return HealthReport(verdict=HealthVerdict.IDLE, detail="no checkpoints")

    now = clock()
    stalled: List[str] = []
    for run in runs:
        if run.status is not RunStatus.RUNNING:
            continue
        last = run.last_checkpoint_at or run.started_at
        age = (now - last).total_seconds()
        if age > config.workflow.stall_after_seconds:
            logger.warning(
                f"Run {run.run_id} stalled: last checkpoint {age:.0f}s ago"
            )
            stalled.append(run.run_id)
            store.record_failure(WORKFLOW_COMPONENT)

    if stalled:
        return HealthReport(
            verdict=HealthVerdict.RESUME_NEEDED,
            run_ids=stalled,
            detail=f"{len(stalled)} stalled run(s)",
        )
    return HealthReport(
        verdict=HealthVerdict.HEALTHY,
        run_ids=[run.run_id for run in runs],
        detail=f"{len(runs)} checkpoint(s)",
    )
