"""Fixed-order phase provider."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel, Field

from .contracts import PhaseInstruction
from .errors import UnknownPhaseError
from .persistence.models import WorkflowRun

logger = logging.getLogger(__name__)

PhaseHandler = Callable[..., Any]


class PhaseSpec(BaseModel):
    """Defines one step in an itinerary."""

    handler_id: str
    params: Dict[str, Any] = Field(default_factory=dict)


class SequentialPhaseProvider:
    """Runs ``phases`` in order, skipping those a checkpoint marks completed.

    Because the decision is derived from ``run.phase_metrics``, a resumed run
    continues at the first phase that has not completed.
    """

    def __init__(
        self,
        phases: Sequence[PhaseSpec | str],
        handlers: Mapping[str, PhaseHandler],
    ) -> None:
        self.phases: List[PhaseSpec] = [
            PhaseSpec(handler_id=p) if isinstance(p, str) else p for p in phases
        ]
        self.handlers: Dict[str, PhaseHandler] = dict(handlers)
        missing = [p.handler_id for p in self.phases if p.handler_id not in self.handlers]
        if missing:
            raise UnknownPhaseError(", ".join(missing))

    def next_step(self, run: WorkflowRun) -> Optional[PhaseSpec]:
        done = set(run.completed_phases())
        for phase in self.phases:
            if phase.handler_id not in done:
                return phase
        return None

    def decide_next(self, run: WorkflowRun) -> Optional[PhaseInstruction]:
        phase = self.next_step(run)
        if phase is None:
            logger.debug(f"No remaining phases for {run.run_id}")
            return None
        return PhaseInstruction(handler_id=phase.handler_id, params=phase.params)

    def execute_handler(self, handler_id: str, params: Dict[str, Any]) -> Any:
        handler = self.handlers.get(handler_id)
        if handler is None:
            raise UnknownPhaseError(handler_id)
        return handler(**params)
