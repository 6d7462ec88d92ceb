"""Phase-by-phase workflow engine with checkpointed, resumable runs."""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel

from .config import WorkflowConfig
from .constants import RECOVERY_PHASE, WORKFLOW_COMPONENT
from .context import AtomicContextStore
from .contracts import (
    NoopRecoveryProvider,
    PhaseHandlerProvider,
    PhaseInstruction,
    RecoveryHandlerProvider,
)
from .errors import CircuitOpenError
from .persistence import CheckpointRepository, ContextCheckpointRepository
from .persistence.models import PhaseMetric, RunStatus, WorkflowRun, utcnow
from .reports import write_report

logger = logging.getLogger(__name__)


class RunResult(BaseModel):
    """Outcome of one ``start_or_resume`` call."""

    run_id: str
    status: RunStatus
    run: WorkflowRun
    steps_executed: int = 0
    resumed: bool = False
    skipped: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status in (RunStatus.COMPLETED, RunStatus.RECOVERED)


def _jsonable(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return json.loads(json.dumps(value, default=str))


class WorkflowEngine:
    """Drives one run through its phases.

    Each loop iteration asks the phase provider for the next phase, executes
    it and writes the full checkpoint, so a crash loses at most the phase in
    flight. Exceptions escaping a phase handler end the attempt as ``FAILED``
    and trigger a single recovery attempt; they never escape this class.
    Errors from the store itself (for example :class:`LockTimeout`) do.
    """

    def __init__(
        self,
        store: AtomicContextStore,
        phase_provider: PhaseHandlerProvider,
        recovery_provider: Optional[RecoveryHandlerProvider] = None,
        repository: Optional[CheckpointRepository] = None,
        config: Optional[WorkflowConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.phase_provider = phase_provider
        self.recovery_provider = recovery_provider or NoopRecoveryProvider()
        self.config = config or WorkflowConfig()
        self.repository = repository or ContextCheckpointRepository(
            store, prefix=self.config.checkpoint_prefix
        )
        self._clock = clock
        self._sleep = sleep
        self._timer = timer

    # ------------------------------------------------------------------
    # Public API
    def get_status(self, run_id: str) -> Optional[WorkflowRun]:
        return self.repository.load(run_id)

    def start_or_resume(
        self,
        run_id: str,
        target_id: Optional[str] = None,
        force: Optional[bool] = None,
    ) -> RunResult:
        """Start ``run_id`` or resume it from its checkpoint.

        Terminal runs are left alone unless ``force`` is set (defaults to the
        ``force_resume`` setting).
        """
        force = self.config.force_resume if force is None else force
        if self.store.is_circuit_open(WORKFLOW_COMPONENT):
            logger.error(
                f"Circuit breaker is open; refusing to start {run_id} to prevent an error loop"
            )
            raise CircuitOpenError(WORKFLOW_COMPONENT)

        existing = self.repository.load(run_id)
        if existing is None:
            run = self._create(run_id, target_id)
            return self._run_loop(run, resumed=False)

        run = existing
        now = self._clock()
        if run.status is RunStatus.RUNNING and self._is_orphaned(run, now):
            last = run.last_checkpoint_at or run.started_at
            logger.warning(
                f"Run {run_id} has had no checkpoint since {last.isoformat()}; "
                "reclassifying orphaned run as timeout"
            )
            run.transition(RunStatus.TIMEOUT)
            run.terminal_error = f"orphaned: no checkpoint since {last.isoformat()}"
            self._checkpoint(run)

        if run.status.is_terminal:
            if not force:
                logger.info(
                    f"Run {run_id} is already {run.status.value}; use force to resume it"
                )
                return RunResult(run_id=run_id, status=run.status, run=run, skipped=True)
            logger.warning(f"Force-resuming run {run_id} from {run.status.value}")
            run.transition(RunStatus.RUNNING, force=True)
            run.step_count = 0
            run.terminal_error = None
            run.recovery_error = None
        elif run.status is RunStatus.NEW:
            run.transition(RunStatus.RUNNING)
        else:
            logger.info(
                f"Resuming run {run_id} after step {run.step_count} "
                f"(completed phases: {', '.join(run.completed_phases()) or 'none'})"
            )

        run.resume_count += 1
        run.attempt_started_at = now
        self._checkpoint(run)
        return self._run_loop(run, resumed=True)

    def execute_single_phase(
        self,
        handler_id: str,
        run_id: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Run one handler outside the loop (manual/debug use).

        If ``run_id`` has a checkpoint the outcome is recorded in its phase
        metrics; the run status is not changed. Exceptions propagate.
        """
        logger.info(f"Executing single phase {handler_id} for {run_id}")
        run = self.repository.load(run_id)
        instruction = PhaseInstruction(handler_id=handler_id, params=params or {})
        if run is None:
            return self.phase_provider.execute_handler(handler_id, instruction.params)
        try:
            return self._execute_phase(run, instruction)
        finally:
            self._checkpoint(run)

    # ------------------------------------------------------------------
    # Loop
    def _create(self, run_id: str, target_id: Optional[str]) -> WorkflowRun:
        now = self._clock()
        run = WorkflowRun(
            run_id=run_id,
            target_id=str(target_id if target_id is not None else run_id),
            started_at=now,
            attempt_started_at=now,
        )
        run.transition(RunStatus.RUNNING)
        self._checkpoint(run)
        logger.info(f"Run {run_id} started for target {run.target_id}")
        return run

    def _is_orphaned(self, run: WorkflowRun, now: datetime) -> bool:
        last = run.last_checkpoint_at or run.started_at
        return (now - last).total_seconds() > self.config.timeout_seconds

    def _run_loop(self, run: WorkflowRun, resumed: bool) -> RunResult:
        steps = 0
        exit_status: Optional[RunStatus] = None
        failure: Optional[Exception] = None

        while True:
            if run.step_count >= self.config.max_steps:
                exit_status = RunStatus.MAX_STEPS
                break
            elapsed = (self._clock() - run.attempt_started_at).total_seconds()
            if elapsed >= self.config.timeout_seconds:
                exit_status = RunStatus.TIMEOUT
                break

            run.step_count += 1
            steps += 1
            logger.info(
                f"--- Orchestration step {run.step_count} for {run.run_id} "
                f"(elapsed {elapsed:.0f}s) ---"
            )

            try:
                instruction = self.phase_provider.decide_next(run)
            except Exception as exc:
                logger.error(f"Decision function failed for {run.run_id}: {exc}")
                failure = exc
                break
            if instruction is None:
                logger.info(f"No pending actions for {run.run_id}")
                exit_status = RunStatus.COMPLETED
                break

            try:
                self._execute_phase(run, instruction)
            except Exception as exc:
                failure = exc
                break
            self._checkpoint(run)

            if self.config.phase_delay_seconds:
                self._sleep(self.config.phase_delay_seconds)

        if failure is not None:
            return self._fail(run, failure, steps, resumed)

        run.transition(exit_status)
        if exit_status is RunStatus.COMPLETED:
            run.last_checkpoint_at = self._clock()
            self.repository.delete(run.run_id)
            self.store.reset_failure(WORKFLOW_COMPONENT)
            logger.info(f"Run {run.run_id} completed after {run.step_count} steps")
        else:
            if exit_status is RunStatus.TIMEOUT:
                logger.warning(
                    f"Run {run.run_id} stopped after exceeding its "
                    f"{self.config.timeout_seconds:.0f}s budget"
                )
            else:
                logger.warning(
                    f"Run {run.run_id} stopped after reaching maximum steps "
                    f"({self.config.max_steps})"
                )
            self._checkpoint(run)

        self._report(run)
        return RunResult(
            run_id=run.run_id,
            status=run.status,
            run=run,
            steps_executed=steps,
            resumed=resumed,
        )

    def _execute_phase(self, run: WorkflowRun, instruction: PhaseInstruction) -> Any:
        handler_id = instruction.handler_id
        logger.info(f"Starting phase {handler_id} for {run.run_id}")
        started = self._timer()
        try:
            outcome = self.phase_provider.execute_handler(handler_id, instruction.params)
        except Exception as exc:
            duration_ms = int((self._timer() - started) * 1000)
            self._record(
                run,
                handler_id,
                PhaseMetric(
                    status="failed",
                    duration_ms=duration_ms,
                    error=str(exc) or type(exc).__name__,
                    completed_at=self._clock(),
                ),
            )
            logger.error(f"Phase {handler_id} failed after {duration_ms}ms: {exc}")
            raise

        duration_ms = int((self._timer() - started) * 1000)
        self._record(
            run,
            handler_id,
            PhaseMetric(
                status="completed",
                duration_ms=duration_ms,
                completed_at=self._clock(),
                output=_jsonable(outcome),
            ),
        )
        logger.info(f"Phase {handler_id} completed in {duration_ms}ms")
        return outcome

    @staticmethod
    def _record(run: WorkflowRun, name: str, metric: PhaseMetric) -> None:
        # re-insert so the mapping stays in execution order
        run.phase_metrics.pop(name, None)
        run.phase_metrics[name] = metric

    def _fail(
        self, run: WorkflowRun, error: Exception, steps: int, resumed: bool
    ) -> RunResult:
        run.transition(RunStatus.FAILED)
        run.terminal_error = f"{type(error).__name__}: {error}"
        self._checkpoint(run)
        logger.error(f"Run {run.run_id} failed: {run.terminal_error}")
        self.store.record_failure(WORKFLOW_COMPONENT)

        logger.info(f"Attempting automated recovery for {run.run_id}")
        started = self._timer()
        try:
            result = self.recovery_provider.attempt_recovery(run.run_id)
            recovered, detail = result.recovered, result.detail
        except Exception as exc:
            recovered, detail = False, f"{type(exc).__name__}: {exc}"
        duration_ms = int((self._timer() - started) * 1000)

        if recovered:
            run.transition(RunStatus.RECOVERED)
            self._record(
                run,
                RECOVERY_PHASE,
                PhaseMetric(
                    status="completed",
                    duration_ms=duration_ms,
                    completed_at=self._clock(),
                    output=detail or None,
                ),
            )
            logger.info(f"Run {run.run_id} recovered: {detail}")
        else:
            run.transition(RunStatus.RECOVERY_FAILED)
            run.recovery_error = detail or "recovery reported failure"
            self._record(
                run,
                RECOVERY_PHASE,
                PhaseMetric(
                    status="failed",
                    duration_ms=duration_ms,
                    error=run.recovery_error,
                    completed_at=self._clock(),
                ),
            )
            logger.error(
                f"Recovery failed for {run.run_id}: {run.recovery_error}; "
                "operator attention required"
            )
        self._checkpoint(run)
        self._report(run)
        return RunResult(
            run_id=run.run_id,
            status=run.status,
            run=run,
            steps_executed=steps,
            resumed=resumed,
        )

    # ------------------------------------------------------------------
    def _checkpoint(self, run: WorkflowRun) -> None:
        run.last_checkpoint_at = self._clock()
        self.repository.save(run)

    def _report(self, run: WorkflowRun) -> None:
        if not self.config.reports_dir:
            return
        reports_dir = Path(self.config.reports_dir)
        if not reports_dir.is_absolute():
            reports_dir = self.store.root_dir / reports_dir
        try:
            _, md_path = write_report(run, reports_dir)
        except OSError as exc:
            logger.warning(f"Could not write report for {run.run_id}: {exc}")
            return
        logger.info(f"Workflow report generated: {md_path}")
