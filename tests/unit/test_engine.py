"""Workflow engine state machine tests."""

from datetime import timedelta

import pytest

from phaseflow.config import WorkflowConfig
from phaseflow.context import AtomicContextStore
from phaseflow.contracts import PhaseInstruction, RecoveryResult
from phaseflow.engine import WorkflowEngine
from phaseflow.errors import CircuitOpenError
from phaseflow.itinerary import SequentialPhaseProvider
from phaseflow.persistence import RunStatus, WorkflowRun


class Crash(BaseException):
    """Stands in for the process being killed mid-phase."""


class StubRecovery:
    def __init__(self, recovered=True, detail="reverted last change", error=None):
        self.recovered = recovered
        self.detail = detail
        self.error = error
        self.calls = []

    def attempt_recovery(self, run_id):
        self.calls.append(run_id)
        if self.error:
            raise self.error
        return RecoveryResult(recovered=self.recovered, detail=self.detail)


class EndlessProvider:
    def __init__(self):
        self.executed = 0

    def decide_next(self, run):
        return PhaseInstruction(handler_id="poll")

    def execute_handler(self, handler_id, params):
        self.executed += 1
        return {"polled": self.executed}


class Recorder:
    """Phase handlers that record their invocations."""

    def __init__(self):
        self.calls = []

    def handler(self, name, result=None, error=None):
        def run(**params):
            self.calls.append(name)
            if error is not None:
                raise error
            return result if result is not None else {"phase": name}

        return run


@pytest.fixture
def store(tmp_path, clock):
    return AtomicContextStore(tmp_path, clock=clock)


def _engine(store, clock, provider, recovery=None, **config):
    config.setdefault("reports_dir", None)
    return WorkflowEngine(
        store,
        provider,
        recovery_provider=recovery,
        config=WorkflowConfig(**config),
        clock=clock,
    )


def _three_phases(recorder, **overrides):
    handlers = {
        name: overrides.get(name, recorder.handler(name))
        for name in ("draft", "build", "review")
    }
    return SequentialPhaseProvider(["draft", "build", "review"], handlers)


def test_all_phases_complete(store, clock):
    recorder = Recorder()
    engine = _engine(store, clock, _three_phases(recorder))

    result = engine.start_or_resume("run-42", "42")

    assert result.status is RunStatus.COMPLETED
    assert result.succeeded
    assert result.run.resume_count == 0
    assert list(result.run.phase_metrics) == ["draft", "build", "review"]
    assert all(m.status == "completed" for m in result.run.phase_metrics.values())
    assert result.run.phase_metrics["build"].output == {"phase": "build"}
    assert recorder.calls == ["draft", "build", "review"]
    # three phases plus the final "nothing left" decision
    assert result.steps_executed == 4
    # completed checkpoints are removed
    assert engine.get_status("run-42") is None


def test_phase_failure_recovered(store, clock):
    recorder = Recorder()
    provider = _three_phases(
        recorder, build=recorder.handler("build", error=RuntimeError("compiler exploded"))
    )
    recovery = StubRecovery(recovered=True)
    engine = _engine(store, clock, provider, recovery=recovery)

    result = engine.start_or_resume("run-42", "42")

    assert result.status is RunStatus.RECOVERED
    assert result.succeeded
    assert recovery.calls == ["run-42"]
    metrics = result.run.phase_metrics
    assert list(metrics) == ["draft", "build", "recovery"]
    assert metrics["build"].status == "failed"
    assert metrics["build"].error == "compiler exploded"
    assert metrics["recovery"].status == "completed"
    assert [m.status for m in metrics.values()].count("failed") == 1
    assert "compiler exploded" in result.run.terminal_error
    assert recorder.calls == ["draft", "build"]

    saved = engine.get_status("run-42")
    assert saved.status is RunStatus.RECOVERED
    assert store.circuit_state().failure_count == 1


def test_phase_failure_recovery_fails(store, clock):
    recorder = Recorder()
    provider = _three_phases(recorder, draft=recorder.handler("draft", error=ValueError("bad")))
    engine = _engine(store, clock, provider, recovery=StubRecovery(recovered=False, detail="no backup"))

    result = engine.start_or_resume("run-1")

    assert result.status is RunStatus.RECOVERY_FAILED
    assert not result.succeeded
    assert result.run.recovery_error == "no backup"
    assert result.run.phase_metrics["recovery"].status == "failed"
    assert engine.get_status("run-1").status is RunStatus.RECOVERY_FAILED


def test_recovery_exception_is_contained(store, clock):
    recorder = Recorder()
    provider = _three_phases(recorder, draft=recorder.handler("draft", error=ValueError("bad")))
    recovery = StubRecovery(error=ConnectionError("tracker unreachable"))
    engine = _engine(store, clock, provider, recovery=recovery)

    result = engine.start_or_resume("run-1")

    assert result.status is RunStatus.RECOVERY_FAILED
    assert "tracker unreachable" in result.run.recovery_error
    assert recovery.calls == ["run-1"]


def test_default_recovery_never_recovers(store, clock):
    recorder = Recorder()
    provider = _three_phases(recorder, draft=recorder.handler("draft", error=ValueError("bad")))
    result = _engine(store, clock, provider).start_or_resume("run-1")
    assert result.status is RunStatus.RECOVERY_FAILED


def test_decision_failure_is_a_phase_failure(store, clock):
    class BrokenDecision(EndlessProvider):
        def decide_next(self, run):
            raise KeyError("state missing")

    recovery = StubRecovery(recovered=True)
    result = _engine(store, clock, BrokenDecision(), recovery=recovery).start_or_resume("run-1")

    assert result.status is RunStatus.RECOVERED
    assert "state missing" in result.run.terminal_error


def test_step_cap(store, clock):
    provider = EndlessProvider()
    engine = _engine(store, clock, provider, max_steps=2)

    result = engine.start_or_resume("run-1")

    assert result.status is RunStatus.MAX_STEPS
    assert result.steps_executed == 2
    assert provider.executed == 2
    assert result.run.step_count == 2
    assert result.run.terminal_error is None
    assert engine.get_status("run-1").status is RunStatus.MAX_STEPS


def test_timeout_checked_between_phases(store, clock):
    recorder = Recorder()

    def slow(name):
        def run():
            recorder.calls.append(name)
            clock.advance(20 * 60)
            return name

        return run

    provider = SequentialPhaseProvider(
        ["draft", "build", "review"],
        {name: slow(name) for name in ("draft", "build", "review")},
    )
    engine = _engine(store, clock, provider, timeout_seconds=30 * 60)

    result = engine.start_or_resume("run-1")

    assert result.status is RunStatus.TIMEOUT
    # the second phase overran the budget but was allowed to finish
    assert recorder.calls == ["draft", "build"]
    assert result.run.completed_phases() == ["draft", "build"]
    assert engine.get_status("run-1").status is RunStatus.TIMEOUT


def test_resume_after_crash_skips_completed_phases(store, clock):
    recorder = Recorder()
    crashing = _three_phases(recorder, build=recorder.handler("build", error=Crash()))

    with pytest.raises(Crash):
        _engine(store, clock, crashing).start_or_resume("run-42", "42")

    checkpoint = _engine(store, clock, crashing).get_status("run-42")
    assert checkpoint.status is RunStatus.RUNNING
    assert checkpoint.completed_phases() == ["draft"]

    clock.advance(60)
    result = _engine(store, clock, _three_phases(recorder)).start_or_resume("run-42", "42")

    assert result.status is RunStatus.COMPLETED
    assert result.resumed
    assert result.run.resume_count == 1
    assert recorder.calls == ["draft", "build", "build", "review"]


def test_orphaned_run_becomes_timeout(store, clock):
    recorder = Recorder()
    engine = _engine(store, clock, _three_phases(recorder), timeout_seconds=1800)
    stale = WorkflowRun(
        run_id="run-9",
        target_id="9",
        status=RunStatus.RUNNING,
        started_at=clock.now - timedelta(hours=3),
        attempt_started_at=clock.now - timedelta(hours=3),
        last_checkpoint_at=clock.now - timedelta(hours=2),
    )
    engine.repository.save(stale)

    result = engine.start_or_resume("run-9")

    assert result.skipped
    assert result.status is RunStatus.TIMEOUT
    assert "orphaned" in result.run.terminal_error
    assert recorder.calls == []
    assert engine.get_status("run-9").status is RunStatus.TIMEOUT

    forced = engine.start_or_resume("run-9", force=True)
    assert forced.status is RunStatus.COMPLETED
    assert forced.run.resume_count == 1
    assert recorder.calls == ["draft", "build", "review"]


def test_terminal_run_is_not_rerun_without_force(store, clock):
    recorder = Recorder()
    engine = _engine(store, clock, _three_phases(recorder))
    engine.repository.save(
        WorkflowRun(run_id="run-5", target_id="5", status=RunStatus.COMPLETED)
    )

    result = engine.start_or_resume("run-5")

    assert result.skipped
    assert result.status is RunStatus.COMPLETED
    assert recorder.calls == []


def test_force_resume_from_config(store, clock):
    provider = EndlessProvider()
    engine = _engine(store, clock, provider, max_steps=1)
    assert engine.start_or_resume("run-1").status is RunStatus.MAX_STEPS

    forced = _engine(store, clock, provider, max_steps=1, force_resume=True)
    result = forced.start_or_resume("run-1")

    assert not result.skipped
    assert result.status is RunStatus.MAX_STEPS
    assert result.run.resume_count == 1
    assert provider.executed == 2


def test_open_circuit_refuses_to_start(store, clock):
    for _ in range(3):
        store.record_failure()
    engine = _engine(store, clock, EndlessProvider())

    with pytest.raises(CircuitOpenError):
        engine.start_or_resume("run-1")
    assert engine.get_status("run-1") is None


def test_completion_resets_circuit(store, clock):
    store.record_failure()
    store.record_failure()
    _engine(store, clock, _three_phases(Recorder())).start_or_resume("run-1")
    assert store.circuit_state().failure_count == 0


def test_phase_delay_between_phases(store, clock):
    sleeps = []
    engine = WorkflowEngine(
        store,
        _three_phases(Recorder()),
        config=WorkflowConfig(reports_dir=None, phase_delay_seconds=0.5),
        clock=clock,
        sleep=sleeps.append,
    )
    engine.start_or_resume("run-1")
    assert sleeps == [0.5, 0.5, 0.5]


def test_reports_written_on_termination(store, clock, tmp_path):
    engine = _engine(store, clock, _three_phases(Recorder()), reports_dir="reports")

    engine.start_or_resume("run-42", "42")

    assert (tmp_path / "reports" / "workflow-run-42.json").exists()
    assert "# Workflow Report" in (tmp_path / "reports" / "workflow-run-42.md").read_text()


def test_execute_single_phase(store, clock):
    recorder = Recorder()
    engine = _engine(store, clock, _three_phases(recorder))

    assert engine.execute_single_phase("build", "run-1") == {"phase": "build"}
    assert engine.get_status("run-1") is None

    engine.repository.save(WorkflowRun(run_id="run-2", target_id="2", status=RunStatus.RUNNING))
    engine.execute_single_phase("review", "run-2")
    saved = engine.get_status("run-2")
    assert saved.completed_phases() == ["review"]
    assert saved.status is RunStatus.RUNNING


def test_execute_single_phase_propagates_errors(store, clock):
    recorder = Recorder()
    provider = _three_phases(recorder, build=recorder.handler("build", error=RuntimeError("boom")))
    engine = _engine(store, clock, provider)
    engine.repository.save(WorkflowRun(run_id="run-2", target_id="2", status=RunStatus.RUNNING))

    with pytest.raises(RuntimeError):
        engine.execute_single_phase("build", "run-2")
    assert engine.get_status("run-2").phase_metrics["build"].status == "failed"
