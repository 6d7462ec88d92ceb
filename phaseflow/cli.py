"""Command line interface for running and inspecting phaseflow pipelines."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import typer

from phaseflow.commits import CommitHandler
from phaseflow.config import PhaseflowConfig, load_config
from phaseflow.constants import WORKFLOW_COMPONENT
from phaseflow.context import AtomicContextStore
from phaseflow.contracts import PhaseHandlerProvider, RecoveryHandlerProvider
from phaseflow.engine import WorkflowEngine
from phaseflow.errors import CircuitOpenError, CommitError, PhaseflowError
from phaseflow.health import HealthVerdict, check_health
from phaseflow.persistence import get_repository, run_id_for
from phaseflow.utils.loader import load_object

app = typer.Typer(help="CLI for phaseflow pipelines")

# Command groups
circuit_app = typer.Typer(help="Commands for inspecting the circuit breaker")
state_app = typer.Typer(help="Commands for the versioned state log")

app.add_typer(circuit_app, name="circuit")
app.add_typer(state_app, name="state")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@app.callback()
def main() -> None:
    """phaseflow CLI entry point."""
    pass


def _load(config_path: Optional[Path]) -> PhaseflowConfig:
    config = load_config(str(config_path) if config_path else None)
    logging.basicConfig(level=config.log_level.upper(), format=LOG_FORMAT)
    return config


def _phase_provider(config: PhaseflowConfig) -> PhaseHandlerProvider:
    if not config.providers.phase_provider:
        typer.secho(
            "No phase provider configured (providers.phase_provider)",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=2)
    return load_object(config.providers.phase_provider, required_attr="decide_next")


def _recovery_provider(config: PhaseflowConfig) -> Optional[RecoveryHandlerProvider]:
    if not config.providers.recovery_provider:
        return None
    return load_object(config.providers.recovery_provider, required_attr="attempt_recovery")


def _engine(config: PhaseflowConfig) -> WorkflowEngine:
    store = AtomicContextStore.from_config(config)
    return WorkflowEngine(
        store,
        _phase_provider(config),
        recovery_provider=_recovery_provider(config),
        repository=get_repository(store, config),
        config=config.workflow,
    )


@app.command("run")
def run(
    target_id: str,
    phase: Optional[str] = typer.Option(
        None, "--phase", help="Execute a single phase handler instead of the full loop"
    ),
    force: bool = typer.Option(False, "--force", help="Resume terminal runs"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """
    Start or resume the pipeline run for a target work item.

    Exits 0 when the run ends COMPLETED or RECOVERED and 1 otherwise.

    Example:
        phaseflow run 42
        phaseflow run 42 --phase implement
    """
    cfg = _load(config)
    engine = _engine(cfg)
    run_id = run_id_for(target_id)

    if phase:
        try:
            outcome = engine.execute_single_phase(phase, run_id)
        except Exception as exc:
            typer.secho(f"Phase {phase} failed: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        typer.echo(f"Phase {phase} completed")
        if outcome is not None:
            typer.echo(f"Output: {outcome}")
        return

    try:
        result = engine.start_or_resume(run_id, target_id, force=force or None)
    except CircuitOpenError as exc:
        typer.secho(f"{exc}; run 'phaseflow circuit reset' after investigating", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    if result.skipped:
        typer.echo(f"Run {run_id} already {result.status.value}; use --force to resume")
    else:
        typer.echo(
            f"Run {run_id}: {result.status.value} after {result.steps_executed} steps"
        )
    error = result.run.terminal_error
    if error:
        typer.echo(f"Error: {error}")
    if result.run.recovery_error:
        typer.echo(f"Recovery error: {result.run.recovery_error}")
    if not result.succeeded:
        raise typer.Exit(code=1)


@app.command("status")
def status(
    run_id: str,
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """Show the checkpoint of a run, including per-phase metrics."""
    cfg = _load(config)
    wf = get_repository(config=cfg).load(run_id)
    if wf is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {wf.run_id}: {wf.status.value}")
    typer.echo(f"Target: {wf.target_id}")
    typer.echo(f"Steps: {wf.step_count}  Resumes: {wf.resume_count}")
    if wf.last_checkpoint_at:
        typer.echo(f"Last checkpoint: {wf.last_checkpoint_at.isoformat()}")
    for name, metric in wf.phase_metrics.items():
        typer.echo(
            f"- {name}: {metric.status} ({metric.duration_ms}ms)"
            + (f" error: {metric.error}" if metric.error else "")
        )
    if wf.terminal_error:
        typer.echo(f"Error: {wf.terminal_error}")


@app.command("list")
def list_runs(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """List all checkpointed runs with their status."""
    cfg = _load(config)
    runs = get_repository(config=cfg).list_runs()
    if not runs:
        typer.echo("No runs found")
        return
    for wf in runs:
        typer.echo(f"{wf.run_id}\t{wf.status.value}")


@app.command("health")
def health(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """Report whether runs need attention. Exits 1 unless healthy or idle."""
    cfg = _load(config)
    store = AtomicContextStore.from_config(cfg)
    report = check_health(store, get_repository(store, cfg), cfg)
    typer.echo(f"{report.verdict.value}: {report.detail}")
    for run_id in report.run_ids:
        typer.echo(f"- {run_id}")
    if report.verdict not in (HealthVerdict.HEALTHY, HealthVerdict.IDLE):
        raise typer.Exit(code=1)


@circuit_app.command("status")
def circuit_status(
    component: str = typer.Argument(WORKFLOW_COMPONENT),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """Show the failure count and open/closed state of a breaker."""
    cfg = _load(config)
    state = AtomicContextStore.from_config(cfg).circuit_state(component)
    typer.echo(f"{component}: {'open' if state.is_open else 'closed'}")
    typer.echo(f"Failures: {state.failure_count}")
    if state.first_failure_at:
        typer.echo(f"First failure: {state.first_failure_at.isoformat()}")


@circuit_app.command("reset")
def circuit_reset(
    component: str = typer.Argument(WORKFLOW_COMPONENT),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """Close a breaker after the underlying problem has been fixed."""
    cfg = _load(config)
    AtomicContextStore.from_config(cfg).reset_failure(component)
    typer.echo(f"Circuit breaker for {component} reset")


def _state_store(config: Optional[Path]) -> AtomicContextStore:
    cfg = _load(config)
    cfg.state_log.enabled = True
    try:
        return AtomicContextStore.from_config(cfg)
    except PhaseflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


@state_app.command("init")
def state_init(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """Create the state ref if it does not exist yet."""
    store = _state_store(config)
    typer.echo(f"State log ready on {store.state_log.ref} ({store.state_log.tip()})")


@state_app.command("read")
def state_read(
    key: str,
    revision: Optional[str] = typer.Option(None, "--revision", "-r"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """Print the value stored at KEY."""
    store = _state_store(config)
    content = store.state_log.read(key, revision=revision)
    if content is None:
        typer.echo("Key not found")
        raise typer.Exit(code=1)
    typer.echo(content.decode("utf-8", errors="replace"), nl=False)


@state_app.command("write")
def state_write(
    key: str,
    value: Optional[str] = typer.Argument(None),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="Read value from file"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """Store VALUE (or the contents of --file) at KEY."""
    if file is not None:
        data = file.read_bytes()
    elif value is not None:
        data = value.encode("utf-8")
    else:
        typer.secho("Provide a value or --file", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    store = _state_store(config)
    with store.lock(store.lock_name_for(key)), store.lock(store.state_ref_lock_name()):
        commit = store.state_log.write(key, data)
    typer.echo(f"{key} -> {commit}")


@state_app.command("list")
def state_list(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """List every key present at the state ref tip."""
    store = _state_store(config)
    keys = store.state_log.list()
    if not keys:
        typer.echo("State log is empty")
        return
    for key in keys:
        typer.echo(key)


@app.command("commit")
def commit(
    description: str,
    persona: str = typer.Option(..., "--persona", "-p"),
    step: str = typer.Option(..., "--step", "-s"),
    files: Optional[List[str]] = typer.Option(None, "--file", "-f"),
    bypass_validation: bool = typer.Option(False, "--bypass-validation"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """
    Stage, commit and verify phase artifacts.

    Example:
        phaseflow commit "Add retry budget to worker" --persona developer --step 3
    """
    cfg = _load(config)
    try:
        handler = CommitHandler(cfg.root_dir, cfg.commits)
        handler.prepare(files)
        commit_id = handler.execute(
            description, persona, step, bypass_validation=bypass_validation
        )
        if commit_id is None:
            typer.echo("Nothing to commit")
            return
        result = handler.verify(commit_id)
    except CommitError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        report = getattr(exc, "report", "")
        if report:
            typer.echo(report)
        raise typer.Exit(code=1)

    if not result.verified:
        typer.secho(
            f"Commit {commit_id} failed verification and was rolled back: {result.error}",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)
    typer.echo(f"Committed {result.hash}")
    for warning in result.warnings:
        typer.echo(f"Warning: {warning}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
