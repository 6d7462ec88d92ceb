"""JSON and markdown summaries of a run's phase metrics."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .persistence.models import WorkflowRun, utcnow


def build_report(run: WorkflowRun, ended_at: Optional[datetime] = None) -> Dict[str, Any]:
    ended_at = ended_at or utcnow()
    phases = run.phase_metrics
    successful = sum(1 for m in phases.values() if m.status in ("completed", "recovered"))
    failed = sum(1 for m in phases.values() if m.status == "failed")
    total = len(phases)
    return {
        "run_id": run.run_id,
        "target_id": run.target_id,
        "status": run.status.value,
        "resume_count": run.resume_count,
        "step_count": run.step_count,
        "started_at": run.started_at.isoformat(),
        "ended_at": ended_at.isoformat(),
        "total_duration_s": round((ended_at - run.started_at).total_seconds()),
        "phases": {name: m.model_dump(mode="json") for name, m in phases.items()},
        "metrics": {
            "total_phases": total,
            "successful_phases": successful,
            "failed_phases": failed,
            "success_rate": round(successful / total * 100, 2) if total else 0.0,
        },
        "terminal_error": run.terminal_error,
        "recovery_error": run.recovery_error,
    }


def render_markdown(report: Dict[str, Any]) -> str:
    metrics = report["metrics"]
    lines = [
        "# Workflow Report",
        "",
        "## Overview",
        f"- **Run:** {report['run_id']}",
        f"- **Target:** {report['target_id']}",
        f"- **Status:** {report['status']}",
        f"- **Duration:** {report['total_duration_s']}s",
        f"- **Resumes:** {report['resume_count']}",
        "",
        "## Phase Summary",
    ]
    for name, phase in report["phases"].items():
        mark = "✅" if phase["status"] in ("completed", "recovered") else "❌"
        lines += [
            "",
            f"### {name}",
            f"- **Status:** {mark} {phase['status']}",
            f"- **Duration:** {phase['duration_ms'] / 1000:.1f}s",
        ]
        if phase.get("error"):
            lines.append(f"- **Error:** {phase['error']}")
    lines += [
        "",
        "## Metrics",
        f"- **Total Phases:** {metrics['total_phases']}",
        f"- **Successful:** {metrics['successful_phases']}",
        f"- **Failed:** {metrics['failed_phases']}",
        f"- **Success Rate:** {metrics['success_rate']}%",
        "",
        "## Timeline",
        f"- **Started:** {report['started_at']}",
        f"- **Ended:** {report['ended_at']}",
    ]
    if report.get("terminal_error"):
        lines += ["", "## Errors", f"- **Run:** {report['terminal_error']}"]
        if report.get("recovery_error"):
            lines.append(f"- **Recovery:** {report['recovery_error']}")
    return "\n".join(lines) + "\n"


def write_report(run: WorkflowRun, reports_dir: str | Path) -> Tuple[Path, Path]:
    """Write ``workflow-<run_id>.json`` and ``.md``; return both paths."""
    directory = Path(reports_dir)
    directory.mkdir(parents=True, exist_ok=True)
    report = build_report(run)
    json_path = directory / f"workflow-{run.run_id}.json"
    md_path = directory / f"workflow-{run.run_id}.md"
    json_path.write_text(json.dumps(report, indent=2), encoding="utf-8")
    md_path.write_text(render_markdown(report), encoding="utf-8")
    return json_path, md_path
