"""Checkpoints stored as JSON documents in the atomic context store."""

from __future__ import annotations

import logging
from pathlib import PurePosixPath

from pydantic import ValidationError

from ..context import AtomicContextStore
from .models import WorkflowRun
from .repository import CheckpointRepository

logger = logging.getLogger(__name__)


class ContextCheckpointRepository(CheckpointRepository):
    """Persist one ``<prefix>/<run_id>.json`` document per run."""

    def __init__(self, store: AtomicContextStore, prefix: str = "runs") -> None:
        self.store = store
        self.prefix = prefix.strip("/")

    def key_for(self, run_id: str) -> str:
        return f"{self.prefix}/{run_id}.json"

    def load(self, run_id: str) -> WorkflowRun | None:
        raw = self.store.read(self.key_for(run_id))
        if raw is None:
            return None
        return WorkflowRun.model_validate_json(raw)

    def save(self, run: WorkflowRun) -> None:
        self.store.write(self.key_for(run.run_id), run.model_dump_json(indent=2))

    def delete(self, run_id: str) -> bool:
        return self.store.delete(self.key_for(run_id))

    def list_runs(self) -> list[WorkflowRun]:
        runs: list[WorkflowRun] = []
        for key in self.store.list_keys(self.prefix):
            if not key.endswith(".json"):
                continue
            run_id = PurePosixPath(key).stem
            try:
                run = self.load(run_id)
            except ValidationError as exc:
                logger.warning(f"Skipping unreadable checkpoint {key}: {exc}")
                continue
            if run is not None:
                runs.append(run)
        return runs
