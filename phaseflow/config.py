from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field, model_validator

from .constants import (
    CIRCUIT_THRESHOLD,
    CIRCUIT_WINDOW_SECONDS,
    DEFAULT_LOCK_DIR,
    DEFAULT_LOCK_RETRIES,
    DEFAULT_MAX_STEPS,
    DEFAULT_MAX_WAIT_MS,
    DEFAULT_MIN_WAIT_MS,
    DEFAULT_STALE_AFTER_MS,
    DEFAULT_STALL_AFTER_SECONDS,
    DEFAULT_STATE_REF,
    DEFAULT_TIMEOUT_SECONDS,
)

_TRUTHY = {"1", "true", "yes", "on"}


class LockConfig(BaseModel):
    """Directory lock settings."""

    lock_dir: str = DEFAULT_LOCK_DIR
    stale_after_ms: int = Field(default=DEFAULT_STALE_AFTER_MS, gt=0)
    retries: int = Field(default=DEFAULT_LOCK_RETRIES, ge=1)
    min_wait_ms: int = Field(default=DEFAULT_MIN_WAIT_MS, ge=0)
    max_wait_ms: int = Field(default=DEFAULT_MAX_WAIT_MS, ge=0)

    @model_validator(mode="after")
    def _check_wait_bounds(self) -> "LockConfig":
        if self.min_wait_ms > self.max_wait_ms:
            raise ValueError("min_wait_ms must not exceed max_wait_ms")
        return self


class StateLogConfig(BaseModel):
    """Versioned state log settings."""

    enabled: bool = False
    ref_name: str = DEFAULT_STATE_REF


class CommitConfig(BaseModel):
    """Commit handler retry and validation settings."""

    max_retries: int = Field(default=2, ge=0)
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=5.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    jitter_factor: float = Field(default=0.1, ge=0)
    validate_staging: bool = True
    validate_format: bool = True
    enable_rollback: bool = True
    strict_verification: bool = False


class CircuitConfig(BaseModel):
    """Circuit breaker thresholds."""

    threshold: int = Field(default=CIRCUIT_THRESHOLD, ge=1)
    window_seconds: float = Field(default=CIRCUIT_WINDOW_SECONDS, gt=0)


class WorkflowConfig(BaseModel):
    """Workflow engine limits."""

    max_steps: int = Field(default=DEFAULT_MAX_STEPS, ge=1)
    timeout_seconds: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)
    phase_delay_seconds: float = Field(default=0.0, ge=0)
    force_resume: bool = False
    checkpoint_prefix: str = "runs"
    reports_dir: Optional[str] = ".phaseflow/reports"
    stall_after_seconds: float = Field(default=DEFAULT_STALL_AFTER_SECONDS, gt=0)


class ProviderConfig(BaseModel):
    """Import paths (``module:attribute``) of external collaborators."""

    phase_provider: Optional[str] = None
    recovery_provider: Optional[str] = None


class PhaseflowConfig(BaseModel):
    """Top-level configuration model."""

    root_dir: str = "."
    log_level: str = "INFO"
    locks: LockConfig = Field(default_factory=LockConfig)
    state_log: StateLogConfig = Field(default_factory=StateLogConfig)
    commits: CommitConfig = Field(default_factory=CommitConfig)
    circuit: CircuitConfig = Field(default_factory=CircuitConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    providers: ProviderConfig = Field(default_factory=ProviderConfig)


def load_config(path: Optional[str] = None) -> PhaseflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to PHASEFLOW_CONFIG env
            variable or 'phaseflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("PHASEFLOW_CONFIG", "phaseflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = PhaseflowConfig(**data)
    else:
        config = PhaseflowConfig()

    use_state_log = os.getenv("PHASEFLOW_USE_STATE_LOG")
    if use_state_log is not None:
        config.state_log.enabled = use_state_log.strip().lower() in _TRUTHY
    force_resume = os.getenv("PHASEFLOW_FORCE_RESUME")
    if force_resume is not None:
        config.workflow.force_resume = force_resume.strip().lower() in _TRUTHY
    log_level = os.getenv("PHASEFLOW_LOG_LEVEL")
    if log_level:
        config.log_level = log_level.upper()
    return config
