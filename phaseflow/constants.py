"""Default values shared across phaseflow components."""

DEFAULT_LOCK_DIR = ".locks"
DEFAULT_STALE_AFTER_MS = 10_000
DEFAULT_LOCK_RETRIES = 10
DEFAULT_MIN_WAIT_MS = 100
DEFAULT_MAX_WAIT_MS = 1_000

DEFAULT_STATE_REF = "phaseflow-state"

DEFAULT_MAX_STEPS = 50
DEFAULT_TIMEOUT_SECONDS = 30 * 60
DEFAULT_STALL_AFTER_SECONDS = 10 * 60

CIRCUIT_THRESHOLD = 3
CIRCUIT_WINDOW_SECONDS = 60 * 60
WORKFLOW_COMPONENT = "workflow"

RECOVERY_PHASE = "recovery"
