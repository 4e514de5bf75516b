STATE_DIR_NAME = ".phase_runner"
CONFIG_FILE = "config.yaml"
TASKS_FILE = "tasks.yaml"
RUNS_FILE = "runs.yaml"
LOGS_DIR = "logs"
STATE_FILE = "STATE.yaml"
PID_REGISTRY_FILE = "session-pids.json"
WINDOWS_LOCK_BYTES = 4096

DEFAULT_WORKER_COMMAND = "claude"
DEFAULT_MAX_CONCURRENT = 5
DEFAULT_TASK_TIMEOUT_SECONDS = 600
DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_TASK_ESTIMATE_MINUTES = 10
DEFAULT_LOCK_TTL_MINUTES = 30
DEFAULT_LOG_LINES = 100
MAX_FINISHED_SESSIONS = 200
MAX_RECENT_ACTIVITY = 10

SKIP_PERMISSIONS_FLAG = "--dangerously-skip-permissions"

TASK_STATUS_PENDING = "pending"
TASK_STATUS_IN_PROGRESS = "in_progress"
TASK_STATUS_BLOCKED = "blocked"
TASK_STATUS_QA = "qa"
TASK_STATUS_COMPLETED = "completed"

TASK_STATUSES = (
    TASK_STATUS_PENDING,
    TASK_STATUS_IN_PROGRESS,
    TASK_STATUS_BLOCKED,
    TASK_STATUS_QA,
    TASK_STATUS_COMPLETED,
)

# Statuses eligible for a run.
RUNNABLE_TASK_STATUSES = {TASK_STATUS_PENDING, TASK_STATUS_IN_PROGRESS}

WORKER_TYPES = (
    "DISCOVERY",
    "DESIGNER",
    "DATA",
    "BACKEND",
    "FRONTEND",
    "DEVOPS",
    "QA",
)

ORCHESTRATOR_ACTOR = "ORCHESTRATOR"

DEPENDENCIES_NOT_MET = "Dependencies not met"
CANCELLED_BY_USER = "Cancelled by user"

CONTRACT_FILES = {
    "api_contracts": "api-contracts.yaml",
    "database_contracts": "database-contracts.yaml",
    "design_tokens": "design-tokens.yaml",
}
