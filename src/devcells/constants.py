CONTAINER_PREFIX = "devcells-"
DATA_DIR_ENV = "DEVCELLS_HOME"
WORKTREE_DIR_ENV = "DEVCELLS_WORKTREE_DIR"
DEFAULT_DATA_DIR_NAME = ".devcells"
DEFAULT_WORKTREE_BASE_DIR = "/tmp/devcells/worktrees"
PROJECT_CONFIG_DIR_NAME = ".devcells"
CONFIG_FILE = "config.yaml"

TRACKING_FILE = "containers.json"
HEARTBEAT_FILE = "heartbeat"
DEFAULT_HEARTBEAT_STALE_SECONDS = 30
DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 10

DEFAULT_CPUS = 2.0
DEFAULT_MEMORY_BYTES = 4 * 1024 * 1024 * 1024
DEFAULT_PIDS_LIMIT = 1024
DEFAULT_OPERATION_TIMEOUT_SECONDS = 300
DEFAULT_STOP_TIMEOUT_SECONDS = 10
CLEANUP_TIMEOUT_SECONDS = 60

CONTAINER_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
UNNAMED_BRANCH = "unnamed"
DEFAULT_PROJECT_NAME = "workspace"

WORKSPACE_MOUNT_TARGET = "/workspace"
DOCKER_SOCKET_PATH = "/var/run/docker.sock"

LABEL_MANAGED = "devcells.managed"
LABEL_PROJECT = "devcells.project"
LABEL_BRANCH = "devcells.branch"
LABEL_WORKSTREAM = "devcells.workstream"

CONTAINER_STATE_RUNNING = "running"
CONTAINER_STATE_PAUSED = "paused"
CONTAINER_STATE_CREATED = "created"
CONTAINER_STATE_EXITED = "exited"
CONTAINER_ACTIVE_STATES = {CONTAINER_STATE_RUNNING, CONTAINER_STATE_PAUSED}
