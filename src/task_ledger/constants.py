DATA_DIR_ENV = "TASK_LEDGER_DATA_DIR"
LOOP_THRESHOLD_ENV = "TASK_LEDGER_LOOP_THRESHOLD"
LOCK_TIMEOUT_ENV = "TASK_LEDGER_LOCK_TIMEOUT"

DEFAULT_DATA_DIR_NAME = ".task_ledger"
STORE_FILENAME = "tasks.json"
LOCK_FILENAME = "tasks.lock"
CONFIG_FILE = "config.yaml"
EVENTS_FILENAME = "task_events.jsonl"
BACKUP_DIR_NAME = "memory"
BACKUP_PREFIX = "tasks_memory_"

STORE_VERSION = 1

DEFAULT_LOOP_THRESHOLD = 2  # Consecutive failures before escalation
DEFAULT_LOCK_TIMEOUT = 30  # seconds
DEFAULT_STALL_MINUTES = 5
DEFAULT_PAGE_SIZE = 5
MAX_PAGE_SIZE = 20
MAX_TASK_NAME_LENGTH = 100
WINDOWS_LOCK_BYTES = 4096
LOCK_POLL_INTERVAL = 0.05  # seconds

DEFAULT_COMPLETION_SUMMARY = "Task completed"
