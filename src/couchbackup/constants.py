"""Shared constants for couchbackup."""

DEFAULT_BACKUP_DIR = "./backups"
DEFAULT_CONFIG_FILE = ".couchbackup.yml"

DIR_MODE = 0o750
FILE_MODE = 0o640

ARTIFACT_SUFFIX = ".json"
ALL_DOCS_PATH = "_all_docs"

SUPPORTED_PROTOCOLS = ("http", "https")

FAIL_FAST = "fail-fast"
CONTINUE = "continue"
FAILURE_POLICIES = (FAIL_FAST, CONTINUE)

DEFAULT_SSH_PORT = 22
DEFAULT_FORWARD_ADDRESS = "127.0.0.1"

DEFAULT_REQUEST_TIMEOUT = 300.0
DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_NOTIFICATION_TIMEOUT = 10.0
DEFAULT_RETRY_COUNT = 1
DEFAULT_RETRY_BACKOFF_SECONDS = 2.0

CHUNK_SIZE = 64 * 1024
BYTES_PER_MB = 1024 * 1024
