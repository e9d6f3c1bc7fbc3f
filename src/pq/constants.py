"""pq implementation constants.

User-tunable settings (timeouts, session directory, log level) live in
``pq.config``. Everything here is an implementation detail that does not
change between installations.
"""

# =============================================================================
# Session Directory layout
# =============================================================================

SOCKET_SUFFIX = ".sock"
METADATA_SUFFIX = ".json"
LOG_SUFFIX = ".log"
LOCK_SUFFIX = ".lock"
TMP_SUFFIX = ".tmp"
CURRENT_SESSION_FILE = "current.txt"

SESSION_DIR_MODE = 0o700
SOCKET_MODE = 0o600

# AF_UNIX sun_path is 108 bytes on Linux, 104 on macOS
MAX_SOCKET_PATH_LENGTH = 104

# =============================================================================
# IPC
# =============================================================================

RECV_BUFFER = 64 * 1024  # 64KB
MAX_MESSAGE_SIZE = 64 * 1024 * 1024  # 64MB
STREAM_LIMIT = MAX_MESSAGE_SIZE

# =============================================================================
# Polling
# =============================================================================

SPAWN_POLL_INTERVAL = 0.025
STOP_POLL_INTERVAL = 0.05
IDLE_CHECK_INTERVAL = 1.0

# =============================================================================
# Exit codes
# =============================================================================

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_ALREADY_RUNNING = 3

# =============================================================================
# Profile loading
# =============================================================================

GZIP_MAGIC = b"\x1f\x8b"
FETCH_TIMEOUT_SECONDS = 60.0
FROM_URL_PREFIX = "https://profiler.firefox.com/from-url/"
