from __future__ import annotations

CONF_BASE_URL = "base_url"
CONF_STORE_PATH = "store_path"
CONF_MAX_QUEUE_ITEMS = "max_queue_items"
CONF_MAX_QUEUE_BYTES = "max_queue_bytes"
CONF_REQUEST_TIMEOUT = "request_timeout"
CONF_PROBE_PATH = "probe_path"
CONF_PROBE_INTERVAL = "probe_interval"
CONF_STOP_ON_NETWORK_ERROR = "stop_on_network_error"
CONF_RETRY_STATUSES = "retry_statuses"
CONF_QUEUE_PATHS = "queue_paths"
CONF_PORTAL_CACHE_PATHS = "portal_cache_paths"
CONF_LOG_LEVEL = "log_level"

PORTAL_PREFIX = "/api/employee-portal"

DEFAULT_STORE_PATH = ".punch_sync.db"
DEFAULT_MAX_QUEUE_ITEMS = 500
# Roughly the per-origin budget a browser grants before quota errors.
DEFAULT_MAX_QUEUE_BYTES = 5 * 1024 * 1024
DEFAULT_REQUEST_TIMEOUT = 30
DEFAULT_PROBE_PATH = f"{PORTAL_PREFIX}/server-time"
DEFAULT_PROBE_INTERVAL = 30
MIN_PROBE_INTERVAL = 5
DEFAULT_RETRY_STATUSES: tuple[int, ...] = (502, 503, 504)
DEFAULT_QUEUE_PATHS: tuple[str, ...] = (
    f"{PORTAL_PREFIX}/punch",
    f"{PORTAL_PREFIX}/sync/punches",
)
DEFAULT_PORTAL_CACHE_PATHS: tuple[str, ...] = (
    f"{PORTAL_PREFIX}/me",
    f"{PORTAL_PREFIX}/attendance/today",
)
DEFAULT_LOG_LEVEL = "INFO"

QUEUEABLE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

# Foreground -> worker
MSG_GET_QUEUE_STATUS = "GET_QUEUE_STATUS"
MSG_PROCESS_QUEUE = "PROCESS_QUEUE"
MSG_CLEAR_QUEUE = "CLEAR_QUEUE"
MSG_CACHE_PORTAL_DATA = "CACHE_PORTAL_DATA"

# Worker -> every foreground
MSG_QUEUE_STATUS = "QUEUE_STATUS"
MSG_QUEUE_PROCESSED = "QUEUE_PROCESSED"
MSG_QUEUE_CLEARED = "QUEUE_CLEARED"
MSG_PORTAL_DATA_CACHED = "PORTAL_DATA_CACHED"
