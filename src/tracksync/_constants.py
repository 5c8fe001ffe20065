"""Internal constants shared across the library."""

SOURCE_BASE_URL = "https://probe.example.com"
SOURCE_SEARCH_PATH = "/tracker/buryPointTest/search"
BACKEND_BASE_URL = "http://localhost:3004/api"
USER_AGENT = "tracksync/1.0"

DATE_FORMAT = "%Y-%m-%d"

# ------------------------------------------------------------------
# Source pagination
# ------------------------------------------------------------------

DEFAULT_PAGE_SIZE = 1000
#: Upper bound on pages per (date, point) unit; the reported total is not
#: always trustworthy.
MAX_PAGES = 50
PROBE_PAGE_SIZE = 10

# ------------------------------------------------------------------
# Backend routes (relative to the backend base URL)
# ------------------------------------------------------------------

RAW_DATA_ROUTE = "/cache/raw-data"
PRELOAD_TRIGGER_ROUTE = "/preload/trigger"
PRELOAD_STATUS_ROUTE = "/preload/status"
PROJECT_CONFIG_ROUTE = "/config/projectConfig"
HEALTH_ROUTE = "/health"
