"""Internal constants shared across the library."""

DEFAULT_MQTT_URL = "mqtt://broker.emqx.io:1883"
DEFAULT_NAMESPACE = "fleet"
CHARGENODE_SEGMENT = "chargenode"

# ------------------------------------------------------------------
# Retention
# ------------------------------------------------------------------

MAX_HISTORY = 200
STATION_TTL_SECONDS = 30 * 24 * 60 * 60
GPS_CACHE_TTL_SECONDS = 30 * 24 * 60 * 60
TRACKING_HISTORY_LIMIT = 1000

# ------------------------------------------------------------------
# Admission thresholds (milliseconds unless noted)
# ------------------------------------------------------------------

DUPLICATE_WINDOW_MS = 30_000
OUT_OF_ORDER_THRESHOLD_MS = 5_000
MAX_CLOCK_SKEW_MS = 5 * 60 * 1000
VALUE_TOLERANCE = 0.0001
GPS_TOLERANCE_DEG = 0.0001  # ~11 m

# ------------------------------------------------------------------
# Staleness / delivery
# ------------------------------------------------------------------

STALE_THRESHOLD_MS = 5 * 60 * 1000
STORE_TIMEOUT_SECONDS = 5.0
RETRY_INTERVAL_SECONDS = 30.0
RETRY_CAPACITY = 100
RETRY_MAX_ATTEMPTS = 3

PAYLOAD_PREVIEW_CHARS = 100
DIAGNOSTIC_ALERT = "Message format error (dev)"

# Display ordering for the charging-station overview.
STATION_STATUS_PRIORITY: dict[str, int] = {
    "charging": 0,
    "idle": 1,
    "occupied": 2,
    "fault": 3,
    "offline": 4,
}
