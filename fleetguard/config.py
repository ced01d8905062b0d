import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL   = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./fleetguard.db")
LOG_DIR        = os.getenv("LOG_DIR", "logs")
LOG_LEVEL      = os.getenv("LOG_LEVEL", "INFO").upper()
TIMEZONE       = os.getenv("TIMEZONE", "Europe/Rome")

# upstream telemetry
TELEMETRY_API_URL   = os.getenv("TELEMETRY_API_URL")
TELEMETRY_SECRET    = os.getenv("TELEMETRY_SECRET")
TELEMETRY_TIMEOUT_S = float(os.getenv("TELEMETRY_TIMEOUT_S", 120))
FETCH_ATTEMPTS      = int(os.getenv("FETCH_ATTEMPTS", 3))

# messaging gateway
NOTIFY_GATEWAY_URL   = os.getenv("NOTIFY_GATEWAY_URL")
NOTIFY_GATEWAY_TOKEN = os.getenv("NOTIFY_GATEWAY_TOKEN")
OPS_RECIPIENT        = os.getenv("OPS_RECIPIENT")
DEFAULT_COUNTRY_CODE = os.getenv("DEFAULT_COUNTRY_CODE", "39")

# loops
CHECK_INTERVAL_S       = float(os.getenv("CHECK_INTERVAL_S", 60))
ALARM_DRAIN_INTERVAL_S = float(os.getenv("ALARM_DRAIN_INTERVAL_S", 1))
ALARM_QUEUE_MAX        = int(os.getenv("ALARM_QUEUE_MAX", 0))
MAX_CONSECUTIVE_ERRORS = int(os.getenv("MAX_CONSECUTIVE_ERRORS", 5))

# escalation
RESPONSE_TIMEOUT_MIN = float(os.getenv("RESPONSE_TIMEOUT_MIN", 5))
CALL_TIMEOUT_MIN     = float(os.getenv("CALL_TIMEOUT_MIN", 10))
MESSAGE_TEMPLATE     = os.getenv(
    "MESSAGE_TEMPLATE",
    "ALARM: {alarm_type} - Vehicle {plate} - {message}. Reply OK to confirm.",
)
