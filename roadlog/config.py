import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL   = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./roadlog.db")
REDIS_URL      = os.getenv("REDIS_URL", "redis://localhost:6379/0")
LOG_DIR        = os.getenv("LOG_DIR", "logs")
LOCAL_TZ       = os.getenv("LOCAL_TZ", "UTC")

NOMINATIM_URL        = os.getenv("NOMINATIM_URL", "https://nominatim.openstreetmap.org/reverse")
NOMINATIM_USER_AGENT = os.getenv("NOMINATIM_USER_AGENT", "roadlog/0.1.0")
GEOCODE_TIMEOUT_SECONDS = float(os.getenv("GEOCODE_TIMEOUT_SECONDS", 5))

LOCATION_TIMEOUT_SECONDS = float(os.getenv("LOCATION_TIMEOUT_SECONDS", 3))
FIX_WAIT_SECONDS         = float(os.getenv("FIX_WAIT_SECONDS", 2))

CONSUMER_NAME  = os.getenv("CONSUMER_NAME", "monitor-1")
DRAIN_ON_STARTUP = os.getenv("DRAIN_ON_STARTUP", "1") not in ("0", "false", "no")
