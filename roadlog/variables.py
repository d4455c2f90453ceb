'''
Define variables used across the entire application
'''


MIN_CONFIDENCE = 60        # classifier confidence (0-100) below which readings are ignored
DEBOUNCE_COUNT = 2         # consecutive in-vehicle readings to confirm a trip start

VEHICLE_TYPES = {"in_vehicle"}
STOPPED_TYPES = {"still", "on_foot", "walking"}

MAX_EVENTS = 500           # capacity of the event log
STORAGE_KEY = "driving_events_v1"

DEFAULT_VISIT_THRESHOLD_MINUTES = 10
DEFAULT_PLACE_RADIUS_M = 200.0
VISIT_THRESHOLD_KEY = "visit_threshold_minutes"
POI_LOOKUP_KEY = "poi_lookup_enabled"

LIST_LIMIT_MIN = 1
LIST_LIMIT_MAX = 50
LIST_LIMIT_DEFAULT = 10

NOTIF_ID_START = 9001
NOTIF_ID_PARK = 9002

HEARTBEAT_INTERVAL_SECONDS = 60
MIGRATION_MIN_INTERVAL_SECONDS = 1.0

# Redis keys / streams
ACTIVITY_STREAM = "activity"
ACTIVITY_GROUP = "monitor-group"
PENDING_STREAM = "driving:pending"
NOTIFY_STREAM = "notifications"
LOCATION_LAST_KEY = "location:last"
LOCATION_STREAM = "location:fixes"
ALIVE_KEY = "primary:alive_ts"
