# ============================================================
# TIMEOUTS (milliseconds, Playwright convention)
# ============================================================
class Timeouts:
    ELEMENT_CLICK = 15000
    NAVIGATION = 20000
    INPUT_WAIT = 30000
    ELEMENT_SCROLL = 30000
    # Per-member attempt while a merge worker looks for a reachable site
    MERGE_NAVIGATION = 30000
    WORKER_NAVIGATION = 60000
    OAUTH_FLOW = 60000
    API_RESPONSE = 120000
    UPLOAD_CONFIRM = 180000
    POLL_INTERVAL = 500

    # Floor applied to the input wait after the auth gate consumed part of the budget
    MIN_INPUT_WAIT = 5000


# Content types that mark a captured response as a stream that must be drained
STREAMING_CONTENT_TYPES = (
    "text/event-stream",
    "application/stream",
    "text/plain",
)

MERGE_TYPE = "merge"

DEFAULT_FAILOVER_ENABLED = True
DEFAULT_FAILOVER_MAX_RETRIES = 2

# Most permissive first
IMAGE_POLICY_ORDER = ("optional", "required", "forbidden")
DEFAULT_IMAGE_POLICY = "optional"
DEFAULT_MODEL_TYPE = "image"

INTERNAL_OWNER = "internal_server"
