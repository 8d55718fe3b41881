"""Default values shared across agencyflow modules."""

DEFAULT_DEDUP_WINDOW_SECONDS = 24 * 60 * 60
DEFAULT_WORKFLOW_TIMEOUT_SECONDS = 300
DEFAULT_MAX_STEPS = 50
DEFAULT_SIGNAL_TOPIC = "signals"
DEFAULT_ROUTE_PRIORITY = 0
DEFAULT_LIST_LIMIT = 100
