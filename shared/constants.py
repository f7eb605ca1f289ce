"""
Shared constants for the SC Event Tracker.

Default values used when a config key is missing, plus protocol constants
for the worker/supervisor process boundary.
"""

# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

DEFAULT_RECONCILIATION_INTERVAL_SECONDS = 30
DEFAULT_HEARTBEAT_TTL_MULTIPLIER = 3

# ---------------------------------------------------------------------------
# Supervision
# ---------------------------------------------------------------------------

DEFAULT_SUPERVISOR_POLL_INTERVAL_SECONDS = 0.5
DEFAULT_STOP_TIMEOUT_SECONDS = 10
DEFAULT_RESTART_BASE_DELAY_SECONDS = 1
DEFAULT_RESTART_MAX_DELAY_SECONDS = 60

# Worker exit codes
EXIT_OK = 0
EXIT_PROVIDER_FAILURE = 1
EXIT_BOOT_FAILURE = 2

# ---------------------------------------------------------------------------
# Listener / dedup
# ---------------------------------------------------------------------------

DEDUP_TTL_SECONDS = 24 * 60 * 60
DEFAULT_MAX_JITTER_SECONDS = 10
DEFAULT_DRAIN_TIMEOUT_SECONDS = 5

# Process-boundary payload keys
PAYLOAD_WORKFLOW_DEFINITION = "workflowDefinition"
PAYLOAD_NETWORK_CATALOG = "networkCatalog"

# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

DEFAULT_DIRECTORY_TIMEOUT_SECONDS = 15
DEFAULT_TRIGGER_TIMEOUT_SECONDS = 30
INTERNAL_TOKEN_HEADER = "X-Internal-Token"
