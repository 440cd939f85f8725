"""Exchange names, queue prefixes and defaults shared across the package."""

# Exchanges
ROUTER_EXCHANGE_NAME = "redelivery.router"
DEAD_LETTER_ROUTER_EXCHANGE_NAME = "redelivery.dead_letter_router"

# Per-processor queue prefixes
RETRY_DELAY_QUEUE_PREFIX = "_retry_delay."
DLQ_QUEUE_PREFIX = "_dlq."

# Management API object name prefixes
MESSAGE_TTL_POLICY_PREFIX = "redelivery-ttl-"
METADATA_PARAMETER_PREFIX = "redelivery-metadata-"

# Broker death-history header
DEATH_HEADER = "x-death"
DEATH_REASON_REJECTED = "rejected"

# Defaults
DEFAULT_PREFETCH_COUNT = 10
DEFAULT_RETRY_DELAY_MS = 10_000
DEFAULT_RECONNECT_DELAY_MS = 5_000
DEFAULT_MAX_RECONNECT_ATTEMPTS = 10
DEFAULT_ATTEMPTS = 1
DEFAULT_VHOST = "/"

TTL_POLICY_PRIORITY = 1000
METADATA_SCHEMA_VERSION = 0
