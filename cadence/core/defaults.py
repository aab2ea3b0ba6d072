"""Shared default constants for the cadence library."""

# Hard cap on export schedules per tenant, enforced at creation only.
MAX_SCHEDULES_PER_TENANT: int = 20

# Capability every schedule operation is checked against.
EXPORT_CAPABILITY: str = 'admin:users:export'

# Rate-limit key used when the request carries no client token.
ANONYMOUS_CLIENT: str = 'anonymous'

# Time of day applied when a schedule omits one.
DEFAULT_SCHEDULE_TIME: str = '09:00'

# Upper bound on a single delivery call before it is failed with `Timeout`.
DEFAULT_DELIVERY_TIMEOUT_MS: int = 300_000  # 5 minutes

# Pending executions older than this are failed as abandoned on the next sweep.
# Must exceed the delivery timeout so a live delivery is never reaped.
DEFAULT_STALE_PENDING_MS: int = 900_000  # 15 minutes

# Error details recorded for executions that did not finish normally.
TIMEOUT_ERROR_DETAIL: str = 'Timeout'
ABANDONED_ERROR_DETAIL: str = 'Abandoned'
