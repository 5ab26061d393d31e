DEFAULT_IDEMPOTENCY_TTL_MINUTES = 5
DEFAULT_IN_FLIGHT_WAIT_SECONDS = 10.0
DEFAULT_AUDIT_QUERY_LIMIT = 50
ENTITY_HISTORY_LIMIT = 100
