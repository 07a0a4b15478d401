from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "HTTP requests that ended in a 5xx response",
    ["method", "path", "status"],
)

WEBHOOK_EVENTS = Counter(
    "billing_webhook_events_total",
    "Processor webhook events by type and outcome",
    ["event_type", "outcome"],
)
GATEWAY_REQUESTS = Counter(
    "billing_gateway_requests_total",
    "Outbound payment processor calls by operation and outcome",
    ["operation", "outcome"],
)
PAYMENT_RETRY_ATTEMPTS = Counter(
    "billing_payment_retry_attempts_total",
    "Dunning retry attempts by outcome",
    ["outcome"],
)
USAGE_REPORTED = Counter(
    "billing_usage_reported_total",
    "Usage records appended to the ledger",
    ["usage_type"],
)
