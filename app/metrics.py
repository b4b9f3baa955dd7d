from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)

WEBHOOK_EVENTS = Counter(
    "payment_webhooks_total",
    "Inbound payment provider webhooks by outcome",
    ["provider", "outcome"],
)
ORDER_TRANSITIONS = Counter(
    "order_transitions_total",
    "Committed order status transitions",
    ["from_status", "to_status"],
)
PROVIDER_CALL_DURATION = Histogram(
    "provider_call_duration_seconds",
    "Outbound payment provider call latency",
    ["provider", "operation", "status"],
)
STEP_UP_EVENTS = Counter(
    "step_up_events_total",
    "Step-up code issuance and verification outcomes",
    ["action", "outcome"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)


def observe_webhook(provider: str, outcome: str) -> None:
    WEBHOOK_EVENTS.labels(provider=provider, outcome=outcome).inc()


def observe_transition(from_status: str, to_status: str) -> None:
    ORDER_TRANSITIONS.labels(from_status=from_status, to_status=to_status).inc()
