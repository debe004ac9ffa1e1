"""
Prometheus metrics: order transitions and lost races (API), webhook outcomes, side-effect tasks (worker),
queue depth (SQS).
"""
from prometheus_client import Counter, Gauge, generate_latest

order_transitions_total = Counter(
    "order_transitions_total",
    "Total committed order status transitions",
    ["from_status", "to_status"],
)
order_transitions_rejected_total = Counter(
    "order_transitions_rejected_total",
    "Total transition requests rejected (invalid, lost race, missing proof)",
    ["to_status", "reason"],
)
assignments_total = Counter(
    "assignments_total",
    "Dispatch claim attempts by mode (pull/push/auto) and outcome",
    ["mode", "outcome"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Payment provider events received, by type and reconciliation outcome",
    ["event_type", "outcome"],
)

# Worker: side-effect task outcomes
tasks_processed_total = Counter(
    "tasks_processed_total",
    "Total side-effect tasks successfully processed",
    ["kind"],
)
tasks_failed_total = Counter(
    "tasks_failed_total",
    "Total side-effect tasks that failed processing (retried or sent to DLQ)",
    ["kind"],
)
tasks_dlq_total = Counter(
    "tasks_dlq_total",
    "Total side-effect tasks moved to DLQ after max retries",
)

# SQS queue depth (when using SQS) - backpressure / consumer lag
sqs_queue_messages_waiting = Gauge(
    "sqs_queue_messages_waiting",
    "Approximate number of messages waiting in SQS (main queue)",
)
sqs_queue_messages_in_flight = Gauge(
    "sqs_queue_messages_in_flight",
    "Approximate number of messages in flight (received but not yet deleted)",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
