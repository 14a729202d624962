from prometheus_client import Counter

PAYMENTS = Counter(
    "heart_payments_total",
    "Purchase attempts by provider and outcome",
    ["provider", "outcome"],
)

WEBHOOK_EVENTS = Counter(
    "heart_webhook_events_total",
    "Webhook deliveries by provider and reconciliation outcome",
    ["provider", "outcome"],
)

MILESTONES = Counter(
    "heart_milestones_total",
    "Goal milestones crossed",
    ["milestone"],
)
