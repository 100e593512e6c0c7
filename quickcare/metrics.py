"""
Prometheus metrics: order transitions (applied and rejected), delivery claims, notification failures.
"""
from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest

order_transitions_total = Counter(
    "order_transitions_total",
    "Total order status changes applied",
    ["action", "to_status"],
)
order_transitions_rejected_total = Counter(
    "order_transitions_rejected_total",
    "Total order actions rejected before reaching the store",
    ["action", "reason"],
)

# outcome: claimed | already_assigned | not_claimable
delivery_claims_total = Counter(
    "delivery_claims_total",
    "Total delivery claim attempts by outcome",
    ["outcome"],
)

orders_placed_total = Counter(
    "orders_placed_total",
    "Total orders placed by customers",
    ["delivery_type"],
)

notifications_failed_total = Counter(
    "notifications_failed_total",
    "Total change notifications that could not be published",
    ["table"],
)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST


def get_metrics_bytes() -> bytes:
    return generate_latest()
