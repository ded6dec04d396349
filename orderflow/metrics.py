# orderflow/metrics.py
from prometheus_client import Counter, Histogram, make_asgi_app

# Counters
orders_created_total = Counter("orders_created_total", "Orders created in pending state")
payments_total = Counter("payments_total", "Orders moved to completed by a verified webhook")
refunds_total = Counter("refunds_total", "Orders moved to refunded")

idempotent_noops = Counter(
    "idempotent_noops_total",
    "Repeated requests answered as success without mutating state",
    ["endpoint"],
)
state_conflicts = Counter(
    "state_conflicts_total",
    "Transitions refused because of the order's current status",
    ["endpoint"],
)
amount_mismatches = Counter(
    "amount_mismatches_total",
    "Gateway-reported amount differed from the order's expected amount",
)
manual_reconciliations = Counter(
    "manual_reconciliations_total",
    "Ledger writes that failed after the gateway may already have acted",
    ["endpoint"],
)
gateway_calls = Counter(
    "gateway_calls_total",
    "Calls to the payment gateway",
    ["operation", "result"],
)

create_errors = Counter("create_order_errors_total", "Create-order errors", ["type"])
confirm_errors = Counter("confirm_payment_errors_total", "Confirm-payment errors", ["type"])
refund_errors = Counter("refund_errors_total", "Refund errors", ["type"])

# Latency
create_latency = Histogram("create_order_latency_seconds", "Create-order latency in seconds")
confirm_latency = Histogram("confirm_payment_latency_seconds", "Confirm-payment latency in seconds")
refund_latency = Histogram("refund_latency_seconds", "Refund latency in seconds")

# ASGI app for /metrics
metrics_asgi_app = make_asgi_app()
