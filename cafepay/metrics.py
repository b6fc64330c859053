# cafepay/metrics.py
from prometheus_client import Counter, Histogram, make_asgi_app

# Counters
orders_created = Counter("orders_created_total", "Orders created and registered", ["currency"])
order_errors = Counter("order_errors_total", "Requests rejected or failed", ["type"])

status_checks = Counter(
    "status_checks_total",
    "Status checks by outcome (paid_cached, paid, pending, degraded, mismatch, error)",
    ["outcome"],
)
payments_confirmed = Counter(
    "payments_confirmed_total",
    "PENDING -> PAID transitions",
    ["currency"],
)
settlement_errors = Counter("settlement_errors_total", "Settlement API failures", ["type"])

# Latency
create_order_latency = Histogram("create_order_latency_seconds", "Order creation latency in seconds")
settlement_latency = Histogram("settlement_latency_seconds", "Settlement API latency in seconds")

# ASGI app for /metrics
metrics_asgi_app = make_asgi_app()
