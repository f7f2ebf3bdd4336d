from prometheus_client import Counter, Histogram, Gauge

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path"],
)
IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "HTTP requests in progress",
)
LEDGER_OPERATIONS = Counter(
    "billing_ledger_operations_total",
    "Balance ledger mutations",
    ["operation", "result"],
)
PLAN_CHANGES = Counter(
    "billing_plan_changes_total",
    "Plan upgrade / downgrade attempts",
    ["direction", "result"],
)


def get_route_name(scope: dict) -> str:
    route = scope.get("route")
    if route and hasattr(route, "path"):
        return route.path
    return scope.get("path", "unknown")
