import time

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware

REQUESTS = Counter(
    "http_requests_total",
    "HTTP requests handled",
    ["service", "method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["service", "method", "path"],
)

ORDERS_CREATED = Counter("orders_created_total", "Orders created", ["status"])
ORDER_TRANSITIONS = Counter("order_transitions_total", "Order status transitions", ["to_status"])
PAYMENT_RECONCILIATIONS = Counter(
    "payment_reconciliations_total", "Payment gateway reconciliations", ["state"]
)
LOYALTY_POINTS_AWARDED = Counter("loyalty_points_awarded_total", "Loyalty points credited")


class MetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, service_name: str):
        super().__init__(app)
        self.service_name = service_name

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        # route template keeps label cardinality bounded
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        REQUESTS.labels(self.service_name, request.method, path, str(response.status_code)).inc()
        REQUEST_LATENCY.labels(self.service_name, request.method, path).observe(
            time.perf_counter() - start
        )
        return response


def metrics_endpoint() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
