from __future__ import annotations

import time

from prometheus_client import Counter, Gauge, Histogram

HTTP_REQUESTS = Counter("http_requests_total", "HTTP requests total", ["method", "path", "status"])
HTTP_REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path", "status"],
    buckets=(0.05, 0.1, 0.2, 0.3, 0.5, 1, 2, 5),
)

MESSAGES_INGESTED = Counter(
    "chat_messages_ingested_total", "Messages persisted by the message engine", ["type"]
)
MESSAGES_DEDUPLICATED = Counter(
    "chat_messages_deduplicated_total", "Ingest calls answered from an existing message_id"
)
RECEIPTS_APPLIED = Counter(
    "chat_receipts_applied_total", "Watermark submissions", ["kind", "outcome"]
)
PUBLISHES = Counter("chat_publish_total", "Fan-out publishes", ["family", "outcome"])
RECEIPT_INGRESS = Counter(
    "chat_receipt_ingress_total", "Receipt events read from the ingress topic", ["outcome"]
)
PUSHES = Counter("chat_push_total", "Push sink calls", ["outcome"])
BROKER_CONNECTED = Gauge("chat_broker_connected", "1 when the broker handle is connected")
FANOUT_BACKLOG = Gauge("chat_fanout_backlog", "Events waiting in dispatcher lanes")


def add_metrics_middleware(app):
    @app.middleware("http")
    async def _metrics_middleware(request, call_next):
        start = time.time()
        response = None
        try:
            response = await call_next(request)
            return response
        finally:
            status = str(getattr(response, "status_code", 500))
            method = request.method
            path = "/".join([p for p in request.url.path.split("/") if p][:3])
            path = f"/{path}" if path else "/"
            HTTP_REQUESTS.labels(method=method, path=path, status=status).inc()
            HTTP_REQUEST_LATENCY.labels(method=method, path=path, status=status).observe(time.time() - start)
