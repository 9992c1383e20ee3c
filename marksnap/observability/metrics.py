import time
from typing import Callable

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.requests import Request
from starlette.responses import Response


REQUEST_COUNTER = Counter(
    "api_requests_total",
    "HTTP requests total",
    ["method", "path", "status"],
)

REQUEST_LATENCY = Histogram(
    "api_request_duration_seconds",
    "HTTP request latency",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)

JOB_COUNTER = Counter(
    "jobs_processed_total",
    "Jobs processed",
    ["type", "status"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Job processing time",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60),
)

SNAPSHOT_WRITES = Counter(
    "snapshot_writes_total",
    "Snapshot create attempts by outcome",
    ["result"],
)

SNAPSHOT_BYTES_WRITTEN = Counter(
    "snapshot_bytes_written_total",
    "Bytes written to the object store for snapshot HTML and images",
)

SNAPSHOT_IMAGE_UPLOADS = Counter(
    "snapshot_image_uploads_total",
    "Snapshot image handling by outcome",
    ["result"],
)

SNAPSHOT_RETENTION_DELETED = Counter(
    "snapshot_retention_deleted_total",
    "Snapshots removed by retention and repair",
    ["policy"],
)

SNAPSHOT_CAPABILITY_CHECKS = Counter(
    "snapshot_capability_checks_total",
    "Signed URL verifications by outcome",
    ["result"],
)

SNAPSHOT_STORAGE_USED = Gauge(
    "snapshot_storage_used_bytes",
    "Aggregate stored bytes observed at the last quota check",
)


def record_snapshot_write(result: str) -> None:
    SNAPSHOT_WRITES.labels(result).inc()


def record_image_upload(result: str) -> None:
    SNAPSHOT_IMAGE_UPLOADS.labels(result).inc()


def record_retention_deleted(policy: str, count: int) -> None:
    if count:
        SNAPSHOT_RETENTION_DELETED.labels(policy).inc(count)


def record_capability_check(result: str) -> None:
    SNAPSHOT_CAPABILITY_CHECKS.labels(result).inc()


async def metrics_endpoint(_: Request) -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


async def request_metrics_middleware(request: Request, call_next: Callable):
    start = time.time()
    response = await call_next(request)
    elapsed = time.time() - start
    path = request.url.path
    # Snapshot ids, bookmark ids and image hashes would explode label cardinality.
    route = request.scope.get("route")
    if route is not None and getattr(route, "path", None):
        path = route.path
    REQUEST_COUNTER.labels(request.method, path, str(response.status_code)).inc()
    REQUEST_LATENCY.observe(elapsed)
    return response
