from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

sessions_created_total = Counter("upload_sessions_created_total", "Upload sessions created by handshake")
sessions_resumed_total = Counter("upload_sessions_resumed_total", "Handshakes that resumed an existing session")
chunks_received_total = Counter("chunks_received_total", "Chunks newly marked RECEIVED")
duplicate_chunks_total = Counter("duplicate_chunks_total", "Chunk uploads for an index that was already RECEIVED")
bytes_received_total = Counter("bytes_received_total", "Chunk bytes written to temp storage")
chunk_write_failures_total = Counter("chunk_write_failures_total", "Chunk writes that failed with an I/O error")
finalize_total = Counter("finalize_total", "Finalize calls by outcome", ["outcome"])
sessions_swept_total = Counter("sessions_swept_total", "Stale sessions removed by the orphan sweep")

chunk_write_latency_seconds = Histogram("chunk_write_latency_seconds", "Positional chunk write latency in seconds")
finalize_duration_seconds = Histogram("finalize_duration_seconds", "Hash, inspect and publish duration in seconds")
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
