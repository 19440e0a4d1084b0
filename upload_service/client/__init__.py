from upload_service.client.api import UploadApiClient
from upload_service.client.retry import RetryPolicy
from upload_service.client.scheduler import (
    ClientChunkStatus,
    ClientSessionStatus,
    UploadProgress,
    UploadResult,
    UploadScheduler,
    derive_session_id,
)
from upload_service.client.snapshot import SnapshotStore
from upload_service.client.throughput import ThroughputMeter

__all__ = [
    "ClientChunkStatus",
    "ClientSessionStatus",
    "RetryPolicy",
    "SnapshotStore",
    "ThroughputMeter",
    "UploadApiClient",
    "UploadProgress",
    "UploadResult",
    "UploadScheduler",
    "derive_session_id",
]
