"""kgsync store -- triple store client and chunked publisher."""

from kgsync.store.graphdb import GraphStoreClient, StoreCredentials, UploadResult
from kgsync.store.publisher import PublishReport, StorePublisher

__all__ = [
    "GraphStoreClient",
    "PublishReport",
    "StoreCredentials",
    "StorePublisher",
    "UploadResult",
]
