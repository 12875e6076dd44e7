"""
Adapters for the external collaborators of the pipeline
"""

from .replicate_client import ReplicateClient, get_replicate_client
from .s3_storage import S3StorageService, get_s3_storage_service

__all__ = ["ReplicateClient", "get_replicate_client", "S3StorageService", "get_s3_storage_service"]
