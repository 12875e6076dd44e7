"""
S3 storage service for scene generation projects.

Handles uploads of generated images, videos, seed frames and final renders,
and presigned URL generation. When no bucket is configured, or an upload
fails, media degrades to a locally servable reference so the pipeline is
never blocked on durable storage.
"""

import asyncio
import io
import mimetypes
from dataclasses import dataclass
from typing import BinaryIO, Optional
from urllib.parse import quote

import boto3
from botocore.exceptions import BotoCoreError, ClientError
import structlog

from config import settings
from pipeline.error_handler import ErrorCode, ExternalServiceError

logger = structlog.get_logger()

VIDEO_EXTENSIONS = (".mp4", ".mov", ".webm", ".m4v")


@dataclass(frozen=True)
class StoredAsset:
    """Where a piece of media can be fetched from."""

    url: str
    local_path: str
    s3_key: Optional[str] = None

    @property
    def is_local(self) -> bool:
        return self.s3_key is None


def local_reference_url(local_path: str) -> str:
    """
    Servable URL for a file that only exists on local disk.

    Examples:
        >>> local_reference_url("/tmp/projects/p1/frames/f.png")
        '/api/serve-image?path=%2Ftmp%2Fprojects%2Fp1%2Fframes%2Ff.png'
        >>> local_reference_url("/tmp/projects/p1/final/final.mp4")
        '/api/serve-video?path=%2Ftmp%2Fprojects%2Fp1%2Ffinal%2Ffinal.mp4'
    """
    route = "serve-video" if local_path.lower().endswith(VIDEO_EXTENSIONS) else "serve-image"
    return f"/api/{route}?path={quote(local_path, safe='')}"


class S3StorageService:
    """
    Service for managing S3 file operations.
    """

    def __init__(self, bucket_name: Optional[str] = None, s3_client=None):
        """Initialize S3 client."""
        self.s3_client = s3_client or boto3.client(
            's3',
            region_name=settings.AWS_REGION,
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None
        )
        self.bucket_name = bucket_name if bucket_name is not None else settings.STORAGE_BUCKET

        logger.info(
            "s3_storage_initialized",
            bucket=self.bucket_name,
            region=settings.AWS_REGION
        )

    @property
    def enabled(self) -> bool:
        return bool(self.bucket_name)

    def upload_file(
        self,
        file_data: BinaryIO,
        s3_key: str,
        content_type: str = None
    ) -> str:
        """
        Upload file to S3.

        Args:
            file_data: File-like object to upload
            s3_key: S3 object key (path within bucket)
            content_type: Optional MIME type

        Returns:
            S3 key of uploaded file

        Raises:
            ExternalServiceError if upload fails
        """
        try:
            extra_args = {}
            if content_type:
                extra_args['ContentType'] = content_type

            self.s3_client.upload_fileobj(
                file_data,
                self.bucket_name,
                s3_key,
                ExtraArgs=extra_args
            )

            logger.info(
                "s3_file_uploaded",
                bucket=self.bucket_name,
                s3_key=s3_key,
                content_type=content_type
            )

            return s3_key

        except (ClientError, BotoCoreError) as e:
            logger.error(
                "s3_upload_failed",
                s3_key=s3_key,
                error=str(e),
                exc_info=True
            )
            raise ExternalServiceError(
                "s3", f"Failed to upload file to S3: {e}",
                code=ErrorCode.STORAGE_ERROR, details={"s3_key": s3_key}
            ) from e

    def upload_file_from_path(
        self,
        file_path: str,
        s3_key: str,
        content_type: str = None
    ) -> str:
        """
        Upload file from filesystem path to S3.

        Args:
            file_path: Path to local file
            s3_key: S3 object key
            content_type: Optional MIME type (guessed from the extension if omitted)

        Returns:
            S3 key of uploaded file
        """
        content_type = content_type or mimetypes.guess_type(file_path)[0]
        try:
            with open(file_path, 'rb') as f:
                return self.upload_file(f, s3_key, content_type)
        except OSError as e:
            logger.error(
                "s3_upload_from_path_failed",
                file_path=file_path,
                error=str(e),
                exc_info=True
            )
            raise ExternalServiceError(
                "s3", f"Cannot read {file_path}: {e}",
                code=ErrorCode.STORAGE_ERROR, details={"file_path": file_path}
            ) from e

    def upload_bytes(
        self,
        content: bytes,
        s3_key: str,
        content_type: str = None
    ) -> str:
        """Upload an in-memory buffer (e.g. a user upload) to S3."""
        content_type = content_type or mimetypes.guess_type(s3_key)[0]
        return self.upload_file(io.BytesIO(content), s3_key, content_type)

    def generate_presigned_url(
        self,
        s3_key: str,
        expiry: int = None
    ) -> str:
        """
        Generate presigned URL for S3 object.

        Args:
            s3_key: S3 object key
            expiry: URL expiration in seconds (default: from settings)

        Returns:
            Presigned URL string
        """
        if expiry is None:
            expiry = settings.PRESIGNED_URL_EXPIRY

        try:
            url = self.s3_client.generate_presigned_url(
                'get_object',
                Params={
                    'Bucket': self.bucket_name,
                    'Key': s3_key
                },
                ExpiresIn=expiry
            )

            logger.info(
                "s3_presigned_url_generated",
                s3_key=s3_key,
                expiry_seconds=expiry
            )

            return url

        except (ClientError, BotoCoreError) as e:
            logger.error(
                "s3_presigned_url_failed",
                s3_key=s3_key,
                error=str(e),
                exc_info=True
            )
            raise ExternalServiceError(
                "s3", f"Failed to generate presigned URL: {e}",
                code=ErrorCode.STORAGE_ERROR, details={"s3_key": s3_key}
            ) from e

    # Async wrappers for use in the pipeline's event loop

    async def upload_file_from_path_async(
        self,
        file_path: str,
        s3_key: str,
        content_type: str = None
    ) -> str:
        """
        Async wrapper for upload_file_from_path.

        Runs the sync operation in a thread pool executor.
        """
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None,
            self.upload_file_from_path,
            file_path,
            s3_key,
            content_type
        )

    async def generate_presigned_url_async(self, s3_key: str, expiry: int = None) -> str:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None,
            self.generate_presigned_url,
            s3_key,
            expiry
        )

    async def upload_with_fallback(self, local_path: str, s3_key: str) -> StoredAsset:
        """
        Upload a local file, degrading to a local reference on failure.

        Args:
            local_path: File on local disk
            s3_key: Destination key (see generate_s3_key)

        Returns:
            StoredAsset with a presigned URL and key, or a local serve URL and
            no key when storage is disabled or the upload failed
        """
        if not self.enabled:
            logger.info("s3_disabled_using_local_reference", local_path=local_path)
            return StoredAsset(url=local_reference_url(local_path), local_path=local_path)

        try:
            await self.upload_file_from_path_async(local_path, s3_key)
            url = await self.generate_presigned_url_async(s3_key)
        except ExternalServiceError as e:
            logger.warning(
                "s3_upload_degraded_to_local",
                local_path=local_path,
                s3_key=s3_key,
                error=e.message,
            )
            return StoredAsset(url=local_reference_url(local_path), local_path=local_path)

        return StoredAsset(url=url, local_path=local_path, s3_key=s3_key)


def generate_s3_key(project_id: str, file_type: str, filename: str = None) -> str:
    """
    Generate standardized S3 key for project files.

    Args:
        project_id: Project UUID
        file_type: Type of file (image, video, seed_frame, preview, final_video)
        filename: Optional specific filename

    Returns:
        S3 key string

    Examples:
        >>> generate_s3_key("123", "seed_frame", "scene_002_frame_0.png")
        'projects/123/seed-frames/scene_002_frame_0.png'
        >>> generate_s3_key("123", "final_video")
        'projects/123/final/final.mp4'
    """
    base_path = f"projects/{project_id}"

    # Map file types to paths and default filenames
    file_type_map = {
        "image": (filename or "image.png", f"{base_path}/images"),
        "video": (filename or "video.mp4", f"{base_path}/videos"),
        "seed_frame": (filename or "frame.png", f"{base_path}/seed-frames"),
        "preview": (filename or "preview.mp4", f"{base_path}/preview"),
        "final_video": (filename or "final.mp4", f"{base_path}/final"),
    }

    if file_type in file_type_map:
        filename, path = file_type_map[file_type]
        return f"{path}/{filename}"

    if filename:
        return f"{base_path}/{filename}"
    return f"{base_path}/{file_type}"


# Singleton instance
_s3_storage_service: Optional[S3StorageService] = None


def get_s3_storage_service() -> S3StorageService:
    """
    Get singleton S3 storage service instance.

    Returns:
        S3StorageService instance
    """
    global _s3_storage_service
    if _s3_storage_service is None:
        _s3_storage_service = S3StorageService()
    return _s3_storage_service
