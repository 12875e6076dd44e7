"""
Asset manager for handling project media on local disk.

Manages the working files of one project including:
- Downloads of generated media with retry logic
- Cleanup of intermediate renders
"""

import asyncio
import shutil
import logging
from pathlib import Path
from typing import Optional

import aiofiles
import aiohttp

from config import settings
from pipeline.error_handler import ErrorCode, ExternalServiceError

logger = logging.getLogger(__name__)

SUBDIRS = ("images", "videos", "frames", "timeline", "preview", "final")


class AssetManager:
    """
    Manages local media for one project.

    Each project gets its own isolated directory structure:
    {OUTPUT_DIR}/{project_id}/
        images/     - Image candidates
        videos/     - Scene videos
        frames/     - Extracted seed frames
        timeline/   - Clips with trims baked in
        preview/    - Low resolution timeline previews
        final/      - Final stitched video

    Example:
        >>> am = AssetManager("project-123")
        >>> path = await am.download_file("https://example.com/image.png", "scene_0_a.png", "images")
        >>> await am.cleanup("timeline")
    """

    def __init__(self, project_id: str, base_path: Optional[str] = None):
        """
        Initialize asset manager for a specific project.

        Args:
            project_id: Project identifier
            base_path: Base directory for all projects (default: settings.OUTPUT_DIR)
        """
        self.project_id = project_id
        self.base_path = Path(base_path or settings.OUTPUT_DIR)
        self.project_dir = self.base_path / project_id

    def directory(self, subdir: Optional[str] = None) -> Path:
        """Directory for an asset kind; the project root when subdir is None."""
        if subdir is None:
            return self.project_dir
        if subdir not in SUBDIRS:
            raise ValueError(f"Unknown asset directory: {subdir}. Supported: {list(SUBDIRS)}")
        return self.project_dir / subdir

    async def download_file(
        self,
        url: str,
        filename: str,
        subdir: Optional[str] = None,
        timeout: int = 300
    ) -> str:
        """
        Download file from URL to project directory.

        Args:
            url: URL to download from
            filename: Local filename to save as
            subdir: Optional asset directory (images/videos/frames/...)
            timeout: Download timeout in seconds (default: 300)

        Returns:
            Absolute path to downloaded file

        Raises:
            aiohttp.ClientError: If download fails
            asyncio.TimeoutError: If download times out
        """
        target_dir = self.directory(subdir)
        target_dir.mkdir(parents=True, exist_ok=True)
        file_path = target_dir / filename

        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
                    response.raise_for_status()

                    # Download file in chunks to handle large videos
                    async with aiofiles.open(file_path, 'wb') as f:
                        async for chunk in response.content.iter_chunked(8192):
                            await f.write(chunk)

            logger.info(f"Downloaded {filename} to {file_path}")
            return str(file_path)

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to download {url}: {e!r}")
            # Clean up partial download
            if file_path.exists():
                file_path.unlink()
            raise

    async def download_with_retry(
        self,
        url: str,
        filename: str,
        subdir: Optional[str] = None,
        max_retries: int = 3,
        timeout: int = 300
    ) -> str:
        """
        Download with exponential backoff retry.

        - Attempt 1: immediate
        - Attempt 2: wait 1 second
        - Attempt 3: wait 2 seconds

        Raises:
            ExternalServiceError: ASSET_DOWNLOAD_FAILED if all attempts fail
        """
        for attempt in range(max_retries):
            try:
                return await self.download_file(url, filename, subdir, timeout)

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if attempt == max_retries - 1:
                    logger.error(f"All {max_retries} download attempts failed for {filename}")
                    raise ExternalServiceError(
                        "asset_download",
                        f"Failed to download {filename}: {e!r}",
                        code=ErrorCode.ASSET_DOWNLOAD_FAILED,
                        details={"url": url},
                    ) from e

                delay = 2 ** attempt
                logger.warning(
                    f"Download attempt {attempt + 1} failed for {filename}, "
                    f"retrying in {delay}s: {e!r}"
                )
                await asyncio.sleep(delay)

        raise RuntimeError(f"Failed to download {filename}: max_retries must be positive")

    async def cleanup(self, subdir: Optional[str] = None) -> None:
        """
        Remove the project's local files, or only one asset directory.

        Safe to call even if the directory doesn't exist.
        """
        target_dir = self.directory(subdir)
        if target_dir.exists():
            await asyncio.to_thread(shutil.rmtree, target_dir)
            logger.info(f"Cleaned up {target_dir}")
        else:
            logger.info(f"Nothing to clean for {target_dir}")

    def __repr__(self) -> str:
        return f"AssetManager(project_id='{self.project_id}', path='{self.project_dir}')"
