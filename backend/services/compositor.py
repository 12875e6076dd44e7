"""
Video compositing using moviepy.

Provides:
- Video duration probing
- Materialising clip trims into concrete files (cached by source and trim)
- Low resolution timeline previews
- Final stitching of an ordered clip list

moviepy is blocking, so every public coroutine runs its work in a thread.
"""

import asyncio
import hashlib
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import structlog
from moviepy import VideoFileClip, concatenate_videoclips

from config import settings
from pipeline.error_handler import ErrorCode, ExternalServiceError
from pipeline.models import TimelineClip

logger = structlog.get_logger()

if settings.FFMPEG_PATH:
    os.environ.setdefault("FFMPEG_BINARY", settings.FFMPEG_PATH)


@dataclass(frozen=True)
class RenderResult:
    path: str
    duration: float
    processing_time: float


def trim_cache_key(source_path: str, trim_start: float, trim_end: float) -> str:
    """
    Stable name for a materialised trim.

    Example:
        >>> trim_cache_key("/v/a.mp4", 0.5, 0.0) == trim_cache_key("/v/a.mp4", 0.5, 0.0)
        True
    """
    raw = f"{source_path}:{trim_start:.3f}:{trim_end:.3f}"
    return hashlib.md5(raw.encode("utf-8")).hexdigest()


def _probe_duration(video_path: str) -> float:
    clip = VideoFileClip(video_path)
    try:
        return clip.duration
    finally:
        clip.close()


def _write_subclip(source_path: str, output_path: str, start: float, end: float) -> None:
    clip = VideoFileClip(source_path)
    trimmed = None
    try:
        end = min(end, clip.duration)
        trimmed = clip.subclipped(start, end)
        trimmed.write_videofile(
            output_path,
            codec="libx264",
            audio_codec="aac",
            preset="medium",
            threads=4,
            logger=None  # Suppress moviepy progress output
        )
    finally:
        if trimmed:
            trimmed.close()
        clip.close()


Segment = Tuple[str, Optional[float], Optional[float]]


def _render(
    segments: Sequence[Segment],
    output_path: str,
    height: Optional[int] = None,
    preset: str = "medium",
) -> float:
    """Concatenate (path, start, end) segments, optionally downscaled, into output_path."""
    sources = []
    parts = []
    final_clip = None
    try:
        for path, start, end in segments:
            source = VideoFileClip(path)
            sources.append(source)
            part = source
            if start is not None:
                part = part.subclipped(start, min(end, source.duration))
            if height:
                part = part.resized(height=height)
            parts.append(part)

        final_clip = concatenate_videoclips(parts, method="compose")
        duration = final_clip.duration

        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        final_clip.write_videofile(
            output_path,
            codec="libx264",
            audio_codec="aac",
            preset=preset,
            logger=None
        )
        return duration
    finally:
        if final_clip:
            final_clip.close()
        for source in sources:
            source.close()


class Compositor:
    """
    Renders timeline clip lists.

    Example:
        >>> compositor = Compositor()
        >>> paths = await compositor.materialize_trims(clips, "/tmp/projects/p1/timeline")
        >>> result = await compositor.stitch(paths, "/tmp/projects/p1/final/final.mp4")
    """

    def __init__(self, preview_height: Optional[int] = None):
        self.preview_height = preview_height or settings.PREVIEW_HEIGHT
        self.logger = logger.bind(service="compositor")

    async def get_video_duration(self, video_path: str) -> float:
        try:
            duration = await asyncio.to_thread(_probe_duration, video_path)
        except Exception as e:
            self.logger.error("video_duration_probe_failed", video_path=video_path, error=str(e))
            raise ExternalServiceError(
                "compositor", f"Failed to read video duration: {e}",
                code=ErrorCode.MALFORMED_RESPONSE, details={"video_path": video_path}
            ) from e

        self.logger.debug("video_duration_extracted", video_path=video_path, duration=duration)
        return duration

    async def materialize_trims(self, clips: Sequence[TimelineClip], output_dir: str) -> List[str]:
        """
        Bake each clip's trim into a concrete file.

        Untrimmed clips pass through as their source path. Trimmed clips are
        written once per (source, trim_start, trim_end) and reused afterwards.
        """
        Path(output_dir).mkdir(parents=True, exist_ok=True)
        paths = []
        for clip in clips:
            if not clip.is_trimmed:
                paths.append(clip.video_local_path)
                continue

            key = trim_cache_key(clip.video_local_path, clip.trim_start, clip.trim_end)
            output_path = str(Path(output_dir) / f"{key}.mp4")
            if os.path.exists(output_path):
                self.logger.info("trim_cache_hit", clip_id=clip.id, output_path=output_path)
                paths.append(output_path)
                continue

            self.logger.info(
                "materializing_trim",
                clip_id=clip.id,
                source=clip.video_local_path,
                start=clip.source_start,
                end=clip.source_end,
            )
            try:
                await asyncio.to_thread(
                    _write_subclip, clip.video_local_path, output_path, clip.source_start, clip.source_end
                )
            except Exception as e:
                if os.path.exists(output_path):
                    os.remove(output_path)
                self.logger.error("trim_materialization_failed", clip_id=clip.id, error=str(e), exc_info=True)
                raise ExternalServiceError(
                    "compositor", f"Failed to materialize trim for clip {clip.id}: {e}",
                    code=ErrorCode.STITCH_FAILED, details={"clip_id": clip.id}
                ) from e
            paths.append(output_path)

        return paths

    async def stitch(self, video_paths: Sequence[str], output_path: str) -> RenderResult:
        """Concatenate concrete video files into the final video."""
        if not video_paths:
            raise ExternalServiceError("compositor", "Nothing to stitch", code=ErrorCode.STITCH_FAILED)

        segments = [(path, None, None) for path in video_paths]
        start = time.time()
        self.logger.info("stitching_videos", clip_count=len(video_paths), output_path=output_path)
        try:
            duration = await asyncio.to_thread(_render, segments, output_path)
        except Exception as e:
            self.logger.error("stitch_failed", output_path=output_path, error=str(e), exc_info=True)
            raise ExternalServiceError(
                "compositor", f"Failed to stitch videos: {e}",
                code=ErrorCode.STITCH_FAILED, details={"clip_count": len(video_paths)}
            ) from e

        result = RenderResult(output_path, duration, time.time() - start)
        self.logger.info("stitch_complete", output_path=output_path, duration=duration,
                         processing_time=result.processing_time)
        return result

    async def preview(self, clips: Sequence[TimelineClip], output_path: str) -> RenderResult:
        """Fast low resolution render of the current clip list, trims applied in memory."""
        if not clips:
            raise ExternalServiceError("compositor", "Nothing to preview", code=ErrorCode.PREVIEW_FAILED)

        segments = [
            (clip.video_local_path, clip.source_start, clip.source_end) if clip.is_trimmed
            else (clip.video_local_path, None, None)
            for clip in clips
        ]

        start = time.time()
        try:
            duration = await asyncio.to_thread(
                _render, segments, output_path, self.preview_height, "ultrafast"
            )
        except Exception as e:
            self.logger.error("preview_failed", output_path=output_path, error=str(e), exc_info=True)
            raise ExternalServiceError(
                "compositor", f"Failed to render preview: {e}",
                code=ErrorCode.PREVIEW_FAILED, retryable=True, details={"clip_count": len(clips)}
            ) from e

        return RenderResult(output_path, duration, time.time() - start)
