"""
Seed frame extraction using moviepy.

Takes evenly spaced stills from the last half second of a clip. Frame 0 is
the one closest to the end of the clip, which is usually the best seed for
the next scene.
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import structlog
from moviepy import VideoFileClip

from config import settings
from pipeline.error_handler import ErrorCode, ExternalServiceError

logger = structlog.get_logger()


@dataclass(frozen=True)
class ExtractedFrame:
    path: str
    timestamp: float


def frame_timestamps(duration: float, count: int, window: float) -> List[float]:
    """
    Timestamps counted back from the end of the clip.

    Example:
        >>> frame_timestamps(5.0, 5, 0.5)
        [4.9, 4.8, 4.7, 4.6, 4.5]
    """
    step = window / count
    return [round(max(0.0, duration - step * (i + 1)), 3) for i in range(count)]


def _save_frames(video_path: str, output_dir: str, prefix: str, count: int, window: float) -> List[ExtractedFrame]:
    clip = VideoFileClip(video_path)
    try:
        frames = []
        for index, timestamp in enumerate(frame_timestamps(clip.duration, count, window)):
            path = str(Path(output_dir) / f"{prefix}_frame_{index}.png")
            clip.save_frame(path, t=timestamp)
            frames.append(ExtractedFrame(path=path, timestamp=timestamp))
        return frames
    finally:
        clip.close()


class FrameExtractor:
    """
    Example:
        >>> extractor = FrameExtractor()
        >>> frames = await extractor.extract_frames("/tmp/projects/p1/videos/scene_0.mp4",
        ...                                         "/tmp/projects/p1/frames", prefix="scene_1")
    """

    def __init__(self, count: Optional[int] = None, window: Optional[float] = None):
        self.count = count or settings.SEED_FRAME_COUNT
        self.window = window or settings.SEED_FRAME_WINDOW
        self.logger = logger.bind(service="frame_extractor")

    async def extract_frames(
        self,
        video_path: str,
        output_dir: str,
        prefix: str = "seed",
        count: Optional[int] = None,
    ) -> List[ExtractedFrame]:
        """
        Extract ``count`` frames from the end of a video.

        Raises:
            ExternalServiceError: FRAME_EXTRACTION_FAILED if the video cannot be
                read or fewer frames than requested were produced
        """
        count = count or self.count
        Path(output_dir).mkdir(parents=True, exist_ok=True)
        self.logger.info("extracting_frames", video_path=video_path, count=count, window=self.window)

        try:
            frames = await asyncio.to_thread(_save_frames, video_path, output_dir, prefix, count, self.window)
        except Exception as e:
            self.logger.error("frame_extraction_failed", video_path=video_path, error=str(e), exc_info=True)
            raise ExternalServiceError(
                "frame_extractor", f"Failed to extract frames: {e}",
                code=ErrorCode.FRAME_EXTRACTION_FAILED, details={"video_path": video_path}
            ) from e

        if len(frames) < count:
            raise ExternalServiceError(
                "frame_extractor",
                f"Expected {count} frames, got {len(frames)}",
                code=ErrorCode.FRAME_EXTRACTION_FAILED,
                details={"video_path": video_path},
            )

        self.logger.info("frames_extracted", video_path=video_path,
                         timestamps=[frame.timestamp for frame in frames])
        return frames
