"""
Seed-frame propagation

When a scene is approved, stills from the end of its selected video are
attached to the *next* scene so that scene's images can continue the motion.
Propagation is idempotent: once the next scene has frames, they are kept.
"""

import asyncio
from typing import List, Optional

import structlog

from pipeline.asset_manager import AssetManager
from pipeline.error_handler import ErrorCode, GenerationError, StaleResultError
from pipeline.models import SceneStatus, SeedFrame
from pipeline.project_store import ProjectStore
from services.s3_storage import generate_s3_key

logger = structlog.get_logger(__name__)


class SeedFramePropagator:
    """
    Example:
        >>> propagator = SeedFramePropagator(store)
        >>> frames = await propagator.propagate(0)   # frames now on scene 1
    """

    def __init__(
        self,
        store: ProjectStore,
        extractor=None,
        asset_manager: Optional[AssetManager] = None,
        storage=None,
    ):
        if extractor is None:
            from services.frame_extractor import FrameExtractor
            extractor = FrameExtractor()
        if storage is None:
            from services.s3_storage import get_s3_storage_service
            storage = get_s3_storage_service()

        self.store = store
        self.extractor = extractor
        self.assets = asset_manager or AssetManager(store.project.id)
        self.storage = storage
        self.logger = structlog.get_logger().bind(service="seed_frames", project_id=store.project.id)

    async def propagate(self, index: int) -> List[SeedFrame]:
        """
        Extract seed frames from scene ``index`` for scene ``index + 1``.

        Returns the next scene's frames: the existing ones when it already had
        frames, an empty list for the last scene.

        Raises:
            GenerationError / ExternalServiceError: FRAME_EXTRACTION_FAILED when
                the approved video is unavailable or extraction fails
            StaleResultError: The source scene was deleted, or its selected video
                changed, while frames were being extracted
        """
        project = self.store.project
        self.store.scene(index)
        next_index = index + 1
        if next_index >= len(project.scenes):
            return []

        source_scene_id = project.storyboard[index].id
        next_scene_id = project.storyboard[next_index].id
        existing = project.scenes[next_index].seed_frames
        if existing:
            self.logger.info("seed_frame_extraction_skipped", scene_index=index,
                             next_scene_index=next_index, existing=len(existing))
            return list(existing)

        video = project.scenes[index].selected_video
        if video is None or not video.local_path:
            raise GenerationError(
                ErrorCode.FRAME_EXTRACTION_FAILED,
                f"Scene {index} has no local video to extract seed frames from",
                scene_index=index,
                retryable=False,
            )

        extracted = await self.extractor.extract_frames(
            video.local_path,
            str(self.assets.directory("frames")),
            prefix=next_scene_id,
        )

        stored = await asyncio.gather(*[
            self.storage.upload_with_fallback(
                frame.path,
                generate_s3_key(project.id, "seed_frame", f"{next_scene_id}_{i}.png"),
            )
            for i, frame in enumerate(extracted)
        ])

        frames = [
            SeedFrame(url=asset.url, local_path=frame.path, s3_key=asset.s3_key, timestamp=frame.timestamp)
            for frame, asset in zip(extracted, stored)
        ]

        if not self._source_unchanged(source_scene_id, video.id):
            self.logger.warning("seed_frame_source_changed", source_scene_id=source_scene_id, video_id=video.id)
            raise StaleResultError((source_scene_id, "seed_frames"), video.id)

        # The storyboard may have changed while extracting; re-locate the target
        target = next(
            (i for i, spec in enumerate(self.store.project.storyboard) if spec.id == next_scene_id),
            None,
        )
        if target is None:
            self.logger.warning("seed_frame_target_removed", next_scene_id=next_scene_id)
            return []

        if not self.store.set_seed_frames(target, frames):
            return list(self.store.scene(target).seed_frames)

        self.logger.info("seed_frames_propagated", scene_index=index, next_scene_index=target, count=len(frames))
        return frames

    def _source_unchanged(self, scene_id: str, video_id: str) -> bool:
        for spec, state in zip(self.store.project.storyboard, self.store.project.scenes):
            if spec.id == scene_id:
                return (
                    state.selected_video_id == video_id
                    and state.status in (SceneStatus.VIDEO_READY, SceneStatus.COMPLETED)
                )
        return False
