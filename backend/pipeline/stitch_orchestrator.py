"""
Stitch / Preview Orchestrator

Keeps a low resolution preview in step with the timeline and produces the
final stitched video on demand.

- Every change to the clip list schedules a debounced preview render. A newer
  schedule supersedes the older one through its request token, so an older
  render that finishes late is discarded.
- "Stitch final video" bakes trims into concrete files first when any clip is
  trimmed, stitches, stores the result and records it on the project once.
"""

import asyncio
import time
import uuid
from typing import Optional, Set

import structlog

from config import settings
from pipeline.asset_manager import AssetManager
from pipeline.cancellation import RequestToken, RequestTokenRegistry
from pipeline.error_handler import PipelineError, StaleResultError
from pipeline.models import Project
from pipeline.project_store import ProjectStore
from services.s3_storage import generate_s3_key, local_reference_url

logger = structlog.get_logger(__name__)

PREVIEW_KEY = "timeline_preview"
FINAL_KEY = "final_video"


class StitchOrchestrator:
    """
    Example:
        >>> orchestrator = StitchOrchestrator(store)
        >>> store.delete_clip(clip_id)           # schedules a preview
        >>> await orchestrator.wait_for_preview()
        >>> project = await orchestrator.stitch_final()
    """

    def __init__(
        self,
        store: ProjectStore,
        compositor=None,
        asset_manager: Optional[AssetManager] = None,
        storage=None,
        tokens: Optional[RequestTokenRegistry] = None,
        debounce: Optional[float] = None,
    ):
        if compositor is None:
            from services.compositor import Compositor
            compositor = Compositor()
        if storage is None:
            from services.s3_storage import get_s3_storage_service
            storage = get_s3_storage_service()

        self.store = store
        self.compositor = compositor
        self.assets = asset_manager or AssetManager(store.project.id)
        self.storage = storage
        self.tokens = tokens or RequestTokenRegistry()
        self.debounce = settings.PREVIEW_DEBOUNCE_SECONDS if debounce is None else debounce
        self._preview_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._unsubscribe = store.subscribe(self._on_change)
        self.logger = structlog.get_logger().bind(service="stitch_orchestrator", project_id=store.project.id)

    def _on_change(self, action: str, project: Project, previous: Project) -> None:
        if project.timeline_clips == previous.timeline_clips:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop to render on; the next change made inside one will catch up
            self.logger.debug("preview_not_scheduled", action=action)
            return
        self.schedule_preview()

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    def schedule_preview(self) -> asyncio.Task:
        """Supersede any pending preview and render the current clip list after the debounce."""
        token = self.tokens.issue(PREVIEW_KEY)
        task = self._track(asyncio.ensure_future(self._render_preview(token)))
        token.attach(task)
        self._preview_task = task
        return task

    async def _render_preview(self, token: RequestToken) -> Optional[str]:
        await asyncio.sleep(self.debounce)
        if not self.tokens.is_current(token):
            return None

        clips = list(self.store.project.timeline_clips)
        if not clips:
            self.tokens.release(token)
            self.store.set_preview_url(None)
            return None

        output_path = str(self.assets.directory("preview") / f"preview_{token.id[:8]}.mp4")
        self.logger.info("preview_render_started", clip_count=len(clips))
        try:
            result = await self.compositor.preview(clips, output_path)
        except PipelineError as e:
            if self.tokens.is_current(token):
                self.tokens.release(token)
                e.log_error()
            return None

        if not self.tokens.is_current(token):
            self.logger.info("preview_discarded", token_id=token.id, reason="superseded")
            return None

        self.tokens.release(token)
        url = local_reference_url(result.path)
        self.store.set_preview_url(url)
        self.logger.info("preview_ready", preview_url=url, duration=result.duration,
                         processing_time=result.processing_time)
        return url

    async def wait_for_preview(self) -> Optional[str]:
        """Wait for the most recently scheduled preview; None if it was superseded or failed."""
        task = self._preview_task
        if task is None:
            return self.store.project.preview_url
        try:
            return await task
        except asyncio.CancelledError:
            if task.cancelled():
                return None
            raise

    # ------------------------------------------------------------------
    # Final video
    # ------------------------------------------------------------------

    async def stitch_final(self) -> Project:
        """
        Stitch the timeline into the final video.

        Raises:
            PipelineError: FINAL_VIDEO_ALREADY_SET when a final video exists,
                STITCH_FAILED / STORAGE_ERROR when rendering fails
            StaleResultError: A newer stitch request superseded this one
        """
        token = self.tokens.issue(FINAL_KEY)
        try:
            self.store.begin_stitching()
        except PipelineError:
            self.tokens.release(token)
            raise

        task = self._track(asyncio.ensure_future(self._stitch(token)))
        token.attach(task)
        try:
            return await task
        except asyncio.CancelledError:
            if token.cancelled:
                raise StaleResultError(token.key, token.id)
            self._abort_stitch(token, None)
            raise
        except StaleResultError:
            raise
        except PipelineError as e:
            self._abort_stitch(token, e)
            raise

    def _abort_stitch(self, token: RequestToken, error: Optional[PipelineError]) -> None:
        if not self.tokens.is_current(token):
            return
        self.tokens.release(token)
        if error is not None:
            error.log_error()
        self.store.fail_stitching(error)

    async def _stitch(self, token: RequestToken) -> Project:
        clips = list(self.store.project.timeline_clips)
        start = time.time()

        if any(clip.is_trimmed for clip in clips):
            self.logger.info("materializing_trims", trimmed=sum(clip.is_trimmed for clip in clips))
            paths = await self.compositor.materialize_trims(clips, str(self.assets.directory("timeline")))
            self._ensure_current(token)
        else:
            paths = [clip.video_local_path for clip in clips]

        filename = f"final_{uuid.uuid4().hex[:8]}.mp4"
        output_path = str(self.assets.directory("final") / filename)
        result = await self.compositor.stitch(paths, output_path)
        self._ensure_current(token)

        stored = await self.storage.upload_with_fallback(
            result.path, generate_s3_key(self.store.project.id, "final_video", filename)
        )
        self._ensure_current(token)

        self.tokens.release(token)
        project = self.store.set_final_video(stored.url, stored.s3_key)
        self.logger.info(
            "final_video_ready",
            final_video_url=stored.url,
            duration=result.duration,
            clip_count=len(clips),
            total_time=time.time() - start,
        )

        # Trimmed renders are only inputs to the final stitch
        try:
            await self.assets.cleanup("timeline")
        except OSError as e:
            self.logger.warning("timeline_cleanup_failed", error=str(e))
        return project

    def _ensure_current(self, token: RequestToken) -> None:
        if not self.tokens.is_current(token):
            raise StaleResultError(token.key, token.id)

    async def close(self) -> None:
        """Stop listening to the store and cancel pending renders."""
        self._unsubscribe()
        self.tokens.cancel(PREVIEW_KEY)
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
