"""
Scene Generator - image and video generation for one scene at a time

Drives the async side of the scene lifecycle:
- "generate images" fans out N independent generation + poll tasks and
  merges each candidate into the scene as soon as it resolves
- "generate video" runs a single generation from the selected image
- "approve" extracts seed frames for the next scene, then completes the scene

Every request holds a token from the RequestTokenRegistry keyed by
(scene id, media kind). Starting a new request for the same key cancels the
previous one, and any result that arrives for a superseded token is dropped
before it reaches the ProjectStore.
"""

import asyncio
from typing import Any, Dict, List, Optional, Set

import structlog

from config import settings
from pipeline.asset_manager import AssetManager
from pipeline.cancellation import RequestToken, RequestTokenRegistry
from pipeline.continuity import ContinuitySelection, resolve_continuity
from pipeline.error_handler import (
    ErrorCode,
    GenerationError,
    InvalidTransitionError,
    PipelineError,
    StaleResultError,
    ValidationError,
    categorize_error,
)
from pipeline.models import GeneratedImage, GeneratedVideo, MediaKind, Project, SceneState, SceneStatus
from pipeline.project_store import ProjectStore
from pipeline.retry_policy import is_retryable_error, provider_error, run_with_retry
from pipeline.scene_state_machine import can_transition
from pipeline.seed_frames import SeedFramePropagator
from services.s3_storage import generate_s3_key

logger = structlog.get_logger(__name__)

IMAGE_ASPECT_RATIO = "9:16"


def build_image_input(
    prompt: str,
    selection: ContinuitySelection,
    negative_prompt: Optional[str] = None,
) -> Dict[str, Any]:
    """Model input for one image candidate."""
    params: Dict[str, Any] = {
        "prompt": prompt,
        "aspect_ratio": IMAGE_ASPECT_RATIO,
        "output_format": "png",
    }
    if selection.seed_image_url:
        params["image_prompt"] = selection.seed_image_url
    if selection.reference_image_urls:
        params["reference_images"] = list(selection.reference_image_urls)
    if negative_prompt:
        params["negative_prompt"] = negative_prompt
    return params


def build_video_input(prompt: str, image_url: str, duration: float) -> Dict[str, Any]:
    """Model input for image-to-video generation."""
    return {
        "prompt": prompt,
        "first_frame_image": image_url,
        "duration": max(1, round(duration)),
    }


class SceneGenerator:
    """
    Async generation actions for the scenes of one project.

    Example:
        >>> generator = SceneGenerator(store)
        >>> await generator.generate_images(0)
        >>> await generator.generate_video(0)
        >>> await generator.approve_scene(0)
    """

    def __init__(
        self,
        store: ProjectStore,
        client=None,
        asset_manager: Optional[AssetManager] = None,
        compositor=None,
        storage=None,
        propagator: Optional[SeedFramePropagator] = None,
        tokens: Optional[RequestTokenRegistry] = None,
        image_model: Optional[str] = None,
        video_model: Optional[str] = None,
        image_candidates: Optional[int] = None,
        strict_continuity: bool = False,
    ):
        """
        Args:
            store: ProjectStore holding the project
            client: Generation client (default: ReplicateClient singleton)
            asset_manager: Local media directory manager
            compositor: Used to probe generated video durations
            storage: Durable storage; generated media stays provider-hosted when None
            propagator: Seed-frame propagator used on approval
            tokens: Shared request token registry
            strict_continuity: Refuse to generate images when an expected seed
                frame or reference is missing
        """
        if client is None:
            from services.replicate_client import get_replicate_client
            client = get_replicate_client()
        if compositor is None:
            from services.compositor import Compositor
            compositor = Compositor()

        self.store = store
        self.client = client
        self.assets = asset_manager or AssetManager(store.project.id)
        self.compositor = compositor
        self.storage = storage
        self.tokens = tokens or RequestTokenRegistry()
        self.propagator = propagator or SeedFramePropagator(store, asset_manager=self.assets, storage=storage)
        self.image_model = image_model or settings.IMAGE_MODEL
        self.video_model = video_model or settings.VIDEO_MODEL
        self.image_candidates = image_candidates or settings.IMAGE_CANDIDATES
        self.strict_continuity = strict_continuity
        self._background: Set[asyncio.Task] = set()
        self.logger = structlog.get_logger().bind(service="scene_generator", project_id=store.project.id)
        self._unsubscribe = store.subscribe(self._on_change)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _scene_id(self, index: int) -> str:
        self.store.scene(index)
        return self.store.project.storyboard[index].id

    def _index_of(self, scene_id: str) -> int:
        for index, spec in enumerate(self.store.project.storyboard):
            if spec.id == scene_id:
                return index
        raise ValidationError(
            f"Scene {scene_id} no longer exists",
            field="scene_id",
            code=ErrorCode.SCENE_NOT_FOUND,
        )

    def _on_change(self, action: str, project: Project, previous: Project) -> None:
        removed = {spec.id for spec in previous.storyboard} - {spec.id for spec in project.storyboard}
        if not removed:
            return
        cancelled = self.tokens.cancel_matching(lambda key: isinstance(key, tuple) and key[0] in removed)
        if cancelled:
            self.logger.info("generation_cancelled_for_removed_scenes", action=action,
                             scene_ids=sorted(removed), cancelled=cancelled)

    def _ensure_current(self, token: RequestToken) -> None:
        if not self.tokens.is_current(token):
            raise StaleResultError(token.key, token.id)

    def _update_task(self, token: RequestToken, scene_id: str, kind: MediaKind, slot: int, **fields: Any) -> None:
        if self.tokens.is_current(token):
            self.store.update_generation_task(self._index_of(scene_id), kind, slot, **fields)

    def _abandon(self, token: RequestToken, scene_id: str) -> None:
        """Revert a scene whose request was cancelled by its caller."""
        if self.tokens.is_current(token):
            self.tokens.release(token)
            self._revert(scene_id, token.key[1])

    def _revert(self, scene_id: str, kind: MediaKind) -> None:
        index = self._index_of(scene_id)
        state = self.store.scene(index)
        if kind == MediaKind.IMAGE and state.status == SceneStatus.GENERATING_IMAGE:
            if state.generated_images:
                self.store.complete_image_generation(index)
            else:
                self.store.fail_image_generation(index)
        elif kind == MediaKind.VIDEO and state.status == SceneStatus.GENERATING_VIDEO:
            self.store.fail_video_generation(index)
        self.logger.info("generation_cancelled", scene_index=index, kind=kind.value)

    def _cancel_remote(self, prediction_id: str) -> None:
        """Best-effort provider-side cancel for an abandoned prediction."""
        async def cancel() -> None:
            try:
                await self.client.cancel_prediction(prediction_id)
            except Exception as e:
                self.logger.warning("remote_cancel_failed", prediction_id=prediction_id, error=str(e))

        task = asyncio.ensure_future(cancel())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _predict(
        self,
        token: RequestToken,
        scene_id: str,
        kind: MediaKind,
        slot: int,
        model: str,
        input_params: Dict[str, Any],
        interval: float,
        timeout: float,
    ):
        """One generation + poll call under the retry policy."""

        async def attempt():
            prediction_id = await self.client.start_prediction(model, input_params)
            self._update_task(token, scene_id, kind, slot, prediction_id=prediction_id, status="starting", error=None)
            try:
                result = await self.client.poll_status(
                    prediction_id,
                    interval=interval,
                    timeout=timeout,
                    on_progress=lambda status: self._update_task(token, scene_id, kind, slot, status=status.status),
                )
            except asyncio.CancelledError:
                self._cancel_remote(prediction_id)
                raise
            if result.status != "succeeded":
                raise provider_error(result.error)
            return result

        return await run_with_retry(attempt, label=f"{kind.value}_slot_{slot}")

    async def _store_media(self, url: str, filename: str, subdir: str, s3_type: str):
        """Download provider media, then optionally persist it. Returns (url, local_path, s3_key)."""
        local_path = await self.assets.download_with_retry(url, filename, subdir)
        if self.storage is None:
            return url, local_path, None
        stored = await self.storage.upload_with_fallback(
            local_path, generate_s3_key(self.store.project.id, s3_type, filename)
        )
        if stored.s3_key is None:
            return url, local_path, None
        return stored.url, local_path, stored.s3_key

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def generate_images(
        self,
        index: int,
        count: Optional[int] = None,
        prompt: Optional[str] = None,
    ) -> SceneState:
        """
        Generate ``count`` image candidates for a scene concurrently.

        Candidates are merged into the scene as each one resolves. The scene
        becomes image_ready if at least one succeeded; otherwise it reverts
        to pending and a GenerationError is raised.

        Raises:
            ValidationError: Missing prompt or out-of-range count
            ContinuityError: strict_continuity is on and a continuity asset is missing
            GenerationError: IMAGE_GENERATION_FAILED when every candidate failed
            StaleResultError: A newer request for this scene superseded this one
        """
        count = self.image_candidates if count is None else count
        if not 1 <= count <= settings.MAX_IMAGE_CANDIDATES:
            raise ValidationError(
                f"Candidate count must be between 1 and {settings.MAX_IMAGE_CANDIDATES}",
                field="count",
                code=ErrorCode.OUT_OF_RANGE,
            )

        state = self.store.scene(index)
        spec = self.store.project.storyboard[index]
        prompt = (prompt or state.image_prompt or spec.image_prompt or "").strip()
        if not prompt:
            raise ValidationError("Image prompt is required", field="image_prompt", code=ErrorCode.MISSING_PROMPT)

        selection = resolve_continuity(self.store.project, index, strict=self.strict_continuity)
        for warning in selection.warnings:
            self.logger.warning("continuity_break", scene_index=index, detail=warning)

        scene_id = spec.id
        token = self.tokens.issue((scene_id, MediaKind.IMAGE))
        # Regenerating images supersedes any video still in flight for this scene
        self.tokens.cancel((scene_id, MediaKind.VIDEO))
        try:
            self.store.begin_image_generation(index, count)
        except PipelineError:
            self.tokens.release(token)
            raise

        self.logger.info(
            "image_generation_requested",
            scene_index=index,
            count=count,
            seed_source=selection.seed_source.value,
            reference_count=len(selection.reference_image_urls),
        )

        input_params = build_image_input(prompt, selection, state.negative_prompt)
        tasks = [
            asyncio.ensure_future(self._image_candidate(token, scene_id, slot, prompt, input_params))
            for slot in range(count)
        ]
        token.attach(*tasks)
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            self._abandon(token, scene_id)
            raise

        try:
            self._ensure_current(token)
            index = self._index_of(scene_id)
            failures = [r for r in results if isinstance(r, BaseException)]
            succeeded = len(results) - len(failures)

            if succeeded == 0:
                error = GenerationError(
                    ErrorCode.IMAGE_GENERATION_FAILED,
                    f"All {count} image candidates failed",
                    scene_index=index,
                    retryable=any(is_retryable_error(f) or getattr(f, "retryable", False) for f in failures),
                    details={
                        "errors": [str(f) for f in failures],
                        "error_codes": [categorize_error(f).value for f in failures],
                    },
                )
                error.log_error()
                self.store.fail_image_generation(index, error)
                raise error

            if failures:
                self.logger.warning("partial_image_failure", scene_index=index,
                                    succeeded=succeeded, failed=len(failures))
            self.store.complete_image_generation(index)
            return self.store.scene(index)
        finally:
            self.tokens.release(token)

    async def _image_candidate(
        self,
        token: RequestToken,
        scene_id: str,
        slot: int,
        prompt: str,
        input_params: Dict[str, Any],
    ) -> GeneratedImage:
        try:
            result = await self._predict(
                token, scene_id, MediaKind.IMAGE, slot, self.image_model, input_params,
                settings.IMAGE_POLL_INTERVAL, settings.IMAGE_POLL_TIMEOUT,
            )
            self._ensure_current(token)
            filename = f"{scene_id}_{token.id[:8]}_{slot}.png"
            url, local_path, s3_key = await self._store_media(result.output_url, filename, "images", "image")
            self._ensure_current(token)
        except StaleResultError:
            raise
        except Exception as e:
            self.logger.warning("image_candidate_failed", scene_id=scene_id, slot=slot, error=str(e))
            self._update_task(token, scene_id, MediaKind.IMAGE, slot, status="failed", error=str(e))
            raise

        image = GeneratedImage(
            url=url,
            local_path=local_path,
            s3_key=s3_key,
            prompt=prompt,
            prediction_id=result.prediction_id,
        )
        index = self._index_of(scene_id)
        self.store.add_generated_image(index, image)
        self.store.update_generation_task(index, MediaKind.IMAGE, slot, status="succeeded")
        return image

    # ------------------------------------------------------------------
    # Video
    # ------------------------------------------------------------------

    async def generate_video(self, index: int) -> SceneState:
        """
        Generate one video from the scene's selected image.

        On failure the scene reverts to image_ready and the error is raised.
        """
        state = self.store.scene(index)
        spec = self.store.project.storyboard[index]
        prompt = (state.video_prompt or spec.video_prompt or state.image_prompt or spec.image_prompt or "").strip()
        if not prompt:
            raise ValidationError("Video prompt is required", field="video_prompt", code=ErrorCode.MISSING_PROMPT)

        scene_id = spec.id
        token = self.tokens.issue((scene_id, MediaKind.VIDEO))
        try:
            self.store.begin_video_generation(index)
        except PipelineError:
            self.tokens.release(token)
            raise

        task = asyncio.ensure_future(self._video_attempt(token, scene_id, prompt))
        token.attach(task)
        try:
            video = await task
        except asyncio.CancelledError:
            if token.cancelled:
                raise StaleResultError(token.key, token.id)
            self._abandon(token, scene_id)
            raise
        except StaleResultError:
            raise
        except Exception as e:
            if not self.tokens.is_current(token):
                raise StaleResultError(token.key, token.id) from e
            error = e if isinstance(e, PipelineError) else GenerationError(
                ErrorCode.VIDEO_GENERATION_FAILED, str(e), retryable=is_retryable_error(e),
                details={"cause": categorize_error(e).value},
            )
            error.log_error()
            self.tokens.release(token)
            self.store.fail_video_generation(self._index_of(scene_id), error)
            if error is e:
                raise
            raise error from e

        try:
            self._ensure_current(token)
            index = self._index_of(scene_id)
            self.store.complete_video_generation(index, video)
            self.store.update_generation_task(index, MediaKind.VIDEO, 0, status="succeeded")
        finally:
            self.tokens.release(token)
        return self.store.scene(index)

    async def _video_attempt(self, token: RequestToken, scene_id: str, prompt: str) -> GeneratedVideo:
        index = self._index_of(scene_id)
        state = self.store.scene(index)
        image = state.selected_image
        duration = state.custom_duration or self.store.project.storyboard[index].suggested_duration

        try:
            result = await self._predict(
                token, scene_id, MediaKind.VIDEO, 0, self.video_model,
                build_video_input(prompt, image.url, duration),
                settings.VIDEO_POLL_INTERVAL, settings.VIDEO_POLL_TIMEOUT,
            )
        except Exception as e:
            self._update_task(token, scene_id, MediaKind.VIDEO, 0, status="failed", error=str(e))
            raise
        self._ensure_current(token)

        filename = f"{scene_id}_{token.id[:8]}.mp4"
        url, local_path, s3_key = await self._store_media(result.output_url, filename, "videos", "video")
        self._ensure_current(token)

        try:
            actual_duration = await self.compositor.get_video_duration(local_path)
        except PipelineError as e:
            self.logger.warning("video_duration_unknown", scene_id=scene_id, error=e.message, fallback=duration)
            actual_duration = duration

        return GeneratedVideo(
            url=url,
            local_path=local_path,
            s3_key=s3_key,
            prompt=prompt,
            prediction_id=result.prediction_id,
            duration=actual_duration,
        )

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    async def approve_scene(self, index: int) -> SceneState:
        """
        Approve the scene's selected video.

        For every scene but the last, seed frames are extracted for the next
        scene first; if that fails the scene is not approved and the error
        is raised.
        If the scene is deleted or its selected video changes while frames are
        being extracted, StaleResultError is raised and nothing is written.
        """
        state = self.store.scene(index)
        if not can_transition(state.status, SceneStatus.COMPLETED) or state.selected_video is None:
            raise InvalidTransitionError(
                index, state.status.value, SceneStatus.COMPLETED.value, "no video ready to approve"
            )

        scene_id = self._scene_id(index)
        video_id = state.selected_video_id
        if index < len(self.store.project.scenes) - 1:
            try:
                await self.propagator.propagate(index)
            except StaleResultError:
                self.logger.info("approval_superseded", scene_id=scene_id, video_id=video_id)
                raise
            except PipelineError as e:
                e.log_error()
                self.store.set_scene_error(self._index_of(scene_id), e)
                raise

        index = self._index_of(scene_id)
        if self.store.scene(index).selected_video_id != video_id:
            raise StaleResultError((scene_id, "approval"), video_id)
        self.store.approve_scene(index)
        return self.store.scene(index)

    def cancel_scene(self, index: int) -> int:
        """Cancel all in-flight generation for a scene and return it to a stable status."""
        scene_id = self._scene_id(index)
        tokens = [self.tokens.current((scene_id, kind)) for kind in MediaKind]
        cancelled = self.tokens.cancel_matching(lambda key: key[0] == scene_id)
        for token in tokens:
            if token is not None:
                self._revert(scene_id, token.key[1])
        return cancelled

    def in_flight(self, index: int, kind: MediaKind) -> bool:
        return self.tokens.in_flight((self._scene_id(index), kind))

    def progress(self, index: int, kind: MediaKind) -> List:
        return self.store.scene_progress(index, kind)

    def close(self) -> None:
        """Stop listening to the store and cancel all in-flight generation."""
        self._unsubscribe()
        self.tokens.cancel_matching(lambda key: isinstance(key, tuple))
