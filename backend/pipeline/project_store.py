"""
Project Store - the single mutation point for a Project

All project updates go through named actions on ProjectStore. Each action
builds a new Project (models are replaced, never mutated in place), logs one
structlog event, and notifies subscribers with the new and previous
snapshots. Readers holding an older snapshot never see it change.

Features:
- Scene lifecycle actions backed by the scene state machine
- Storyboard editing that keeps scenes index-aligned with the storyboard
- Timeline auto-sync from selected videos until the user edits the timeline
- Timeline undo/redo history
- Terminal final video
"""

from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from pipeline import scene_state_machine as machine
from pipeline import timeline
from pipeline.error_handler import ErrorCode, PipelineError, ValidationError
from pipeline.models import (
    GeneratedImage,
    GeneratedVideo,
    GenerationTask,
    MediaKind,
    Project,
    ProjectStatus,
    SceneError,
    SceneSpec,
    SceneState,
    SceneStatus,
    SeedFrame,
    TimelineClip,
    UploadedImage,
)

logger = structlog.get_logger(__name__)

Listener = Callable[[str, Project, Project], None]

SPEC_FIELDS = {"description", "image_prompt", "video_prompt", "suggested_duration"}

SETTINGS_FIELDS = {
    "image_prompt",
    "video_prompt",
    "negative_prompt",
    "custom_duration",
    "custom_image_input",
    "use_seed_frame",
    "reference_image_id",
}

# Settings carried over when a scene is duplicated
DUPLICATED_SETTINGS = SETTINGS_FIELDS | {"reference_image_urls"}

MAX_REFERENCE_IMAGES = 3
HISTORY_LIMIT = 50


class ProjectStore:
    """
    Holds the current Project and exposes its closed set of mutations.

    Example:
        >>> store = ProjectStore(Project(name="Spring launch"))
        >>> store.set_storyboard(specs)
        >>> store.begin_image_generation(0, task_count=3)
        >>> store.project.scenes[0].status
        <SceneStatus.GENERATING_IMAGE: 'generating_image'>
    """

    def __init__(self, project: Optional[Project] = None, history_limit: int = HISTORY_LIMIT):
        self._project = project or Project()
        self._listeners: List[Listener] = []
        self._undo: List[List[TimelineClip]] = []
        self._redo: List[List[TimelineClip]] = []
        self._history_limit = history_limit
        self._timeline_signature = timeline.selected_videos_signature(
            self._project.storyboard, self._project.scenes
        )
        # Signature of the selected videos the unedited clips were built from
        self._built_signature = self._timeline_signature
        self.logger = structlog.get_logger().bind(service="project_store", project_id=self._project.id)

    @property
    def project(self) -> Project:
        return self._project

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _commit(self, project: Project, action: str, sync_timeline: bool = True, **fields: Any) -> Project:
        previous = self._project
        if sync_timeline:
            project = self._sync_timeline(project)
        self._project = project
        self.logger.info(action, **fields)
        for listener in list(self._listeners):
            listener(action, project, previous)
        return project

    def _sync_timeline(self, project: Project) -> Project:
        signature = timeline.selected_videos_signature(project.storyboard, project.scenes)
        if signature == self._timeline_signature:
            return project
        if project.timeline_edited:
            self.logger.warning(
                "timeline_out_of_sync",
                reason="selected videos changed after manual timeline edits",
                clip_count=len(project.timeline_clips),
            )
            self._timeline_signature = signature
            return project

        clips = timeline.build_clips(project.storyboard, project.scenes)
        self._timeline_signature = signature
        self._built_signature = signature
        self._undo.clear()
        self._redo.clear()
        self.logger.info("timeline_rebuilt", clip_count=len(clips), total_duration=timeline.total_duration(clips))
        return project.model_copy(update={"timeline_clips": clips, "selected_clip_id": None})

    def _check_index(self, index: int) -> None:
        if not 0 <= index < len(self._project.scenes):
            raise ValidationError(
                f"Scene index {index} out of range (0..{len(self._project.scenes) - 1})",
                field="scene_index",
                code=ErrorCode.SCENE_NOT_FOUND,
            )

    def scene(self, index: int) -> SceneState:
        self._check_index(index)
        return self._project.scenes[index]

    def _replace_scene(self, index: int, state: SceneState, action: str, **fields: Any) -> Project:
        previous = self._project.scenes[index]
        scenes = list(self._project.scenes)
        scenes[index] = state
        update: Dict[str, Any] = {"scenes": scenes}
        extra = fields.pop("project_update", None)
        if extra:
            update.update(extra)
        if previous.status != state.status:
            self.logger.info(
                "scene_status_changed",
                scene_index=index,
                from_status=previous.status.value,
                to_status=state.status.value,
            )
        return self._commit(self._project.model_copy(update=update), action, scene_index=index, **fields)

    def _errors_without(self, index: int) -> Dict[int, SceneError]:
        return {k: v for k, v in self._project.scene_errors.items() if k != index}

    def _reindexed(self, order: Sequence[Optional[int]], storyboard: List[SceneSpec],
                   scenes: List[SceneState]) -> Dict[str, Any]:
        """
        Project fields after a storyboard edit.

        ``order[new_index]`` is the old index now at new_index, or None for a
        newly inserted scene.
        """
        storyboard = [spec.model_copy(update={"order": i}) for i, spec in enumerate(storyboard)]
        errors = {
            new_index: self._project.scene_errors[old_index]
            for new_index, old_index in enumerate(order)
            if old_index is not None and old_index in self._project.scene_errors
        }
        current = self._project.current_scene_index
        if current in order:
            current = order.index(current)
        current = max(0, min(current, len(storyboard) - 1))
        return {
            "storyboard": storyboard,
            "scenes": scenes,
            "scene_errors": errors,
            "current_scene_index": current,
        }

    # ------------------------------------------------------------------
    # Storyboard
    # ------------------------------------------------------------------

    def set_storyboard(
        self,
        specs: Sequence[SceneSpec],
        prompt: Optional[str] = None,
        target_duration: Optional[int] = None,
    ) -> Project:
        """Replace the storyboard; every scene starts pending."""
        storyboard = [spec.model_copy(update={"order": i}) for i, spec in enumerate(specs)]
        update: Dict[str, Any] = {}
        if prompt is not None:
            update["prompt"] = prompt
        if target_duration is not None:
            update["target_duration"] = target_duration
        project = self._project.model_copy(update={
            **update,
            "storyboard": storyboard,
            "scenes": [SceneState() for _ in storyboard],
            "scene_errors": {},
            "current_scene_index": 0,
            "status": ProjectStatus.STORYBOARD,
            "timeline_clips": [],
            "timeline_edited": False,
            "selected_clip_id": None,
        })
        self._undo.clear()
        self._redo.clear()
        return self._commit(project, "storyboard_set", scene_count=len(storyboard))

    def update_scene_spec(self, index: int, **changes: Any) -> Project:
        """Replace the storyboard entry at ``index`` with an edited copy."""
        self._check_index(index)
        unknown = set(changes) - SPEC_FIELDS
        if unknown:
            raise ValidationError(f"Unknown scene fields: {sorted(unknown)}", field="changes")

        spec = self._project.storyboard[index]
        try:
            edited = SceneSpec.model_validate({**spec.model_dump(), **changes})
        except ValueError as e:
            raise ValidationError(str(e), details={"scene_index": index}) from e

        storyboard = list(self._project.storyboard)
        storyboard[index] = edited
        return self._commit(
            self._project.model_copy(update={"storyboard": storyboard}),
            "scene_spec_updated",
            scene_index=index,
            fields=sorted(changes),
        )

    def insert_scene(self, index: int, spec: SceneSpec) -> Project:
        """Insert a new pending scene before ``index`` (len(scenes) appends)."""
        count = len(self._project.storyboard)
        if not 0 <= index <= count:
            raise ValidationError(
                f"Insert position {index} out of range (0..{count})",
                field="index",
                code=ErrorCode.OUT_OF_RANGE,
            )
        storyboard = list(self._project.storyboard)
        scenes = list(self._project.scenes)
        storyboard.insert(index, spec)
        scenes.insert(index, SceneState())
        order: List[Optional[int]] = list(range(count))
        order.insert(index, None)
        return self._commit(
            self._project.model_copy(update=self._reindexed(order, storyboard, scenes)),
            "scene_inserted",
            scene_index=index,
            scene_id=spec.id,
        )

    def delete_scene(self, index: int) -> Project:
        self._check_index(index)
        storyboard = list(self._project.storyboard)
        scenes = list(self._project.scenes)
        removed = storyboard.pop(index)
        scenes.pop(index)
        order: List[Optional[int]] = [i for i in range(len(self._project.storyboard)) if i != index]
        return self._commit(
            self._project.model_copy(update=self._reindexed(order, storyboard, scenes)),
            "scene_deleted",
            scene_index=index,
            scene_id=removed.id,
        )

    def reorder_scenes(self, from_index: int, to_index: int) -> Project:
        self._check_index(from_index)
        self._check_index(to_index)
        order: List[Optional[int]] = list(range(len(self._project.storyboard)))
        order.insert(to_index, order.pop(from_index))
        storyboard = [self._project.storyboard[i] for i in order]
        scenes = [self._project.scenes[i] for i in order]
        return self._commit(
            self._project.model_copy(update=self._reindexed(order, storyboard, scenes)),
            "scenes_reordered",
            from_index=from_index,
            to_index=to_index,
        )

    def duplicate_scene(self, index: int) -> Project:
        """Insert a copy of the scene's spec and settings (no media) after it."""
        self._check_index(index)
        source_spec = self._project.storyboard[index]
        source_state = self._project.scenes[index]
        spec = SceneSpec(
            order=index + 1,
            description=source_spec.description,
            image_prompt=source_spec.image_prompt,
            video_prompt=source_spec.video_prompt,
            suggested_duration=source_spec.suggested_duration,
        )
        state = SceneState(**{name: getattr(source_state, name) for name in DUPLICATED_SETTINGS})

        storyboard = list(self._project.storyboard)
        scenes = list(self._project.scenes)
        storyboard.insert(index + 1, spec)
        scenes.insert(index + 1, state)
        order: List[Optional[int]] = list(range(len(self._project.storyboard)))
        order.insert(index + 1, None)
        return self._commit(
            self._project.model_copy(update=self._reindexed(order, storyboard, scenes)),
            "scene_duplicated",
            scene_index=index,
            new_scene_id=spec.id,
        )

    # ------------------------------------------------------------------
    # Scene settings and project media
    # ------------------------------------------------------------------

    def update_scene_settings(self, index: int, **changes: Any) -> Project:
        state = self.scene(index)
        unknown = set(changes) - SETTINGS_FIELDS
        if unknown:
            raise ValidationError(f"Unknown scene settings: {sorted(unknown)}", field="changes")
        try:
            updated = SceneState.model_validate({**state.model_dump(), **changes})
        except ValueError as e:
            raise ValidationError(str(e), details={"scene_index": index}) from e
        return self._replace_scene(index, updated, "scene_settings_updated", fields=sorted(changes))

    def set_scene_reference_images(self, index: int, urls: Sequence[str]) -> Project:
        state = self.scene(index)
        if len(urls) > MAX_REFERENCE_IMAGES:
            raise ValidationError(
                f"At most {MAX_REFERENCE_IMAGES} reference images per scene, got {len(urls)}",
                field="reference_image_urls",
                code=ErrorCode.OUT_OF_RANGE,
            )
        updated = state.model_copy(update={"reference_image_urls": list(urls)})
        return self._replace_scene(index, updated, "scene_reference_images_set", count=len(urls))

    def set_project_reference_images(self, urls: Sequence[str]) -> Project:
        return self._commit(
            self._project.model_copy(update={"reference_image_urls": list(urls)}),
            "project_reference_images_set",
            count=len(urls),
        )

    def set_seed_image_id(self, media_id: Optional[str]) -> Project:
        """Choose (or clear) the media-drawer seed image."""
        return self._commit(
            self._project.model_copy(update={"seed_image_id": media_id}),
            "seed_image_selected",
            media_id=media_id,
        )

    def add_uploaded_image(self, image: UploadedImage, parent_id: Optional[str] = None) -> Project:
        """Add an upload, or a processed version of an existing upload."""
        uploads = list(self._project.uploaded_images)
        if parent_id is None:
            uploads.append(image)
        else:
            uploads = _attach_processed(uploads, parent_id, image)
        return self._commit(
            self._project.model_copy(update={"uploaded_images": uploads}),
            "uploaded_image_added",
            image_id=image.id,
            parent_id=parent_id,
        )

    # ------------------------------------------------------------------
    # Image generation
    # ------------------------------------------------------------------

    def begin_image_generation(self, index: int, task_count: int) -> Project:
        state = machine.begin_image_generation(self.scene(index), index)
        state = state.model_copy(update={"image_tasks": [GenerationTask(slot=i) for i in range(task_count)]})
        update: Dict[str, Any] = {"scene_errors": self._errors_without(index)}
        if self._project.status == ProjectStatus.STORYBOARD:
            update["status"] = ProjectStatus.SCENE_GENERATION
        return self._replace_scene(index, state, "image_generation_started",
                                   task_count=task_count, project_update=update)

    def add_generated_image(self, index: int, image: GeneratedImage) -> Project:
        state = machine.add_image(self.scene(index), image, index)
        return self._replace_scene(index, state, "image_candidate_added",
                                   image_id=image.id, candidates=len(state.generated_images))

    def complete_image_generation(self, index: int) -> Project:
        state = machine.complete_image_generation(self.scene(index), index)
        return self._replace_scene(index, state, "image_generation_completed",
                                   candidates=len(state.generated_images))

    def fail_image_generation(self, index: int, error: Optional[PipelineError] = None) -> Project:
        """Revert to pending. Without an error this records a cancellation."""
        state = machine.fail_image_generation(self.scene(index), index)
        errors = self._with_error(index, error) if error else self._errors_without(index)
        return self._replace_scene(index, state, "image_generation_failed",
                                   error=error.message if error else "cancelled",
                                   project_update={"scene_errors": errors})

    def select_image(self, index: int, image_id: str) -> Project:
        state = machine.select_image(self.scene(index), image_id, index)
        return self._replace_scene(index, state, "image_selected", image_id=image_id)

    def delete_generated_image(self, index: int, image_id: str) -> Project:
        state = machine.delete_image(self.scene(index), image_id, index)
        return self._replace_scene(index, state, "image_deleted", image_id=image_id)

    # ------------------------------------------------------------------
    # Video generation
    # ------------------------------------------------------------------

    def begin_video_generation(self, index: int) -> Project:
        state = machine.begin_video_generation(self.scene(index), index)
        state = state.model_copy(update={"video_tasks": [GenerationTask(slot=0)]})
        return self._replace_scene(index, state, "video_generation_started",
                                   image_id=state.selected_image_id,
                                   project_update={"scene_errors": self._errors_without(index)})

    def complete_video_generation(self, index: int, video: GeneratedVideo) -> Project:
        state = machine.complete_video_generation(self.scene(index), video, index)
        return self._replace_scene(index, state, "video_generation_completed",
                                   video_id=video.id, duration=video.duration)

    def fail_video_generation(self, index: int, error: Optional[PipelineError] = None) -> Project:
        state = machine.fail_video_generation(self.scene(index), index)
        errors = self._with_error(index, error) if error else self._errors_without(index)
        return self._replace_scene(index, state, "video_generation_failed",
                                   error=error.message if error else "cancelled",
                                   project_update={"scene_errors": errors})

    def select_video(self, index: int, video_id: str) -> Project:
        state = machine.select_video(self.scene(index), video_id, index)
        return self._replace_scene(index, state, "video_selected", video_id=video_id)

    def update_generation_task(self, index: int, kind: MediaKind, slot: int, **fields: Any) -> Project:
        """Record progress for one in-flight candidate request."""
        state = self.scene(index)
        attr = "image_tasks" if kind == MediaKind.IMAGE else "video_tasks"
        tasks = [
            task.model_copy(update=fields) if task.slot == slot else task
            for task in getattr(state, attr)
        ]
        updated = state.model_copy(update={attr: tasks})
        return self._replace_scene(index, updated, "generation_task_updated",
                                   kind=kind.value, slot=slot, **fields)

    def scene_progress(self, index: int, kind: MediaKind) -> List[GenerationTask]:
        state = self.scene(index)
        return list(state.image_tasks if kind == MediaKind.IMAGE else state.video_tasks)

    # ------------------------------------------------------------------
    # Approval and seed frames
    # ------------------------------------------------------------------

    def approve_scene(self, index: int) -> Project:
        """Mark the scene completed and move the cursor past it."""
        state = machine.approve(self.scene(index), index)
        last = len(self._project.scenes) - 1
        current = max(self._project.current_scene_index, min(index + 1, last))
        return self._replace_scene(index, state, "scene_approved",
                                   current_scene_index=current,
                                   project_update={"current_scene_index": current,
                                                   "scene_errors": self._errors_without(index)})

    def set_seed_frames(self, index: int, frames: Sequence[SeedFrame]) -> bool:
        """
        Attach extracted frames to the scene they will seed.

        Returns False without writing when the scene already has frames.
        """
        state = self.scene(index)
        if state.seed_frames:
            self.logger.info("seed_frames_already_present", scene_index=index,
                             existing=len(state.seed_frames))
            return False
        updated = state.model_copy(update={
            "seed_frames": list(frames),
            "selected_seed_frame_index": 0 if frames else None,
        })
        self._replace_scene(index, updated, "seed_frames_set", count=len(frames))
        return True

    def select_seed_frame(self, index: int, frame_index: int) -> Project:
        state = machine.select_seed_frame(self.scene(index), frame_index, index)
        return self._replace_scene(index, state, "seed_frame_selected", frame_index=frame_index)

    # ------------------------------------------------------------------
    # Scene errors
    # ------------------------------------------------------------------

    def _with_error(self, index: int, error: PipelineError) -> Dict[int, SceneError]:
        errors = dict(self._project.scene_errors)
        errors[index] = SceneError(
            message=error.get_user_friendly_message(),
            retryable=error.retryable,
            code=error.code.value,
        )
        return errors

    def set_scene_error(self, index: int, error: PipelineError) -> Project:
        self._check_index(index)
        return self._commit(
            self._project.model_copy(update={"scene_errors": self._with_error(index, error)}),
            "scene_error_set",
            scene_index=index,
            error_code=error.code.value,
            retryable=error.retryable,
        )

    def clear_scene_error(self, index: int) -> Project:
        return self._commit(
            self._project.model_copy(update={"scene_errors": self._errors_without(index)}),
            "scene_error_cleared",
            scene_index=index,
        )

    # ------------------------------------------------------------------
    # Timeline
    # ------------------------------------------------------------------

    def _edit_timeline(self, clips: List[TimelineClip], action: str, **fields: Any) -> Project:
        self._undo.append(list(self._project.timeline_clips))
        if len(self._undo) > self._history_limit:
            self._undo.pop(0)
        self._redo.clear()
        return self._set_clips(clips, action, edited=True, **fields)

    def _set_clips(self, clips: List[TimelineClip], action: str, edited: bool, **fields: Any) -> Project:
        selected = self._project.selected_clip_id
        if selected and not any(clip.id == selected for clip in clips):
            selected = None
        project = self._project.model_copy(update={
            "timeline_clips": clips,
            "timeline_edited": edited,
            "selected_clip_id": selected,
        })
        return self._commit(project, action, sync_timeline=False,
                            clip_count=len(clips), total_duration=timeline.total_duration(clips), **fields)

    def split_clip(self, clip_id: str, at_time: float) -> bool:
        clips = timeline.split_clip(self._project.timeline_clips, clip_id, at_time)
        if clips is None:
            return False
        self._edit_timeline(clips, "clip_split", clip_id=clip_id, at_time=at_time)
        return True

    def split_at_playhead(self, time: float) -> bool:
        """Split whichever clip is under the playhead."""
        clip = timeline.clip_at(self._project.timeline_clips, time)
        if clip is None:
            self.logger.info("split_at_playhead_no_clip", time=time)
            return False
        return self.split_clip(clip.id, time)

    def crop_clip(self, clip_id: str, trim_start: float, trim_end: float) -> Project:
        clips = timeline.crop_clip(self._project.timeline_clips, clip_id, trim_start, trim_end)
        return self._edit_timeline(clips, "clip_cropped", clip_id=clip_id,
                                   trim_start=trim_start, trim_end=trim_end)

    def delete_clip(self, clip_id: str) -> Project:
        clips = timeline.delete_clip(self._project.timeline_clips, clip_id)
        return self._edit_timeline(clips, "clip_deleted", clip_id=clip_id)

    def reorder_clip(self, clip_id: str, new_index: int) -> Project:
        clips = timeline.reorder_clip(self._project.timeline_clips, clip_id, new_index)
        return self._edit_timeline(clips, "clip_reordered", clip_id=clip_id, new_index=new_index)

    def select_clip(self, clip_id: Optional[str]) -> Project:
        if clip_id is not None:
            timeline.find_clip(self._project.timeline_clips, clip_id)
        return self._commit(
            self._project.model_copy(update={"selected_clip_id": clip_id}),
            "clip_selected",
            sync_timeline=False,
            clip_id=clip_id,
        )

    def can_undo(self) -> bool:
        return bool(self._undo)

    def can_redo(self) -> bool:
        return bool(self._redo)

    def undo(self) -> bool:
        if not self._undo:
            return False
        self._redo.append(list(self._project.timeline_clips))
        clips = self._undo.pop()
        if self._undo:
            self._set_clips(clips, "timeline_undo", edited=True)
            return True

        signature = timeline.selected_videos_signature(self._project.storyboard, self._project.scenes)
        if signature != self._built_signature:
            # The unedited clips predate a selected-video change that was skipped while edited
            clips = timeline.build_clips(self._project.storyboard, self._project.scenes)
            self._built_signature = signature
            self._redo.clear()
            self.logger.info("timeline_rebuilt", reason="stale_base_on_undo", clip_count=len(clips),
                             total_duration=timeline.total_duration(clips))
        self._set_clips(clips, "timeline_undo", edited=False)
        return True

    def redo(self) -> bool:
        if not self._redo:
            return False
        self._undo.append(list(self._project.timeline_clips))
        clips = self._redo.pop()
        self._set_clips(clips, "timeline_redo", edited=True)
        return True

    def refresh_timeline(self, confirm: bool = False) -> Project:
        """
        Rebuild clips from the scenes' selected videos.

        Discards manual edits, so the caller must pass confirm=True when the
        timeline has been edited.
        """
        if self._project.timeline_edited and not confirm:
            raise ValidationError(
                "Refreshing the timeline discards manual edits; confirmation required",
                field="confirm",
                code=ErrorCode.CONFIRMATION_REQUIRED,
            )
        clips = timeline.build_clips(self._project.storyboard, self._project.scenes)
        self._timeline_signature = timeline.selected_videos_signature(
            self._project.storyboard, self._project.scenes
        )
        self._built_signature = self._timeline_signature
        self._undo.clear()
        self._redo.clear()
        return self._set_clips(clips, "timeline_refreshed", edited=False)

    # ------------------------------------------------------------------
    # Preview and final video
    # ------------------------------------------------------------------

    def set_preview_url(self, url: Optional[str]) -> Project:
        return self._commit(
            self._project.model_copy(update={"preview_url": url}),
            "preview_updated",
            sync_timeline=False,
            preview_url=url,
        )

    def begin_stitching(self) -> Project:
        if self._project.final_video_url:
            raise PipelineError(
                ErrorCode.FINAL_VIDEO_ALREADY_SET,
                "Final video has already been produced",
                {"final_video_url": self._project.final_video_url},
            )
        if not self._project.timeline_clips:
            raise ValidationError("Timeline has no clips to stitch", field="timeline_clips")
        return self._commit(
            self._project.model_copy(update={"status": ProjectStatus.STITCHING}),
            "stitching_started",
            sync_timeline=False,
            clip_count=len(self._project.timeline_clips),
        )

    def fail_stitching(self, error: Optional[PipelineError] = None) -> Project:
        """Return to scene generation; no error means the stitch was cancelled."""
        return self._commit(
            self._project.model_copy(update={"status": ProjectStatus.SCENE_GENERATION}),
            "stitching_failed" if error else "stitching_cancelled",
            sync_timeline=False,
            error_code=error.code.value if error else None,
            retryable=error.retryable if error else None,
        )

    def set_final_video(self, url: str, s3_key: Optional[str] = None) -> Project:
        """Record the stitched video. Can only happen once per project."""
        if self._project.final_video_url:
            raise PipelineError(
                ErrorCode.FINAL_VIDEO_ALREADY_SET,
                "Final video has already been set",
                {"final_video_url": self._project.final_video_url},
                retryable=False,
            )
        return self._commit(
            self._project.model_copy(update={
                "final_video_url": url,
                "final_video_s3_key": s3_key,
                "status": ProjectStatus.COMPLETED,
            }),
            "final_video_set",
            sync_timeline=False,
            final_video_url=url,
        )

    def scene_statuses(self) -> List[SceneStatus]:
        return [state.status for state in self._project.scenes]


def _attach_processed(images: List[UploadedImage], parent_id: str, version: UploadedImage) -> List[UploadedImage]:
    updated, found = _attach_to_tree(images, parent_id, version)
    if not found:
        raise ValidationError(f"Uploaded image {parent_id} not found", field="parent_id")
    return updated


def _attach_to_tree(images, parent_id, version):
    result = []
    found = False
    for image in images:
        if not found and image.id == parent_id:
            image = image.model_copy(update={"processed_versions": [*image.processed_versions, version]})
            found = True
        elif not found and image.processed_versions:
            nested, found = _attach_to_tree(image.processed_versions, parent_id, version)
            if found:
                image = image.model_copy(update={"processed_versions": nested})
        result.append(image)
    return result, found
