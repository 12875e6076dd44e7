"""
Scene lifecycle state machine.

    pending -> generating_image -> image_ready -> generating_video
            -> video_ready -> completed

Each transition is a pure function from one SceneState to a new one. Invalid
edges raise InvalidTransitionError; the ProjectStore is the only caller.
"""

from typing import Dict, FrozenSet, Optional

from pipeline.error_handler import InvalidTransitionError, ValidationError, ErrorCode
from pipeline.models import GeneratedImage, GeneratedVideo, SceneState, SceneStatus

S = SceneStatus

ALLOWED_TRANSITIONS: Dict[SceneStatus, FrozenSet[SceneStatus]] = {
    S.PENDING: frozenset({S.GENERATING_IMAGE}),
    # generating_image -> generating_image only when a newer request supersedes
    S.GENERATING_IMAGE: frozenset({S.IMAGE_READY, S.PENDING, S.GENERATING_IMAGE}),
    S.IMAGE_READY: frozenset({S.GENERATING_VIDEO, S.GENERATING_IMAGE}),
    S.GENERATING_VIDEO: frozenset({S.VIDEO_READY, S.IMAGE_READY, S.GENERATING_VIDEO, S.GENERATING_IMAGE}),
    S.VIDEO_READY: frozenset({S.COMPLETED, S.GENERATING_IMAGE, S.GENERATING_VIDEO}),
    S.COMPLETED: frozenset({S.COMPLETED, S.GENERATING_IMAGE, S.GENERATING_VIDEO}),
}


def can_transition(from_status: SceneStatus, to_status: SceneStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def _require(state: SceneState, to_status: SceneStatus, scene_index: Optional[int]) -> None:
    if not can_transition(state.status, to_status):
        raise InvalidTransitionError(scene_index, state.status.value, to_status.value)


def begin_image_generation(state: SceneState, scene_index: Optional[int] = None) -> SceneState:
    """Enter generating_image, dropping previous image candidates."""
    _require(state, S.GENERATING_IMAGE, scene_index)
    return state.model_copy(update={
        "status": S.GENERATING_IMAGE,
        "generated_images": [],
        "selected_image_id": None,
        "image_tasks": [],
    })


def add_image(state: SceneState, image: GeneratedImage, scene_index: Optional[int] = None) -> SceneState:
    """Merge one successful candidate; the first one is auto-selected."""
    if state.status != S.GENERATING_IMAGE:
        raise InvalidTransitionError(
            scene_index, state.status.value, state.status.value,
            "images can only be added while generating",
        )
    selected = state.selected_image_id or image.id
    return state.model_copy(update={
        "generated_images": [*state.generated_images, image],
        "selected_image_id": selected,
    })


def complete_image_generation(state: SceneState, scene_index: Optional[int] = None) -> SceneState:
    _require(state, S.IMAGE_READY, scene_index)
    if not state.generated_images:
        raise InvalidTransitionError(
            scene_index, state.status.value, S.IMAGE_READY.value,
            "no successful image candidates",
        )
    return state.model_copy(update={"status": S.IMAGE_READY})


def fail_image_generation(state: SceneState, scene_index: Optional[int] = None) -> SceneState:
    _require(state, S.PENDING, scene_index)
    return state.model_copy(update={
        "status": S.PENDING,
        "generated_images": [],
        "selected_image_id": None,
    })


def select_image(state: SceneState, image_id: str, scene_index: Optional[int] = None) -> SceneState:
    if not any(img.id == image_id for img in state.generated_images):
        raise ValidationError(
            f"Image {image_id} is not a candidate of this scene",
            field="image_id",
            details={"scene_index": scene_index},
        )
    return state.model_copy(update={"selected_image_id": image_id})


def delete_image(state: SceneState, image_id: str, scene_index: Optional[int] = None) -> SceneState:
    remaining = [img for img in state.generated_images if img.id != image_id]
    if len(remaining) == len(state.generated_images):
        raise ValidationError(
            f"Image {image_id} is not a candidate of this scene",
            field="image_id",
            details={"scene_index": scene_index},
        )
    update = {"generated_images": remaining}
    if state.selected_image_id == image_id:
        update["selected_image_id"] = None
    if not remaining and state.status == S.IMAGE_READY:
        update["status"] = S.PENDING
    return state.model_copy(update=update)


def begin_video_generation(state: SceneState, scene_index: Optional[int] = None) -> SceneState:
    """
    Enter generating_video. Requires a selected image; the first candidate is
    selected when the caller has not chosen one.
    """
    _require(state, S.GENERATING_VIDEO, scene_index)
    if not state.generated_images:
        raise InvalidTransitionError(
            scene_index, state.status.value, S.GENERATING_VIDEO.value,
            "no image available for video generation",
        )
    selected = state.selected_image_id
    if selected is None or state.selected_image is None:
        selected = state.generated_images[0].id
    return state.model_copy(update={
        "status": S.GENERATING_VIDEO,
        "selected_image_id": selected,
        "generated_videos": [],
        "selected_video_id": None,
        "video_tasks": [],
    })


def complete_video_generation(
    state: SceneState,
    video: GeneratedVideo,
    scene_index: Optional[int] = None,
) -> SceneState:
    _require(state, S.VIDEO_READY, scene_index)
    selected = video.model_copy(update={"is_selected": True})
    others = [v.model_copy(update={"is_selected": False}) for v in state.generated_videos]
    return state.model_copy(update={
        "status": S.VIDEO_READY,
        "generated_videos": [*others, selected],
        "selected_video_id": selected.id,
    })


def fail_video_generation(state: SceneState, scene_index: Optional[int] = None) -> SceneState:
    _require(state, S.IMAGE_READY, scene_index)
    return state.model_copy(update={"status": S.IMAGE_READY})


def select_video(state: SceneState, video_id: str, scene_index: Optional[int] = None) -> SceneState:
    if not any(v.id == video_id for v in state.generated_videos):
        raise ValidationError(
            f"Video {video_id} is not a candidate of this scene",
            field="video_id",
            details={"scene_index": scene_index},
        )
    videos = [v.model_copy(update={"is_selected": v.id == video_id}) for v in state.generated_videos]
    return state.model_copy(update={"generated_videos": videos, "selected_video_id": video_id})


def approve(state: SceneState, scene_index: Optional[int] = None) -> SceneState:
    _require(state, S.COMPLETED, scene_index)
    if state.selected_video is None:
        raise InvalidTransitionError(
            scene_index, state.status.value, S.COMPLETED.value,
            "no selected video to approve",
        )
    return state.model_copy(update={"status": S.COMPLETED})


def select_seed_frame(state: SceneState, frame_index: int, scene_index: Optional[int] = None) -> SceneState:
    if not 0 <= frame_index < len(state.seed_frames):
        raise ValidationError(
            f"Seed frame index {frame_index} out of range (0..{len(state.seed_frames) - 1})",
            field="frame_index",
            details={"scene_index": scene_index},
            code=ErrorCode.OUT_OF_RANGE,
        )
    return state.model_copy(update={"selected_seed_frame_index": frame_index})
