"""
Timeline clip model.

Clips are derived once from each scene's selected video and then edited
independently of the scenes (split / crop / delete / reorder). Every edit
returns a new list whose start/end times are recomputed by cumulative sum,
so clips stay contiguous: clips[0].start_time == 0 and
clips[i].end_time == clips[i + 1].start_time.
"""

import uuid
from typing import List, Optional, Sequence, Tuple

import structlog

from pipeline.error_handler import ErrorCode, ValidationError
from pipeline.models import SceneSpec, SceneState, TimelineClip

logger = structlog.get_logger(__name__)

# Shortest playable clip after a crop (seconds)
MIN_CLIP_DURATION = 0.1

# Float tolerance when comparing times
EPSILON = 1e-6


def recompute_positions(clips: Sequence[TimelineClip]) -> List[TimelineClip]:
    """Single source of truth for timeline positions."""
    positioned = []
    current = 0.0
    for clip in clips:
        end = current + clip.duration
        positioned.append(clip.model_copy(update={"start_time": current, "end_time": end}))
        current = end
    return positioned


def total_duration(clips: Sequence[TimelineClip]) -> float:
    return clips[-1].end_time if clips else 0.0


def selected_videos_signature(
    storyboard: Sequence[SceneSpec],
    scenes: Sequence[SceneState],
) -> Tuple[Tuple[str, str], ...]:
    """Identity of the set of scenes-with-selected-videos, in storyboard order."""
    return tuple(
        (spec.id, state.selected_video_id)
        for spec, state in zip(storyboard, scenes)
        if state.selected_video is not None and state.selected_video.local_path
    )


def build_clips(storyboard: Sequence[SceneSpec], scenes: Sequence[SceneState]) -> List[TimelineClip]:
    """
    One untrimmed clip per scene with a selected, locally available video.

    Duration comes from the video metadata, falling back to the scene's
    custom duration and then the storyboard's suggested duration.
    """
    clips = []
    for spec, state in zip(storyboard, scenes):
        video = state.selected_video
        if video is None or not video.local_path:
            if state.selected_video_id:
                logger.warning(
                    "timeline_scene_skipped",
                    scene_id=spec.id,
                    reason="selected video has no local path",
                )
            continue

        duration = video.duration or state.custom_duration or spec.suggested_duration
        clips.append(TimelineClip(
            scene_id=spec.id,
            video_id=video.id,
            video_local_path=video.local_path,
            source_duration=duration,
            duration=duration,
            title=spec.description,
        ))

    return recompute_positions(clips)


def find_clip(clips: Sequence[TimelineClip], clip_id: str) -> int:
    for index, clip in enumerate(clips):
        if clip.id == clip_id:
            return index
    raise ValidationError(
        f"Clip {clip_id} is not on the timeline",
        field="clip_id",
        code=ErrorCode.CLIP_NOT_FOUND,
    )


def split_clip(clips: Sequence[TimelineClip], clip_id: str, at_time: float) -> Optional[List[TimelineClip]]:
    """
    Split a clip at an absolute timeline time.

    Returns None (no-op) when at_time is at or outside the clip's span.
    The two halves partition the original trim range, so total duration
    is conserved.
    """
    index = find_clip(clips, clip_id)
    clip = clips[index]
    offset = at_time - clip.start_time

    if offset <= EPSILON or offset >= clip.duration - EPSILON:
        logger.info("split_rejected", clip_id=clip_id, at_time=at_time,
                    start_time=clip.start_time, end_time=clip.end_time)
        return None

    first = clip.model_copy(update={
        "duration": offset,
        "trim_end": clip.trim_end + (clip.duration - offset),
    })
    second = clip.model_copy(update={
        "id": str(uuid.uuid4()),
        "duration": clip.duration - offset,
        "trim_start": clip.trim_start + offset,
        "original_clip_id": clip.original_clip_id or clip.id,
    })

    updated = [*clips[:index], first, second, *clips[index + 1:]]
    return recompute_positions(updated)


def clip_at(clips: Sequence[TimelineClip], time: float) -> Optional[TimelineClip]:
    for clip in clips:
        if clip.start_time <= time < clip.end_time:
            return clip
    return None


def crop_clip(
    clips: Sequence[TimelineClip],
    clip_id: str,
    trim_start: float,
    trim_end: float,
) -> List[TimelineClip]:
    """
    Set a clip's head/tail trim against its source.

    Raises ValidationError when a trim is negative or the remaining
    duration would not be positive.
    """
    index = find_clip(clips, clip_id)
    clip = clips[index]

    if trim_start < 0 or trim_end < 0:
        raise ValidationError(
            "Trim values must not be negative",
            details={"clip_id": clip_id, "trim_start": trim_start, "trim_end": trim_end},
            code=ErrorCode.OUT_OF_RANGE,
        )

    duration = clip.source_duration - trim_start - trim_end
    if duration < MIN_CLIP_DURATION:
        raise ValidationError(
            f"Crop leaves {duration:.3f}s of a {clip.source_duration:.3f}s clip",
            details={"clip_id": clip_id, "trim_start": trim_start, "trim_end": trim_end},
            code=ErrorCode.OUT_OF_RANGE,
        )

    cropped = clip.model_copy(update={
        "trim_start": trim_start,
        "trim_end": trim_end,
        "duration": duration,
    })
    return recompute_positions([*clips[:index], cropped, *clips[index + 1:]])


def delete_clip(clips: Sequence[TimelineClip], clip_id: str) -> List[TimelineClip]:
    """Remove a clip; everything after it shifts left by its duration."""
    index = find_clip(clips, clip_id)
    return recompute_positions([*clips[:index], *clips[index + 1:]])


def reorder_clip(clips: Sequence[TimelineClip], clip_id: str, new_index: int) -> List[TimelineClip]:
    index = find_clip(clips, clip_id)
    new_index = max(0, min(new_index, len(clips) - 1))
    reordered = list(clips)
    moved = reordered.pop(index)
    reordered.insert(new_index, moved)
    return recompute_positions(reordered)
