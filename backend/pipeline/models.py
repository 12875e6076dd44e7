"""
Data model for the scene generation pipeline.

The Project aggregate holds an ordered, immutable storyboard (SceneSpec) and a
parallel list of runtime SceneState records indexed identically. All updates
go through ProjectStore actions, which replace models instead of mutating
them, so a snapshot handed to a reader never changes underneath it.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SceneStatus(str, Enum):
    """Lifecycle of one scene."""

    PENDING = "pending"
    GENERATING_IMAGE = "generating_image"
    IMAGE_READY = "image_ready"
    GENERATING_VIDEO = "generating_video"
    VIDEO_READY = "video_ready"
    COMPLETED = "completed"


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class ProjectStatus(str, Enum):
    STORYBOARD = "STORYBOARD"
    SCENE_GENERATION = "SCENE_GENERATION"
    STITCHING = "STITCHING"
    COMPLETED = "COMPLETED"


class SceneSpec(BaseModel):
    """One storyboard entry. Edits produce a new value at the same index."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id, description="Stable scene identifier")
    order: int = Field(..., ge=0, description="Position in the storyboard")
    description: str = Field(..., description="Short narrative description")
    image_prompt: str = Field(..., description="Prompt for image generation")
    video_prompt: str = Field("", description="Prompt for video generation (falls back to image_prompt)")
    suggested_duration: float = Field(..., gt=0, description="Target duration in seconds")


class GeneratedImage(BaseModel):
    id: str = Field(default_factory=_new_id)
    url: str
    local_path: Optional[str] = None
    s3_key: Optional[str] = None
    prompt: str = ""
    prediction_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)


class GeneratedVideo(BaseModel):
    id: str = Field(default_factory=_new_id)
    url: str
    local_path: Optional[str] = None
    s3_key: Optional[str] = None
    prompt: str = ""
    prediction_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    is_selected: bool = False
    duration: Optional[float] = Field(None, gt=0)


class SeedFrame(BaseModel):
    """A still from an approved clip, kept on the scene it will seed."""

    id: str = Field(default_factory=_new_id)
    url: str
    local_path: Optional[str] = None
    s3_key: Optional[str] = None
    timestamp: float = Field(..., ge=0, description="Position in the source video (seconds)")


class UploadedImage(BaseModel):
    id: str = Field(default_factory=_new_id)
    url: str
    local_path: Optional[str] = None
    processed_versions: List["UploadedImage"] = Field(default_factory=list)


class SceneError(BaseModel):
    message: str
    retryable: bool
    code: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


class GenerationTask(BaseModel):
    """Progress record for one in-flight candidate request."""

    slot: int
    prediction_id: Optional[str] = None
    status: str = "starting"
    error: Optional[str] = None


class SceneState(BaseModel):
    """Runtime state for one storyboard entry (same index)."""

    status: SceneStatus = SceneStatus.PENDING
    generated_images: List[GeneratedImage] = Field(default_factory=list)
    selected_image_id: Optional[str] = None
    generated_videos: List[GeneratedVideo] = Field(default_factory=list)
    selected_video_id: Optional[str] = None
    seed_frames: List[SeedFrame] = Field(default_factory=list)
    selected_seed_frame_index: Optional[int] = None
    reference_image_urls: List[str] = Field(default_factory=list)
    reference_image_id: Optional[str] = None
    custom_image_input: List[str] = Field(default_factory=list)
    use_seed_frame: bool = True
    image_prompt: Optional[str] = None
    video_prompt: Optional[str] = None
    negative_prompt: Optional[str] = None
    custom_duration: Optional[float] = Field(None, gt=0)
    image_tasks: List[GenerationTask] = Field(default_factory=list)
    video_tasks: List[GenerationTask] = Field(default_factory=list)

    @field_validator("custom_image_input", mode="before")
    @classmethod
    def _coerce_custom_input(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value else []
        return value

    @property
    def selected_image(self) -> Optional[GeneratedImage]:
        return next((img for img in self.generated_images if img.id == self.selected_image_id), None)

    @property
    def selected_video(self) -> Optional[GeneratedVideo]:
        return next((vid for vid in self.generated_videos if vid.id == self.selected_video_id), None)


class TimelineClip(BaseModel):
    """
    A timeline-editable unit derived from a scene's selected video.

    trim_start / trim_end are the seconds cut from the head / tail of the
    source, so duration == source_duration - trim_start - trim_end.
    """

    id: str = Field(default_factory=_new_id)
    scene_id: str
    video_id: Optional[str] = None
    video_local_path: str
    source_duration: float = Field(..., gt=0)
    trim_start: float = Field(0.0, ge=0)
    trim_end: float = Field(0.0, ge=0)
    start_time: float = 0.0
    end_time: float = 0.0
    duration: float = Field(..., gt=0)
    title: str = ""
    original_clip_id: Optional[str] = None

    @property
    def source_start(self) -> float:
        return self.trim_start

    @property
    def source_end(self) -> float:
        return self.source_duration - self.trim_end

    @property
    def is_trimmed(self) -> bool:
        return self.trim_start > 0 or self.trim_end > 0


class Project(BaseModel):
    """Root aggregate."""

    id: str = Field(default_factory=_new_id)
    name: str = ""
    prompt: str = ""
    target_duration: int = 30
    status: ProjectStatus = ProjectStatus.STORYBOARD
    storyboard: List[SceneSpec] = Field(default_factory=list)
    scenes: List[SceneState] = Field(default_factory=list)
    current_scene_index: int = 0
    scene_errors: Dict[int, SceneError] = Field(default_factory=dict)

    # Project-level media
    reference_image_urls: List[str] = Field(default_factory=list)
    uploaded_images: List[UploadedImage] = Field(default_factory=list)
    seed_image_id: Optional[str] = Field(None, description="Seed image chosen in the media drawer")

    # Timeline
    timeline_clips: List[TimelineClip] = Field(default_factory=list)
    timeline_edited: bool = False
    selected_clip_id: Optional[str] = None
    preview_url: Optional[str] = None

    final_video_url: Optional[str] = None
    final_video_s3_key: Optional[str] = None

    @property
    def total_duration(self) -> float:
        if not self.timeline_clips:
            return 0.0
        return self.timeline_clips[-1].end_time
