"""
Continuity resolver.

Decides, for one scene, which single image seeds image-to-image generation
and which reference images (at most three) keep objects and style
consistent. Resolution is pure: the same project snapshot always yields the
same selection, and problems are reported as warnings on the result rather
than logged here. Callers must re-resolve on every generation call because
upstream selections can change in between.

Seed image priority:
    1. the scene's own custom image input
    2. the media-drawer seed image, looked up by id across generated
       images, seed frames and uploaded images
    3. the scene's seed frames (extracted from the previous scene's approved
       video) when use_seed_frame is on and the scene is not the first
    4. for the first scene only, the first project-level reference image

Reference image priority:
    1. the scene's own reference_image_urls
    2. the image picked in the composition box (reference_image_id)
    3. nothing. There is no project-wide fallback once scenes carry
       their own references
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional, Tuple

from pipeline.error_handler import ContinuityError, ErrorCode, ValidationError
from pipeline.models import Project, UploadedImage

MAX_REFERENCE_IMAGES = 3


class SeedSource(str, Enum):
    CUSTOM_INPUT = "custom_input"
    MEDIA_DRAWER = "media_drawer"
    SEED_FRAME = "seed_frame"
    PROJECT_REFERENCE = "project_reference"
    NONE = "none"


@dataclass(frozen=True)
class ContinuitySelection:
    seed_image_url: Optional[str]
    seed_source: SeedSource
    reference_image_urls: Tuple[str, ...] = ()
    seed_frame_id: Optional[str] = None
    warnings: Tuple[str, ...] = field(default_factory=tuple)


def _iter_uploaded(images: Iterable[UploadedImage]):
    for image in images:
        yield image
        yield from _iter_uploaded(image.processed_versions)


def find_media_url(project: Project, media_id: str) -> Optional[str]:
    """Resolve a media id across generated images, seed frames and uploads."""
    for scene in project.scenes:
        for image in scene.generated_images:
            if image.id == media_id:
                return image.url
        for frame in scene.seed_frames:
            if frame.id == media_id:
                return frame.url
    for upload in _iter_uploaded(project.uploaded_images):
        if upload.id == media_id:
            return upload.url
    return None


def resolve_seed_image(project: Project, scene_index: int) -> ContinuitySelection:
    _check_index(project, scene_index)
    scene = project.scenes[scene_index]
    warnings = []

    if scene.custom_image_input:
        return ContinuitySelection(scene.custom_image_input[0], SeedSource.CUSTOM_INPUT)

    if project.seed_image_id:
        url = find_media_url(project, project.seed_image_id)
        if url:
            return ContinuitySelection(url, SeedSource.MEDIA_DRAWER)
        warnings.append(f"media drawer seed image {project.seed_image_id} not found")

    if scene.use_seed_frame and scene_index > 0:
        frames = scene.seed_frames
        if frames:
            frame_index = scene.selected_seed_frame_index or 0
            if frame_index >= len(frames):
                warnings.append(
                    f"selected seed frame {frame_index} out of range, using frame 0"
                )
                frame_index = 0
            frame = frames[frame_index]
            return ContinuitySelection(
                frame.url,
                SeedSource.SEED_FRAME,
                seed_frame_id=frame.id,
                warnings=tuple(warnings),
            )
        warnings.append(
            f"scene {scene_index} expects a seed frame from scene {scene_index - 1} but has none"
        )

    if scene_index == 0 and project.reference_image_urls:
        return ContinuitySelection(
            project.reference_image_urls[0],
            SeedSource.PROJECT_REFERENCE,
            warnings=tuple(warnings),
        )

    return ContinuitySelection(None, SeedSource.NONE, warnings=tuple(warnings))


def resolve_reference_images(project: Project, scene_index: int) -> Tuple[str, ...]:
    _check_index(project, scene_index)
    scene = project.scenes[scene_index]

    if scene.reference_image_urls:
        return tuple(scene.reference_image_urls[:MAX_REFERENCE_IMAGES])

    if scene.reference_image_id:
        url = find_media_url(project, scene.reference_image_id)
        if url:
            return (url,)

    return ()


def resolve_continuity(project: Project, scene_index: int, strict: bool = False) -> ContinuitySelection:
    """
    Seed image and reference set for one generation call.

    With strict=True a continuity break raises ContinuityError instead of
    being reported as a warning.
    """
    seed = resolve_seed_image(project, scene_index)
    references = resolve_reference_images(project, scene_index)
    warnings = list(seed.warnings)

    scene = project.scenes[scene_index]
    if scene.reference_image_id and not scene.reference_image_urls and not references:
        warnings.append(f"composition reference {scene.reference_image_id} not found")

    if strict and warnings:
        raise ContinuityError(scene_index, "; ".join(warnings), {"seed_source": seed.seed_source.value})

    return ContinuitySelection(
        seed_image_url=seed.seed_image_url,
        seed_source=seed.seed_source,
        reference_image_urls=references,
        seed_frame_id=seed.seed_frame_id,
        warnings=tuple(warnings),
    )


def _check_index(project: Project, scene_index: int) -> None:
    if not 0 <= scene_index < len(project.scenes):
        raise ValidationError(
            f"Scene index {scene_index} out of range",
            field="scene_index",
            code=ErrorCode.SCENE_NOT_FOUND,
        )
