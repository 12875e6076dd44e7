"""
Tests for seed image and reference resolution.
"""

import pytest

from pipeline.continuity import (
    SeedSource,
    find_media_url,
    resolve_continuity,
    resolve_reference_images,
    resolve_seed_image,
)
from pipeline.error_handler import ContinuityError, ErrorCode, ValidationError
from pipeline.models import GeneratedImage, Project, SceneState, SeedFrame, UploadedImage


def frames(count=3):
    return [SeedFrame(id=f"frame-{i}", url=f"https://f/{i}.png", timestamp=4.9 - 0.1 * i) for i in range(count)]


def project_with(*scenes, **fields):
    return Project(scenes=list(scenes), **fields)


class TestSeedImagePriority:
    """custom input > media drawer > seed frame > project reference (scene 0 only)."""

    def test_custom_input_wins(self):
        project = project_with(
            SceneState(),
            SceneState(custom_image_input=["https://custom.png"], seed_frames=frames()),
            seed_image_id="upload-1",
            uploaded_images=[UploadedImage(id="upload-1", url="https://upload.png")],
        )
        selection = resolve_seed_image(project, 1)
        assert selection.seed_source == SeedSource.CUSTOM_INPUT
        assert selection.seed_image_url == "https://custom.png"

    def test_media_drawer_before_seed_frame(self):
        project = project_with(
            SceneState(),
            SceneState(seed_frames=frames()),
            seed_image_id="upload-1",
            uploaded_images=[UploadedImage(id="upload-1", url="https://upload.png")],
        )
        selection = resolve_seed_image(project, 1)
        assert selection.seed_source == SeedSource.MEDIA_DRAWER
        assert selection.seed_image_url == "https://upload.png"

    def test_selected_seed_frame(self):
        project = project_with(SceneState(), SceneState(seed_frames=frames(), selected_seed_frame_index=2))
        selection = resolve_seed_image(project, 1)
        assert selection.seed_source == SeedSource.SEED_FRAME
        assert selection.seed_frame_id == "frame-2"
        assert selection.warnings == ()

    def test_seed_frame_index_out_of_range_falls_back_to_first(self):
        project = project_with(SceneState(), SceneState(seed_frames=frames(2), selected_seed_frame_index=4))
        selection = resolve_seed_image(project, 1)
        assert selection.seed_frame_id == "frame-0"
        assert len(selection.warnings) == 1

    def test_missing_seed_frame_is_a_warning_not_a_fabricated_seed(self):
        project = project_with(SceneState(), SceneState(), reference_image_urls=["https://ref.png"])
        selection = resolve_seed_image(project, 1)
        assert selection.seed_source == SeedSource.NONE
        assert selection.seed_image_url is None
        assert "expects a seed frame" in selection.warnings[0]

    def test_seed_frames_ignored_when_disabled(self):
        project = project_with(SceneState(), SceneState(seed_frames=frames(), use_seed_frame=False))
        selection = resolve_seed_image(project, 1)
        assert selection.seed_source == SeedSource.NONE
        assert selection.warnings == ()

    def test_project_reference_only_for_first_scene(self):
        project = project_with(SceneState(), SceneState(use_seed_frame=False),
                               reference_image_urls=["https://ref.png"])
        assert resolve_seed_image(project, 0).seed_source == SeedSource.PROJECT_REFERENCE
        assert resolve_seed_image(project, 1).seed_source == SeedSource.NONE

    def test_unknown_media_drawer_id_warns(self):
        project = project_with(SceneState(), seed_image_id="gone")
        selection = resolve_seed_image(project, 0)
        assert selection.seed_source == SeedSource.NONE
        assert "gone" in selection.warnings[0]

    def test_out_of_range_scene(self):
        with pytest.raises(ValidationError) as exc_info:
            resolve_seed_image(project_with(SceneState()), 3)
        assert exc_info.value.code == ErrorCode.SCENE_NOT_FOUND


class TestReferenceImages:
    def test_scene_references_capped_at_three(self):
        scene = SceneState(reference_image_urls=[f"https://r/{i}.png" for i in range(5)])
        assert len(resolve_reference_images(project_with(scene), 0)) == 3

    def test_composition_reference_lookup(self):
        project = project_with(
            SceneState(generated_images=[GeneratedImage(id="img-1", url="https://img/1.png")]),
            SceneState(reference_image_id="img-1"),
        )
        assert resolve_reference_images(project, 1) == ("https://img/1.png",)

    def test_no_project_wide_fallback(self):
        project = project_with(SceneState(), reference_image_urls=["https://ref.png"])
        assert resolve_reference_images(project, 0) == ()


class TestFindMediaUrl:
    def test_processed_upload_versions(self):
        nested = UploadedImage(id="upload-1b", url="https://upload-bg-removed.png")
        project = project_with(
            SceneState(),
            uploaded_images=[UploadedImage(id="upload-1", url="https://upload.png", processed_versions=[nested])],
        )
        assert find_media_url(project, "upload-1b") == "https://upload-bg-removed.png"

    def test_seed_frame_ids(self):
        project = project_with(SceneState(), SceneState(seed_frames=frames(1)))
        assert find_media_url(project, "frame-0") == "https://f/0.png"
        assert find_media_url(project, "unknown") is None


class TestResolveContinuity:
    def test_deterministic(self):
        """The same snapshot always resolves to the same selection."""
        project = project_with(
            SceneState(),
            SceneState(seed_frames=frames(), reference_image_urls=["https://r/1.png"]),
        )
        assert resolve_continuity(project, 1) == resolve_continuity(project, 1)

    def test_missing_composition_reference_warns(self):
        project = project_with(SceneState(reference_image_id="gone"))
        selection = resolve_continuity(project, 0)
        assert any("composition reference" in w for w in selection.warnings)

    def test_strict_raises_on_break(self):
        project = project_with(SceneState(), SceneState())
        with pytest.raises(ContinuityError) as exc_info:
            resolve_continuity(project, 1, strict=True)
        assert exc_info.value.details["scene_index"] == 1

    def test_strict_passes_without_break(self):
        project = project_with(SceneState(), SceneState(seed_frames=frames()))
        assert resolve_continuity(project, 1, strict=True).seed_source == SeedSource.SEED_FRAME
