"""
Tests for the project data model.
"""

import pytest
from pydantic import ValidationError as PydanticValidationError

from pipeline.models import Project, SceneSpec, SceneState, TimelineClip


class TestSceneSpec:
    def test_frozen(self):
        spec = SceneSpec(order=0, description="d", image_prompt="p", suggested_duration=5)
        with pytest.raises(PydanticValidationError):
            spec.description = "changed"

    def test_duration_must_be_positive(self):
        with pytest.raises(PydanticValidationError):
            SceneSpec(order=0, description="d", image_prompt="p", suggested_duration=0)


class TestSceneState:
    def test_custom_image_input_accepts_single_url(self):
        assert SceneState(custom_image_input="https://img/a.png").custom_image_input == ["https://img/a.png"]

    def test_custom_image_input_empty_values(self):
        assert SceneState(custom_image_input=None).custom_image_input == []
        assert SceneState(custom_image_input="").custom_image_input == []

    def test_selected_accessors_default_none(self):
        state = SceneState()
        assert state.selected_image is None
        assert state.selected_video is None


class TestTimelineClip:
    def test_source_range(self):
        clip = TimelineClip(scene_id="s", video_local_path="/v.mp4", source_duration=5.0,
                            trim_start=1.0, trim_end=0.5, duration=3.5)
        assert clip.source_start == 1.0
        assert clip.source_end == 4.5
        assert clip.is_trimmed

    def test_untrimmed(self):
        clip = TimelineClip(scene_id="s", video_local_path="/v.mp4", source_duration=5.0, duration=5.0)
        assert not clip.is_trimmed


class TestProject:
    def test_empty_total_duration(self):
        assert Project().total_duration == 0.0
