"""
Tests for the per-scene lifecycle state machine.
"""

import pytest

from pipeline import scene_state_machine as machine
from pipeline.error_handler import ErrorCode, InvalidTransitionError, ValidationError
from pipeline.models import GeneratedImage, GeneratedVideo, SceneState, SceneStatus, SeedFrame


@pytest.fixture
def image_ready():
    state = machine.begin_image_generation(SceneState())
    state = machine.add_image(state, GeneratedImage(id="img-1", url="https://img/1.png"))
    state = machine.add_image(state, GeneratedImage(id="img-2", url="https://img/2.png"))
    return machine.complete_image_generation(state)


@pytest.fixture
def video_ready(image_ready):
    state = machine.begin_video_generation(image_ready)
    video = GeneratedVideo(id="vid-1", url="https://vid/1.mp4", local_path="/tmp/v1.mp4", duration=5.0)
    return machine.complete_video_generation(state, video)


class TestTransitions:
    """Edges of the lifecycle graph."""

    def test_happy_path(self, video_ready):
        completed = machine.approve(video_ready)
        assert completed.status == SceneStatus.COMPLETED

    @pytest.mark.parametrize("source,target", [
        (SceneStatus.PENDING, SceneStatus.VIDEO_READY),
        (SceneStatus.PENDING, SceneStatus.COMPLETED),
        (SceneStatus.IMAGE_READY, SceneStatus.COMPLETED),
        (SceneStatus.GENERATING_IMAGE, SceneStatus.GENERATING_VIDEO),
    ])
    def test_illegal_edges(self, source, target):
        assert not machine.can_transition(source, target)

    def test_regeneration_edges(self):
        """Completed and video_ready scenes can regenerate images or video."""
        for source in (SceneStatus.VIDEO_READY, SceneStatus.COMPLETED):
            assert machine.can_transition(source, SceneStatus.GENERATING_IMAGE)
            assert machine.can_transition(source, SceneStatus.GENERATING_VIDEO)

    def test_video_from_pending_rejected(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            machine.begin_video_generation(SceneState())
        assert exc_info.value.details["from_status"] == "pending"

    def test_approve_requires_video_ready(self, image_ready):
        with pytest.raises(InvalidTransitionError):
            machine.approve(image_ready)


class TestImageGeneration:
    def test_begin_clears_previous_candidates(self, image_ready):
        state = machine.begin_image_generation(image_ready)
        assert state.status == SceneStatus.GENERATING_IMAGE
        assert state.generated_images == []
        assert state.selected_image_id is None

    def test_first_candidate_auto_selected(self, image_ready):
        assert image_ready.selected_image_id == "img-1"

    def test_image_ready_requires_a_candidate(self):
        """image_ready is unreachable with zero images."""
        state = machine.begin_image_generation(SceneState())
        with pytest.raises(InvalidTransitionError, match="no successful image candidates"):
            machine.complete_image_generation(state)

    def test_add_image_outside_generation_rejected(self, image_ready):
        with pytest.raises(InvalidTransitionError):
            machine.add_image(image_ready, GeneratedImage(url="https://img/late.png"))

    def test_fail_reverts_to_pending(self):
        state = machine.begin_image_generation(SceneState())
        failed = machine.fail_image_generation(state)
        assert failed.status == SceneStatus.PENDING

    def test_select_unknown_image(self, image_ready):
        with pytest.raises(ValidationError):
            machine.select_image(image_ready, "nope")

    def test_delete_selected_image_clears_selection(self, image_ready):
        state = machine.delete_image(image_ready, "img-1")
        assert state.selected_image_id is None
        assert [img.id for img in state.generated_images] == ["img-2"]
        assert state.status == SceneStatus.IMAGE_READY

    def test_delete_last_image_returns_to_pending(self, image_ready):
        state = machine.delete_image(image_ready, "img-1")
        state = machine.delete_image(state, "img-2")
        assert state.status == SceneStatus.PENDING


class TestVideoGeneration:
    def test_begin_selects_first_image_when_none_selected(self, image_ready):
        state = image_ready.model_copy(update={"selected_image_id": None})
        state = machine.begin_video_generation(state)
        assert state.selected_image_id == "img-1"

    def test_complete_selects_new_video(self, video_ready):
        assert video_ready.status == SceneStatus.VIDEO_READY
        assert video_ready.selected_video.id == "vid-1"
        assert video_ready.selected_video.is_selected

    def test_fail_reverts_to_image_ready(self, image_ready):
        state = machine.begin_video_generation(image_ready)
        assert machine.fail_video_generation(state).status == SceneStatus.IMAGE_READY

    def test_select_video_flags_exactly_one(self, video_ready):
        state = video_ready.model_copy(update={
            "generated_videos": [
                *video_ready.generated_videos,
                GeneratedVideo(id="vid-2", url="https://vid/2.mp4", duration=4.0),
            ],
        })
        state = machine.select_video(state, "vid-2")
        assert [v.is_selected for v in state.generated_videos] == [False, True]


class TestSeedFrameSelection:
    def test_select_in_range(self):
        frames = [SeedFrame(url=f"https://f/{i}.png", timestamp=4.9 - i * 0.1) for i in range(3)]
        state = SceneState(seed_frames=frames)
        assert machine.select_seed_frame(state, 2).selected_seed_frame_index == 2

    def test_select_out_of_range(self):
        with pytest.raises(ValidationError) as exc_info:
            machine.select_seed_frame(SceneState(), 0)
        assert exc_info.value.code == ErrorCode.OUT_OF_RANGE
