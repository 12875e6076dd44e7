"""
Shared fixtures for pipeline and service tests.

Every external collaborator (generation provider, storage, compositor, frame
extractor, downloads) is replaced by a fake so tests never touch the network
or ffmpeg.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from config import settings
from pipeline.asset_manager import AssetManager
from pipeline.models import GeneratedImage, GeneratedVideo, Project, SceneSpec
from pipeline.project_store import ProjectStore
from services.compositor import RenderResult
from services.frame_extractor import ExtractedFrame
from services.replicate_client import PredictionStatus
from services.s3_storage import StoredAsset


class FakeGenerationClient:
    """
    Scripted stand-in for ReplicateClient.

    ``outcomes`` are consumed in prediction start order. Each one is a URL
    (success), an Exception (raised from start_prediction) or a
    ``("failed", message)`` tuple. Missing outcomes succeed. With hold=True,
    every poll blocks until ``release(prediction_id)`` is called.
    """

    def __init__(self, outcomes=None, hold=False):
        self.outcomes = list(outcomes or [])
        self.hold = hold
        self.started = []
        self.cancelled = []
        self.gates = {}

    def _outcome(self, number):
        if number <= len(self.outcomes):
            return self.outcomes[number - 1]
        return f"https://replicate.delivery/pred-{number}/output.png"

    async def start_prediction(self, model_id, input_params):
        self.started.append((model_id, input_params))
        number = len(self.started)
        outcome = self._outcome(number)
        if isinstance(outcome, Exception):
            raise outcome
        prediction_id = f"pred-{number}"
        self.gates[prediction_id] = asyncio.Event()
        return prediction_id

    def release(self, prediction_id):
        self.gates[prediction_id].set()

    async def poll_status(self, prediction_id, interval=2.0, timeout=None, on_progress=None):
        if on_progress is not None:
            on_progress(PredictionStatus(prediction_id=prediction_id, status="processing"))
        if self.hold:
            await self.gates[prediction_id].wait()
        outcome = self._outcome(int(prediction_id.split("-")[1]))
        if isinstance(outcome, tuple):
            return PredictionStatus(prediction_id=prediction_id, status="failed", error=outcome[1])
        return PredictionStatus(prediction_id=prediction_id, status="succeeded", output_url=outcome)

    async def cancel_prediction(self, prediction_id):
        self.cancelled.append(prediction_id)

    async def run_text_model(self, model_id, input_params):
        raise NotImplementedError


def make_specs(count=3, duration=5.0):
    return [
        SceneSpec(
            order=i,
            description=f"Scene {i}",
            image_prompt=f"Product shot {i}, soft daylight",
            video_prompt=f"Slow dolly in {i}",
            suggested_duration=duration,
        )
        for i in range(count)
    ]


@pytest.fixture(autouse=True)
def no_retry_delay(monkeypatch):
    """Retries happen immediately in tests."""
    monkeypatch.setattr(settings, "GENERATION_RETRY_DELAY", 0.0)


@pytest.fixture
def store():
    """Store holding a 3-scene storyboard of 5s scenes."""
    store = ProjectStore(Project(name="Summer launch"))
    store.set_storyboard(make_specs(3), prompt="Sparkling water for picnics", target_duration=15)
    return store


@pytest.fixture
def advance_scene():
    """Drive a scene straight to video_ready through store actions."""

    def advance(store, index, duration=5.0, local_path=None):
        local_path = local_path or f"/tmp/projects/videos/scene_{index}.mp4"
        store.begin_image_generation(index, task_count=1)
        store.add_generated_image(index, GeneratedImage(url=f"https://img/{index}.png"))
        store.complete_image_generation(index)
        store.begin_video_generation(index)
        video = GeneratedVideo(url=f"https://vid/{index}.mp4", local_path=local_path, duration=duration)
        store.complete_video_generation(index, video)
        return video

    return advance


@pytest.fixture
def fake_client():
    return FakeGenerationClient()


@pytest.fixture
def make_client():
    """Build a FakeGenerationClient with scripted outcomes."""
    return FakeGenerationClient


@pytest.fixture
def mock_asset_manager(tmp_path):
    """AssetManager rooted in tmp_path with downloads faked."""
    am = Mock(spec=AssetManager)
    am.project_id = "project-1"
    am.directory = Mock(side_effect=lambda subdir=None: tmp_path / subdir if subdir else tmp_path)

    async def download(url, filename, subdir=None, **kwargs):
        return str(tmp_path / (subdir or "") / filename)

    am.download_with_retry = AsyncMock(side_effect=download)
    am.cleanup = AsyncMock()
    return am


@pytest.fixture
def mock_storage():
    """Storage whose uploads always succeed."""
    storage = Mock()

    async def upload(local_path, s3_key):
        return StoredAsset(url=f"https://cdn.example.com/{s3_key}", local_path=local_path, s3_key=s3_key)

    storage.upload_with_fallback = AsyncMock(side_effect=upload)
    return storage


@pytest.fixture
def mock_compositor():
    compositor = Mock()
    compositor.get_video_duration = AsyncMock(return_value=5.0)

    async def preview(clips, output_path):
        return RenderResult(output_path, sum(clip.duration for clip in clips), 0.1)

    async def stitch(paths, output_path):
        return RenderResult(output_path, 5.0 * len(paths), 0.5)

    async def materialize(clips, output_dir):
        return [f"{output_dir}/{clip.id}.mp4" if clip.is_trimmed else clip.video_local_path for clip in clips]

    compositor.preview = AsyncMock(side_effect=preview)
    compositor.stitch = AsyncMock(side_effect=stitch)
    compositor.materialize_trims = AsyncMock(side_effect=materialize)
    return compositor


@pytest.fixture
def mock_extractor():
    extractor = Mock()

    async def extract(video_path, output_dir, prefix="seed", count=None):
        return [
            ExtractedFrame(path=f"{output_dir}/{prefix}_frame_{i}.png", timestamp=round(4.9 - 0.1 * i, 3))
            for i in range(count or 5)
        ]

    extractor.extract_frames = AsyncMock(side_effect=extract)
    return extractor
