"""
Tests for the Replicate generation client.

The replicate SDK client is patched out; no request leaves the process.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import pytest
from replicate.helpers import FileOutput

from config import settings
from services.replicate_client import PredictionStatus, ReplicateClient, normalize_output_url


def prediction(status, output=None, error=None, prediction_id="pred-1"):
    return SimpleNamespace(id=prediction_id, status=status, output=output, error=error, logs="")


@pytest.fixture
def sdk():
    """The patched replicate.Client instance."""
    with patch("services.replicate_client.replicate.Client") as client_cls:
        instance = client_cls.return_value
        instance.predictions.async_create = AsyncMock(return_value=prediction("starting"))
        instance.predictions.async_get = AsyncMock(return_value=prediction("processing"))
        instance.predictions.async_cancel = AsyncMock()
        yield instance


@pytest.fixture
def client(sdk, monkeypatch):
    monkeypatch.setenv("REPLICATE_API_TOKEN", "r8_test")
    ReplicateClient._instance = None
    yield ReplicateClient(api_token="r8_test", timeout=30)
    ReplicateClient._instance = None


class TestNormalizeOutputUrl:
    def test_plain_string(self):
        assert normalize_output_url("https://a/1.png") == "https://a/1.png"

    def test_first_url_of_list(self):
        assert normalize_output_url([None, "https://a/1.png", "https://a/2.png"]) == "https://a/1.png"

    def test_file_output(self):
        output = Mock(spec=FileOutput)
        output.url = "https://replicate.delivery/x/out.mp4"
        assert normalize_output_url(output) == "https://replicate.delivery/x/out.mp4"

    def test_dict_output(self):
        assert normalize_output_url({"video": "https://a/v.mp4"}) == "https://a/v.mp4"

    def test_nothing_usable(self):
        assert normalize_output_url(None) is None
        assert normalize_output_url([]) is None
        assert normalize_output_url({"seed": 42}) is None


class TestClientSetup:
    def test_singleton(self, client):
        assert ReplicateClient() is client

    def test_missing_token(self, sdk, monkeypatch):
        monkeypatch.setattr(settings, "REPLICATE_API_TOKEN", "")
        monkeypatch.setattr(settings, "REPLICATE_API_KEY", "")
        ReplicateClient._instance = None
        try:
            with pytest.raises(ValueError, match="Replicate API token is required"):
                ReplicateClient()
        finally:
            ReplicateClient._instance = None


class TestPredictions:
    @pytest.mark.asyncio
    async def test_start_by_model_name(self, client, sdk):
        prediction_id = await client.start_prediction("black-forest-labs/flux-1.1-pro", {"prompt": "bottle"})

        assert prediction_id == "pred-1"
        sdk.predictions.async_create.assert_awaited_once_with(
            model="black-forest-labs/flux-1.1-pro", input={"prompt": "bottle"}
        )

    @pytest.mark.asyncio
    async def test_start_by_version(self, client, sdk):
        await client.start_prediction("owner/model:abc123", {"prompt": "bottle"})
        sdk.predictions.async_create.assert_awaited_once_with(version="abc123", input={"prompt": "bottle"})

    @pytest.mark.asyncio
    async def test_succeeded_status_carries_url(self, client, sdk):
        sdk.predictions.async_get.return_value = prediction("succeeded", output=["https://a/1.png"])

        status = await client.get_status("pred-1")

        assert status.status == "succeeded"
        assert status.output_url == "https://a/1.png"
        assert status.is_terminal

    @pytest.mark.asyncio
    async def test_canceled_maps_to_failed(self, client, sdk):
        sdk.predictions.async_get.return_value = prediction("canceled")

        status = await client.get_status("pred-1")

        assert status.status == "failed"
        assert status.error == "Prediction was canceled"

    @pytest.mark.asyncio
    async def test_unknown_status_is_processing(self, client, sdk):
        sdk.predictions.async_get.return_value = prediction("queued")
        status = await client.get_status("pred-1")
        assert status.status == "processing"
        assert not status.is_terminal

    @pytest.mark.asyncio
    async def test_cancel(self, client, sdk):
        await client.cancel_prediction("pred-1")
        sdk.predictions.async_cancel.assert_awaited_once_with("pred-1")


class TestPollStatus:
    @pytest.mark.asyncio
    async def test_reports_every_tick(self, client, sdk):
        sdk.predictions.async_get.side_effect = [
            prediction("starting"),
            prediction("processing"),
            prediction("succeeded", output="https://a/v.mp4"),
        ]
        seen = []

        status = await client.poll_status("pred-1", interval=0, on_progress=lambda s: seen.append(s.status))

        assert status.output_url == "https://a/v.mp4"
        assert seen == ["starting", "processing", "succeeded"]

    @pytest.mark.asyncio
    async def test_async_progress_callback_awaited(self, client, sdk):
        sdk.predictions.async_get.return_value = prediction("succeeded", output="https://a/v.mp4")
        callback = AsyncMock()

        await client.poll_status("pred-1", interval=0, on_progress=callback)

        callback.assert_awaited_once()
        assert isinstance(callback.call_args.args[0], PredictionStatus)

    @pytest.mark.asyncio
    async def test_failed_prediction_returns_error(self, client, sdk):
        sdk.predictions.async_get.return_value = prediction("failed", error="NSFW content detected")

        status = await client.poll_status("pred-1", interval=0)

        assert status.status == "failed"
        assert status.error == "NSFW content detected"

    @pytest.mark.asyncio
    async def test_success_without_media_is_failure(self, client, sdk):
        sdk.predictions.async_get.return_value = prediction("succeeded", output={"seed": 1})

        status = await client.poll_status("pred-1", interval=0)

        assert status.status == "failed"
        assert "without a media URL" in status.error

    @pytest.mark.asyncio
    async def test_timeout(self, client, sdk):
        status = await client.poll_status("pred-1", interval=0, timeout=0)

        assert status.status == "failed"
        assert "timed out" in status.error


class TestRunTextModel:
    @pytest.mark.asyncio
    async def test_streamed_tokens_joined(self, client):
        with patch("services.replicate_client.replicate.async_run",
                   AsyncMock(return_value=["{\"scenes\"", ": []}"])) as run:
            text = await client.run_text_model("anthropic/claude-4-sonnet", {"prompt": "storyboard"})

        assert text == "{\"scenes\": []}"
        run.assert_awaited_once_with("anthropic/claude-4-sonnet", input={"prompt": "storyboard"})
