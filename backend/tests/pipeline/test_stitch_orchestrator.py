"""
Tests for timeline previews and final stitching.
"""

import asyncio

import pytest

from pipeline.error_handler import ErrorCode, ExternalServiceError, PipelineError, StaleResultError
from pipeline.models import ProjectStatus
from pipeline.stitch_orchestrator import PREVIEW_KEY, StitchOrchestrator
from services.compositor import RenderResult


@pytest.fixture
def make_orchestrator(store, mock_compositor, mock_asset_manager, mock_storage):
    def make(**kwargs):
        kwargs.setdefault("debounce", 0)
        return StitchOrchestrator(
            store,
            compositor=mock_compositor,
            asset_manager=mock_asset_manager,
            storage=mock_storage,
            **kwargs,
        )

    return make


async def wait_for(condition, attempts=50):
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


class TestPreview:
    """Clip edits schedule a debounced preview render."""

    def test_no_preview_outside_event_loop(self, store, advance_scene, make_orchestrator, mock_compositor):
        orchestrator = make_orchestrator()
        advance_scene(store, 0)
        assert orchestrator._preview_task is None
        mock_compositor.preview.assert_not_called()

    @pytest.mark.asyncio
    async def test_edit_renders_preview(self, store, advance_scene, make_orchestrator, mock_compositor, tmp_path):
        advance_scene(store, 0)
        advance_scene(store, 1)
        orchestrator = make_orchestrator()

        store.delete_clip(store.project.timeline_clips[0].id)
        url = await orchestrator.wait_for_preview()

        assert url.startswith("/api/serve-video?path=")
        assert store.project.preview_url == url
        clips, output_path = mock_compositor.preview.call_args.args
        assert len(clips) == 1
        assert output_path.startswith(str(tmp_path / "preview"))
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_rapid_edits_render_once(self, store, advance_scene, make_orchestrator, mock_compositor):
        advance_scene(store, 0)
        advance_scene(store, 1)
        orchestrator = make_orchestrator()

        first, second = store.project.timeline_clips
        store.crop_clip(first.id, 0.5, 0.0)
        store.crop_clip(second.id, 0.0, 1.0)
        await orchestrator.wait_for_preview()

        assert mock_compositor.preview.call_count == 1
        clips = mock_compositor.preview.call_args.args[0]
        assert [clip.duration for clip in clips] == [4.5, 4.0]
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_superseded_render_discarded(self, store, advance_scene, make_orchestrator, mock_compositor):
        advance_scene(store, 0)
        advance_scene(store, 1)
        orchestrator = make_orchestrator()
        gate = asyncio.Event()
        outputs = []

        async def slow_first(clips, output_path):
            outputs.append(output_path)
            if len(outputs) == 1:
                await gate.wait()
            return RenderResult(output_path, sum(clip.duration for clip in clips), 0.1)

        mock_compositor.preview.side_effect = slow_first

        store.crop_clip(store.project.timeline_clips[0].id, 1.0, 0.0)
        first_task = orchestrator._preview_task
        await wait_for(lambda: len(outputs) == 1)

        store.delete_clip(store.project.timeline_clips[1].id)
        url = await orchestrator.wait_for_preview()
        gate.set()

        assert first_task.cancelled()
        assert len(outputs) == 2
        assert store.project.preview_url == url
        assert url.endswith(outputs[1].rsplit("/", 1)[-1])
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_result_arriving_after_supersession_not_applied(
        self, store, advance_scene, make_orchestrator, mock_compositor
    ):
        advance_scene(store, 0)
        orchestrator = make_orchestrator()

        async def superseded_during_render(clips, output_path):
            orchestrator.tokens.cancel(PREVIEW_KEY)
            return RenderResult(output_path, 5.0, 0.1)

        mock_compositor.preview.side_effect = superseded_during_render

        store.crop_clip(store.project.timeline_clips[0].id, 1.0, 0.0)
        assert await orchestrator.wait_for_preview() is None
        assert store.project.preview_url is None
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_empty_timeline_clears_preview(self, store, advance_scene, make_orchestrator, mock_compositor):
        advance_scene(store, 0)
        orchestrator = make_orchestrator()
        store.set_preview_url("/api/serve-video?path=old.mp4")

        store.delete_clip(store.project.timeline_clips[0].id)
        await orchestrator.wait_for_preview()

        assert store.project.preview_url is None
        mock_compositor.preview.assert_not_called()
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_render_failure_keeps_previous_preview(
        self, store, advance_scene, make_orchestrator, mock_compositor
    ):
        advance_scene(store, 0)
        advance_scene(store, 1)
        orchestrator = make_orchestrator()
        store.set_preview_url("/api/serve-video?path=old.mp4")
        mock_compositor.preview.side_effect = ExternalServiceError(
            "compositor", "encoder crashed", code=ErrorCode.PREVIEW_FAILED, retryable=True
        )

        store.delete_clip(store.project.timeline_clips[0].id)

        assert await orchestrator.wait_for_preview() is None
        assert store.project.preview_url == "/api/serve-video?path=old.mp4"
        assert not orchestrator.tokens.in_flight(PREVIEW_KEY)
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_close_stops_listening(self, store, advance_scene, make_orchestrator, mock_compositor):
        advance_scene(store, 0)
        orchestrator = make_orchestrator()
        await orchestrator.close()

        store.delete_clip(store.project.timeline_clips[0].id)
        assert orchestrator._preview_task is None


class TestStitchFinal:
    """Stitching bakes trims, stores the render and records it once."""

    @pytest.mark.asyncio
    async def test_untrimmed_clips_use_source_files(
        self, store, advance_scene, make_orchestrator, mock_compositor, mock_storage
    ):
        for index in range(3):
            advance_scene(store, index)
        orchestrator = make_orchestrator()

        project = await orchestrator.stitch_final()

        mock_compositor.materialize_trims.assert_not_called()
        paths, output_path = mock_compositor.stitch.call_args.args
        assert paths == [f"/tmp/projects/videos/scene_{i}.mp4" for i in range(3)]
        assert "/final/final_" in output_path

        s3_key = mock_storage.upload_with_fallback.call_args.args[1]
        assert s3_key.startswith(f"projects/{project.id}/final/final_")
        assert project.status == ProjectStatus.COMPLETED
        assert project.final_video_url == f"https://cdn.example.com/{s3_key}"
        assert project.final_video_s3_key == s3_key

    @pytest.mark.asyncio
    async def test_trimmed_clips_materialized_first(
        self, store, advance_scene, make_orchestrator, mock_compositor, mock_asset_manager, tmp_path
    ):
        advance_scene(store, 0)
        advance_scene(store, 1)
        orchestrator = make_orchestrator()
        trimmed = store.project.timeline_clips[1]
        store.crop_clip(trimmed.id, 0.0, 2.0)

        await orchestrator.stitch_final()

        clips, output_dir = mock_compositor.materialize_trims.call_args.args
        assert output_dir == str(tmp_path / "timeline")
        assert [clip.id for clip in clips] == [c.id for c in store.project.timeline_clips]
        paths = mock_compositor.stitch.call_args.args[0]
        assert paths == ["/tmp/projects/videos/scene_0.mp4", f"{tmp_path / 'timeline'}/{trimmed.id}.mp4"]
        mock_asset_manager.cleanup.assert_awaited_once_with("timeline")
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_final_video_is_terminal(self, store, advance_scene, make_orchestrator, mock_compositor):
        advance_scene(store, 0)
        orchestrator = make_orchestrator()
        await orchestrator.stitch_final()

        with pytest.raises(PipelineError) as exc_info:
            await orchestrator.stitch_final()
        assert exc_info.value.code == ErrorCode.FINAL_VIDEO_ALREADY_SET
        assert mock_compositor.stitch.call_count == 1
        assert store.project.status == ProjectStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_empty_timeline_rejected(self, store, make_orchestrator, mock_compositor):
        orchestrator = make_orchestrator()

        with pytest.raises(PipelineError) as exc_info:
            await orchestrator.stitch_final()
        assert exc_info.value.code == ErrorCode.INVALID_INPUT
        mock_compositor.stitch.assert_not_called()

    @pytest.mark.asyncio
    async def test_stitch_failure_returns_to_generation(
        self, store, advance_scene, make_orchestrator, mock_compositor, mock_asset_manager
    ):
        advance_scene(store, 0)
        orchestrator = make_orchestrator()
        mock_compositor.stitch.side_effect = ExternalServiceError(
            "compositor", "ffmpeg exited with status 1", code=ErrorCode.STITCH_FAILED
        )

        with pytest.raises(ExternalServiceError) as exc_info:
            await orchestrator.stitch_final()

        assert exc_info.value.code == ErrorCode.STITCH_FAILED
        assert store.project.status == ProjectStatus.SCENE_GENERATION
        assert store.project.final_video_url is None
        mock_asset_manager.cleanup.assert_not_called()

        # A retry after the failure succeeds
        mock_compositor.stitch.side_effect = None
        mock_compositor.stitch.return_value = RenderResult("/tmp/final.mp4", 5.0, 0.2)
        project = await orchestrator.stitch_final()
        assert project.status == ProjectStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_newer_stitch_supersedes_older(
        self, store, advance_scene, make_orchestrator, mock_compositor
    ):
        advance_scene(store, 0)
        orchestrator = make_orchestrator()
        gate = asyncio.Event()
        calls = []

        async def slow_first(paths, output_path):
            calls.append(output_path)
            if len(calls) == 1:
                await gate.wait()
            return RenderResult(output_path, 5.0, 0.3)

        mock_compositor.stitch.side_effect = slow_first

        older = asyncio.ensure_future(orchestrator.stitch_final())
        await wait_for(lambda: len(calls) == 1)

        project = await orchestrator.stitch_final()

        with pytest.raises(StaleResultError):
            await older
        assert project.status == ProjectStatus.COMPLETED
        assert calls[1].rsplit("/", 1)[-1] in project.final_video_url

    @pytest.mark.asyncio
    async def test_cleanup_failure_keeps_final_video(
        self, store, advance_scene, make_orchestrator, mock_asset_manager
    ):
        advance_scene(store, 0)
        orchestrator = make_orchestrator()
        mock_asset_manager.cleanup.side_effect = PermissionError("timeline is read-only")

        project = await orchestrator.stitch_final()

        assert project.status == ProjectStatus.COMPLETED
        assert project.final_video_url is not None
