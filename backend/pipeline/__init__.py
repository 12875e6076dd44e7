"""
Scene generation pipeline package.

This package contains the core of the ad video editor:
- Project data model and the store that owns every mutation
- Per-scene state machine, continuity resolution and seed-frame propagation
- Timeline clip editing and stitch/preview orchestration
- Error handling and retry policy shared by all components
"""

__version__ = "0.1.0"

from .asset_manager import AssetManager
from .cancellation import RequestToken, RequestTokenRegistry
from .error_handler import PipelineError, ErrorCode, should_retry
from .models import Project, SceneSpec, SceneState, SceneStatus, TimelineClip
from .project_store import ProjectStore

__all__ = [
    "AssetManager",
    "RequestToken",
    "RequestTokenRegistry",
    "PipelineError",
    "ErrorCode",
    "should_retry",
    "Project",
    "SceneSpec",
    "SceneState",
    "SceneStatus",
    "TimelineClip",
    "ProjectStore",
]
