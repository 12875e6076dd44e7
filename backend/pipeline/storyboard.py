"""
Storyboard generation

Turns an ad idea into an ordered list of immutable SceneSpecs using a text
model. The number of scenes depends only on the target duration, never on
the model's output.
"""

import json
import re
from typing import Any, Dict, List, Optional, Sequence

import structlog

from config import settings
from pipeline.error_handler import ErrorCode, GenerationError, ValidationError
from pipeline.models import SceneSpec
from pipeline.retry_policy import run_with_retry

logger = structlog.get_logger(__name__)

MIN_TARGET_DURATION = 10
MAX_TARGET_DURATION = 60

# Upper bound of each duration bucket (seconds) -> scene count
SCENE_COUNT_BUCKETS = ((15, 2), (30, 3), (60, 7))

MIN_SCENE_DURATION = 1.0
MAX_SCENE_DURATION = 10.0
DURATION_TOLERANCE = 2.0

STORYBOARD_SYSTEM_PROMPT = """You are a professional video storyboard creator specializing in advertising content.

Given a product description and ad goal, create exactly {scene_count} scenes that tell a compelling visual story.

Each scene should:
- Have a clear visual focus
- Connect logically to the next scene
- Include detailed image generation prompts
- Include a short camera/motion prompt for video generation

Output format:
{{
  "scenes": [
    {{
      "order": 0,
      "description": "Brief narrative description",
      "imagePrompt": "Detailed prompt for image generation with style, lighting, composition",
      "videoPrompt": "Camera and subject motion for this shot",
      "duration": 5
    }}
  ]
}}

Keep prompts visual and specific. Avoid abstract concepts.
Respond with valid JSON only. Do not include any text before or after the JSON object."""


def scene_count_for_duration(target_duration: float) -> int:
    """
    Fixed duration -> scene count mapping.

    Examples:
        >>> scene_count_for_duration(30)
        3
        >>> scene_count_for_duration(60)
        7
        >>> scene_count_for_duration(20)
        3
    """
    if not MIN_TARGET_DURATION <= target_duration <= MAX_TARGET_DURATION:
        raise ValidationError(
            f"Target duration must be between {MIN_TARGET_DURATION} and {MAX_TARGET_DURATION} seconds",
            field="target_duration",
            code=ErrorCode.OUT_OF_RANGE,
            details={"target_duration": target_duration},
        )
    for limit, count in SCENE_COUNT_BUCKETS:
        if target_duration <= limit:
            return count
    return SCENE_COUNT_BUCKETS[-1][1]


def _extract_json(text: str) -> Any:
    """Parse the JSON body of a model reply, tolerating code fences and chatter."""
    fenced = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL)
    if fenced:
        text = fenced.group(1)
    start = min((i for i in (text.find("{"), text.find("[")) if i >= 0), default=-1)
    if start < 0:
        raise ValueError("no JSON object in response")
    payload, _ = json.JSONDecoder().raw_decode(text, start)
    return payload


def _field(raw: Dict[str, Any], *names: str) -> Any:
    for name in names:
        if name in raw:
            return raw[name]
    return None


def rescale_durations(durations: Sequence[float], target: float) -> List[float]:
    """Scale durations proportionally so they sum to target (0.1s precision)."""
    total = sum(durations)
    scaled = [round(d * target / total, 1) for d in durations]
    # Put rounding drift on the last scene
    scaled[-1] = round(scaled[-1] + target - sum(scaled), 1)
    return scaled


def parse_storyboard_response(text: str, target_duration: float) -> List[SceneSpec]:
    """
    Validate a model reply and build SceneSpecs.

    Raises:
        GenerationError: STORYBOARD_GENERATION_FAILED for unparseable replies,
            a wrong scene count, empty prompts or invalid durations
    """
    expected = scene_count_for_duration(target_duration)

    try:
        payload = _extract_json(text)
    except ValueError as e:
        raise GenerationError(
            ErrorCode.STORYBOARD_GENERATION_FAILED,
            f"Failed to parse storyboard JSON: {e}",
            retryable=True,
        ) from e

    raw_scenes = payload.get("scenes") if isinstance(payload, dict) else payload
    if not isinstance(raw_scenes, list):
        raise GenerationError(
            ErrorCode.STORYBOARD_GENERATION_FAILED,
            "Storyboard response has no scenes list",
            retryable=True,
        )
    if len(raw_scenes) != expected:
        raise GenerationError(
            ErrorCode.STORYBOARD_GENERATION_FAILED,
            f"Expected {expected} scenes for {target_duration}s, got {len(raw_scenes)}",
            retryable=True,
            details={"expected": expected, "received": len(raw_scenes)},
        )

    durations = []
    for index, raw in enumerate(raw_scenes):
        if not isinstance(raw, dict):
            raise GenerationError(
                ErrorCode.STORYBOARD_GENERATION_FAILED,
                f"Scene {index}: expected an object, got {type(raw).__name__}",
                retryable=True,
            )
        description = str(_field(raw, "description") or "").strip()
        image_prompt = str(_field(raw, "imagePrompt", "image_prompt") or "").strip()
        if not description or not image_prompt:
            raise GenerationError(
                ErrorCode.STORYBOARD_GENERATION_FAILED,
                f"Scene {index}: missing description or image prompt",
                retryable=True,
            )
        duration = _field(raw, "duration", "suggestedDuration", "suggested_duration")
        if not isinstance(duration, (int, float)) or not MIN_SCENE_DURATION <= duration <= MAX_SCENE_DURATION:
            raise GenerationError(
                ErrorCode.STORYBOARD_GENERATION_FAILED,
                f"Scene {index}: invalid duration {duration!r} (must be 1-10 seconds)",
                retryable=True,
            )
        durations.append(float(duration))

    if abs(sum(durations) - target_duration) > DURATION_TOLERANCE:
        logger.warning("storyboard_durations_rescaled", total=sum(durations), target=target_duration)
        durations = rescale_durations(durations, target_duration)

    return [
        SceneSpec(
            order=index,
            description=str(_field(raw, "description")).strip(),
            image_prompt=str(_field(raw, "imagePrompt", "image_prompt")).strip(),
            video_prompt=str(_field(raw, "videoPrompt", "video_prompt") or "").strip(),
            suggested_duration=duration,
        )
        for index, (raw, duration) in enumerate(zip(raw_scenes, durations))
    ]


class StoryboardGenerator:
    """
    Example:
        >>> generator = StoryboardGenerator()
        >>> specs = await generator.generate("Sparkling water for summer picnics", target_duration=30)
        >>> len(specs)
        3
    """

    def __init__(self, client=None, model: Optional[str] = None):
        if client is None:
            from services.replicate_client import get_replicate_client
            client = get_replicate_client()
        self.client = client
        self.model = model or settings.STORYBOARD_MODEL
        self.logger = logger.bind(service="storyboard_generator", model=self.model)

    def _build_input(self, prompt: str, scene_count: int, target_duration: float) -> Dict[str, Any]:
        return {
            "system_prompt": STORYBOARD_SYSTEM_PROMPT.format(scene_count=scene_count),
            "prompt": (
                f"Create a storyboard for this advertisement:\n\n{prompt}\n\n"
                f"Ensure the total duration of all scenes equals {target_duration:g} seconds "
                f"(±{DURATION_TOLERANCE:g} seconds tolerance)."
            ),
            "max_tokens": 2048,
        }

    async def generate(self, prompt: str, target_duration: float = 30) -> List[SceneSpec]:
        if not prompt or not prompt.strip():
            raise ValidationError("Prompt is required", field="prompt", code=ErrorCode.MISSING_PROMPT)
        scene_count = scene_count_for_duration(target_duration)
        input_params = self._build_input(prompt.strip(), scene_count, target_duration)

        self.logger.info("storyboard_generation_started", target_duration=target_duration, scene_count=scene_count)

        async def attempt() -> List[SceneSpec]:
            text = await self.client.run_text_model(self.model, input_params)
            return parse_storyboard_response(text, target_duration)

        specs = await run_with_retry(attempt, label="storyboard")

        self.logger.info(
            "storyboard_generated",
            scene_count=len(specs),
            total_duration=sum(spec.suggested_duration for spec in specs),
        )
        return specs
