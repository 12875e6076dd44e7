"""
Replicate API Wrapper

Generation client for image, video and text models hosted on Replicate.
Generation is split into start + poll so callers can report progress and
abort without owning the poll loop.

Key Features:
- Singleton pattern for client reuse
- Async prediction start / status / cancel
- Bounded poll loop with per-tick progress callback
- Retry with exponential backoff on network errors for idempotent status reads
- Output URL normalisation (str / list / FileOutput)
- Logging integration with structlog
"""

import asyncio
import inspect
import logging
import os
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
import replicate
import structlog
from pydantic import BaseModel, Field
from replicate.exceptions import ModelError, ReplicateError
from replicate.helpers import FileOutput
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from config import settings


logger = structlog.get_logger(__name__)

TERMINAL_STATUSES = ("succeeded", "failed")

# Provider status -> normalised status
STATUS_MAP = {
    "starting": "starting",
    "processing": "processing",
    "succeeded": "succeeded",
    "failed": "failed",
    "canceled": "failed",
    "aborted": "failed",
}

ProgressCallback = Callable[["PredictionStatus"], Union[None, Awaitable[None]]]


class PredictionStatus(BaseModel):
    """Normalised snapshot of one prediction."""

    prediction_id: str = Field(..., description="Replicate prediction id")
    status: str = Field(..., description="starting | processing | succeeded | failed")
    output_url: Optional[str] = Field(None, description="First media URL of a succeeded prediction")
    output: Any = Field(None, description="Raw provider output")
    error: Optional[str] = Field(None, description="Provider error message for failed predictions")
    logs: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def normalize_output_url(output: Any) -> Optional[str]:
    """
    Extract a single media URL from a model output.

    Example:
        >>> normalize_output_url(["https://a/1.png", "https://a/2.png"])
        'https://a/1.png'
    """
    if output is None:
        return None
    if isinstance(output, FileOutput):
        return str(output.url)
    if isinstance(output, str):
        return output
    if isinstance(output, (list, tuple)):
        for item in output:
            url = normalize_output_url(item)
            if url:
                return url
        return None
    if isinstance(output, dict):
        for key in ("url", "video", "image", "output"):
            if key in output:
                return normalize_output_url(output[key])
    return None


class ReplicateClient:
    """
    Modular wrapper for Replicate API interactions.

    Usage:
        client = ReplicateClient()
        prediction_id = await client.start_prediction(
            "black-forest-labs/flux-1.1-pro",
            {"prompt": "a bottle of sparkling water on a beach"}
        )
        result = await client.poll_status(prediction_id, interval=2.0, timeout=300)
        if result.status == "succeeded":
            print(result.output_url)
    """

    _instance = None

    def __new__(cls, api_token: str = None, max_retries: int = None, timeout: int = None):
        """Singleton pattern to reuse client instance."""
        if cls._instance is None:
            cls._instance = super(ReplicateClient, cls).__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(
        self,
        api_token: str = None,
        max_retries: int = None,
        timeout: int = None,
    ):
        """
        Initialize Replicate client.

        Args:
            api_token: Replicate API token. If None, loads from environment
            max_retries: Maximum retry attempts for status reads (default: 3)
            timeout: Default poll timeout in seconds (default: 600)
        """
        # Skip if already initialized (singleton pattern)
        if self._initialized:
            return

        self.api_token = api_token or settings.replicate_token
        if not self.api_token:
            raise ValueError(
                "Replicate API token is required. Set REPLICATE_API_TOKEN "
                "environment variable or pass api_token parameter."
            )

        # Module-level replicate.async_run reads the token from the environment
        os.environ["REPLICATE_API_TOKEN"] = self.api_token

        self.max_retries = max_retries or settings.REPLICATE_MAX_RETRIES
        self.timeout = timeout or settings.REPLICATE_TIMEOUT

        self.logger = logger.bind(service="replicate_client")
        self.client = replicate.Client(api_token=self.api_token)

        self._initialized = True

        self.logger.info(
            "replicate_client_initialized",
            max_retries=self.max_retries,
            timeout=self.timeout,
        )

    async def start_prediction(self, model_id: str, input_params: dict) -> str:
        """
        Start a prediction and return its id without waiting.

        Not retried here: a duplicated start would duplicate provider work.

        Args:
            model_id: "owner/name" or "owner/name:version"
            input_params: Model input

        Returns:
            Prediction id

        Raises:
            ModelError / ReplicateError: If the provider rejects the request
        """
        self.logger.info("starting_prediction", model_id=model_id, input_keys=sorted(input_params))

        try:
            if ":" in model_id:
                _, version = model_id.split(":", 1)
                prediction = await self.client.predictions.async_create(version=version, input=input_params)
            else:
                prediction = await self.client.predictions.async_create(model=model_id, input=input_params)
        except (ModelError, ReplicateError) as e:
            self.logger.error("prediction_start_failed", model_id=model_id, error=str(e))
            raise

        self.logger.info("prediction_started", model_id=model_id,
                         prediction_id=prediction.id, status=prediction.status)
        return prediction.id

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.HTTPStatusError, httpx.NetworkError)),
        before_sleep=before_sleep_log(logging.getLogger(__name__), logging.INFO),
        reraise=True,
    )
    async def get_status(self, prediction_id: str) -> PredictionStatus:
        """Read one prediction's current status."""
        prediction = await self.client.predictions.async_get(prediction_id)
        status = STATUS_MAP.get(prediction.status, "processing")

        error = None
        if status == "failed":
            error = str(prediction.error) if prediction.error else None
            if prediction.status == "canceled" and not error:
                error = "Prediction was canceled"

        return PredictionStatus(
            prediction_id=prediction_id,
            status=status,
            output=prediction.output,
            output_url=normalize_output_url(prediction.output) if status == "succeeded" else None,
            error=error,
            logs=getattr(prediction, "logs", None),
        )

    async def poll_status(
        self,
        prediction_id: str,
        interval: float = 2.0,
        timeout: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> PredictionStatus:
        """
        Poll until the prediction reaches a terminal status or times out.

        Args:
            prediction_id: Prediction to watch
            interval: Seconds between status reads
            timeout: Overall limit in seconds (default: client timeout)
            on_progress: Called with every status, terminal or not

        Returns:
            Terminal PredictionStatus. A timeout yields status "failed" with
            a timeout message.
        """
        timeout = timeout if timeout is not None else self.timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            await asyncio.sleep(interval)
            status = await self.get_status(prediction_id)

            if on_progress is not None:
                result = on_progress(status)
                if inspect.isawaitable(result):
                    await result

            if status.is_terminal:
                self.logger.info(
                    "prediction_finished",
                    prediction_id=prediction_id,
                    status=status.status,
                    error=status.error,
                )
                if status.status == "succeeded" and not status.output_url:
                    return status.model_copy(update={
                        "status": "failed",
                        "error": "Prediction succeeded without a media URL",
                    })
                return status

            if loop.time() >= deadline:
                self.logger.warning("prediction_timed_out", prediction_id=prediction_id, timeout=timeout)
                return PredictionStatus(
                    prediction_id=prediction_id,
                    status="failed",
                    error=f"Prediction timed out after {timeout:g}s",
                )

    async def cancel_prediction(self, prediction_id: str) -> None:
        """Ask the provider to stop a running prediction."""
        self.logger.info("canceling_prediction", prediction_id=prediction_id)
        await self.client.predictions.async_cancel(prediction_id)

    async def run_text_model(self, model_id: str, input_params: dict) -> str:
        """
        Run a language model to completion and return its text.

        Streaming models return a list of tokens, which are joined.
        """
        self.logger.info("running_text_model", model_id=model_id)

        try:
            output = await replicate.async_run(model_id, input=input_params)
        except ModelError as e:
            self.logger.error(
                "text_model_failed",
                model_id=model_id,
                prediction_id=e.prediction.id if hasattr(e.prediction, "id") else None,
                error=str(e),
            )
            raise

        if isinstance(output, str):
            return output
        if inspect.isasyncgen(output):
            return "".join([str(chunk) async for chunk in output])
        return "".join(str(chunk) for chunk in output)


# Convenience function for singleton access
def get_replicate_client() -> ReplicateClient:
    """
    Get the singleton ReplicateClient instance.

    Returns:
        ReplicateClient instance
    """
    return ReplicateClient()
