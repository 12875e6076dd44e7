"""
Comprehensive error handling for the scene generation pipeline.

Provides structured error handling with:
- Categorized error codes for all failure scenarios
- User-friendly error messages
- Retry logic determination (every surfaced error says whether it is retryable)
- Detailed error context for debugging
"""

from enum import Enum
from typing import Optional, Dict, Any

import structlog

logger = structlog.get_logger(__name__)


class ErrorCode(Enum):
    """
    Enumeration of all possible error codes in the pipeline.

    Organized by category:
    - Validation Errors: rejected before any collaborator is called
    - Generation Errors: image/video candidates could not be produced
    - External Errors: generation provider, frame extraction, compositor, storage
    - State Errors: invalid transitions and superseded requests
    """

    # Validation Errors
    INVALID_INPUT = "INVALID_INPUT"
    MISSING_PROMPT = "MISSING_PROMPT"
    OUT_OF_RANGE = "OUT_OF_RANGE"
    SCENE_NOT_FOUND = "SCENE_NOT_FOUND"
    CLIP_NOT_FOUND = "CLIP_NOT_FOUND"
    CONFIRMATION_REQUIRED = "CONFIRMATION_REQUIRED"

    # Generation Errors
    IMAGE_GENERATION_FAILED = "IMAGE_GENERATION_FAILED"
    VIDEO_GENERATION_FAILED = "VIDEO_GENERATION_FAILED"
    STORYBOARD_GENERATION_FAILED = "STORYBOARD_GENERATION_FAILED"

    # External Errors
    PROVIDER_TRANSIENT = "PROVIDER_TRANSIENT"
    PROVIDER_FATAL = "PROVIDER_FATAL"
    API_TIMEOUT = "API_TIMEOUT"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
    FRAME_EXTRACTION_FAILED = "FRAME_EXTRACTION_FAILED"
    STITCH_FAILED = "STITCH_FAILED"
    PREVIEW_FAILED = "PREVIEW_FAILED"
    STORAGE_ERROR = "STORAGE_ERROR"
    ASSET_DOWNLOAD_FAILED = "ASSET_DOWNLOAD_FAILED"

    # State Errors
    INVALID_TRANSITION = "INVALID_TRANSITION"
    CONTINUITY_BREAK = "CONTINUITY_BREAK"
    REQUEST_SUPERSEDED = "REQUEST_SUPERSEDED"
    FINAL_VIDEO_ALREADY_SET = "FINAL_VIDEO_ALREADY_SET"


# Codes a caller can offer a retry affordance for
RETRYABLE_ERROR_CODES = frozenset({
    ErrorCode.PROVIDER_TRANSIENT,
    ErrorCode.API_TIMEOUT,
    ErrorCode.ASSET_DOWNLOAD_FAILED,
    ErrorCode.STORAGE_ERROR,
    ErrorCode.PREVIEW_FAILED,
    ErrorCode.STITCH_FAILED,
    ErrorCode.FRAME_EXTRACTION_FAILED,
})

VALIDATION_ERROR_CODES = frozenset({
    ErrorCode.INVALID_INPUT,
    ErrorCode.MISSING_PROMPT,
    ErrorCode.OUT_OF_RANGE,
    ErrorCode.SCENE_NOT_FOUND,
    ErrorCode.CLIP_NOT_FOUND,
    ErrorCode.CONFIRMATION_REQUIRED,
})


class PipelineError(Exception):
    """
    Base exception for pipeline errors.

    Provides structured error information including:
    - Error code for categorization
    - Detailed message for logging
    - Context dictionary for debugging
    - User-friendly message for the UI layer
    - Whether the failed action can be retried as-is

    Example:
        >>> raise PipelineError(
        ...     ErrorCode.MISSING_PROMPT,
        ...     "Scene 2 has no image prompt",
        ...     {"scene_index": 2}
        ... )
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
        retryable: Optional[bool] = None,
    ):
        """
        Initialize pipeline error.

        Args:
            code: Error code from ErrorCode enum
            message: Detailed error message for logging
            details: Additional context (field names, values, etc.)
            user_message: Optional override for user-friendly message
            retryable: Optional override; defaults to the code's category
        """
        self.code = code
        self.message = message
        self.details = details or {}
        self._user_message = user_message
        self._retryable = retryable
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        if self._retryable is not None:
            return self._retryable
        return self.code in RETRYABLE_ERROR_CODES

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error to dictionary for the UI layer.

        Returns:
            Dictionary with error information

        Example:
            >>> error = PipelineError(ErrorCode.INVALID_INPUT, "Missing field")
            >>> error.to_dict()["retryable"]
            False
        """
        return {
            "error_code": self.code.value,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
            "user_message": self.get_user_friendly_message(),
        }

    def get_user_friendly_message(self) -> str:
        """
        Returns user-friendly error message.

        If a custom user message was provided, returns that.
        Otherwise, returns a predefined friendly message based on error code.
        """
        if self._user_message:
            return self._user_message

        friendly_messages = {
            # Validation Errors
            ErrorCode.INVALID_INPUT: "Please check your input and try again.",
            ErrorCode.MISSING_PROMPT: "A prompt is required before generating.",
            ErrorCode.OUT_OF_RANGE: "A value is outside the allowed range.",
            ErrorCode.SCENE_NOT_FOUND: "That scene no longer exists.",
            ErrorCode.CLIP_NOT_FOUND: "That clip no longer exists on the timeline.",
            ErrorCode.CONFIRMATION_REQUIRED: "This will discard your timeline edits. Please confirm.",

            # Generation Errors
            ErrorCode.IMAGE_GENERATION_FAILED: "Failed to generate images. Please try again.",
            ErrorCode.VIDEO_GENERATION_FAILED: "Failed to generate video. Please try again.",
            ErrorCode.STORYBOARD_GENERATION_FAILED: "Failed to generate storyboard. Please try again.",

            # External Errors
            ErrorCode.PROVIDER_TRANSIENT: "Generation service temporarily unavailable. Please try again.",
            ErrorCode.PROVIDER_FATAL: "The generation service rejected the request.",
            ErrorCode.API_TIMEOUT: "Request timed out. Please try again.",
            ErrorCode.MALFORMED_RESPONSE: "The generation service returned an unexpected response.",
            ErrorCode.FRAME_EXTRACTION_FAILED: "Failed to extract seed frames from the approved video.",
            ErrorCode.STITCH_FAILED: "Failed to stitch the final video. Please try again.",
            ErrorCode.PREVIEW_FAILED: "Failed to render the timeline preview.",
            ErrorCode.STORAGE_ERROR: "Storage error occurred. Please try again.",
            ErrorCode.ASSET_DOWNLOAD_FAILED: "Failed to download generated media. Please try again.",

            # State Errors
            ErrorCode.INVALID_TRANSITION: "That action is not available for this scene right now.",
            ErrorCode.CONTINUITY_BREAK: "The previous scene's seed frame is missing.",
            ErrorCode.REQUEST_SUPERSEDED: "A newer request replaced this one.",
            ErrorCode.FINAL_VIDEO_ALREADY_SET: "The final video has already been produced.",
        }

        return friendly_messages.get(
            self.code,
            "An error occurred. Please try again."
        )

    def log_error(self) -> None:
        """
        Log error with appropriate level and context.

        - Validation errors: WARNING
        - Retryable errors: WARNING
        - Everything else: ERROR
        """
        log_data = {
            "error_code": self.code.value,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }

        if self.code in VALIDATION_ERROR_CODES:
            logger.warning("client_error", **log_data)
        elif self.retryable:
            logger.warning("retryable_error", **log_data)
        else:
            logger.error("pipeline_error", **log_data)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


def should_retry(error: Exception) -> bool:
    """
    Determines if a surfaced error can be retried by the caller.

    Args:
        error: Exception to check

    Returns:
        True if error is transient, False otherwise

    Example:
        >>> should_retry(PipelineError(ErrorCode.PROVIDER_TRANSIENT, "E6716"))
        True
        >>> should_retry(PipelineError(ErrorCode.INVALID_INPUT, "Bad input"))
        False
    """
    if isinstance(error, PipelineError):
        return error.retryable

    if isinstance(error, (TimeoutError, ConnectionError)):
        return True

    return False


def categorize_error(error: Exception) -> ErrorCode:
    """
    Categorize a generic exception into an ErrorCode.

    Args:
        error: Exception to categorize

    Returns:
        Appropriate ErrorCode for the exception

    Example:
        >>> categorize_error(TimeoutError())
        <ErrorCode.API_TIMEOUT: 'API_TIMEOUT'>
    """
    if isinstance(error, PipelineError):
        return error.code

    error_type = type(error).__name__

    mapping = {
        "TimeoutError": ErrorCode.API_TIMEOUT,
        "ConnectionError": ErrorCode.PROVIDER_TRANSIENT,
        "ValueError": ErrorCode.INVALID_INPUT,
        "PermissionError": ErrorCode.STORAGE_ERROR,
        "FileNotFoundError": ErrorCode.STORAGE_ERROR,
        "OSError": ErrorCode.STORAGE_ERROR,
    }

    return mapping.get(error_type, ErrorCode.PROVIDER_FATAL)


class ValidationError(PipelineError):
    """
    Error for input validation failures.

    Raised before any collaborator is called.
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict] = None,
        code: ErrorCode = ErrorCode.INVALID_INPUT,
    ):
        error_details = details or {}
        if field:
            error_details["field"] = field

        super().__init__(code, message, error_details)


class GenerationError(PipelineError):
    """Raised when a scene action could not produce any usable media."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        scene_index: Optional[int] = None,
        retryable: Optional[bool] = None,
        details: Optional[Dict] = None,
    ):
        error_details = details or {}
        if scene_index is not None:
            error_details["scene_index"] = scene_index

        super().__init__(code, message, error_details, retryable=retryable)


class ExternalServiceError(PipelineError):
    """
    Error for collaborator failures (generation provider, extractor, compositor, storage).
    """

    def __init__(
        self,
        service: str,
        message: str,
        code: ErrorCode = ErrorCode.PROVIDER_FATAL,
        retryable: Optional[bool] = None,
        details: Optional[Dict] = None,
    ):
        error_details = details or {}
        error_details["service"] = service

        super().__init__(code, message, error_details, retryable=retryable)


class InvalidTransitionError(PipelineError):
    """Raised when a scene status change is not an edge of the state machine."""

    def __init__(self, scene_index: Optional[int], from_status: str, to_status: str, reason: str = ""):
        message = f"Cannot move scene from {from_status} to {to_status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            ErrorCode.INVALID_TRANSITION,
            message,
            {"scene_index": scene_index, "from_status": from_status, "to_status": to_status},
        )


class StaleResultError(PipelineError):
    """Raised to the caller of a request that a newer request superseded."""

    def __init__(self, key: Any, token_id: str):
        super().__init__(
            ErrorCode.REQUEST_SUPERSEDED,
            f"Request {token_id} for {key} was superseded",
            {"key": str(key), "token_id": token_id},
            retryable=False,
        )


class ContinuityError(PipelineError):
    """Raised when a scene needs a continuity asset that is not available."""

    def __init__(self, scene_index: int, message: str, details: Optional[Dict] = None):
        error_details = details or {}
        error_details["scene_index"] = scene_index
        super().__init__(ErrorCode.CONTINUITY_BREAK, message, error_details, retryable=False)
