"""
Retry policy for a single generation + poll call.

Only transient provider faults are retried. The budget is small and fixed
(2 retries, 3 attempts total) with a short constant delay between attempts,
since callers already fan out several requests in parallel.
"""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from config import settings
from pipeline.error_handler import ErrorCode, ExternalServiceError, PipelineError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Substrings (lowercase) of provider error messages known to be transient
TRANSIENT_ERROR_SIGNATURES = (
    "director",
    "e6716",
    "unexpected error",
    "temporary server",
    "internal server error",
    "rate limit",
    "too many requests",
)


def is_transient_message(message: Optional[str]) -> bool:
    if not message:
        return False
    lowered = message.lower()
    return any(signature in lowered for signature in TRANSIENT_ERROR_SIGNATURES)


def is_retryable_error(error: BaseException) -> bool:
    """
    Classify an error raised by a generation attempt.

    PipelineErrors carry their own classification; anything else is
    retryable only if its message matches a transient provider signature.
    Validation, auth and malformed-response errors are terminal.
    """
    if isinstance(error, PipelineError):
        return error.code == ErrorCode.PROVIDER_TRANSIENT
    return is_transient_message(str(error))


def provider_error(message: Optional[str], service: str = "replicate") -> ExternalServiceError:
    """Build the error for a failed prediction from the provider's message."""
    message = message or "Generation failed without an error message"
    if is_transient_message(message):
        return ExternalServiceError(service, message, code=ErrorCode.PROVIDER_TRANSIENT)
    if "timed out" in message.lower():
        return ExternalServiceError(service, message, code=ErrorCode.API_TIMEOUT, retryable=True)
    return ExternalServiceError(service, message, code=ErrorCode.PROVIDER_FATAL)


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: Optional[int] = None,
    delay: Optional[float] = None,
    label: str = "generation",
) -> T:
    """
    Run ``operation`` with the generation retry budget.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt
        max_retries: Retries after the first attempt (default: 2)
        delay: Fixed delay between attempts in seconds (default: 1.0)
        label: Name used in log events

    Returns:
        The operation's result

    Raises:
        The last error if every attempt failed or a terminal error occurred
    """
    if max_retries is None:
        max_retries = settings.GENERATION_MAX_RETRIES
    if delay is None:
        delay = settings.GENERATION_RETRY_DELAY

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_fixed(delay),
        retry=retry_if_exception(is_retryable_error),
        before_sleep=before_sleep_log(logging.getLogger(__name__), logging.INFO),
        reraise=True,
    )

    async for attempt in retrying:
        with attempt:
            attempt_number = attempt.retry_state.attempt_number
            if attempt_number > 1:
                logger.info(
                    "generation_retry_attempt",
                    label=label,
                    attempt=attempt_number,
                    max_attempts=max_retries + 1,
                )
            result = await operation()

    return result
