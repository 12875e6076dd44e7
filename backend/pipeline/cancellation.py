"""
Request tokens for superseding in-flight async work.

Each logical slot (e.g. one scene's image generation, or the timeline
preview) has at most one current token. Issuing a new token for a slot
cancels the previous token and any tasks attached to it. Results are only
applied while their token is still current, regardless of arrival order.
"""

import asyncio
import uuid
from typing import Any, Dict, Hashable, List, Optional

import structlog

logger = structlog.get_logger(__name__)


class RequestToken:
    """Handle for one logical request."""

    def __init__(self, key: Hashable):
        self.key = key
        self.id = str(uuid.uuid4())
        self.cancelled = False
        self._tasks: List[asyncio.Task] = []

    def attach(self, *tasks: asyncio.Task) -> None:
        """Tie tasks to this token so cancelling it aborts them."""
        if self.cancelled:
            for task in tasks:
                task.cancel()
            return
        self._tasks.extend(tasks)

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        for task in self._tasks:
            if not task.done():
                task.cancel()

    def __repr__(self) -> str:
        return f"RequestToken(key={self.key!r}, id='{self.id[:8]}', cancelled={self.cancelled})"


class RequestTokenRegistry:
    """
    Tracks the current token per slot.

    Example:
        >>> tokens = RequestTokenRegistry()
        >>> first = tokens.issue((0, "image"))
        >>> second = tokens.issue((0, "image"))
        >>> tokens.is_current(first), tokens.is_current(second)
        (False, True)
    """

    def __init__(self):
        self._current: Dict[Hashable, RequestToken] = {}

    def issue(self, key: Hashable) -> RequestToken:
        previous = self._current.get(key)
        if previous is not None:
            previous.cancel()
            logger.info("request_superseded", key=str(key), token_id=previous.id)
        token = RequestToken(key)
        self._current[key] = token
        return token

    def current(self, key: Hashable) -> Optional[RequestToken]:
        return self._current.get(key)

    def is_current(self, token: RequestToken) -> bool:
        return not token.cancelled and self._current.get(token.key) is token

    def in_flight(self, key: Hashable) -> bool:
        token = self._current.get(key)
        return token is not None and not token.cancelled

    def release(self, token: RequestToken) -> None:
        """Mark a finished token's slot as idle."""
        if self._current.get(token.key) is token:
            del self._current[token.key]

    def cancel(self, key: Hashable) -> bool:
        token = self._current.pop(key, None)
        if token is None:
            return False
        token.cancel()
        logger.info("request_cancelled", key=str(key), token_id=token.id)
        return True

    def cancel_matching(self, predicate: Any) -> int:
        """Cancel every slot whose key satisfies ``predicate``."""
        keys = [key for key in self._current if predicate(key)]
        for key in keys:
            self.cancel(key)
        return len(keys)
