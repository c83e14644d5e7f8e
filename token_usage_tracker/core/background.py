"""
Tracking for background model calls.

Calls made directly by other subsystems (summaries, quiet prompts, tool
requests) never reach the message-received path, so they are wrapped here:
count input, invoke, count output, record once.
"""

import functools
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from ..storage.usage_store import UsageStore
from .host import HostBridge
from .token_counter import TokenCounter

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackgroundCallTracker:
    """Wraps background calls with a single recursion guard.

    While one tracked call is in progress, any other tracked call (typically
    an instrumented function calling another) runs untracked.
    """

    def __init__(self, store: UsageStore, counter: TokenCounter, host: Optional[HostBridge] = None):
        self.store = store
        self.counter = counter
        self.host = host
        self.is_tracking = False

    async def track(
        self,
        call: Callable[[], Awaitable[T]],
        input_counter: Callable[[], Awaitable[int]],
        output_counter: Callable[[T], Awaitable[int]],
        model_id: Optional[str] = None,
        source_id: Optional[str] = None,
    ) -> T:
        """Run *call* and record its usage.

        Args:
            call: The background call to invoke
            input_counter: Counts prompt tokens before the call
            output_counter: Counts response tokens from the call's result
            model_id: Model to attribute usage to; defaults to the host's current model
            source_id: Source to attribute usage to; defaults to the host's current source

        Returns:
            The call's result. Errors raised by *call* propagate; counting
            errors are logged and counted as 0.
        """
        if self.is_tracking:
            return await call()

        if self.host is not None:
            model_id = model_id or self.host.get_current_model_id()
            source_id = source_id or self.host.get_current_source_id()

        input_tokens = 0
        try:
            self.is_tracking = True

            try:
                input_tokens = await input_counter()
            except Exception:
                logger.exception("Error counting background input")

            result = await call()

            try:
                output_tokens = await output_counter(result)
                if output_tokens > 0 or input_tokens > 0:
                    self.store.record(input_tokens, output_tokens, model_id=model_id, source_id=source_id)
                    logger.info("Background usage recorded: %d in, %d out", input_tokens, output_tokens)
            except Exception:
                logger.exception("Error counting background output")
        finally:
            self.is_tracking = False

        return result

    async def track_request(
        self,
        call: Callable[[], Awaitable[Any]],
        messages: List[Dict[str, Any]],
        model_id: Optional[str] = None,
        source_id: Optional[str] = None,
    ) -> Any:
        """Track a request/response call made with a chat message list."""
        return await self.track(
            call,
            lambda: self.counter.count_prompt(messages),
            self.count_result,
            model_id=model_id,
            source_id=source_id,
        )

    async def count_result(self, result: Any) -> int:
        """Count a response given as a string or an object with string ``content``."""
        if isinstance(result, str):
            return await self.counter.count(result)
        content = getattr(result, "content", None)
        if content is None and isinstance(result, dict):
            content = result.get("content")
        if isinstance(content, str):
            return await self.counter.count(content)
        return 0

    def instrument(
        self,
        fn: Callable[..., Awaitable[T]],
        input_counter: Callable[..., Awaitable[int]],
        output_counter: Optional[Callable[[T], Awaitable[int]]] = None,
    ) -> Callable[..., Awaitable[T]]:
        """Wrap an async function so every call is tracked.

        *input_counter* receives the same arguments as *fn*.
        """
        output_counter = output_counter or self.count_result

        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            return await self.track(
                lambda: fn(*args, **kwargs),
                lambda: input_counter(*args, **kwargs),
                output_counter,
            )

        return wrapper
