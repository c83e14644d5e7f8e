"""
Token counting and usage tracking.

Wraps the host's async tokenizer with a character-length fallback and
counts full prompt payloads for text- and chat-completion APIs.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 3.35
# Cost of a 1024x1024 image in OpenAI high-detail mode.
IMAGE_TOKEN_ESTIMATE = 765
ROLE_TOKENS = 1
MESSAGE_OVERHEAD_TOKENS = 3

CountFunction = Callable[[str], Awaitable[int]]
PromptPayload = Union[str, List[Dict[str, Any]], None]


@dataclass(frozen=True)
class TokenUsage:
    """Token counts for one exchange.

    Validated on construction so that every write into the ledger carries
    non-negative integers and a consistent total.
    """
    input_tokens: int
    output_tokens: int
    reasoning_tokens: int = 0

    def __post_init__(self):
        """Validate counts are non-negative integers."""
        for name in ("input_tokens", "output_tokens", "reasoning_tokens"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be an integer")
            if value < 0:
                raise ValueError(f"{name} cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output + reasoning)."""
        return self.input_tokens + self.output_tokens + self.reasoning_tokens


def estimate_tokens(text: str) -> int:
    """Character-length estimate used when no tokenizer answer is available."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class TokenCounter:
    """Async token counting through the host tokenizer.

    Counting never raises: tokenizer failures are logged and replaced by
    :func:`estimate_tokens`.
    """

    def __init__(self, count_fn: Optional[CountFunction] = None):
        """
        Args:
            count_fn: Host tokenizer coroutine function; when None every
                count uses the character-length estimate
        """
        self._count_fn = count_fn

    @property
    def available(self) -> bool:
        """Whether a host tokenizer is wired in."""
        return self._count_fn is not None

    async def count(self, text: Any) -> int:
        """Count tokens in *text*; non-string or empty input counts as 0."""
        if not text or not isinstance(text, str):
            return 0
        if self._count_fn is None:
            return estimate_tokens(text)
        try:
            return int(await self._count_fn(text))
        except Exception:
            logger.exception("Error counting tokens, using character estimate")
            return estimate_tokens(text)

    async def count_prompt(self, prompt: PromptPayload) -> int:
        """Count the full prompt sent to the model.

        A string prompt (text-completion APIs) is counted directly. A list
        of chat messages sums content, images, roles, names, tool calls
        and a fixed per-message formatting overhead.
        """
        if not prompt:
            return 0
        if isinstance(prompt, str):
            return await self.count(prompt)
        if not isinstance(prompt, list):
            return 0

        tokens = 0
        for message in prompt:
            if isinstance(message, dict):
                tokens += await self._count_message(message)
        tokens += len(prompt) * MESSAGE_OVERHEAD_TOKENS
        return tokens

    async def _count_message(self, message: Dict[str, Any]) -> int:
        tokens = 0
        content = message.get("content")
        if isinstance(content, str):
            tokens += await self.count(content)
        elif isinstance(content, list):
            for part in content:
                if not isinstance(part, dict):
                    continue
                if part.get("type") == "text":
                    tokens += await self.count(part.get("text"))
                if part.get("type") in ("image_url", "image"):
                    tokens += IMAGE_TOKEN_ESTIMATE

        if message.get("role"):
            tokens += ROLE_TOKENS
        if message.get("name"):
            tokens += await self.count(message["name"])

        for key in ("tool_calls", "invocations"):
            calls = message.get(key)
            if isinstance(calls, list):
                for call in calls:
                    if isinstance(call, dict):
                        tokens += await self._count_function(call.get("function"))

        tokens += await self._count_function(message.get("function_call"))
        return tokens

    async def _count_function(self, function: Any) -> int:
        if not isinstance(function, dict):
            return 0
        return await self.count(function.get("name")) + await self.count(function.get("arguments"))
