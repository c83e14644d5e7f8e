"""
Tracked OpenAI client wrapper.

Records usage of direct chat completion calls through the background call
protocol without modifying behavior.
"""

from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from ..core.background import BackgroundCallTracker


class TrackedAsyncOpenAI:
    """AsyncOpenAI wrapper that records every chat completion.

    Calls made while another tracked call is in progress are passed through
    untracked, so nothing is counted twice.
    """

    def __init__(self, background: BackgroundCallTracker, model: str, client: Optional[AsyncOpenAI] = None,
                 source_id: str = "openai"):
        """Initialize tracked OpenAI client.

        Args:
            background: Background call tracker that records usage
            model: OpenAI model name (required)
            client: Preconfigured AsyncOpenAI client; a default one is created when None
            source_id: Source the usage is attributed to

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.background = background
        self.model = model
        self.source_id = source_id
        self.client = client if client is not None else AsyncOpenAI()

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> Any:
        """Create chat completion with usage recording.

        Input is counted from *messages* before the call. Output prefers the
        response's reported completion tokens and falls back to counting the
        first choice's content.

        Raises:
            ValueError: If messages is empty
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        params: Dict[str, Any] = dict(kwargs)
        if temperature is not None:
            params["temperature"] = temperature
        if max_tokens is not None:
            params["max_tokens"] = max_tokens

        return await self.background.track(
            lambda: self.client.chat.completions.create(model=self.model, messages=messages, **params),
            lambda: self.background.counter.count_prompt(messages),
            self._count_output,
            model_id=self.model,
            source_id=self.source_id,
        )

    async def _count_output(self, response: Any) -> int:
        usage = getattr(response, "usage", None)
        completion_tokens = getattr(usage, "completion_tokens", None)
        if isinstance(completion_tokens, int) and not isinstance(completion_tokens, bool):
            return completion_tokens

        choices = getattr(response, "choices", None) or []
        if not choices:
            return 0
        message = getattr(choices[0], "message", None)
        return await self.background.counter.count(getattr(message, "content", None))
