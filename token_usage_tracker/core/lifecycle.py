"""
Generation lifecycle tracking.

Correlates the host's generation events with the asynchronous token counts
they start, so that every real exchange produces at most one ledger record.

The host emits events on a single asyncio loop. Synchronous handlers only
spawn tasks; terminal handlers take ownership of the in-flight context
before their first ``await`` so that a new generation starting meanwhile
cannot be mixed into the one being finalized.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Optional, Set

from ..storage.usage_store import UsageStore
from .health import HealthMonitor
from .host import ChatMessage, HostBridge, StreamingSnapshot
from .token_counter import PromptPayload, TokenCounter

logger = logging.getLogger(__name__)

NORMAL = "normal"
CONTINUE = "continue"
QUIET = "quiet"
IMPERSONATE = "impersonate"

# Message events that are emitted without an API call behind them.
NON_API_MESSAGE_TYPES = ("command", "first_message")


def _is_token_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


@dataclass
class GenerationContext:
    """The single in-flight exchange."""
    generation_type: str = NORMAL
    input_tokens_task: Optional[asyncio.Task] = None
    model_id: Optional[str] = None
    source_id: Optional[str] = None
    pre_continue_baseline_tokens: int = 0
    baseline_task: Optional[asyncio.Task] = None

    @property
    def is_quiet(self) -> bool:
        return self.generation_type == QUIET

    def cancel_baseline(self) -> None:
        if self.baseline_task is not None and not self.baseline_task.done():
            self.baseline_task.cancel()
        self.baseline_task = None

    def cancel(self) -> None:
        """Cancel every pending task so nothing from this context is counted."""
        if self.input_tokens_task is not None and not self.input_tokens_task.done():
            self.input_tokens_task.cancel()
        self.cancel_baseline()

    async def resolve_baseline(self) -> int:
        if self.baseline_task is not None:
            self.pre_continue_baseline_tokens = await self.baseline_task
            self.baseline_task = None
        return self.pre_continue_baseline_tokens

    async def resolve_input(self) -> int:
        if self.input_tokens_task is None:
            return 0
        return await self.input_tokens_task


class GenerationLifecycleTracker:
    """State machine over host generation events.

    States are ``Idle`` (no context), ``AwaitingCompletion`` (a live
    context) and the two terminal outcomes, recorded or abandoned. An
    abandoned context has its tasks cancelled and never records.
    """

    def __init__(
        self,
        store: UsageStore,
        counter: TokenCounter,
        host: HostBridge,
        health: Optional[HealthMonitor] = None,
    ):
        self.store = store
        self.counter = counter
        self.host = host
        self.health = health
        self.context: Optional[GenerationContext] = None
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Task bookkeeping
    # ------------------------------------------------------------------

    def _spawn(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Join every task spawned by the tracker, including quiet flushes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _take_context(self) -> Optional[GenerationContext]:
        context, self.context = self.context, None
        return context

    def _abandon(self, context: GenerationContext) -> None:
        context.cancel()
        logger.debug("Abandoned %s generation", context.generation_type)

    def _report_failure(self, message: str, context: GenerationContext) -> None:
        logger.exception(message)
        context.cancel()
        if self.health is not None:
            self.health.record_error(message)

    # ------------------------------------------------------------------
    # Counting coroutines
    # ------------------------------------------------------------------

    async def _count_input(self, payload: PromptPayload) -> int:
        try:
            tokens = await self.counter.count_prompt(payload)
        except Exception:
            logger.exception("Error counting input tokens")
            return 0
        logger.debug("Input tokens (full context): %d", tokens)
        return tokens

    async def _count_baseline(self, message: ChatMessage) -> int:
        try:
            tokens = await self.counter.count(message.text)
            if message.reasoning:
                tokens += await self.counter.count(message.reasoning)
        except Exception:
            logger.exception("Error calculating pre-continue tokens")
            return 0
        return tokens

    # ------------------------------------------------------------------
    # Synchronous handlers
    # ------------------------------------------------------------------

    def on_generation_started(self, generation_type: str, params: Optional[Dict[str, Any]] = None,
                              is_dry_run: bool = False) -> None:
        """Start a new exchange, abandoning (or flushing, if quiet) the previous one."""
        if is_dry_run:
            return

        previous = self._take_context()
        if previous is not None:
            if previous.is_quiet and previous.input_tokens_task is not None:
                self._spawn(self._flush_quiet(previous, self.host.get_streaming_snapshot()))
            else:
                self._abandon(previous)

        context = GenerationContext(generation_type=generation_type or NORMAL)
        if context.generation_type == CONTINUE:
            self._capture_baseline(context)
        self.context = context

    def _capture_baseline(self, context: GenerationContext) -> None:
        last_message = self.host.get_last_message()
        if last_message is None:
            return
        if _is_token_count(last_message.token_count):
            context.pre_continue_baseline_tokens = last_message.token_count
        else:
            context.baseline_task = self._spawn(self._count_baseline(last_message))

    def on_generate_after_data(self, payload: PromptPayload, is_dry_run: bool = False) -> None:
        """Capture model/source and start counting the prompt without waiting."""
        if is_dry_run:
            return

        context = self.context
        if context is None:
            context = self.context = GenerationContext()
        if context.input_tokens_task is not None and not context.input_tokens_task.done():
            context.input_tokens_task.cancel()

        context.model_id = self.host.get_current_model_id()
        context.source_id = self.host.get_current_source_id()
        context.input_tokens_task = self._spawn(self._count_input(payload))

    def on_chat_changed(self, chat_id: Optional[str] = None) -> None:
        """Clear all in-flight state; a pending quiet generation is flushed first."""
        context = self._take_context()
        if context is not None:
            if context.is_quiet and context.input_tokens_task is not None:
                self._spawn(self._flush_quiet(context, self.host.get_streaming_snapshot()))
            else:
                self._abandon(context)
        logger.debug("Chat changed to: %s", chat_id)

    # ------------------------------------------------------------------
    # Terminal handlers
    # ------------------------------------------------------------------

    async def on_message_received(self, message_index: int, message_type: Optional[str] = None) -> None:
        """Finalize the exchange from the received chat message."""
        if message_type in NON_API_MESSAGE_TYPES:
            logger.debug("Skipping non-API message type: %s", message_type)
            return

        context = self.context
        if context is None or context.input_tokens_task is None:
            logger.debug("Skipping message with no pending token count (type: %s)", message_type or "unknown")
            return

        message = self.host.get_chat_message(message_index)
        if message is None or not message.text:
            return

        self.context = None
        chat_id = self.host.get_current_chat_id()

        try:
            reasoning_tokens = await self.counter.count(message.reasoning) if message.reasoning else 0

            if _is_token_count(message.token_count):
                # The host's count may already include the reasoning segment.
                output_tokens = message.token_count
                if reasoning_tokens > 0 and message.token_count > reasoning_tokens:
                    output_tokens = message.token_count - reasoning_tokens
            else:
                output_tokens = await self.counter.count(message.text)

            baseline = await context.resolve_baseline()
            if baseline > 0:
                logger.debug("Continue: %d total - %d pre-continue", output_tokens, baseline)
                output_tokens = max(0, output_tokens - baseline)

            input_tokens = await context.resolve_input()
            self.store.record(
                input_tokens,
                output_tokens,
                chat_id=chat_id,
                model_id=context.model_id,
                source_id=context.source_id,
                reasoning_tokens=reasoning_tokens,
            )
        except Exception:
            self._report_failure("Error counting output tokens", context)

    async def on_generation_stopped(self) -> None:
        """Record a cancelled generation from its partial streamed output."""
        context = self.context
        if context is None or context.input_tokens_task is None:
            return

        self.context = None
        chat_id = self.host.get_current_chat_id()
        snapshot = self.host.get_streaming_snapshot() or StreamingSnapshot()
        # Partial output is never offset by a continue baseline.
        context.cancel_baseline()

        try:
            output_tokens = await self.counter.count(snapshot.text)
            reasoning_tokens = await self.counter.count(snapshot.reasoning)
            input_tokens = await context.resolve_input()
            self.store.record(
                input_tokens,
                output_tokens,
                chat_id=chat_id,
                model_id=context.model_id,
                source_id=context.source_id,
                reasoning_tokens=reasoning_tokens,
            )
            logger.info("Recorded stopped generation: %d in, %d out (partial)", input_tokens, output_tokens)
        except Exception:
            self._report_failure("Error handling stopped generation", context)

    async def on_impersonate_ready(self, text: Optional[str]) -> None:
        """Finalize an impersonation from the text placed in the input field."""
        context = self.context
        if context is None or context.input_tokens_task is None:
            return

        self.context = None
        chat_id = self.host.get_current_chat_id()
        context.cancel_baseline()

        try:
            output_tokens = await self.counter.count(text)
            input_tokens = await context.resolve_input()
            self.store.record(
                input_tokens,
                output_tokens,
                chat_id=chat_id,
                model_id=context.model_id,
                source_id=context.source_id,
            )
        except Exception:
            self._report_failure("Error handling impersonate ready", context)

    async def _flush_quiet(self, context: GenerationContext, snapshot: Optional[StreamingSnapshot]) -> None:
        """Record a quiet generation from whatever counts are available."""
        context.cancel_baseline()
        try:
            input_tokens = await context.resolve_input()
            output_tokens = await self.counter.count(snapshot.text) if snapshot else 0
            if input_tokens > 0 or output_tokens > 0:
                self.store.record(
                    input_tokens,
                    output_tokens,
                    model_id=context.model_id,
                    source_id=context.source_id,
                )
        except Exception:
            self._report_failure("Error flushing quiet generation", context)
