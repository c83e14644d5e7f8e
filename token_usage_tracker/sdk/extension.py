"""
Tracker wiring and host event dispatch.

Builds every component from one configuration and routes host events to the
lifecycle tracker.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from ..config.loader import TrackerConfig, default_config
from ..core.background import BackgroundCallTracker
from ..core.catalog import PriceCatalogClient
from ..core.clock import TimeSource
from ..core.colors import ModelColorRegistry
from ..core.health import HealthMonitor
from ..core.host import HostBridge
from ..core.lifecycle import GenerationLifecycleTracker
from ..core.pricing import PriceResolver
from ..core.token_counter import CountFunction, TokenCounter
from ..core.transfer import ImportExportMerger
from ..storage.repository import SettingsRepository, SettingsStore
from ..storage.usage_store import UsageStore

logger = logging.getLogger(__name__)

GENERATION_STARTED = "generation_started"
GENERATE_AFTER_DATA = "generate_after_data"
MESSAGE_RECEIVED = "message_received"
GENERATION_STOPPED = "generation_stopped"
CHAT_CHANGED = "chat_id_changed"
IMPERSONATE_READY = "impersonate_ready"


class TokenUsageExtension:
    """The assembled tracker.

    Attributes:
        usage: The usage store (reads, resets, subscriptions)
        prices: Price resolution and cost calculation
        colors: Per-model chart colours
        lifecycle: Host generation event state machine
        background: Tracking for direct background calls
        transfer: Import and export of usage data
        health: Recent activity and errors
    """

    def __init__(
        self,
        host: HostBridge,
        config: Optional[TrackerConfig] = None,
        count_fn: Optional[CountFunction] = None,
        repository=None,
        time_source: Optional[TimeSource] = None,
        catalog_client: Optional[PriceCatalogClient] = None,
    ):
        """
        Args:
            host: Access to the host's chat, model and streaming state
            config: Tracker configuration; defaults apply when None
            count_fn: Host tokenizer coroutine function
            repository: Settings storage; a SQLite repository at the
                configured path is used when None
            time_source: Reference clock; built from config when None
            catalog_client: Price catalog client; built from config when None
        """
        self.config = config or default_config()
        self.host = host

        self.time_source = time_source or TimeSource(
            timezone=self.config.timezone,
            sync_url=self.config.time_sync_url,
            sync_interval=self.config.time_sync.interval_seconds,
            sync_enabled=self.config.time_sync.enabled,
        )
        self.counter = TokenCounter(count_fn)
        self.health = HealthMonitor(self.time_source, tokenizer_available=self.counter.available)
        if repository is None:
            repository = SettingsRepository(self.config.storage.db_path)
        self.settings_store = SettingsStore(repository)

        if catalog_client is None and self.config.catalog.enabled:
            catalog_client = PriceCatalogClient(self.config.catalog.url)

        self.usage = UsageStore(self.settings_store, self.time_source, self.health)
        self.prices = PriceResolver(
            self.settings_store,
            self.time_source,
            catalog_client=catalog_client,
            health=self.health,
            provider=self.config.catalog.provider,
            refresh_hours=self.config.catalog.refresh_hours,
        )
        self.colors = ModelColorRegistry(self.settings_store)
        self.lifecycle = GenerationLifecycleTracker(self.usage, self.counter, host, self.health)
        self.background = BackgroundCallTracker(self.usage, self.counter, host)
        self.transfer = ImportExportMerger(self.settings_store, self.usage, self.time_source)

        self._tasks: Set[asyncio.Task] = set()
        self._handlers: Dict[str, Callable[..., Any]] = {
            GENERATION_STARTED: self.lifecycle.on_generation_started,
            GENERATE_AFTER_DATA: self._on_generate_after_data,
            MESSAGE_RECEIVED: self.lifecycle.on_message_received,
            GENERATION_STOPPED: self.lifecycle.on_generation_stopped,
            CHAT_CHANGED: self.lifecycle.on_chat_changed,
            IMPERSONATE_READY: self.lifecycle.on_impersonate_ready,
        }

    async def dispatch(self, event: str, *args: Any) -> None:
        """Route a host event to its handler.

        Unknown events are ignored. Handler failures are logged and reported
        to the health monitor; they never propagate into the host.
        """
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug("Ignoring unhandled event: %s", event)
            return
        try:
            result = handler(*args)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Error handling %s", event)
            self.health.record_error(f"Error handling {event}")

    def _on_generate_after_data(self, payload: Any, is_dry_run: bool = False) -> None:
        self.lifecycle.on_generate_after_data(payload, is_dry_run)
        if not is_dry_run:
            self._spawn(self.prices.maybe_refresh_catalog(self.host.get_current_source_id()))

    def _spawn(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Join pending counts, flushes and catalog refreshes."""
        await self.lifecycle.wait_idle()
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.wait_idle()
        self.settings_store.flush()
        await self.time_source.aclose()
