"""
Pricing calculations and rate management.

Prices are resolved per model in priority order: a user-entered price, then
the cached remote catalog price, then zero.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from ..storage.repository import SettingsStore
from .catalog import CATALOG_PROVIDER, CatalogError, PriceCatalogClient
from .clock import TimeSource
from .health import HealthMonitor

logger = logging.getLogger(__name__)

TOKENS_PER_MILLION = 1_000_000
CATALOG_REFRESH_HOURS = 24


@dataclass(frozen=True)
class ModelPrice:
    """Price for a specific model in currency units per million tokens."""
    input_per_million: float = 0.0
    output_per_million: float = 0.0

    @property
    def is_free(self) -> bool:
        return self.input_per_million == 0 and self.output_per_million == 0

    def to_dict(self) -> Dict[str, float]:
        return {"in": self.input_per_million, "out": self.output_per_million}


def parse_price(value: Any) -> float:
    """Parse a user-entered price; anything unparseable is 0."""
    if isinstance(value, bool):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class PriceResolver:
    """Resolves model prices and computes costs."""

    def __init__(
        self,
        settings_store: SettingsStore,
        time_source: TimeSource,
        catalog_client: Optional[PriceCatalogClient] = None,
        health: Optional[HealthMonitor] = None,
        provider: str = CATALOG_PROVIDER,
        refresh_hours: float = CATALOG_REFRESH_HOURS,
    ):
        self.settings_store = settings_store
        self.time_source = time_source
        self.catalog_client = catalog_client
        self.health = health
        self.provider = provider
        self.refresh_interval = timedelta(hours=refresh_hours)
        self._refresh_task: Optional[asyncio.Task] = None
        self._failed_at: Optional[datetime] = None

    @property
    def _settings(self):
        return self.settings_store.settings

    def get_price(self, model_id: Optional[str]) -> ModelPrice:
        """Get pricing for a specific model.

        Args:
            model_id: Model identifier

        Returns:
            The user-entered price if one exists, else the catalog price
            converted to per-million, else a zero price
        """
        if not model_id:
            return ModelPrice()

        custom = self._settings.model_prices.get(model_id)
        if custom:
            return ModelPrice(parse_price(custom.get("in")), parse_price(custom.get("out")))

        cached = self._settings.catalog_prices.get(model_id)
        if cached:
            return ModelPrice(
                parse_price(cached.get("prompt")) * TOKENS_PER_MILLION,
                parse_price(cached.get("completion")) * TOKENS_PER_MILLION,
            )

        return ModelPrice()

    def set_price(self, model_id: str, price_in: Any, price_out: Any) -> ModelPrice:
        """Store a user-entered price, overriding the catalog for *model_id*."""
        price = ModelPrice(parse_price(price_in), parse_price(price_out))
        self._settings.model_prices[model_id] = price.to_dict()
        self.settings_store.save()
        logger.info(
            "Price for %s set to %s in / %s out per 1M",
            model_id,
            price.input_per_million,
            price.output_per_million,
        )
        return price

    def calculate_cost(self, input_tokens: int, output_tokens: int, model_id: Optional[str]) -> float:
        """Calculate cost for one model's usage.

        Returns exactly 0 when the model has no price.
        """
        price = self.get_price(model_id)
        if price.is_free:
            return 0.0
        return (
            input_tokens / TOKENS_PER_MILLION * price.input_per_million
            + output_tokens / TOKENS_PER_MILLION * price.output_per_million
        )

    def cost_breakdown(self) -> Dict[str, float]:
        """Cost per model over all recorded usage."""
        return {
            model_id: self.calculate_cost(bucket.input, bucket.output, model_id)
            for model_id, bucket in self._settings.usage.by_model.items()
        }

    def calculate_all_time_cost(self) -> float:
        return sum(self.cost_breakdown().values())

    def catalog_is_stale(self) -> bool:
        last_fetched = self._settings.catalog_last_fetched
        if not last_fetched:
            return True
        try:
            fetched_at = datetime.fromisoformat(last_fetched)
        except ValueError:
            return True
        if fetched_at.tzinfo is None:
            fetched_at = fetched_at.replace(tzinfo=self.time_source.tz)
        return self.time_source.now() - fetched_at > self.refresh_interval

    def _recently_failed(self) -> bool:
        return self._failed_at is not None and self.time_source.now() - self._failed_at <= self.refresh_interval

    async def maybe_refresh_catalog(self, active_source_id: Optional[str]) -> bool:
        """Refresh the cached catalog if the active source uses it and the cache is stale.

        Failures are logged and reported to the health monitor; the existing
        cache is kept and the next attempt waits a full refresh interval.
        Callers arriving while a refresh is in flight join it instead of
        starting another fetch.

        Returns:
            True if the cache was replaced
        """
        if self.catalog_client is None or active_source_id != self.provider:
            return False
        if self._refresh_task is None or self._refresh_task.done():
            if not self.catalog_is_stale() or self._recently_failed():
                return False
            self._refresh_task = asyncio.ensure_future(self.refresh_catalog())
        # One waiter being cancelled must not cancel the shared fetch.
        return await asyncio.shield(self._refresh_task)

    async def refresh_catalog(self) -> bool:
        """Unconditionally replace the cached catalog."""
        if self.catalog_client is None:
            return False
        try:
            prices = await self.catalog_client.fetch_prices()
        except CatalogError as e:
            logger.warning("Price catalog refresh failed: %s", e)
            self._failed_at = self.time_source.now()
            if self.health is not None:
                self.health.record_error(str(e))
            return False

        self._failed_at = None
        self._settings.catalog_prices = prices
        self._settings.catalog_last_fetched = self.time_source.now().isoformat()
        self.settings_store.save()
        return True
