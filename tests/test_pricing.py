"""
Unit tests for pricing logic.

Tests price priority, cost calculation and catalog refresh policy.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from token_usage_tracker.core.catalog import CatalogError, PriceCatalogClient, parse_catalog
from token_usage_tracker.core.pricing import ModelPrice, PriceResolver, parse_price
from token_usage_tracker.storage.models import UsageBucket


@pytest.fixture
def resolver(settings_store, time_source, health):
    return PriceResolver(settings_store, time_source, catalog_client=AsyncMock(spec=PriceCatalogClient), health=health)


class TestPriceResolution:
    """Test price lookup priority."""

    def test_user_price_wins(self, resolver, settings_store):
        settings_store.settings.model_prices["gpt-4o"] = {"in": 2.5, "out": 10}
        settings_store.settings.catalog_prices["gpt-4o"] = {"prompt": 0.000001, "completion": 0.000002}

        assert resolver.get_price("gpt-4o") == ModelPrice(2.5, 10)

    def test_catalog_price_converted_per_million(self, resolver, settings_store):
        settings_store.settings.catalog_prices["x/y"] = {"prompt": 0.000002, "completion": 0.000008}

        price = resolver.get_price("x/y")

        assert price.input_per_million == pytest.approx(2.0)
        assert price.output_per_million == pytest.approx(8.0)

    def test_unknown_model_is_free(self, resolver):
        assert resolver.get_price("mystery").is_free
        assert resolver.get_price(None).is_free

    def test_set_price_persists(self, resolver, repository):
        resolver.set_price("gpt-4o", "3", 12.5)

        assert repository.blob["modelPrices"]["gpt-4o"] == {"in": 3.0, "out": 12.5}

    @pytest.mark.parametrize("value,expected", [("1.25", 1.25), ("abc", 0.0), (None, 0.0), (True, 0.0), (4, 4.0)])
    def test_parse_price(self, value, expected):
        assert parse_price(value) == expected


class TestCostCalculation:
    """Test cost arithmetic."""

    def test_cost_per_million(self, resolver):
        resolver.set_price("m", 3, 15)

        assert resolver.calculate_cost(1_000_000, 200_000, "m") == pytest.approx(6.0)

    def test_unpriced_model_costs_zero(self, resolver):
        assert resolver.calculate_cost(5_000_000, 5_000_000, "free-model") == 0

    def test_all_time_cost_sums_models(self, resolver, settings_store):
        resolver.set_price("a", 1, 2)
        resolver.set_price("b", 10, 0)
        for model_id, (inp, out) in {"a": (1_000_000, 1_000_000), "b": (500_000, 0), "c": (9, 9)}.items():
            bucket = UsageBucket()
            bucket.add(inp, out)
            settings_store.settings.usage.by_model[model_id] = bucket

        assert resolver.cost_breakdown() == pytest.approx({"a": 3.0, "b": 5.0, "c": 0.0})
        assert resolver.calculate_all_time_cost() == pytest.approx(8.0)


class TestCatalogRefresh:
    """Test when the catalog is refreshed."""

    @pytest.mark.asyncio
    async def test_refreshes_when_never_fetched(self, resolver, settings_store, time_source):
        resolver.catalog_client.fetch_prices.return_value = {"x/y": {"prompt": 0.1, "completion": 0.2}}

        assert await resolver.maybe_refresh_catalog("openrouter") is True
        assert settings_store.settings.catalog_prices == {"x/y": {"prompt": 0.1, "completion": 0.2}}
        assert settings_store.settings.catalog_last_fetched == time_source.now().isoformat()

    @pytest.mark.asyncio
    async def test_other_source_never_refreshes(self, resolver):
        assert await resolver.maybe_refresh_catalog("openai") is False
        resolver.catalog_client.fetch_prices.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fresh_cache_not_refreshed(self, resolver, settings_store, time_source):
        settings_store.settings.catalog_last_fetched = (time_source.now() - timedelta(hours=23)).isoformat()

        assert await resolver.maybe_refresh_catalog("openrouter") is False
        resolver.catalog_client.fetch_prices.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stale_cache_replaced_wholesale(self, resolver, settings_store, time_source):
        settings_store.settings.catalog_prices = {"old": {"prompt": 1.0, "completion": 1.0}}
        settings_store.settings.catalog_last_fetched = (time_source.now() - timedelta(hours=25)).isoformat()
        resolver.catalog_client.fetch_prices.return_value = {"new": {"prompt": 2.0, "completion": 2.0}}

        assert await resolver.maybe_refresh_catalog("openrouter") is True
        assert list(settings_store.settings.catalog_prices) == ["new"]

    @pytest.mark.asyncio
    async def test_failure_keeps_cache_and_reports_health(self, resolver, settings_store, health):
        settings_store.settings.catalog_prices = {"old": {"prompt": 1.0, "completion": 1.0}}
        resolver.catalog_client.fetch_prices.side_effect = CatalogError("Failed to fetch price catalog: timeout")

        assert await resolver.maybe_refresh_catalog("openrouter") is False
        assert "old" in settings_store.settings.catalog_prices
        assert settings_store.settings.catalog_last_fetched is None
        assert health.status().last_error == "Failed to fetch price catalog: timeout"

    @pytest.mark.asyncio
    async def test_failure_waits_a_full_interval(self, resolver, clock):
        resolver.catalog_client.fetch_prices.side_effect = CatalogError("Failed to fetch price catalog: timeout")
        await resolver.maybe_refresh_catalog("openrouter")

        clock.advance(23 * 3600)
        assert await resolver.maybe_refresh_catalog("openrouter") is False
        assert resolver.catalog_client.fetch_prices.await_count == 1

        resolver.catalog_client.fetch_prices.side_effect = None
        resolver.catalog_client.fetch_prices.return_value = {"x/y": {"prompt": 0.1, "completion": 0.2}}
        clock.advance(2 * 3600)
        assert await resolver.maybe_refresh_catalog("openrouter") is True
        assert resolver.catalog_client.fetch_prices.await_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_events_fetch_once(self, settings_store, time_source, health):
        """Events arriving while a download is pending join it instead of polling again."""
        calls = []
        release = asyncio.Event()

        async def handler(request):
            calls.append(request.url)
            await release.wait()
            return httpx.Response(200, json={"data": [{"id": "a/b", "pricing": {"prompt": "1", "completion": "2"}}]})

        client = PriceCatalogClient(
            client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        resolver = PriceResolver(settings_store, time_source, catalog_client=client, health=health)

        pending = [asyncio.ensure_future(resolver.maybe_refresh_catalog("openrouter")) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*pending)

        assert len(calls) == 1
        assert results == [True, True, True]
        assert settings_store.settings.catalog_prices == {"a/b": {"prompt": 1.0, "completion": 2.0}}

        assert await resolver.maybe_refresh_catalog("openrouter") is False
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_fetch(self, resolver, settings_store):
        release = asyncio.Event()

        async def slow_fetch():
            await release.wait()
            return {"a/b": {"prompt": 1.0, "completion": 2.0}}

        resolver.catalog_client.fetch_prices.side_effect = slow_fetch
        first = asyncio.ensure_future(resolver.maybe_refresh_catalog("openrouter"))
        second = asyncio.ensure_future(resolver.maybe_refresh_catalog("openrouter"))
        await asyncio.sleep(0)

        first.cancel()
        release.set()

        assert await second is True
        assert "a/b" in settings_store.settings.catalog_prices
        assert resolver.catalog_client.fetch_prices.await_count == 1


class TestCatalogClient:
    """Test catalog fetching and parsing."""

    def test_parse_catalog_mixed_formats(self):
        payload = {"data": [
            {"id": "a/one", "pricing": {"prompt": "0.000001", "completion": "0.000002"}},
            {"id": "b/two", "pricing": {"prompt": 0, "completion": 0.5}},
            {"id": "c/bad", "pricing": {"prompt": "n/a", "completion": "1"}},
            {"pricing": {"prompt": "1", "completion": "1"}},
            "garbage",
        ]}

        prices = parse_catalog(payload)

        assert prices == {
            "a/one": {"prompt": 0.000001, "completion": 0.000002},
            "b/two": {"prompt": 0.0, "completion": 0.5},
        }

    def test_parse_catalog_rejects_bad_shape(self):
        with pytest.raises(CatalogError):
            parse_catalog({"models": []})

    @pytest.mark.asyncio
    async def test_fetch_prices(self):
        def handler(request):
            assert request.url.path == "/api/v1/models"
            return httpx.Response(200, json={"data": [{"id": "a", "pricing": {"prompt": "1", "completion": "2"}}]})

        client = PriceCatalogClient(
            client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        assert await client.fetch_prices() == {"a": {"prompt": 1.0, "completion": 2.0}}

    @pytest.mark.asyncio
    async def test_fetch_http_error(self):
        client = PriceCatalogClient(
            client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))),
        )

        with pytest.raises(CatalogError, match="Failed to fetch"):
            await client.fetch_prices()
