"""
Remote model price catalog.

Fetches per-token prompt/completion prices from the OpenRouter models
endpoint.
"""

import logging
from typing import Any, Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

CATALOG_URL = "https://openrouter.ai/api/v1/models"
CATALOG_PROVIDER = "openrouter"


class CatalogError(RuntimeError):
    """Raised when the price catalog cannot be fetched or parsed."""


def _parse_price(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_catalog(payload: Any) -> Dict[str, Dict[str, float]]:
    """Extract ``{model_id: {"prompt": float, "completion": float}}`` from a models listing.

    Prices may be strings or numbers. Entries without an id or with an
    unparseable price are skipped.

    Raises:
        CatalogError: If the payload has no ``data`` list
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
        raise CatalogError("Unexpected price catalog format")

    prices: Dict[str, Dict[str, float]] = {}
    for entry in payload["data"]:
        if not isinstance(entry, dict):
            continue
        model_id = entry.get("id")
        pricing = entry.get("pricing")
        if not model_id or not isinstance(pricing, dict):
            continue
        prompt = _parse_price(pricing.get("prompt"))
        completion = _parse_price(pricing.get("completion"))
        if prompt is None or completion is None:
            logger.debug("Skipping catalog entry %s with unparseable pricing", model_id)
            continue
        prices[model_id] = {"prompt": prompt, "completion": completion}
    return prices


class PriceCatalogClient:
    """Async client for the remote price catalog."""

    def __init__(
        self,
        url: str = CATALOG_URL,
        timeout: float = 30.0,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ):
        self.url = url
        self._client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=timeout))

    async def fetch_prices(self) -> Dict[str, Dict[str, float]]:
        """Download and parse the catalog.

        Raises:
            CatalogError: On transport errors, non-2xx responses or bad payloads
        """
        try:
            async with self._client_factory() as client:
                response = await client.get(self.url)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as e:
            raise CatalogError(f"Failed to fetch price catalog: {e}") from e
        except ValueError as e:
            raise CatalogError(f"Price catalog is not valid JSON: {e}") from e

        prices = parse_catalog(payload)
        logger.info("Fetched prices for %d models from %s", len(prices), self.url)
        return prices
