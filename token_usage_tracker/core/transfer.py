"""
Import and export of usage data.

Exports are self-describing JSON documents. Imports are validated in full
before anything is changed, then merged into the live ledger.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Union

from ..storage.models import UsageLedger
from ..storage.repository import EXTENSION_NAME, SettingsStore
from ..storage.usage_store import MergeStrategy, UsageStore
from .clock import TimeSource
from .pricing import ModelPrice, parse_price

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"
SUPPORTED_MAJOR_VERSION = "1"


class UsageImportError(ValueError):
    """Raised when import data is malformed or incompatible."""


@dataclass(frozen=True)
class ImportResult:
    export_date: str
    merged_keys: int
    strategy: MergeStrategy

    @property
    def message(self) -> str:
        return f"Import successful. Merged data from {self.export_date}."


def _validate(data: Any) -> Dict[str, Any]:
    if not isinstance(data, dict) or "version" not in data or "usage" not in data:
        raise UsageImportError("Invalid export format. Missing required fields.")

    major = str(data["version"]).split(".")[0]
    if major != SUPPORTED_MAJOR_VERSION:
        raise UsageImportError(f"Unsupported export version: {data['version']}")

    extension_name = data.get("extensionName")
    if extension_name is not None and extension_name != EXTENSION_NAME:
        raise UsageImportError(f"Data was exported from a different extension: {extension_name}")

    for section in ("modelPrices", "modelColors"):
        if data.get(section) is not None and not isinstance(data[section], dict):
            raise UsageImportError(f"Invalid export format. '{section}' must be an object.")
    for model_id, price in (data.get("modelPrices") or {}).items():
        if not isinstance(price, dict):
            raise UsageImportError(f"Invalid price entry for model: {model_id}")
    return data


class ImportExportMerger:
    """Serializes the ledger and merges external snapshots into it."""

    def __init__(self, settings_store: SettingsStore, usage_store: UsageStore, time_source: TimeSource):
        self.settings_store = settings_store
        self.usage_store = usage_store
        self.time_source = time_source

    def export(self) -> Dict[str, Any]:
        """Return the full export document."""
        settings = self.settings_store.settings
        return {
            "version": EXPORT_VERSION,
            "exportDate": self.time_source.now().isoformat(),
            "extensionName": EXTENSION_NAME,
            "usage": settings.usage.to_dict(),
            "modelPrices": {k: dict(v) for k, v in settings.model_prices.items()},
            "modelColors": dict(settings.model_colors),
        }

    def export_json(self) -> str:
        return json.dumps(self.export(), indent=2)

    def import_data(
        self,
        payload: Union[str, Dict[str, Any]],
        strategy: MergeStrategy = MergeStrategy.ADDITIVE,
    ) -> ImportResult:
        """Merge an export document into the live data.

        The session bucket is never imported. Prices and colours from the
        document overwrite existing entries for the same model.

        Args:
            payload: JSON text or an already-decoded document
            strategy: How colliding usage buckets combine

        Returns:
            ImportResult describing the merge

        Raises:
            UsageImportError: If the document is malformed or incompatible;
                nothing is changed in that case
        """
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError as e:
                raise UsageImportError("Invalid JSON format") from e

        data = _validate(payload)
        try:
            ledger = UsageLedger.from_dict(data["usage"])
        except ValueError as e:
            raise UsageImportError(f"Invalid usage data: {e}") from e

        prices = {
            model_id: ModelPrice(parse_price(price.get("in")), parse_price(price.get("out"))).to_dict()
            for model_id, price in (data.get("modelPrices") or {}).items()
        }
        colors = dict(data.get("modelColors") or {})

        settings = self.settings_store.settings
        settings.model_prices.update(prices)
        settings.model_colors.update(colors)
        merged_keys = self.usage_store.merge_ledger(ledger, strategy)

        export_date = data.get("exportDate") or "unknown date"
        logger.info("Imported usage data exported %s (%d keys, %s)", export_date, merged_keys, strategy.value)
        return ImportResult(export_date=export_date, merged_keys=merged_keys, strategy=strategy)
