"""
Repository pattern for the settings blob.

Persists the tracker's settings (usage ledger, prices, colours, catalog cache)
as one versioned JSON document, and holds the live in-memory copy.
"""

import asyncio
import copy
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import UsageLedger

logger = logging.getLogger(__name__)

EXTENSION_NAME = "token-usage-tracker"
SETTINGS_VERSION = 1
SAVE_DELAY_SECONDS = 1.0

DEFAULT_MINIVIEW: Dict[str, Any] = {
    "pinned": False,
    "mode": "session",
    "position": {"bottom": 80, "right": 20},
    "size": {"width": 180, "height": None},
}


@dataclass
class TrackerSettings:
    """Live settings blob.

    ``model_prices`` maps model id to ``{"in": float, "out": float}`` (per
    million tokens); ``catalog_prices`` maps model id to
    ``{"prompt": float, "completion": float}`` (per token).
    """
    model_colors: Dict[str, str] = field(default_factory=dict)
    model_prices: Dict[str, Dict[str, float]] = field(default_factory=dict)
    catalog_prices: Dict[str, Dict[str, float]] = field(default_factory=dict)
    catalog_last_fetched: Optional[str] = None
    miniview: Dict[str, Any] = field(default_factory=lambda: copy.deepcopy(DEFAULT_MINIVIEW))
    usage: UsageLedger = field(default_factory=UsageLedger)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "modelColors": dict(self.model_colors),
            "modelPrices": copy.deepcopy(self.model_prices),
            "openRouterPrices": {
                "data": copy.deepcopy(self.catalog_prices),
                "lastFetched": self.catalog_last_fetched,
            },
            "miniview": copy.deepcopy(self.miniview),
            "usage": self.usage.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TrackerSettings":
        """Load settings, merging defaults for any missing keys.

        Raises:
            ValueError: If the usage section is malformed
        """
        data = data or {}
        catalog = data.get("openRouterPrices") or {}
        miniview = copy.deepcopy(DEFAULT_MINIVIEW)
        miniview.update(data.get("miniview") or {})
        return cls(
            model_colors=dict(data.get("modelColors") or {}),
            model_prices=copy.deepcopy(data.get("modelPrices") or {}),
            catalog_prices=copy.deepcopy(catalog.get("data") or {}),
            catalog_last_fetched=catalog.get("lastFetched"),
            miniview=miniview,
            usage=UsageLedger.from_dict(data.get("usage")),
        )


class SettingsRepository:
    """SQLite-backed storage for the versioned settings blob.

    One row per extension name; the payload column holds the JSON document.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, name: str = EXTENSION_NAME):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
            name: Row key under which the blob is stored
        """
        self.db_path = db_path
        self.name = name
        initialize_schema(db_path)

    def load(self) -> Optional[Dict[str, Any]]:
        """Return the stored blob, or None if nothing has been saved yet.

        Raises:
            ValueError: If the stored blob was written by a newer schema version
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT version, payload FROM extension_settings WHERE name = ?",
                (self.name,),
            ).fetchone()
        finally:
            conn.close()

        if row is None:
            return None
        version, payload = row
        if version > SETTINGS_VERSION:
            raise ValueError(
                f"Settings version {version} is newer than supported version {SETTINGS_VERSION}"
            )
        return json.loads(payload)

    def save(self, blob: Dict[str, Any]) -> None:
        """Write the blob in a single transaction."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO extension_settings (name, version, payload, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    version = excluded.version,
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (
                    self.name,
                    SETTINGS_VERSION,
                    json.dumps(blob),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


class InMemorySettingsRepository:
    """Settings storage for hosts that persist the blob themselves."""

    def __init__(self, blob: Optional[Dict[str, Any]] = None):
        self.blob = copy.deepcopy(blob)
        self.save_count = 0

    def load(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self.blob)

    def save(self, blob: Dict[str, Any]) -> None:
        self.blob = copy.deepcopy(blob)
        self.save_count += 1


class SettingsStore:
    """Holds the live :class:`TrackerSettings` and writes them back on demand."""

    def __init__(self, repository=None, save_delay: float = SAVE_DELAY_SECONDS):
        self.repository = repository if repository is not None else InMemorySettingsRepository()
        self.settings = TrackerSettings.from_dict(self.repository.load())
        self.save_delay = save_delay
        self._pending_save: Optional[asyncio.TimerHandle] = None

    def save(self) -> bool:
        """Persist the current settings.

        Failures are logged; the in-memory settings stay authoritative and
        the next save retries.

        Returns:
            True if the blob was written
        """
        try:
            self.repository.save(self.settings.to_dict())
            return True
        except Exception:
            logger.exception("Failed to persist token usage settings")
            return False

    def save_soon(self) -> None:
        """Schedule a save on the running event loop, coalescing repeated calls.

        Without a running loop the settings are saved immediately.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.save()
            return
        if self._pending_save is None:
            self._pending_save = loop.call_later(self.save_delay, self._save_pending)

    def _save_pending(self) -> None:
        self._pending_save = None
        self.save()

    def flush(self) -> bool:
        """Write a scheduled save now."""
        if self._pending_save is None:
            return True
        self._pending_save.cancel()
        self._pending_save = None
        return self.save()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the extension_settings table if it doesn't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS extension_settings (
                name TEXT PRIMARY KEY,
                version INTEGER NOT NULL,
                payload TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()
