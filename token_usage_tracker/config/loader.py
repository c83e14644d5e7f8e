"""
Configuration management and loading.

Handles tracker settings: reference timezone, storage location, external
time sync, price catalog and import behaviour.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from ..core.catalog import CATALOG_PROVIDER, CATALOG_URL
from ..core.clock import DEFAULT_TIMEZONE, TIME_SYNC_INTERVAL_SECONDS, TIME_SYNC_URL
from ..storage.db import DEFAULT_DB_PATH
from ..storage.usage_store import MergeStrategy


@dataclass(frozen=True)
class StorageConfig:
    """Where the settings blob is persisted."""
    db_path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class TimeSyncConfig:
    """External clock correction."""
    enabled: bool = True
    url: Optional[str] = None
    interval_seconds: float = TIME_SYNC_INTERVAL_SECONDS

    def __post_init__(self):
        """Validate the resync interval is positive."""
        if self.interval_seconds <= 0:
            raise ValueError("time_sync.interval_seconds must be > 0")


@dataclass(frozen=True)
class CatalogConfig:
    """Remote price catalog."""
    enabled: bool = True
    provider: str = CATALOG_PROVIDER
    url: str = CATALOG_URL
    refresh_hours: float = 24

    def __post_init__(self):
        """Validate the refresh interval is positive."""
        if self.refresh_hours <= 0:
            raise ValueError("catalog.refresh_hours must be > 0")


@dataclass(frozen=True)
class ImportConfig:
    """Default behaviour of data imports."""
    strategy: MergeStrategy = MergeStrategy.ADDITIVE


@dataclass(frozen=True)
class TrackerConfig:
    """Complete tracker configuration."""
    timezone: str = DEFAULT_TIMEZONE
    storage: StorageConfig = field(default_factory=StorageConfig)
    time_sync: TimeSyncConfig = field(default_factory=TimeSyncConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    import_: ImportConfig = field(default_factory=ImportConfig)

    @property
    def time_sync_url(self) -> str:
        """The configured time service URL, or the default one for the timezone."""
        return self.time_sync.url or TIME_SYNC_URL.format(timezone=self.timezone)


def default_config() -> TrackerConfig:
    """Configuration used when no file is given."""
    return TrackerConfig()


def load_tracker_config(path: str) -> TrackerConfig:
    """Load and validate tracker configuration from YAML file.

    Every section is optional. Unknown keys and wrong types are rejected
    rather than ignored.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated TrackerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Tracker config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return default_config()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'timezone', 'storage', 'time_sync', 'catalog', 'import'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    timezone = raw_config.get('timezone', DEFAULT_TIMEZONE)
    if not isinstance(timezone, str):
        raise ValueError("'timezone' must be a string")
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone: {timezone}")

    storage_data = _section(raw_config, 'storage', {'db_path'})
    storage = StorageConfig(
        db_path=_typed(storage_data, 'db_path', str, 'storage', DEFAULT_DB_PATH),
    )

    sync_data = _section(raw_config, 'time_sync', {'enabled', 'url', 'interval_seconds'})
    time_sync = TimeSyncConfig(
        enabled=_typed(sync_data, 'enabled', bool, 'time_sync', True),
        url=_typed(sync_data, 'url', str, 'time_sync', None),
        interval_seconds=float(_number(sync_data, 'interval_seconds', 'time_sync', TIME_SYNC_INTERVAL_SECONDS)),
    )

    catalog_data = _section(raw_config, 'catalog', {'enabled', 'provider', 'url', 'refresh_hours'})
    catalog = CatalogConfig(
        enabled=_typed(catalog_data, 'enabled', bool, 'catalog', True),
        provider=_typed(catalog_data, 'provider', str, 'catalog', CATALOG_PROVIDER),
        url=_typed(catalog_data, 'url', str, 'catalog', CATALOG_URL),
        refresh_hours=float(_number(catalog_data, 'refresh_hours', 'catalog', 24)),
    )

    import_data = _section(raw_config, 'import', {'strategy'})
    strategy_str = _typed(import_data, 'strategy', str, 'import', MergeStrategy.ADDITIVE.value)
    try:
        strategy = MergeStrategy(strategy_str.lower())
    except ValueError:
        valid_strategies = [s.value for s in MergeStrategy]
        raise ValueError(f"'strategy' in import must be one of: {valid_strategies}")

    return TrackerConfig(
        timezone=timezone,
        storage=storage,
        time_sync=time_sync,
        catalog=catalog,
        import_=ImportConfig(strategy=strategy),
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict[str, Any]:
    """Return a validated section mapping, or {} if the section is absent.

    Raises:
        ValueError: If the section is not a mapping or has unknown keys
    """
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _typed(data: Dict, key: str, expected: type, path: str, default: Any) -> Any:
    if key not in data or data[key] is None:
        return default
    value = data[key]
    if not isinstance(value, expected):
        raise ValueError(f"'{key}' in {path} must be a {expected.__name__}")
    return value


def _number(data: Dict, key: str, path: str, default: float) -> float:
    if key not in data:
        return default
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"'{key}' in {path} must be > 0")
    return value
