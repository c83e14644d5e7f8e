"""
Health tracking for the tracker.

Records the last successful ledger write and the last error so that
non-fatal failures surface somewhere other than an exception.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from .clock import TimeSource

RECENT_ERROR_WINDOW_SECONDS = 5 * 60


class HealthState(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class HealthStatus:
    status: HealthState
    last_activity: Optional[str]
    tokenizer_available: bool
    has_recorded_activity: bool
    last_error: Optional[str]


def format_elapsed(seconds: float) -> str:
    """Humanise an elapsed duration as ``12s ago``, ``3m ago``, ``2h ago`` or ``1d ago``."""
    if seconds < 60:
        return f"{round(seconds)}s ago"
    if seconds < 3600:
        return f"{round(seconds / 60)}m ago"
    if seconds < 86400:
        return f"{round(seconds / 3600)}h ago"
    return f"{round(seconds / 86400)}d ago"


class HealthMonitor:
    """Tracks recent activity and errors."""

    def __init__(self, time_source: TimeSource, tokenizer_available: bool = True):
        self.time_source = time_source
        self.tokenizer_available = tokenizer_available
        self.last_recorded_at: Optional[datetime] = None
        self.last_error_at: Optional[datetime] = None
        self.last_error_message: Optional[str] = None

    def record_success(self) -> None:
        self.last_recorded_at = self.time_source.now()

    def record_error(self, message: str) -> None:
        self.last_error_at = self.time_source.now()
        self.last_error_message = message

    def status(self) -> HealthStatus:
        """Summarise health.

        ``warning`` if an error happened within the last five minutes,
        ``error`` if no tokenizer is wired in, ``healthy`` otherwise.
        """
        now = self.time_source.now()

        last_activity = None
        if self.last_recorded_at is not None:
            last_activity = format_elapsed((now - self.last_recorded_at).total_seconds())

        has_recent_error = (
            self.last_error_at is not None
            and (now - self.last_error_at).total_seconds() < RECENT_ERROR_WINDOW_SECONDS
        )

        if has_recent_error:
            state = HealthState.WARNING
        elif not self.tokenizer_available:
            state = HealthState.ERROR
        else:
            state = HealthState.HEALTHY

        return HealthStatus(
            status=state,
            last_activity=last_activity,
            tokenizer_available=self.tokenizer_available,
            has_recorded_activity=self.last_recorded_at is not None,
            last_error=self.last_error_message if has_recent_error else None,
        )
