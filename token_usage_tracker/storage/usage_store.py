"""
Multi-granularity usage aggregation.

The store is the only writer of the usage ledger. Every mutation is applied
under one lock, persisted, and announced to subscribers with a snapshot.
"""

import copy
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..core.clock import TimeSource
from ..core.health import HealthMonitor
from ..core.token_counter import TokenUsage
from .models import KEYED_MAPS, SessionBucket, UsageBucket, UsageLedger
from .repository import SettingsStore

logger = logging.getLogger(__name__)


class MergeStrategy(Enum):
    """How an imported bucket combines with an existing bucket under the same key."""
    ADDITIVE = "additive"
    REPLACE = "replace"


@dataclass(frozen=True)
class UsageSnapshot:
    """Point-in-time copy of the ledger passed to subscribers."""
    session: SessionBucket
    all_time: UsageBucket
    today: UsageBucket
    this_hour: UsageBucket
    this_week: UsageBucket
    this_month: UsageBucket
    by_day: Dict[str, UsageBucket] = field(default_factory=dict)
    by_hour: Dict[str, UsageBucket] = field(default_factory=dict)
    by_week: Dict[str, UsageBucket] = field(default_factory=dict)
    by_month: Dict[str, UsageBucket] = field(default_factory=dict)
    by_chat: Dict[str, UsageBucket] = field(default_factory=dict)
    by_model: Dict[str, UsageBucket] = field(default_factory=dict)
    by_source: Dict[str, UsageBucket] = field(default_factory=dict)


UsageListener = Callable[[UsageSnapshot], None]


def sum_buckets(buckets: Iterable[UsageBucket]) -> UsageBucket:
    """Sum the top-level counters of *buckets*; nested breakdowns are not carried."""
    result = UsageBucket()
    for bucket in buckets:
        result.input += bucket.input
        result.output += bucket.output
        result.reasoning += bucket.reasoning
        result.total += bucket.total
        result.message_count += bucket.message_count
    return result


def efficiency_metrics(bucket: UsageBucket) -> Tuple[float, int]:
    """Return ``(output/input ratio, average tokens per message)`` for *bucket*."""
    ratio = bucket.output / bucket.input if bucket.input > 0 else 0.0
    per_message = round(bucket.total / bucket.message_count) if bucket.message_count > 0 else 0
    return ratio, per_message


class UsageStore:
    """Aggregates token usage into session, time, chat, model and source buckets."""

    def __init__(
        self,
        settings_store: SettingsStore,
        time_source: TimeSource,
        health: Optional[HealthMonitor] = None,
    ):
        self.settings_store = settings_store
        self.time_source = time_source
        self.health = health
        self._lock = threading.RLock()
        self._listeners: List[UsageListener] = []
        if self._ledger.session.start_time is None:
            self._ledger.session.start_time = self.time_source.now().isoformat()

    @property
    def _ledger(self) -> UsageLedger:
        return self.settings_store.settings.usage

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: UsageListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: UsageListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.get_stats()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Usage listener %r failed", listener)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def record(
        self,
        input_tokens: int,
        output_tokens: int,
        chat_id: Optional[str] = None,
        model_id: Optional[str] = None,
        source_id: Optional[str] = None,
        reasoning_tokens: int = 0,
    ) -> TokenUsage:
        """Record one exchange into every relevant bucket.

        Time buckets use the clock at call time. Nested model/source
        breakdowns are kept inside the day and hour buckets.

        Args:
            input_tokens: Prompt tokens sent to the model
            output_tokens: Response tokens, excluding reasoning
            chat_id: Optional chat for per-chat tracking
            model_id: Optional model for per-model tracking
            source_id: Optional request source for per-source tracking
            reasoning_tokens: Reasoning/thinking tokens

        Returns:
            The validated usage that was recorded

        Raises:
            ValueError: If any count is negative or not an integer
        """
        usage = TokenUsage(input_tokens, output_tokens, reasoning_tokens)
        now = self.time_source.now()
        counts = (usage.input_tokens, usage.output_tokens, usage.reasoning_tokens)

        with self._lock:
            ledger = self._ledger
            ledger.session.add(*counts)
            ledger.all_time.add(*counts)

            day = ledger.by_day.setdefault(self.time_source.day_key(now), UsageBucket())
            day.add(*counts)
            if model_id:
                day.child("models", model_id).add(*counts)
            if source_id:
                day_source = day.child("sources", source_id)
                day_source.add(*counts)
                if model_id:
                    day_source.child("models", model_id).add(*counts)

            hour = ledger.by_hour.setdefault(self.time_source.hour_key(now), UsageBucket())
            hour.add(*counts)
            if model_id:
                hour.child("models", model_id).add(*counts)
            if source_id:
                hour.child("sources", source_id).add(*counts)

            ledger.by_week.setdefault(self.time_source.week_key(now), UsageBucket()).add(*counts)
            ledger.by_month.setdefault(self.time_source.month_key(now), UsageBucket()).add(*counts)

            if chat_id:
                ledger.by_chat.setdefault(chat_id, UsageBucket()).add(*counts)
            if model_id:
                ledger.by_model.setdefault(model_id, UsageBucket()).add(*counts)
            if source_id:
                ledger.by_source.setdefault(source_id, UsageBucket()).add(*counts)

            self.settings_store.save_soon()

        if self.health is not None:
            self.health.record_success()
        logger.info(
            "Recorded: +%d input, +%d output, +%d reasoning, model: %s, source: %s",
            usage.input_tokens,
            usage.output_tokens,
            usage.reasoning_tokens,
            model_id or "unknown",
            source_id or "unknown",
        )
        self._notify()
        return usage

    def reset_session(self) -> None:
        """Zero the session bucket and restart the session clock."""
        with self._lock:
            self._ledger.session = SessionBucket(start_time=self.time_source.now().isoformat())
            self.settings_store.save()
        logger.info("Session reset")
        self._notify()

    def reset_all(self) -> None:
        """Clear every aggregate and restart the session clock."""
        with self._lock:
            ledger = UsageLedger()
            ledger.session.start_time = self.time_source.now().isoformat()
            self.settings_store.settings.usage = ledger
            self.settings_store.save()
        logger.info("All usage data reset")
        self._notify()

    def merge_ledger(self, incoming: UsageLedger, strategy: MergeStrategy = MergeStrategy.ADDITIVE) -> int:
        """Merge the keyed maps of an imported ledger.

        The session bucket is never imported. Afterwards ``allTime`` is
        rebuilt from ``byDay``, which partitions every recorded exchange.

        Returns:
            Number of bucket keys merged or inserted
        """
        merged_keys = 0
        with self._lock:
            ledger = self._ledger.copy()
            for name in KEYED_MAPS:
                target = ledger.keyed_map(name)
                for key, bucket in incoming.keyed_map(name).items():
                    if key in target and strategy is MergeStrategy.ADDITIVE:
                        target[key].merge(bucket)
                    else:
                        target[key] = copy.deepcopy(bucket)
                    merged_keys += 1

            ledger.all_time = sum_buckets(ledger.by_day.values())

            self.settings_store.settings.usage = ledger
            self.settings_store.save()

        logger.info("Merged %d imported usage buckets (%s)", merged_keys, strategy.value)
        self._notify()
        return merged_keys

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_stats(self) -> UsageSnapshot:
        """Return a consistent copy of the current aggregates."""
        now = self.time_source.now()
        with self._lock:
            ledger = self._ledger.copy()
        return UsageSnapshot(
            session=ledger.session,
            all_time=ledger.all_time,
            today=ledger.by_day.get(self.time_source.day_key(now), UsageBucket()),
            this_hour=ledger.by_hour.get(self.time_source.hour_key(now), UsageBucket()),
            this_week=ledger.by_week.get(self.time_source.week_key(now), UsageBucket()),
            this_month=ledger.by_month.get(self.time_source.month_key(now), UsageBucket()),
            by_day=ledger.by_day,
            by_hour=ledger.by_hour,
            by_week=ledger.by_week,
            by_month=ledger.by_month,
            by_chat=ledger.by_chat,
            by_model=ledger.by_model,
            by_source=ledger.by_source,
        )

    def get_usage_for_range(self, start_day: str, end_day: str) -> UsageBucket:
        """Sum day buckets whose ``YYYY-MM-DD`` key lies in ``[start_day, end_day]``."""
        with self._lock:
            return sum_buckets(
                bucket for key, bucket in self._ledger.by_day.items() if start_day <= key <= end_day
            )

    def get_chat_usage(self, chat_id: str) -> UsageBucket:
        with self._lock:
            bucket = self._ledger.by_chat.get(chat_id)
            return UsageBucket.from_dict(bucket.to_dict()) if bucket else UsageBucket()
