"""
Shared fixtures: a fixed clock, an in-memory settings store and a fake host.
"""

from datetime import datetime
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

import pytest

from token_usage_tracker.core.clock import TimeSource
from token_usage_tracker.core.health import HealthMonitor
from token_usage_tracker.core.host import ChatMessage, StreamingSnapshot
from token_usage_tracker.storage.repository import InMemorySettingsRepository, SettingsStore
from token_usage_tracker.storage.usage_store import UsageStore

EASTERN = ZoneInfo("America/New_York")

# 2024-06-15 14:30 America/New_York
FIXED_MOMENT = datetime(2024, 6, 15, 14, 30, tzinfo=EASTERN)


class MutableClock:
    """Wall clock that tests can move."""

    def __init__(self, moment: datetime = FIXED_MOMENT):
        self.timestamp = moment.timestamp()

    def __call__(self) -> float:
        return self.timestamp

    def set(self, moment: datetime) -> None:
        self.timestamp = moment.timestamp()

    def advance(self, seconds: float) -> None:
        self.timestamp += seconds


class FakeHost:
    """Host bridge backed by plain attributes."""

    def __init__(self):
        self.chat: List[ChatMessage] = []
        self.chat_id: Optional[str] = "chat-1"
        self.model_id = "gpt-4o"
        self.source_id = "openai"
        self.streaming: Optional[StreamingSnapshot] = None

    def get_chat_message(self, index: int) -> Optional[ChatMessage]:
        if 0 <= index < len(self.chat):
            return self.chat[index]
        return None

    def get_last_message(self) -> Optional[ChatMessage]:
        return self.chat[-1] if self.chat else None

    def get_current_chat_id(self) -> Optional[str]:
        return self.chat_id

    def get_current_model_id(self) -> str:
        return self.model_id

    def get_current_source_id(self) -> str:
        return self.source_id

    def get_streaming_snapshot(self) -> Optional[StreamingSnapshot]:
        return self.streaming


class TableTokenizer:
    """Async tokenizer returning preset counts per text, else the word count."""

    def __init__(self, counts: Optional[Dict[str, int]] = None):
        self.counts = counts or {}
        self.calls: List[str] = []

    async def __call__(self, text: str) -> int:
        self.calls.append(text)
        if text in self.counts:
            return self.counts[text]
        return len(text.split())


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def time_source(clock):
    return TimeSource(sync_enabled=False, wall_clock=clock)


@pytest.fixture
def repository():
    return InMemorySettingsRepository()


@pytest.fixture
def settings_store(repository):
    return SettingsStore(repository)


@pytest.fixture
def health(time_source):
    return HealthMonitor(time_source)


@pytest.fixture
def usage_store(settings_store, time_source, health):
    return UsageStore(settings_store, time_source, health)


@pytest.fixture
def host():
    return FakeHost()
