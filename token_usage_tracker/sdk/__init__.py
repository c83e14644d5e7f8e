"""
SDK for the Token Usage Tracker.

Provides programmatic access to usage tracking functionality.
"""

from .extension import TokenUsageExtension
from .openai_client import TrackedAsyncOpenAI

__all__ = ["TokenUsageExtension", "TrackedAsyncOpenAI"]
