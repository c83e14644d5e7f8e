"""
Interfaces to the host chat application.

The tracker reads the chat transcript, the active model and the streaming
buffer through :class:`HostBridge`; it never owns those stores.
"""

from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass(frozen=True)
class ChatMessage:
    """One message of the active chat transcript.

    ``token_count`` is the host's pre-computed count when it has one; it may
    include the reasoning segment.
    """
    text: str
    token_count: Optional[int] = None
    reasoning: Optional[str] = None


@dataclass(frozen=True)
class StreamingSnapshot:
    """Partial output buffered by the host while streaming."""
    text: str = ""
    reasoning: str = ""


class HostBridge(Protocol):
    """Services the host application provides to the tracker."""

    def get_chat_message(self, index: int) -> Optional[ChatMessage]:
        ...

    def get_last_message(self) -> Optional[ChatMessage]:
        ...

    def get_current_chat_id(self) -> Optional[str]:
        ...

    def get_current_model_id(self) -> str:
        ...

    def get_current_source_id(self) -> str:
        ...

    def get_streaming_snapshot(self) -> Optional[StreamingSnapshot]:
        ...


@dataclass(frozen=True)
class ProviderState:
    """The host's active API selection, as needed to name model and source."""
    main_api: Optional[str] = None
    chat_completion_model: Optional[str] = None
    custom_model: Optional[str] = None
    chat_completion_source: Optional[str] = None
    textgen_model: Optional[str] = None


def resolve_model_id(state: ProviderState) -> str:
    """Map the active API selection to a model identifier."""
    if state.main_api == "openai":
        return state.chat_completion_model or state.custom_model or "unknown-openai"
    if state.main_api == "textgenerationwebui":
        return state.textgen_model or "unknown-textgen"
    if state.main_api == "novel":
        return "novelai"
    if state.main_api == "kobold":
        return "kobold"
    return state.main_api or "unknown"


def resolve_source_id(state: ProviderState) -> str:
    """Map the active API selection to a request source identifier.

    Chat-completion APIs report their specific source (``openai``,
    ``openrouter``, ``custom``, ...); other APIs report the API name.
    """
    if state.main_api == "openai" and state.chat_completion_source:
        return state.chat_completion_source
    return state.main_api or "unknown"
