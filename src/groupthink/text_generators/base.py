from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence

from groupthink.conversation import ConversationTurn
from groupthink.settings import ModelTier

ResolveTool = Callable[[str, dict[str, Any]], Awaitable[str]]
OnToolCall = Callable[[str], Awaitable[None]]
OnUpdate = Callable[[str], Awaitable[None]]


@dataclass(slots=True)
class Completion:
    text: str
    usage: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class StreamResult:
    text: str
    usage: dict[str, Any] = field(default_factory=dict)
    tools_used: list[str] = field(default_factory=list)
    cancelled: bool = False


@dataclass(slots=True)
class StreamOptions:
    """Per-call knobs for :meth:`TextGeneratorAPI.stream`.

    ``on_update`` receives the full text accumulated so far after every text
    delta. Setting ``cancel_event`` stops reading at the next chunk.
    """

    model_tier: ModelTier = "sonnet"
    tools: Sequence[dict[str, Any]] = ()
    resolve_tool: Optional[ResolveTool] = None
    on_tool_call: Optional[OnToolCall] = None
    on_update: Optional[OnUpdate] = None
    cancel_event: Optional[asyncio.Event] = None


class TextGeneratorAPI(ABC):
    """Abstract base class for language-model providers."""

    @abstractmethod
    async def complete(
        self,
        turns: Sequence[ConversationTurn],
        system_prompt: str,
        model_tier: ModelTier = "sonnet",
    ) -> Completion:
        """Return a single, non-streamed reply."""
        raise NotImplementedError

    @abstractmethod
    async def stream(
        self,
        turns: Sequence[ConversationTurn],
        system_prompt: str,
        options: StreamOptions | None = None,
    ) -> StreamResult:
        """Stream a reply, running tool-use rounds when a resolver is supplied."""
        raise NotImplementedError
