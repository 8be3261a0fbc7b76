"""Text-generation backend that calls Anthropic's Claude models.

Two entry points:

• :meth:`AnthropicTextGenerator.complete` – one request, one reply. Used for
  summaries and extraction where nothing is shown until the end.

• :meth:`AnthropicTextGenerator.stream` – always streamed. Raw server events
  are folded by :class:`StreamAccumulator` into content blocks; text deltas
  are forwarded as they arrive, and ``tool_use`` blocks drive up to
  ``max_rounds`` tool-use rounds.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence

from anthropic import (
    APIConnectionError,
    APIError,
    APIStatusError,
    AsyncAnthropic,
    InternalServerError,
    RateLimitError,
)

from groupthink.conversation import ConversationTurn
from groupthink.cost_tracking import merge_usage
from groupthink.settings import MAX_TOOL_ROUNDS, ModelTier

from .base import Completion, StreamOptions, StreamResult, TextGeneratorAPI

_log = logging.getLogger(__name__)

MODELS: Mapping[str, str] = MappingProxyType(
    {
        "haiku": "claude-haiku-4-5",
        "sonnet": "claude-sonnet-4-5",
        "opus": "claude-opus-4-5",
    }
)

# --------------------------------------------------------------------------- #
# A single shared client is plenty; reuse it across all requests              #
# --------------------------------------------------------------------------- #
_CLIENT_CACHE: Dict[str, AsyncAnthropic] = {}


class ModelStreamError(RuntimeError):
    """The provider reported an error event in the middle of a stream."""


def is_transient_error(exc: BaseException) -> bool:
    """True for provider failures worth retrying (network, 429, 5xx)."""
    if isinstance(exc, (APIConnectionError, RateLimitError, InternalServerError, ModelStreamError)):
        return True
    if isinstance(exc, APIStatusError):
        return exc.status_code >= 500
    return False


def _as_dict(obj: Any) -> Dict[str, Any]:
    """SDK models and plain dicts look the same to the state machine."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    dump = getattr(obj, "model_dump", None)
    if callable(dump):
        return dump()
    return dict(vars(obj))


@dataclass(slots=True)
class ToolUse:
    id: str
    name: str
    input: Dict[str, Any]


@dataclass(slots=True)
class ToolCallRound:
    """Outcome of one streamed request inside a tool-use loop."""

    round_index: int
    content_blocks: List[Dict[str, Any]] = field(default_factory=list)
    tool_uses: List[ToolUse] = field(default_factory=list)
    usage: Dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False


class StreamAccumulator:
    """Fold the events of one streamed response into finished content blocks.

    ``current`` is the block being built (text or tool_use) between its
    ``content_block_start`` and ``content_block_stop`` events; anything else
    is ignored until the next start.
    """

    def __init__(self) -> None:
        self.current: Optional[Dict[str, Any]] = None
        self.blocks: List[Dict[str, Any]] = []
        self.usage: Dict[str, Any] = {}
        self.stop_reason: Optional[str] = None

    def feed(self, event: Any) -> str:
        """Apply one event; return the text delta it carried ('' if none)."""
        data = _as_dict(event)
        kind = data.get("type")

        if kind == "message_start":
            message = _as_dict(data.get("message"))
            self._update_usage(message.get("usage"))
        elif kind == "content_block_start":
            block = _as_dict(data.get("content_block"))
            block_type = block.get("type")
            if block_type == "text":
                self.current = {"type": "text", "text": block.get("text") or ""}
            elif block_type == "tool_use":
                self.current = {
                    "type": "tool_use",
                    "id": block.get("id"),
                    "name": block.get("name"),
                    "partial_json": "",
                }
            else:
                self.current = None
        elif kind == "content_block_delta":
            delta = _as_dict(data.get("delta"))
            delta_type = delta.get("type")
            if self.current is None:
                return ""
            if delta_type == "text_delta" and self.current["type"] == "text":
                text = delta.get("text") or ""
                self.current["text"] += text
                return text
            if delta_type == "input_json_delta" and self.current["type"] == "tool_use":
                self.current["partial_json"] += delta.get("partial_json") or ""
        elif kind == "content_block_stop":
            self._finish_block()
        elif kind == "message_delta":
            delta = _as_dict(data.get("delta"))
            self.stop_reason = delta.get("stop_reason") or self.stop_reason
            self._update_usage(data.get("usage"))
        elif kind == "error":
            error = _as_dict(data.get("error"))
            raise ModelStreamError(
                f"{error.get('type', 'error')}: {error.get('message', 'stream error')}"
            )
        return ""

    def _update_usage(self, usage: Any) -> None:
        for key, value in _as_dict(usage).items():
            if value is not None:
                self.usage[key] = value

    def _finish_block(self) -> None:
        block, self.current = self.current, None
        if block is None:
            return
        if block["type"] == "text":
            self.blocks.append({"type": "text", "text": block["text"]})
            return
        raw = block["partial_json"].strip()
        try:
            arguments = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            _log.warning("Dropping tool call %s: malformed arguments %r", block["name"], raw[:200])
            return
        if not isinstance(arguments, dict):
            _log.warning("Dropping tool call %s: arguments are not an object", block["name"])
            return
        self.blocks.append(
            {"type": "tool_use", "id": block["id"], "name": block["name"], "input": arguments}
        )

    @property
    def tool_uses(self) -> List[ToolUse]:
        return [
            ToolUse(id=b["id"], name=b["name"], input=b["input"])
            for b in self.blocks
            if b["type"] == "tool_use"
        ]

    @property
    def assistant_content(self) -> List[Dict[str, Any]]:
        """Blocks to echo back as the assistant turn (empty text is rejected by the API)."""
        return [b for b in self.blocks if not (b["type"] == "text" and not b["text"])]


class AnthropicTextGenerator(TextGeneratorAPI):
    """Generate text with Anthropic's Claude models.

    The class relies on the ``anthropic`` package and an ``ANTHROPIC_API_KEY``
    environment variable being present. ``max_tokens`` defaults to the
    ANTHROPIC_MAX_TOKENS environment variable (16384 when unset).
    """

    def __init__(
        self,
        max_tokens: int | None = None,
        *,
        max_rounds: int = MAX_TOOL_ROUNDS,
        models: Mapping[str, str] = MODELS,
    ) -> None:
        self.max_tokens = max_tokens or int(os.getenv("ANTHROPIC_MAX_TOKENS", "16384"))
        self.max_rounds = max_rounds
        self.models = models

    # ---------------------------------------------------------------- helpers

    def _get_client(self) -> AsyncAnthropic:
        """Return (and cache) a shared ``AsyncAnthropic`` client instance."""
        if "default" not in _CLIENT_CACHE:
            # Retries are bounded by the caller's step policy.
            _CLIENT_CACHE["default"] = AsyncAnthropic(max_retries=0)
        return _CLIENT_CACHE["default"]

    def model_for(self, tier: ModelTier) -> str:
        try:
            return self.models[tier]
        except KeyError:
            raise ValueError(f"Unknown model tier: {tier!r}") from None

    def _base_request(self, tier: ModelTier, system_prompt: str) -> Dict[str, Any]:
        request: Dict[str, Any] = {
            "model": self.model_for(tier),
            "max_tokens": self.max_tokens,
        }
        if system_prompt:
            # Prompt caching for the system prompt (cheap on cache hits)
            request["system"] = [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ]
        return request

    async def _create(self, **kwargs: Any) -> Any:
        client = self._get_client()
        model = kwargs.get("model")
        try:
            return await client.messages.create(**kwargs)
        except RateLimitError as e:
            _log.warning("Anthropic rate limit hit for model %s: %s", model, e)
            raise
        except APIConnectionError as e:
            _log.error("Anthropic connection error for model %s: %s", model, e)
            raise
        except APIError as e:
            _log.error(
                "Anthropic API error for model %s (status %s): %s",
                model,
                getattr(e, "status_code", None),
                e.message,
            )
            raise

    # ---------------------------------------------------------------- public

    async def complete(
        self,
        turns: Sequence[ConversationTurn],
        system_prompt: str,
        model_tier: ModelTier = "sonnet",
    ) -> Completion:
        request = self._base_request(model_tier, system_prompt)
        request["messages"] = [turn.to_payload() for turn in turns]
        response = await self._create(**request)

        # SDK returns a list of content blocks; aggregate text blocks.
        parts: List[str] = []
        for block in getattr(response, "content", []) or []:
            text = getattr(block, "text", None)
            if text:
                parts.append(text)
        usage = {k: v for k, v in _as_dict(getattr(response, "usage", None)).items() if v is not None}
        return Completion(text="".join(parts).strip(), usage=usage)

    async def stream(
        self,
        turns: Sequence[ConversationTurn],
        system_prompt: str,
        options: StreamOptions | None = None,
    ) -> StreamResult:
        opts = options or StreamOptions()
        request = self._base_request(opts.model_tier, system_prompt)
        if opts.tools:
            request["tools"] = list(opts.tools)
        messages: List[Dict[str, Any]] = [turn.to_payload() for turn in turns]

        accumulated = ""
        new_round = False
        usage: Dict[str, Any] = {}
        tools_used: List[str] = []

        async def _emit(delta: str) -> None:
            nonlocal accumulated, new_round
            if new_round and accumulated:
                accumulated += "\n\n"
            new_round = False
            accumulated += delta
            if opts.on_update is not None:
                await opts.on_update(accumulated)

        for round_index in range(self.max_rounds):
            rnd = await self._stream_round(round_index, request, messages, opts, _emit)
            usage = merge_usage(usage, rnd.usage)
            if rnd.cancelled:
                _log.info("Stream cancelled during round %d", round_index)
                return StreamResult(accumulated, usage, tools_used, cancelled=True)
            if not rnd.tool_uses or opts.resolve_tool is None:
                break

            _log.info(
                "Round %d requested %d tool call(s): %s",
                round_index,
                len(rnd.tool_uses),
                ", ".join(t.name for t in rnd.tool_uses),
            )
            messages.append({"role": "assistant", "content": rnd.content_blocks})
            results = await asyncio.gather(*(self._run_tool(use, opts) for use in rnd.tool_uses))
            tools_used.extend(use.name for use in rnd.tool_uses)
            messages.append({"role": "user", "content": list(results)})
            new_round = True
        else:
            _log.warning("Stopped after %d tool rounds with calls still pending", self.max_rounds)

        return StreamResult(accumulated, usage, tools_used)

    async def _stream_round(
        self,
        round_index: int,
        request: Dict[str, Any],
        messages: List[Dict[str, Any]],
        opts: StreamOptions,
        emit: Any,
    ) -> ToolCallRound:
        state = StreamAccumulator()
        cancelled = False
        events = await self._create(**request, messages=messages, stream=True)
        try:
            async for event in events:
                if opts.cancel_event is not None and opts.cancel_event.is_set():
                    cancelled = True
                    break
                delta = state.feed(event)
                if delta:
                    await emit(delta)
            if opts.cancel_event is not None and opts.cancel_event.is_set():
                cancelled = True
        finally:
            close = getattr(events, "close", None)
            if cancelled and callable(close):
                await close()

        return ToolCallRound(
            round_index=round_index,
            content_blocks=state.assistant_content,
            tool_uses=state.tool_uses,
            usage=state.usage,
            cancelled=cancelled,
        )

    async def _run_tool(self, use: ToolUse, opts: StreamOptions) -> Dict[str, Any]:
        assert opts.resolve_tool is not None
        if opts.on_tool_call is not None:
            await opts.on_tool_call(use.name)
        try:
            output = await opts.resolve_tool(use.name, use.input)
        except Exception as exc:  # noqa: BLE001
            _log.exception("Tool %s failed", use.name)
            return {
                "type": "tool_result",
                "tool_use_id": use.id,
                "content": f"Tool error: {exc}",
                "is_error": True,
            }
        return {"type": "tool_result", "tool_use_id": use.id, "content": output}
