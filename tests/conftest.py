"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Any, Sequence
from unittest.mock import AsyncMock, MagicMock

import pytest

from groupthink.conversation import Attachment, ChannelInfo, Message, Reaction
from groupthink.text_generators.base import (
    Completion,
    StreamOptions,
    StreamResult,
    TextGeneratorAPI,
)

BOT_ID = "999"


def make_message(
    id: str | int,
    text: str,
    *,
    bot: bool = False,
    author_id: str = "111",
    author_name: str = "alice",
    attachments: Sequence[Attachment] = (),
    reactions: Sequence[Reaction] = (),
) -> Message:
    return Message(
        id=str(id),
        author_id=BOT_ID if bot else author_id,
        author_name="GroupThink" if bot else author_name,
        author_is_bot=bot,
        text=text,
        attachments=list(attachments),
        reactions=list(reactions),
    )


class FakePlatform:
    """In-memory message log and delivery sink.

    Logs are stored oldest first; anything the workflow sends is appended to
    the target log as a bot message so later reads see it.
    """

    def __init__(self) -> None:
        self.logs: dict[str, list[Message]] = {}
        self.channels: dict[str, ChannelInfo] = {}
        self.attachments: dict[str, bytes] = {}
        self.sent: list[tuple[str, str]] = []
        self.sent_files: list[tuple[str, str, list[str]]] = []
        self.placeholder_edits: list[tuple[str, str]] = []
        self.deleted_placeholders: list[str] = []
        self.placeholder_alive = True
        self.placeholder_checks = 0
        self.threads_created: list[tuple[str, str, str]] = []
        self.channels_created: list[tuple[str, str, str | None]] = []
        self.fetch_calls: list[str] = []
        self.fail_sends = False
        self._next_id = 90_000

    # ------------------------------------------------------------- setup

    def add_channel(
        self,
        channel_id: str,
        *,
        name: str | None = None,
        parent_id: str | None = None,
        is_thread: bool = False,
    ) -> None:
        self.channels[channel_id] = ChannelInfo(
            id=channel_id, name=name, parent_id=parent_id, is_thread=is_thread
        )
        self.logs.setdefault(channel_id, [])

    def add_messages(self, channel_id: str, *messages: Message) -> None:
        self.logs.setdefault(channel_id, []).extend(messages)

    def sent_to(self, channel_id: str) -> list[str]:
        return [content for target, content in self.sent if target == channel_id]

    def _new_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    # --------------------------------------------------------- MessageLog

    async def fetch_messages(self, channel_id: str, limit: int = 500) -> list[Message]:
        self.fetch_calls.append(channel_id)
        return list(reversed(self.logs.get(channel_id, [])))[:limit]

    async def get_message(self, channel_id: str, message_id: str) -> Message:
        for message in self.logs.get(channel_id, []):
            if message.id == message_id:
                return message
        raise KeyError(message_id)

    async def get_channel(self, channel_id: str) -> ChannelInfo:
        return self.channels.get(channel_id) or ChannelInfo(id=channel_id)

    async def fetch_attachment(self, url: str) -> bytes:
        return self.attachments[url]

    # ------------------------------------------------------- DeliverySink

    async def send_message(self, channel_id: str, content: str) -> str:
        if self.fail_sends:
            raise RuntimeError("send failed")
        message_id = self._new_id()
        self.sent.append((channel_id, content))
        self.add_messages(channel_id, make_message(message_id, content, bot=True))
        return message_id

    async def send_message_with_files(self, channel_id: str, content: str, files: Sequence[Any]) -> str:
        message_id = await self.send_message(channel_id, content)
        self.sent_files.append((channel_id, content, [f.name for f in files]))
        return message_id

    async def edit_placeholder(self, token: str, content: str) -> None:
        self.placeholder_edits.append((token, content))

    async def delete_placeholder(self, token: str) -> None:
        self.deleted_placeholders.append(token)

    async def placeholder_exists(self, token: str) -> bool:
        self.placeholder_checks += 1
        return self.placeholder_alive

    async def create_thread(self, channel_id: str, message_id: str, name: str) -> str:
        thread_id = self._new_id()
        self.threads_created.append((channel_id, message_id, name))
        self.add_channel(thread_id, name=name, parent_id=channel_id, is_thread=True)
        return thread_id

    async def create_channel(self, guild_id: str, name: str, parent_id: str | None) -> str:
        channel_id = self._new_id()
        self.channels_created.append((guild_id, name, parent_id))
        self.add_channel(channel_id, name=name, parent_id=parent_id)
        return channel_id


class FakeGenerator(TextGeneratorAPI):
    """Scripted model client.

    ``chunks`` are streamed one ``on_update`` at a time; ``tool_calls`` are
    resolved through the caller's resolver before any text. ``errors`` are
    raised by successive ``stream``/``complete`` calls before succeeding.
    """

    def __init__(
        self,
        chunks: Sequence[str] = (),
        *,
        usage: dict[str, Any] | None = None,
        completion_text: str = "- summary point",
        tool_calls: Sequence[tuple[str, dict[str, Any]]] = (),
        errors: Sequence[BaseException] = (),
    ) -> None:
        self.chunks = list(chunks)
        self.usage = usage if usage is not None else {"input_tokens": 10, "output_tokens": 5}
        self.completion_text = completion_text
        self.tool_calls = list(tool_calls)
        self.errors = list(errors)
        self.stream_calls: list[tuple[list[Any], str, StreamOptions]] = []
        self.complete_calls: list[tuple[list[Any], str, str]] = []
        self.tool_results: list[str] = []

    def _maybe_fail(self) -> None:
        if self.errors:
            raise self.errors.pop(0)

    async def complete(self, turns, system_prompt, model_tier="sonnet") -> Completion:
        self.complete_calls.append((list(turns), system_prompt, model_tier))
        self._maybe_fail()
        return Completion(text=self.completion_text, usage=dict(self.usage))

    async def stream(self, turns, system_prompt, options=None) -> StreamResult:
        opts = options or StreamOptions()
        self.stream_calls.append((list(turns), system_prompt, opts))
        self._maybe_fail()
        tools_used: list[str] = []
        if opts.resolve_tool is not None:
            for name, arguments in self.tool_calls:
                if opts.on_tool_call is not None:
                    await opts.on_tool_call(name)
                self.tool_results.append(await opts.resolve_tool(name, arguments))
                tools_used.append(name)
        accumulated = ""
        for chunk in self.chunks:
            if opts.cancel_event is not None and opts.cancel_event.is_set():
                return StreamResult(accumulated, dict(self.usage), tools_used, cancelled=True)
            accumulated += chunk
            if opts.on_update is not None:
                await opts.on_update(accumulated)
        cancelled = opts.cancel_event is not None and opts.cancel_event.is_set()
        return StreamResult(accumulated, dict(self.usage), tools_used, cancelled=cancelled)


class FakeClock:
    """Manual wall clock; ``sleep`` advances it instead of waiting."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_db(temp_dir):
    """Create a temporary database file path."""
    yield str(temp_dir / "steps.db")


@pytest.fixture
def mock_discord_channel():
    """Create a mock Discord channel."""
    channel = MagicMock()
    channel.id = 123456789
    channel.name = "test-channel"
    channel.send = AsyncMock()
    return channel


@pytest.fixture
def mock_discord_message():
    """Create a mock Discord message."""
    message = MagicMock()
    message.id = 987654321
    message.content = "Test message content"
    message.author = MagicMock()
    message.author.id = 111222333
    message.author.name = "TestUser"
    message.channel = MagicMock()
    message.channel.id = 123456789
    return message


@pytest.fixture
def platform():
    """An empty in-memory chat platform."""
    return FakePlatform()


@pytest.fixture
def clock():
    return FakeClock()
