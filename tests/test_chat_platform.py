"""Tests for the Discord adapter."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from groupthink.chat_platform import (
    DISCORD_API,
    DiscordPlatform,
    channel_info_from_discord,
    get_display_name,
    message_from_discord,
)
from groupthink.response_parser import Artifact


def _user(name="alice", nick=None, global_name=None, bot=False, user_id=111):
    user = MagicMock()
    user.id = user_id
    user.name = name
    user.nick = nick
    user.global_name = global_name
    user.bot = bot
    return user


def _history(*messages):
    async def _iterate(limit=None):
        for message in messages:
            yield message

    return _iterate


@pytest.fixture
def discord_platform():
    platform = DiscordPlatform("token", "app-1")
    platform._client = MagicMock()
    platform._session = MagicMock()
    return platform


def _http_response(session_method, status):
    resp = MagicMock()
    resp.status = status
    resp.raise_for_status = MagicMock()
    session_method.return_value.__aenter__.return_value = resp
    return resp


class TestConversion:
    """Tests for discord.py to platform-neutral records."""

    def test_display_name_order(self):
        assert get_display_name(_user(nick="Ali", global_name="Alice G")) == "Ali"
        assert get_display_name(_user(global_name="Alice G")) == "Alice G"
        assert get_display_name(_user()) == "alice"

    def test_message_snapshot(self, mock_discord_message):
        mock_discord_message.author = _user(global_name="Alice G")
        attachment = MagicMock()
        attachment.filename = "notes.txt"
        attachment.url = "https://cdn/notes.txt"
        attachment.content_type = "text/plain"
        attachment.size = 42
        mock_discord_message.attachments = [attachment]
        custom = MagicMock()
        custom.emoji = MagicMock()
        custom.emoji.name = "party"
        custom.count = 1
        unicode = MagicMock()
        unicode.emoji = "👍"
        unicode.count = 3
        mock_discord_message.reactions = [unicode, custom]

        message = message_from_discord(mock_discord_message)

        assert message.id == "987654321"
        assert message.author_id == "111"
        assert message.author_name == "Alice G"
        assert message.author_is_bot is False
        assert message.text == "Test message content"
        assert message.attachments[0].filename == "notes.txt"
        assert message.attachments[0].size == 42
        assert [(r.emoji, r.count) for r in message.reactions] == [("👍", 3), ("party", 1)]

    def test_thread_info(self):
        thread = MagicMock(spec=discord.Thread)
        thread.id = 200
        thread.name = "side"
        thread.parent_id = 100
        info = channel_info_from_discord(thread)
        assert (info.id, info.name, info.parent_id, info.is_thread) == ("200", "side", "100", True)

    def test_channel_info_uses_category(self, mock_discord_channel):
        mock_discord_channel.category_id = None
        info = channel_info_from_discord(mock_discord_channel)
        assert info.id == "123456789"
        assert info.name == "test-channel"
        assert info.parent_id is None
        assert not info.is_thread


class TestDiscordPlatform:
    """Tests for the adapter methods."""

    def test_requires_context_manager(self):
        platform = DiscordPlatform("token", "app")
        with pytest.raises(RuntimeError):
            platform.client
        with pytest.raises(RuntimeError):
            platform.session

    @pytest.mark.asyncio
    async def test_fetch_messages(self, discord_platform, mock_discord_message):
        mock_discord_message.author = _user()
        mock_discord_message.attachments = []
        mock_discord_message.reactions = []
        channel = MagicMock()
        channel.history = MagicMock(side_effect=_history(mock_discord_message))
        discord_platform._client.fetch_channel = AsyncMock(return_value=channel)

        messages = await discord_platform.fetch_messages("100", limit=50)

        assert [m.id for m in messages] == ["987654321"]
        discord_platform._client.fetch_channel.assert_awaited_once_with(100)
        channel.history.assert_called_once_with(limit=50)

    @pytest.mark.asyncio
    async def test_send_message_returns_id(self, discord_platform, mock_discord_channel):
        mock_discord_channel.send = AsyncMock(return_value=MagicMock(id=555))
        discord_platform._client.fetch_channel = AsyncMock(return_value=mock_discord_channel)
        assert await discord_platform.send_message("123456789", "hi") == "555"
        mock_discord_channel.send.assert_awaited_once_with("hi")

    @pytest.mark.asyncio
    async def test_send_files(self, discord_platform, mock_discord_channel):
        mock_discord_channel.send = AsyncMock(return_value=MagicMock(id=556))
        discord_platform._client.fetch_channel = AsyncMock(return_value=mock_discord_channel)
        await discord_platform.send_message_with_files("1", "", [Artifact("a.csv", "x,y")])
        args, kwargs = mock_discord_channel.send.call_args
        assert args == (None,)
        assert [f.filename for f in kwargs["files"]] == ["a.csv"]

    @pytest.mark.asyncio
    async def test_edit_placeholder(self, discord_platform):
        resp = _http_response(discord_platform._session.patch, 200)
        await discord_platform.edit_placeholder("tok", "Thinking...")
        discord_platform._session.patch.assert_called_once_with(
            f"{DISCORD_API}/webhooks/app-1/tok/messages/@original", json={"content": "Thinking..."}
        )
        resp.raise_for_status.assert_called_once()

    @pytest.mark.asyncio
    async def test_delete_placeholder_tolerates_missing(self, discord_platform):
        resp = _http_response(discord_platform._session.delete, 404)
        await discord_platform.delete_placeholder("tok")
        resp.raise_for_status.assert_not_called()

    @pytest.mark.asyncio
    async def test_placeholder_exists(self, discord_platform):
        _http_response(discord_platform._session.get, 404)
        assert await discord_platform.placeholder_exists("tok") is False
        _http_response(discord_platform._session.get, 200)
        assert await discord_platform.placeholder_exists("tok") is True

    @pytest.mark.asyncio
    async def test_create_thread_from_message(self, discord_platform, mock_discord_channel):
        starter = MagicMock()
        starter.create_thread = AsyncMock(return_value=MagicMock(id=777))
        mock_discord_channel.get_partial_message = MagicMock(return_value=starter)
        discord_platform._client.fetch_channel = AsyncMock(return_value=mock_discord_channel)

        thread_id = await discord_platform.create_thread("123456789", "42", "Branch of general")

        assert thread_id == "777"
        mock_discord_channel.get_partial_message.assert_called_once_with(42)
        starter.create_thread.assert_awaited_once_with(name="Branch of general", auto_archive_duration=1440)

    @pytest.mark.asyncio
    async def test_create_channel_in_category(self, discord_platform):
        guild = MagicMock()
        guild.create_text_channel = AsyncMock(return_value=MagicMock(id=888))
        discord_platform._client.fetch_guild = AsyncMock(return_value=guild)

        channel_id = await discord_platform.create_channel("1", "branch-of-general", "5")

        assert channel_id == "888"
        name = guild.create_text_channel.call_args.args[0]
        category = guild.create_text_channel.call_args.kwargs["category"]
        assert name == "branch-of-general"
        assert category.id == 5
