"""Interfaces the workflow needs from the chat platform, plus the Discord adapter.

The workflow only talks to :class:`MessageLog`, :class:`DeliverySink` and
:class:`ToolResolver`. :class:`DiscordPlatform` implements the first two on
top of discord.py's REST layer (no gateway connection) and aiohttp for the
interaction webhook and attachment downloads.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, Sequence

import aiohttp
import discord

from groupthink.conversation import Attachment, ChannelInfo, Message, Reaction

if TYPE_CHECKING:
    from groupthink.response_parser import Artifact

_LOG = logging.getLogger(__name__)

DISCORD_API = "https://discord.com/api/v10"
THREAD_ARCHIVE_MINUTES = 1440


@dataclass(slots=True)
class ToolSpec:
    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object"})

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class MessageLog(Protocol):
    async def fetch_messages(self, channel_id: str, limit: int = 500) -> list[Message]:
        """Return up to ``limit`` messages, newest first."""

    async def get_message(self, channel_id: str, message_id: str) -> Message: ...

    async def get_channel(self, channel_id: str) -> ChannelInfo: ...

    async def fetch_attachment(self, url: str) -> bytes: ...


class DeliverySink(Protocol):
    async def send_message(self, channel_id: str, content: str) -> str:
        """Post ``content`` and return the new message id."""

    async def send_message_with_files(
        self, channel_id: str, content: str, files: Sequence["Artifact"]
    ) -> str: ...

    async def edit_placeholder(self, token: str, content: str) -> None: ...

    async def delete_placeholder(self, token: str) -> None: ...

    async def placeholder_exists(self, token: str) -> bool: ...

    async def create_thread(self, channel_id: str, message_id: str, name: str) -> str: ...

    async def create_channel(self, guild_id: str, name: str, parent_id: str | None) -> str: ...


class ToolResolver(Protocol):
    async def list_tools(self) -> list[ToolSpec]: ...

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> str: ...


# --------------------------------------------------------------------------- #
# discord.py conversion                                                       #
# --------------------------------------------------------------------------- #


def get_display_name(user: discord.abc.User) -> str:
    """Server nickname, then global display name, then username."""
    if getattr(user, "nick", None):
        return user.nick  # type: ignore[attr-defined]
    if getattr(user, "global_name", None):
        return user.global_name  # type: ignore[return-value]
    return user.name


def _reaction_label(reaction: discord.Reaction) -> str:
    emoji = reaction.emoji
    if isinstance(emoji, str):
        return emoji
    return getattr(emoji, "name", None) or str(emoji)


def message_from_discord(message: discord.Message) -> Message:
    """Snapshot a discord.py message into the platform-neutral record."""
    author = message.author
    return Message(
        id=str(message.id),
        author_id=str(author.id),
        author_name=get_display_name(author),
        author_is_bot=bool(author.bot),
        text=message.content or "",
        attachments=[
            Attachment(
                filename=a.filename,
                url=a.url,
                content_type=a.content_type,
                size=a.size or 0,
            )
            for a in message.attachments
        ],
        reactions=[
            Reaction(emoji=_reaction_label(r), count=r.count) for r in message.reactions
        ],
    )


def channel_info_from_discord(channel: Any) -> ChannelInfo:
    if isinstance(channel, discord.Thread):
        parent = channel.parent_id
        return ChannelInfo(
            id=str(channel.id),
            name=channel.name,
            parent_id=str(parent) if parent else None,
            is_thread=True,
        )
    category = getattr(channel, "category_id", None)
    return ChannelInfo(
        id=str(channel.id),
        name=getattr(channel, "name", None),
        parent_id=str(category) if category else None,
        is_thread=False,
    )


# --------------------------------------------------------------------------- #
# Adapter                                                                     #
# --------------------------------------------------------------------------- #


class DiscordPlatform:
    """MessageLog + DeliverySink backed by Discord.

    Use as an async context manager; it logs in over HTTP only.
    """

    def __init__(self, token: str, app_id: str) -> None:
        self._token = token
        self._app_id = app_id
        self._client: discord.Client | None = None
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> "DiscordPlatform":
        self._client = discord.Client(intents=discord.Intents.none())
        await self._client.login(self._token)
        self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
        if self._client is not None:
            await self._client.close()
            self._client = None

    # ---------------------------------------------------------------- helpers

    @property
    def client(self) -> discord.Client:
        if self._client is None:
            raise RuntimeError("DiscordPlatform used outside 'async with'")
        return self._client

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("DiscordPlatform used outside 'async with'")
        return self._session

    async def _messageable(self, channel_id: str) -> Any:
        return await self.client.fetch_channel(int(channel_id))

    def _placeholder_url(self, token: str) -> str:
        return f"{DISCORD_API}/webhooks/{self._app_id}/{token}/messages/@original"

    # ------------------------------------------------------------- MessageLog

    async def fetch_messages(self, channel_id: str, limit: int = 500) -> list[Message]:
        channel = await self._messageable(channel_id)
        messages = [message_from_discord(m) async for m in channel.history(limit=limit)]
        _LOG.debug("Fetched %d messages from %s", len(messages), channel_id)
        return messages

    async def get_message(self, channel_id: str, message_id: str) -> Message:
        channel = await self._messageable(channel_id)
        return message_from_discord(await channel.fetch_message(int(message_id)))

    async def get_channel(self, channel_id: str) -> ChannelInfo:
        return channel_info_from_discord(await self._messageable(channel_id))

    async def fetch_attachment(self, url: str) -> bytes:
        async with self.session.get(url) as resp:
            resp.raise_for_status()
            return await resp.read()

    # ----------------------------------------------------------- DeliverySink

    async def send_message(self, channel_id: str, content: str) -> str:
        channel = await self._messageable(channel_id)
        sent = await channel.send(content)
        return str(sent.id)

    async def send_message_with_files(
        self, channel_id: str, content: str, files: Sequence["Artifact"]
    ) -> str:
        channel = await self._messageable(channel_id)
        discord_files = [
            discord.File(io.BytesIO(f.content.encode("utf-8")), filename=f.name) for f in files
        ]
        _LOG.info("Sending %d file(s) to %s", len(discord_files), channel_id)
        sent = await channel.send(content or None, files=discord_files)
        return str(sent.id)

    async def edit_placeholder(self, token: str, content: str) -> None:
        async with self.session.patch(self._placeholder_url(token), json={"content": content}) as resp:
            resp.raise_for_status()

    async def delete_placeholder(self, token: str) -> None:
        async with self.session.delete(self._placeholder_url(token)) as resp:
            if resp.status == 404:
                _LOG.debug("Placeholder already gone")
                return
            resp.raise_for_status()

    async def placeholder_exists(self, token: str) -> bool:
        async with self.session.get(self._placeholder_url(token)) as resp:
            if resp.status == 404:
                return False
            resp.raise_for_status()
            return True

    async def create_thread(self, channel_id: str, message_id: str, name: str) -> str:
        channel = await self._messageable(channel_id)
        starter = channel.get_partial_message(int(message_id))
        thread = await starter.create_thread(
            name=name[:100], auto_archive_duration=THREAD_ARCHIVE_MINUTES
        )
        return str(thread.id)

    async def create_channel(self, guild_id: str, name: str, parent_id: str | None) -> str:
        guild = await self.client.fetch_guild(int(guild_id))
        category = discord.Object(id=int(parent_id)) if parent_id else None
        channel = await guild.create_text_channel(name[:100], category=category)
        return str(channel.id)
