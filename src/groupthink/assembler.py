"""Build model-ready conversations from an append-only channel log.

Context resolution works directly on the external log: a channel starts at
its last checkpoint marker, a thread is its parent channel's context followed
by its own messages, and a branched log is its origin (cut at the branch
point) followed by the branch's own messages. Nothing is cached between calls.
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
import re
from dataclasses import dataclass
from typing import Sequence

from PIL import Image

from groupthink.chat_platform import MessageLog
from groupthink.conversation import (
    Attachment,
    ContentBlock,
    ConversationTurn,
    ImageBlock,
    Message,
    TextBlock,
    user_turn,
)
from groupthink.settings import (
    BRANCH_MARKER_PREFIX,
    CHECKPOINT_MARKER,
    CONTINUE_PROMPT,
    DEFAULT_MODEL_TIER,
    MAX_BRANCH_DEPTH,
    METADATA_PREFIX,
    ModelTier,
)

_LOG = logging.getLogger(__name__)

_BRANCH_LINK_RE = re.compile(
    r"https://(?:\w+\.)?discord(?:app)?\.com/channels/"
    r"(?P<guild>\d+|@me)/(?P<channel>\d+)/(?P<message>\d+)"
)
_MODEL_SET_RE = re.compile(r"^-# model:\s*(haiku|sonnet|opus)\s*$", re.IGNORECASE)

_TEXT_ATTACHMENT_EXTENSIONS = {
    ".txt", ".md", ".csv", ".json", ".yaml", ".yml", ".toml", ".ini", ".log",
    ".py", ".js", ".ts", ".tsx", ".java", ".go", ".rs", ".rb", ".c", ".cpp",
    ".h", ".cs", ".php", ".css", ".html", ".sql", ".sh", ".xml",
}
_JPEG_EXTENSIONS = {".jpg", ".jpeg"}
MAX_TEXT_ATTACHMENT_BYTES = 120_000
_IMAGE_MAX_EDGE = 2048
_IMAGE_MAX_BYTES = 5_000_000

# Branch markers are written right after a branch is created.
_BRANCH_MARKER_WINDOW = 5


# ==================== Sentinels ====================


@dataclass(frozen=True, slots=True)
class BranchMarker:
    guild_id: str
    channel_id: str
    message_id: str

    @property
    def link(self) -> str:
        return branch_link(self.guild_id, self.channel_id, self.message_id)


def branch_link(guild_id: str | None, channel_id: str, message_id: str) -> str:
    return f"https://discord.com/channels/{guild_id or '@me'}/{channel_id}/{message_id}"


def format_branch_marker(guild_id: str | None, channel_id: str, message_id: str) -> str:
    return f"{BRANCH_MARKER_PREFIX}{branch_link(guild_id, channel_id, message_id)}"


def is_checkpoint_marker(message: Message) -> bool:
    return message.author_is_bot and message.text.startswith(CHECKPOINT_MARKER)


def is_metadata_line(message: Message) -> bool:
    """Bot usage reports, model selection and tool configuration lines."""
    return message.author_is_bot and message.text.strip().startswith(METADATA_PREFIX)


def parse_branch_marker(message: Message) -> BranchMarker | None:
    if not message.author_is_bot or not message.text.startswith(BRANCH_MARKER_PREFIX):
        return None
    match = _BRANCH_LINK_RE.search(message.text)
    if match is None:
        return None
    return BranchMarker(
        guild_id=match.group("guild"),
        channel_id=match.group("channel"),
        message_id=match.group("message"),
    )


def find_branch_marker(messages: Sequence[Message]) -> tuple[Message, BranchMarker] | None:
    for message in messages[:_BRANCH_MARKER_WINDOW]:
        marker = parse_branch_marker(message)
        if marker is not None:
            return message, marker
    return None


def slice_from_last_checkpoint(messages: Sequence[Message]) -> list[Message]:
    """Return ``messages`` from the last checkpoint marker (inclusive)."""
    for index in range(len(messages) - 1, -1, -1):
        if is_checkpoint_marker(messages[index]):
            return list(messages[index:])
    return list(messages)


def truncate_at(messages: Sequence[Message], message_id: str) -> list[Message]:
    """Cut ``messages`` after ``message_id`` (inclusive).

    When the exact message is gone, snowflake order decides what precedes it.
    """
    for index, message in enumerate(messages):
        if message.id == message_id:
            return list(messages[: index + 1])
    _LOG.warning("Branch point %s not found in origin; cutting by id order", message_id)
    try:
        cutoff = int(message_id)
        return [m for m in messages if int(m.id) <= cutoff]
    except ValueError:
        return list(messages)


def model_tier_from_messages(messages: Sequence[Message]) -> ModelTier:
    """Most recent bot-authored ``-# model: <tier>`` line wins."""
    for message in reversed(messages):
        if not message.author_is_bot:
            continue
        match = _MODEL_SET_RE.match(message.text.strip())
        if match:
            return match.group(1).lower()  # type: ignore[return-value]
    return DEFAULT_MODEL_TIER


# ==================== Attachments ====================


def is_text_attachment(attachment: Attachment) -> bool:
    if attachment.size <= 0 or attachment.size > MAX_TEXT_ATTACHMENT_BYTES:
        return False
    if attachment.content_type:
        return attachment.content_type.lower().startswith("text/")
    _, ext = os.path.splitext(attachment.filename)
    return ext.lower() in _TEXT_ATTACHMENT_EXTENSIONS


def is_jpeg_attachment(attachment: Attachment) -> bool:
    if attachment.content_type:
        return attachment.content_type.lower().startswith("image/jp")
    _, ext = os.path.splitext(attachment.filename)
    return ext.lower() in _JPEG_EXTENSIONS


def encode_jpeg(image: Image.Image) -> bytes:
    """Encode as JPEG, lowering quality until the size cap is met."""
    out = io.BytesIO()
    for quality in (90, 85, 80, 75, 70, 60, 50):
        out = io.BytesIO()
        image.save(out, format="JPEG", optimize=True, quality=quality)
        if out.tell() <= _IMAGE_MAX_BYTES:
            break
    return out.getvalue()


def prepare_jpeg(data: bytes) -> bytes:
    """Return ``data`` unchanged unless it is too large for the model API."""
    with Image.open(io.BytesIO(data)) as img:
        width, height = img.size
        longest = max(width, height)
        if longest <= _IMAGE_MAX_EDGE and len(data) <= _IMAGE_MAX_BYTES:
            return data
        img = img.convert("RGB")
        if longest > _IMAGE_MAX_EDGE:
            scale = _IMAGE_MAX_EDGE / float(longest)
            img = img.resize(
                (max(1, int(width * scale)), max(1, int(height * scale))), Image.LANCZOS
            )
        return encode_jpeg(img)


# ==================== Turns ====================


def author_tag(message: Message) -> str:
    return f"[From <@{message.author_id}> ({message.author_name})]"


def reactions_note(message: Message) -> str | None:
    if not message.reactions:
        return None
    parts = ", ".join(f"{r.emoji} x{r.count}" for r in message.reactions)
    return f"[Reactions: {parts}]"


def mark_cache_boundaries(turns: list[ConversationTurn]) -> None:
    """Flag the latest user turn and the latest user turn before the latest assistant turn."""
    for turn in turns:
        turn.cache_boundary = False
    last_user = next((i for i in range(len(turns) - 1, -1, -1) if turns[i].role == "user"), None)
    last_assistant = next(
        (i for i in range(len(turns) - 1, -1, -1) if turns[i].role == "assistant"), None
    )
    if last_user is not None:
        turns[last_user].cache_boundary = True
    if last_assistant is not None:
        before = next(
            (i for i in range(last_assistant - 1, -1, -1) if turns[i].role == "user"), None
        )
        if before is not None:
            turns[before].cache_boundary = True


def merge_consecutive_roles(turns: Sequence[ConversationTurn]) -> list[ConversationTurn]:
    """Join adjacent same-role turns, keeping block order."""
    merged: list[ConversationTurn] = []
    for turn in turns:
        if merged and merged[-1].role == turn.role and not turn.synthetic:
            merged[-1].content.extend(turn.content)
            merged[-1].cache_boundary = merged[-1].cache_boundary or turn.cache_boundary
        else:
            merged.append(
                ConversationTurn(
                    role=turn.role,
                    content=list(turn.content),
                    cache_boundary=turn.cache_boundary,
                    synthetic=turn.synthetic,
                )
            )
    return merged


class ConversationAssembler:
    """Resolve a channel or thread log and convert it into conversation turns."""

    def __init__(
        self,
        log: MessageLog,
        *,
        max_messages: int = 500,
        max_depth: int = MAX_BRANCH_DEPTH,
        merge_roles: bool = False,
    ) -> None:
        self.log = log
        self.max_messages = max_messages
        self.max_depth = max_depth
        self.merge_roles = merge_roles

    async def assemble(self, channel_id: str, *, is_thread: bool) -> list[ConversationTurn]:
        messages = await self.fetch_context(channel_id, is_thread=is_thread)
        return await self.build_conversation(messages)

    # ---------------------------------------------------------- resolution

    async def fetch_context(self, channel_id: str, *, is_thread: bool) -> list[Message]:
        """Chronological messages that make up the context of ``channel_id``."""
        if is_thread:
            return await self._thread_context(channel_id, depth=0)
        return await self._channel_context(channel_id, depth=0)

    async def fetch_own_messages(self, channel_id: str) -> list[Message]:
        return await self._history(channel_id)

    async def _history(self, channel_id: str) -> list[Message]:
        newest_first = await self.log.fetch_messages(channel_id, limit=self.max_messages)
        return list(reversed(newest_first))

    async def _channel_context(self, channel_id: str, depth: int) -> list[Message]:
        own = await self._history(channel_id)
        spliced = await self._splice_branch(channel_id, own, depth)
        return slice_from_last_checkpoint(spliced if spliced is not None else own)

    async def _thread_context(self, thread_id: str, depth: int) -> list[Message]:
        """Parent channel context followed by the thread's own messages.

        Checkpoints only cut the parent's portion; the thread's own messages
        are always kept whole.
        """
        info = await self.log.get_channel(thread_id)
        if not info.is_thread:
            return await self._channel_context(thread_id, depth)
        if not info.parent_id:
            own = await self._history(thread_id)
            spliced = await self._splice_branch(thread_id, own, depth)
            return spliced if spliced is not None else own
        parent, own = await asyncio.gather(
            self._channel_context(info.parent_id, depth),
            self._history(thread_id),
        )
        spliced = await self._splice_branch(thread_id, own, depth)
        if spliced is not None:
            return spliced
        return parent + own

    async def _origin_context(self, channel_id: str, depth: int) -> list[Message]:
        info = await self.log.get_channel(channel_id)
        if info.is_thread:
            return await self._thread_context(channel_id, depth)
        return await self._channel_context(channel_id, depth)

    async def _splice_branch(
        self, log_id: str, own: list[Message], depth: int
    ) -> list[Message] | None:
        """Origin history up to the branch point plus this log's own messages.

        Returns None when ``own`` carries no branch marker.
        """
        found = find_branch_marker(own)
        if found is None:
            return None
        marker_message, marker = found
        if depth + 1 > self.max_depth:
            _LOG.warning(
                "Branch chain deeper than %d at %s; dropping origin history",
                self.max_depth,
                log_id,
            )
            origin: list[Message] = []
        else:
            origin = truncate_at(
                await self._origin_context(marker.channel_id, depth + 1), marker.message_id
            )
        rest = [m for m in own if m is not marker_message and m.id != log_id]
        _LOG.debug(
            "Spliced branch %s: %d origin + %d own messages", log_id, len(origin), len(rest)
        )
        return origin + rest

    # ---------------------------------------------------------- conversion

    async def build_conversation(self, messages: Sequence[Message]) -> list[ConversationTurn]:
        """Convert resolved messages into turns ready for the model."""
        window = [m for m in messages if not is_metadata_line(m)]
        converted = await asyncio.gather(*(self._to_turn(m) for m in window))
        turns = [turn for turn in converted if turn is not None]

        while turns and turns[0].role == "assistant":
            turns.pop(0)
        if self.merge_roles:
            turns = merge_consecutive_roles(turns)
        mark_cache_boundaries(turns)
        if turns and turns[-1].role == "assistant":
            turns.append(user_turn(CONTINUE_PROMPT, synthetic=True))
        return turns

    async def _to_turn(self, message: Message) -> ConversationTurn | None:
        text = message.text.strip()
        if is_checkpoint_marker(message):
            # A checkpoint is context handed to the model, not its own words.
            return ConversationTurn(role="user", content=[TextBlock(text)])

        role = "assistant" if message.author_is_bot else "user"
        blocks: list[ContentBlock] = []
        if text:
            blocks.append(TextBlock(text))
        blocks.extend(await self._text_attachments(message))
        if role == "user":
            blocks.extend(await self._image_attachments(message))
        if not blocks:
            return None
        note = reactions_note(message)
        if note:
            blocks.append(TextBlock(note))
        if role == "user":
            blocks.insert(0, TextBlock(author_tag(message)))
        return ConversationTurn(role=role, content=blocks)

    async def _text_attachments(self, message: Message) -> list[TextBlock]:
        blocks: list[TextBlock] = []
        for attachment in message.attachments:
            if not is_text_attachment(attachment):
                continue
            try:
                data = await self.log.fetch_attachment(attachment.url)
            except Exception:
                _LOG.exception("Failed to read text attachment %s", attachment.filename)
                continue
            body = data.decode("utf-8", errors="replace")
            blocks.append(
                TextBlock(
                    f"[begin uploaded file: {attachment.filename}]\n{body}\n[end uploaded file]"
                )
            )
        return blocks

    async def _image_attachments(self, message: Message) -> list[ImageBlock]:
        blocks: list[ImageBlock] = []
        for attachment in message.attachments:
            if not is_jpeg_attachment(attachment):
                continue
            try:
                data = await self.log.fetch_attachment(attachment.url)
                blocks.append(ImageBlock(prepare_jpeg(data)))
            except Exception:
                _LOG.exception("Failed to prepare image attachment %s", attachment.filename)
        return blocks
