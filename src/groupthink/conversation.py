"""Data model shared by the assembler, model client and workflow.

Chat-platform records (:class:`Message`, :class:`ChannelInfo`) are read-only
snapshots of the external message log. They round-trip through plain dicts
so durable steps can checkpoint them as JSON.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(slots=True)
class Attachment:
    filename: str
    url: str
    content_type: str | None = None
    size: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "url": self.url,
            "content_type": self.content_type,
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Attachment":
        return cls(
            filename=str(data.get("filename") or ""),
            url=str(data.get("url") or ""),
            content_type=data.get("content_type"),
            size=int(data.get("size") or 0),
        )


@dataclass(slots=True)
class Reaction:
    emoji: str
    count: int


@dataclass(slots=True)
class Message:
    """One message of a channel or thread log, ordered by its snowflake ``id``."""

    id: str
    author_id: str
    author_name: str
    author_is_bot: bool
    text: str
    attachments: list[Attachment] = field(default_factory=list)
    reactions: list[Reaction] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "author_id": self.author_id,
            "author_name": self.author_name,
            "author_is_bot": self.author_is_bot,
            "text": self.text,
            "attachments": [a.to_dict() for a in self.attachments],
            "reactions": [{"emoji": r.emoji, "count": r.count} for r in self.reactions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            id=str(data["id"]),
            author_id=str(data.get("author_id") or ""),
            author_name=str(data.get("author_name") or "Unknown"),
            author_is_bot=bool(data.get("author_is_bot")),
            text=str(data.get("text") or ""),
            attachments=[Attachment.from_dict(a) for a in data.get("attachments") or []],
            reactions=[
                Reaction(emoji=str(r.get("emoji")), count=int(r.get("count") or 0))
                for r in data.get("reactions") or []
            ],
        )


@dataclass(slots=True)
class ChannelInfo:
    """Channel or thread metadata.

    For a thread ``parent_id`` is the channel it lives in; for a regular
    channel it is the category, if any.
    """

    id: str
    name: str | None = None
    parent_id: str | None = None
    is_thread: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "parent_id": self.parent_id,
            "is_thread": self.is_thread,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChannelInfo":
        parent = data.get("parent_id")
        return cls(
            id=str(data["id"]),
            name=data.get("name"),
            parent_id=str(parent) if parent else None,
            is_thread=bool(data.get("is_thread")),
        )


@dataclass(slots=True)
class TextBlock:
    text: str

    def to_payload(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(slots=True)
class ImageBlock:
    data: bytes
    media_type: str = "image/jpeg"

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": self.media_type,
                "data": base64.b64encode(self.data).decode("ascii"),
            },
        }


ContentBlock = Union[TextBlock, ImageBlock]


@dataclass(slots=True)
class ConversationTurn:
    """A role-tagged unit of model-facing content.

    ``synthetic`` marks turns that exist only to satisfy the model API (the
    continuation nudge); they never describe something a user said.
    """

    role: str
    content: list[ContentBlock] = field(default_factory=list)
    cache_boundary: bool = False
    synthetic: bool = False

    def to_payload(self) -> dict[str, Any]:
        """Return the Messages API dict, tagging the last block when cacheable."""
        blocks = [block.to_payload() for block in self.content]
        if self.cache_boundary and blocks:
            blocks[-1]["cache_control"] = {"type": "ephemeral"}
        return {"role": self.role, "content": blocks}

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))


def user_turn(text: str, *, synthetic: bool = False) -> ConversationTurn:
    return ConversationTurn(role="user", content=[TextBlock(text)], synthetic=synthetic)


def without_synthetic(turns: list[ConversationTurn]) -> list[ConversationTurn]:
    """Drop API-only turns before showing a conversation to people."""
    return [turn for turn in turns if not turn.synthetic]
