"""Split model output into chat-sized messages and file attachments."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

_LOG = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 2000

ARTIFACT_OPEN_TAG = "<groupthink:file-attachment"
ARTIFACT_CLOSE_TAG = "</groupthink:file-attachment>"
_ARTIFACT_RE = re.compile(
    r'<groupthink:file-attachment\s+name="([^"]+)">(.*?)</groupthink:file-attachment>',
    re.DOTALL,
)
_AUTHOR_TAG_RE = re.compile(r"\[From\s+<@\d+>\s+\([^)]*\)\]\s*")

# A line holding only --- or a blank line ends a message.
MESSAGE_BREAK_RE = re.compile(r"\n---[ \t]*\n|\n\n")
MESSAGE_BREAK = "\n---\n"

_SENTENCE_END_RE = re.compile(r"[.!?]\s")


@dataclass(slots=True)
class Artifact:
    name: str
    content: str


@dataclass(slots=True)
class ParsedResponse:
    messages: list[str] = field(default_factory=list)
    artifacts: list[Artifact] = field(default_factory=list)


def strip_author_tags(text: str) -> str:
    """Remove echoed ``[From <@id> (name)]`` prefixes."""
    return _AUTHOR_TAG_RE.sub("", text)


def extract_artifacts(text: str) -> tuple[str, list[Artifact]]:
    artifacts: list[Artifact] = []

    def _take(match: re.Match[str]) -> str:
        artifacts.append(Artifact(name=match.group(1).strip(), content=match.group(2).strip()))
        return ""

    return _ARTIFACT_RE.sub(_take, text), artifacts


def parse_response(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> ParsedResponse:
    """Pull file attachments out of ``text`` and split the rest into messages.

    Explicit breaks (``---`` lines or blank lines) come first; any piece that
    is still longer than ``max_length`` is split automatically.
    """
    body, artifacts = extract_artifacts(text)
    body = strip_author_tags(body)
    messages: list[str] = []
    for piece in MESSAGE_BREAK_RE.split(body):
        piece = piece.strip()
        if not piece:
            continue
        if len(piece) > max_length:
            messages.extend(split_long_message(piece, max_length))
        else:
            messages.append(piece)
    if artifacts:
        _LOG.debug("Parsed %d message(s) and %d artifact(s)", len(messages), len(artifacts))
    return ParsedResponse(messages=messages, artifacts=artifacts)


def _last_paragraph_break(text: str, max_length: int) -> int:
    return text.rfind("\n\n", 0, max_length + 2)


def _last_line_break(text: str, max_length: int) -> int:
    return text.rfind("\n", 0, max_length + 1)


def _last_sentence_end(text: str, max_length: int) -> int:
    end = -1
    for match in _SENTENCE_END_RE.finditer(text, 0, max_length):
        end = match.end()
    return end


def _last_space(text: str, max_length: int) -> int:
    return text.rfind(" ", 0, max_length + 1)


_SPLIT_FINDERS = (_last_paragraph_break, _last_line_break, _last_sentence_end, _last_space)


def split_long_message(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split ``text`` into non-empty chunks of at most ``max_length`` characters.

    Prefers, in order: paragraph break, line break, sentence end, space. A
    candidate only counts when it lies past half of ``max_length``; otherwise
    the next one is tried, and finally the text is cut hard.
    """
    if max_length < 2:
        raise ValueError("max_length must be at least 2")
    chunks: list[str] = []
    remaining = text.strip()
    midpoint = max_length // 2
    while len(remaining) > max_length:
        split_at = max_length
        for finder in _SPLIT_FINDERS:
            candidate = finder(remaining, max_length)
            if midpoint < candidate <= max_length:
                split_at = candidate
                break
        chunk = remaining[:split_at].strip()
        if chunk:
            chunks.append(chunk)
        remaining = remaining[split_at:].strip()
    if remaining:
        chunks.append(remaining)
    return chunks


def find_break_point(text: str, start: int = 0) -> int:
    """Offset just past the last message break after ``start``.

    Returns ``start`` when there is none. Breaks inside a file-attachment
    block are ignored, and so is everything after an attachment that has not
    been closed yet, so an attachment is never cut mid-stream.
    """
    limit = len(text)
    closed: list[tuple[int, int]] = []
    pos = start
    while True:
        open_tag = text.find(ARTIFACT_OPEN_TAG, pos)
        if open_tag == -1:
            break
        close_tag = text.find(ARTIFACT_CLOSE_TAG, open_tag)
        if close_tag == -1:
            limit = open_tag
            break
        pos = close_tag + len(ARTIFACT_CLOSE_TAG)
        closed.append((open_tag, pos))
    end = start
    for match in MESSAGE_BREAK_RE.finditer(text, start, limit):
        if any(lo < match.start() < hi for lo, hi in closed):
            continue
        end = match.end()
    return end
