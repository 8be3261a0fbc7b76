"""Centralized constant settings, prompts and sentinels.

These are non-secret, stable texts better tracked in source control than
environment variables. Secrets (API keys, tokens) must remain in .env.
Tunables are read once into a frozen :class:`Settings` that callers pass
into the components that need them.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional

_LOG = logging.getLogger(__name__)

ModelTier = Literal["haiku", "sonnet", "opus"]

DEFAULT_MODEL_TIER: ModelTier = "sonnet"

# --------------------- Sentinels in the message log ---------------------

# Bot message that starts a compacted history (/summarize).
CHECKPOINT_MARKER = "--- Summary so far ---"

# Discord "subtext" prefix; bot lines starting with it are metadata
# (usage reports, model selection, tool configuration).
METADATA_PREFIX = "-#"

# First bot message of a branched thread.
BRANCH_MARKER_PREFIX = "Branched from "

# Appended when the conversation would otherwise end on an assistant turn.
CONTINUE_PROMPT = "[System]: Please continue the conversation."

# Resolution of branch-of-branch chains stops past this depth.
MAX_BRANCH_DEPTH = 10

# Upper bound on tool-use rounds inside one streaming call.
MAX_TOOL_ROUNDS = 10


# --------------------- System prompts ---------------------

CHAT_SYSTEM_PROMPT: str = (
    "You are a helpful assistant in a Discord chat with a group of highly"
    " intelligent and knowledgeable people.\n\n"
    "What you are part of\n"
    "• GroupThink is a Discord bot for collaborative AI conversations. Someone runs"
    " /generate, you receive the shared channel or thread as context, and your"
    " reply is posted back there.\n"
    "• The group can /summarize to checkpoint the conversation, branch it into a"
    " new channel or thread (optionally with a summary), and in threads use"
    " /post-to-channel to send the key insights back to the parent channel.\n"
    "• You are one voice in an ongoing discussion. Add value, stay on topic and"
    " leave room for others.\n\n"
    "Message format\n"
    "• User messages start with a tag like [From <@id> (username)]. Do not repeat"
    " these tags in your reply.\n"
    "• Reactions appear as [Reactions: 👍 x3, ❤️ x2] and signal agreement or emphasis.\n"
    "• When addressing someone, use @username naturally.\n\n"
    "Style\n"
    "• Be brief. Write like a chat message, not a document.\n"
    "• Use formatting sparingly. No headers, no markdown tables, no block quotes.\n"
    "• Reference thought leaders when it opens the door to further discussion.\n\n"
    "Response structure\n"
    "• One main idea per message. A blank line or a line containing only ---"
    " starts a new message.\n"
    "• Put data, code or long structured content in a file attachment:\n"
    '<groupthink:file-attachment name="filename.ext">\n'
    "content here\n"
    "</groupthink:file-attachment>\n"
    "• Keep the conversational reply in regular text; attachments are for"
    " supplementary material such as CSV exports, scripts or detailed notes.\n"
)

SUMMARIZE_SYSTEM_PROMPT: str = (
    "You create concise summaries of Discord conversations.\n\n"
    "Capture:\n"
    "1. The main topics discussed\n"
    "2. Key decisions or conclusions\n"
    "3. Action items or next steps\n"
    "4. Context needed to continue the conversation\n\n"
    "Be concise but complete. Use bullet points."
)

DOCUMENT_SYSTEM_PROMPT: str = (
    "Extract the critical insights from this thread for the parent channel."
    " Output only bullet points, maximally compressed.\n\n"
    "• One short line per bullet. No paragraphs, emojis or headings.\n"
    "• Omit needless words.\n"
    "• Include decisions, solutions, recommendations, key names and terms, and"
    " next steps. Nothing else.\n"
    "• A reader who was not there should get the gist in under 15 bullets."
)

SUMMARIZE_REQUEST = "Please summarize the previous conversation."
EXTRACT_REQUEST = "Please extract the critical insights from the previous conversation."
BRANCH_SUMMARY_REQUEST = (
    "Please create a concise summary that captures all essential context needed"
    " to continue the discussion."
)


# --------------------- Runtime settings ---------------------


def _project_root() -> Path:
    """Return the repository root (settings.py lives at src/groupthink/)."""
    return Path(__file__).resolve().parents[2]


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        _LOG.warning("Ignoring non-integer %s=%r", name, raw)
        return default


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        _LOG.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


def _load_chat_prompt() -> str:
    """Return the chat prompt, preferring CHAT_SYSTEM_PROMPT_FILE when readable.

    A relative path is tried as-is and then relative to the repository root.
    """
    env_val = os.getenv("CHAT_SYSTEM_PROMPT_FILE", "").strip()
    if not env_val:
        return CHAT_SYSTEM_PROMPT
    path = Path(env_val).expanduser()
    candidates = [path] if path.is_absolute() else [path, _project_root() / path]
    for candidate in candidates:
        try:
            if candidate.is_file():
                return candidate.read_text(encoding="utf-8")
        except OSError:
            _LOG.exception("Failed to read system prompt file %s", candidate)
    _LOG.warning("CHAT_SYSTEM_PROMPT_FILE=%s not readable; using built-in prompt", env_val)
    return CHAT_SYSTEM_PROMPT


@dataclass(frozen=True)
class Settings:
    """Immutable runtime configuration handed to the workflow components."""

    discord_token: str = ""
    discord_app_id: str = ""
    max_tokens: int = 16384
    max_history_messages: int = 500
    message_limit: int = 2000
    min_post_chars: int = 120
    min_post_interval: float = 4.0
    step_db_path: str = "generated/workflow_steps.db"
    daily_budget: Optional[float] = None
    chat_system_prompt: str = CHAT_SYSTEM_PROMPT

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            discord_token=os.getenv("DISCORD_TOKEN", ""),
            discord_app_id=os.getenv("DISCORD_APP_ID", ""),
            max_tokens=_env_int("ANTHROPIC_MAX_TOKENS", 16384),
            max_history_messages=max(1, _env_int("GROUPTHINK_MAX_HISTORY", 500)),
            message_limit=max(100, _env_int("GROUPTHINK_MESSAGE_LIMIT", 2000)),
            min_post_chars=max(0, _env_int("GROUPTHINK_MIN_POST_CHARS", 120)),
            min_post_interval=_env_float("GROUPTHINK_MIN_POST_INTERVAL", 4.0) or 0.0,
            step_db_path=os.getenv("GROUPTHINK_STEP_DB", "generated/workflow_steps.db"),
            daily_budget=_env_float("GROUPTHINK_DAILY_BUDGET", None),
            chat_system_prompt=_load_chat_prompt(),
        )
