"""Tool servers configured in the channel log, and the tool set offered to the model.

A bot line ``-# mcp: <url>`` (optionally with ``-# mcp-auth: <header>`` in
the same message) enables a tool server for the channel. Talking to the
server is the job of a :class:`~groupthink.chat_platform.ToolResolver`
produced by an injected factory.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from groupthink.chat_platform import ToolResolver, ToolSpec
from groupthink.conversation import Message

_LOG = logging.getLogger(__name__)

_TOOL_SERVER_RE = re.compile(r"^-# mcp:\s*(.+)$", re.MULTILINE)
_TOOL_AUTH_RE = re.compile(r"^-# mcp-auth:\s*(.+)$", re.MULTILINE)

UNKNOWN_TOOL = "Unknown tool"


@dataclass(frozen=True, slots=True)
class ToolServer:
    url: str
    auth: str | None = None


ToolClientFactory = Callable[[ToolServer], ToolResolver]


def tool_servers_from_messages(messages: Sequence[Message]) -> list[ToolServer]:
    """Every tool server configured by a bot line, in log order."""
    servers: list[ToolServer] = []
    for message in messages:
        if not message.author_is_bot:
            continue
        match = _TOOL_SERVER_RE.search(message.text)
        if match is None:
            continue
        auth = _TOOL_AUTH_RE.search(message.text)
        servers.append(
            ToolServer(url=match.group(1).strip(), auth=auth.group(1).strip() if auth else None)
        )
    return servers


def tool_call_notice(name: str) -> str:
    return f"_Calling {name.replace('_', ' ')}_"


async def list_server_tools(resolvers: Sequence[ToolResolver]) -> list[dict[str, Any]]:
    """List tools from each resolver as ``{"server": index, **spec}`` dicts.

    The first server to list a name owns it.
    """
    listed: list[dict[str, Any]] = []
    seen: set[str] = set()
    for index, resolver in enumerate(resolvers):
        for spec in await resolver.list_tools():
            if spec.name in seen:
                _LOG.warning("Tool %s listed by more than one server; keeping the first", spec.name)
                continue
            seen.add(spec.name)
            listed.append({"server": index, **spec.to_dict()})
    return listed


class ToolSet:
    """Tools offered to the model and routing of calls back to their server."""

    def __init__(self, resolvers: Sequence[ToolResolver], listed: Sequence[dict[str, Any]]) -> None:
        self._resolvers = list(resolvers)
        self._owner = {entry["name"]: int(entry["server"]) for entry in listed}
        self.specs = [
            ToolSpec(
                name=entry["name"],
                description=entry.get("description") or "",
                input_schema=entry.get("input_schema") or {"type": "object"},
            )
            for entry in listed
        ]

    def __bool__(self) -> bool:
        return bool(self.specs)

    @property
    def definitions(self) -> list[dict[str, Any]]:
        """Tool definitions in the Messages API shape."""
        return [spec.to_dict() for spec in self.specs]

    async def resolve(self, name: str, arguments: dict[str, Any]) -> str:
        index = self._owner.get(name)
        if index is None:
            return UNKNOWN_TOOL
        return await self._resolvers[index].call_tool(name, arguments)
