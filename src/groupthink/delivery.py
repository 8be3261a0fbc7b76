"""Rate-limited delivery of model output to the chat platform."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Sequence

from groupthink.chat_platform import DeliverySink
from groupthink.response_parser import (
    MAX_MESSAGE_LENGTH,
    Artifact,
    find_break_point,
    parse_response,
    split_long_message,
)

_LOG = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]


async def wait_for_interval(
    last_post_time: float, min_interval: float, *, clock: Clock = time.time, sleep: Sleep = asyncio.sleep
) -> None:
    """Sleep until ``min_interval`` seconds have passed since ``last_post_time``."""
    if last_post_time <= 0:
        return
    remaining = min_interval - (clock() - last_post_time)
    if remaining > 0:
        await sleep(remaining)


class IncrementalPoster:
    """Post finished paragraphs while the model is still writing.

    Hooked up as the stream's ``on_update`` callback. A post happens only when
    the unsent text ends on a message break, holds at least ``min_chars``
    characters, and ``min_interval`` seconds have passed since the last post.
    If the placeholder response has been deleted, ``cancel_event`` is set and
    nothing more is posted. ``posts`` counts the messages sent so far;
    attachments finished inside a posted part are kept in ``artifacts`` for
    the final message.
    """

    def __init__(
        self,
        sink: DeliverySink,
        channel_id: str,
        token: str,
        cancel_event: asyncio.Event,
        *,
        min_chars: int = 120,
        min_interval: float = 4.0,
        message_limit: int = MAX_MESSAGE_LENGTH,
        clock: Clock = time.time,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.sink = sink
        self.channel_id = channel_id
        self.token = token
        self.cancel_event = cancel_event
        self.min_chars = min_chars
        self.min_interval = min_interval
        self.message_limit = message_limit
        self.clock = clock
        self.sleep = sleep
        self.sent_up_to = 0
        self.last_post_time = 0.0
        self.posts = 0
        self.artifacts: list[Artifact] = []

    async def on_update(self, accumulated: str) -> None:
        if self.cancel_event.is_set():
            return
        end = find_break_point(accumulated, self.sent_up_to)
        if end <= self.sent_up_to:
            return
        parsed = parse_response(accumulated[self.sent_up_to:end], self.message_limit)
        part = "\n\n".join(parsed.messages)
        if not part or len(part) < self.min_chars:
            return
        if self.clock() - self.last_post_time < self.min_interval:
            return
        if not await self.sink.placeholder_exists(self.token):
            _LOG.info("Placeholder for %s is gone; stopping the stream", self.channel_id)
            self.cancel_event.set()
            return
        for index, chunk in enumerate(split_long_message(part, self.message_limit)):
            if index:
                await wait_for_interval(
                    self.last_post_time, self.min_interval, clock=self.clock, sleep=self.sleep
                )
            await self.sink.send_message(self.channel_id, chunk)
            self.last_post_time = self.clock()
            self.posts += 1
        self.artifacts.extend(parsed.artifacts)
        self.sent_up_to = end
        _LOG.debug("Sent incremental part (%d chars, up to %d)", len(part), end)


async def post_parts(
    sink: DeliverySink,
    channel_id: str,
    parts: Sequence[str],
    artifacts: Sequence[Artifact] = (),
    *,
    last_post_time: float = 0.0,
    min_interval: float = 4.0,
    clock: Clock = time.time,
    sleep: Sleep = asyncio.sleep,
) -> float:
    """Post ``parts`` in order, spaced by ``min_interval``; return the last post time.

    Artifacts ride on the final part.
    """
    last = last_post_time
    for index, part in enumerate(parts):
        await wait_for_interval(last, min_interval, clock=clock, sleep=sleep)
        if index == len(parts) - 1 and artifacts:
            await sink.send_message_with_files(channel_id, part, artifacts)
        else:
            await sink.send_message(channel_id, part)
        last = clock()
    if not parts and artifacts:
        await wait_for_interval(last, min_interval, clock=clock, sleep=sleep)
        await sink.send_message_with_files(channel_id, "", artifacts)
        last = clock()
    return last


async def send_long_message(
    sink: DeliverySink, channel_id: str, text: str, limit: int = MAX_MESSAGE_LENGTH
) -> None:
    """Send ``text``, split at natural boundaries when it is too long."""
    for chunk in split_long_message(text, limit):
        await sink.send_message(channel_id, chunk)
