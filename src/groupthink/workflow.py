"""Job orchestration: every job is a sequence of named durable steps.

Each job type moves through ``fetching-context -> resolving-tools ->
calling-model -> posting-results -> done`` (skipping states it has no use
for) and lands in ``failed`` when a step raises. Step results are stored by
:class:`~groupthink.durable.DurableSteps`, so a redelivered job resumes after
its last finished step instead of posting the same messages twice.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional

from groupthink.assembler import (
    ConversationAssembler,
    branch_link,
    format_branch_marker,
    model_tier_from_messages,
)
from groupthink.chat_platform import DeliverySink, MessageLog
from groupthink.conversation import (
    ChannelInfo,
    ConversationTurn,
    Message,
    user_turn,
    without_synthetic,
)
from groupthink.cost_tracking import PRICING, TierPricing, format_usage_report
from groupthink.delivery import (
    IncrementalPoster,
    post_parts,
    send_long_message,
    wait_for_interval,
)
from groupthink.durable import MODEL_RETRY, DurableSteps
from groupthink.response_parser import Artifact, parse_response
from groupthink.settings import (
    BRANCH_SUMMARY_REQUEST,
    CHECKPOINT_MARKER,
    DEFAULT_MODEL_TIER,
    DOCUMENT_SYSTEM_PROMPT,
    EXTRACT_REQUEST,
    SUMMARIZE_REQUEST,
    SUMMARIZE_SYSTEM_PROMPT,
    ModelTier,
    Settings,
)
from groupthink.text_generators import StreamOptions, TextGeneratorAPI, is_transient_error
from groupthink.tools import (
    ToolClientFactory,
    ToolSet,
    list_server_tools,
    tool_call_notice,
    tool_servers_from_messages,
)

_LOG = logging.getLogger(__name__)

THINKING = "Thinking..."
NO_HISTORY = "No conversation history to respond to."
NO_PARENT = "Could not find parent channel."
NO_PARENT_FOR_THREAD = "Could not find parent channel for this thread."
NO_GUILD = "Branching into a new channel only works inside a server."
NO_TARGET = "Could not find the target message."


class JobType(str, Enum):
    GENERATE = "generate"
    SUMMARIZE = "summarize"
    POST_TO_CHANNEL = "post-to-channel"
    BRANCH_WITH_SUMMARY = "branch-with-summary"
    BRANCH = "branch"


class JobState(str, Enum):
    FETCHING_CONTEXT = "fetching-context"
    RESOLVING_TOOLS = "resolving-tools"
    CALLING_MODEL = "calling-model"
    POSTING_RESULTS = "posting-results"
    DONE = "done"
    FAILED = "failed"


class MissingContextError(Exception):
    """The job cannot find the channel it needs; reported to the user, never retried."""


@dataclass
class JobParams:
    """What a job submission carries.

    ``correlation_token`` identifies the deferred interaction response
    (the placeholder) that the job clears when it finishes.
    """

    job_type: JobType
    channel_id: str
    correlation_token: str
    is_thread: bool = False
    guild_id: Optional[str] = None
    instruction: Optional[str] = None
    invoking_username: Optional[str] = None
    target_message_id: Optional[str] = None
    user_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["job_type"] = self.job_type.value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "JobParams":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["job_type"] = JobType(kwargs["job_type"])
        kwargs["channel_id"] = str(kwargs["channel_id"])
        kwargs["is_thread"] = bool(kwargs.get("is_thread", False))
        return cls(**kwargs)


class ConversationWorkflow:
    """Run one job against the chat platform and the model.

    Collaborators are injected: ``log`` and ``sink`` are the platform,
    ``generator`` the model client and ``steps`` the durable step executor
    bound to this job. ``tool_client_factory`` turns a configured tool server
    into a resolver; without it tool configuration lines are ignored.
    """

    def __init__(
        self,
        log: MessageLog,
        sink: DeliverySink,
        generator: TextGeneratorAPI,
        steps: DurableSteps,
        *,
        settings: Optional[Settings] = None,
        tool_client_factory: Optional[ToolClientFactory] = None,
        pricing: Mapping[str, TierPricing] = PRICING,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.log = log
        self.sink = sink
        self.generator = generator
        self.steps = steps
        self.settings = settings or Settings()
        self.tool_client_factory = tool_client_factory
        self.pricing = pricing
        self.clock = clock
        self.sleep = sleep
        self.assembler = ConversationAssembler(log, max_messages=self.settings.max_history_messages)
        self.state: Optional[JobState] = None
        self._started = 0.0

    # ---------------------------------------------------------------- entry

    async def run(self, params: JobParams) -> None:
        handlers = {
            JobType.GENERATE: self._generate,
            JobType.SUMMARIZE: self._summarize,
            JobType.POST_TO_CHANNEL: self._post_to_channel,
            JobType.BRANCH_WITH_SUMMARY: self._branch_with_summary,
            JobType.BRANCH: self._branch,
        }
        self._started = time.monotonic()
        _LOG.info(
            "Starting job %s: %s for channel %s",
            self.steps.job_id,
            params.job_type.value,
            params.channel_id,
        )
        try:
            try:
                await handlers[params.job_type](params)
            except MissingContextError as exc:
                _LOG.warning("job %s: %s", self.steps.job_id, exc)
                message = str(exc)
                await self.steps.do("report-missing-context", lambda: self._notice(params, message))
                self._transition(params, JobState.DONE)
        except Exception as exc:
            self._transition(params, JobState.FAILED)
            _LOG.exception("job %s [%s] failed", self.steps.job_id, params.job_type.value)
            await self._report_failure(params, exc)
            raise

    # ---------------------------------------------------------------- helpers

    def _transition(self, params: JobParams, state: JobState) -> None:
        self.state = state
        _LOG.info("job %s [%s] -> %s", self.steps.job_id, params.job_type.value, state.value)

    def _elapsed(self, label: str) -> None:
        _LOG.info(
            "job %s +%dms %s",
            self.steps.job_id,
            int((time.monotonic() - self._started) * 1000),
            label,
        )

    async def _notice(self, params: JobParams, text: str) -> None:
        await self.sink.send_message(params.channel_id, text)
        await self.sink.delete_placeholder(params.correlation_token)

    async def _report_failure(self, params: JobParams, exc: BaseException) -> None:
        try:
            await self.sink.send_message(params.channel_id, f"❌ Error: {exc}")
            await self.sink.delete_placeholder(params.correlation_token)
        except Exception:
            _LOG.exception(
                "job %s: could not report failure to %s", self.steps.job_id, params.channel_id
            )

    def _usage_report(self, usage: Mapping[str, Any], tier: str) -> str:
        return format_usage_report(
            usage, tier, pricing=self.pricing, budget=self.settings.daily_budget
        )

    async def _fetch_context(self, params: JobParams) -> list[Message]:
        self._transition(params, JobState.FETCHING_CONTEXT)

        async def _fetch() -> list[dict[str, Any]]:
            messages = await self.assembler.fetch_context(
                params.channel_id, is_thread=params.is_thread
            )
            return [m.to_dict() for m in messages]

        raw = await self.steps.do("fetch-context", _fetch)
        messages = [Message.from_dict(m) for m in raw]
        self._elapsed(f"fetched {len(messages)} messages")
        return messages

    async def _channel_info(self, params: JobParams, step_name: str) -> ChannelInfo:
        async def _get() -> dict[str, Any]:
            return (await self.log.get_channel(params.channel_id)).to_dict()

        return ChannelInfo.from_dict(await self.steps.do(step_name, _get))

    async def _summarize_turns(
        self,
        params: JobParams,
        turns: list[ConversationTurn],
        request: str,
        system_prompt: str,
    ) -> dict[str, Any]:
        """Single-shot model call on ``turns`` plus a closing request; returns text and usage."""
        self._transition(params, JobState.CALLING_MODEL)
        prompt = without_synthetic(turns) + [user_turn(request)]

        async def _call() -> dict[str, Any]:
            completion = await self.generator.complete(prompt, system_prompt, DEFAULT_MODEL_TIER)
            return {"text": completion.text, "usage": completion.usage}

        return await self.steps.do(
            "call-model", _call, retry=MODEL_RETRY, retry_if=is_transient_error
        )

    # ---------------------------------------------------------------- generate

    async def _generate(self, params: JobParams) -> None:
        messages = await self._fetch_context(params)
        turns = await self.assembler.build_conversation(messages)
        self._elapsed(f"built conversation ({len(turns)} turns)")
        if not turns:
            await self.steps.do("post-no-history", lambda: self._notice(params, NO_HISTORY))
            self._transition(params, JobState.DONE)
            return

        tier = model_tier_from_messages(messages)
        tools = await self._resolve_tools(params, messages)

        instruction = (params.instruction or "").strip()
        if instruction:
            # Cache boundaries were already set on the real messages.
            turns = without_synthetic(turns) + [user_turn(f"[Instruction]: {instruction}")]
            if params.invoking_username:
                await self.steps.do(
                    "post-instruction",
                    lambda: self.sink.send_message(
                        params.channel_id, f"{params.invoking_username} just asked: {instruction}"
                    ),
                )

        self._transition(params, JobState.CALLING_MODEL)
        poster = IncrementalPoster(
            self.sink,
            params.channel_id,
            params.correlation_token,
            asyncio.Event(),
            min_chars=self.settings.min_post_chars,
            min_interval=self.settings.min_post_interval,
            message_limit=self.settings.message_limit,
            clock=self.clock,
            sleep=self.sleep,
        )

        def _can_retry(exc: BaseException) -> bool:
            # A fresh stream would post the same messages again.
            if poster.posts:
                _LOG.warning(
                    "job %s: not retrying, %d message(s) already posted",
                    self.steps.job_id,
                    poster.posts,
                )
                return False
            return is_transient_error(exc)

        reply = await self.steps.do(
            "call-model",
            lambda: self._stream_reply(params, turns, tier, tools, poster),
            retry=MODEL_RETRY,
            retry_if=_can_retry,
        )

        self._transition(params, JobState.POSTING_RESULTS)
        await self.steps.do("post-response", lambda: self._post_reply(params, reply))
        self._transition(params, JobState.DONE)
        self._elapsed("done")

    async def _resolve_tools(self, params: JobParams, messages: list[Message]) -> Optional[ToolSet]:
        servers = tool_servers_from_messages(messages)
        if not servers:
            return None
        if self.tool_client_factory is None:
            _LOG.warning(
                "job %s: %d tool server(s) configured but no tool client",
                self.steps.job_id,
                len(servers),
            )
            return None
        self._transition(params, JobState.RESOLVING_TOOLS)
        try:
            resolvers = [self.tool_client_factory(server) for server in servers]
        except Exception:
            _LOG.exception("Tool setup failed; continuing without tools")
            return None

        async def _list() -> list[dict[str, Any]]:
            try:
                return await list_server_tools(resolvers)
            except Exception:
                _LOG.exception("Tool setup failed; continuing without tools")
                return []

        listed = await self.steps.do("resolve-tools", _list)
        tools = ToolSet(resolvers, listed)
        self._elapsed(f"resolved {len(tools.specs)} tools from {len(servers)} server(s)")
        return tools if tools else None

    async def _stream_reply(
        self,
        params: JobParams,
        turns: list[ConversationTurn],
        tier: ModelTier,
        tools: Optional[ToolSet],
        poster: IncrementalPoster,
    ) -> dict[str, Any]:
        await self.sink.edit_placeholder(params.correlation_token, THINKING)
        cancel = poster.cancel_event
        first_token = True

        async def _on_update(accumulated: str) -> None:
            nonlocal first_token
            if first_token:
                first_token = False
                self._elapsed("first token")
            await poster.on_update(accumulated)

        async def _on_tool_call(name: str) -> None:
            await self.sink.send_message(params.channel_id, tool_call_notice(name))
            poster.posts += 1

        options = StreamOptions(
            model_tier=tier,
            on_update=_on_update,
            cancel_event=cancel,
        )
        if tools is not None:
            options.tools = tools.definitions
            options.resolve_tool = tools.resolve
            options.on_tool_call = _on_tool_call

        result = await self.generator.stream(turns, self.settings.chat_system_prompt, options)
        self._elapsed(f"stream complete (sent {poster.sent_up_to}/{len(result.text)})")
        return {
            "text": result.text,
            "usage": result.usage,
            "sent_up_to": poster.sent_up_to,
            "last_post_time": poster.last_post_time,
            "artifacts": [{"name": a.name, "content": a.content} for a in poster.artifacts],
            "model_tier": tier,
            "aborted": result.cancelled or cancel.is_set(),
            "tools_used": result.tools_used,
        }

    async def _post_reply(self, params: JobParams, reply: Mapping[str, Any]) -> None:
        if reply.get("aborted"):
            _LOG.info("job %s: placeholder was removed; leaving partial output", self.steps.job_id)
            return
        text = reply["text"]
        remainder = text[reply.get("sent_up_to", 0):]
        parsed = parse_response(remainder, self.settings.message_limit)
        _LOG.info(
            "job %s: posting %d part(s) and %d attachment(s) from %d remaining chars",
            self.steps.job_id,
            len(parsed.messages),
            len(parsed.artifacts),
            len(remainder),
        )
        artifacts = [Artifact(**a) for a in reply.get("artifacts", [])] + parsed.artifacts
        last = await post_parts(
            self.sink,
            params.channel_id,
            parsed.messages,
            artifacts,
            last_post_time=reply.get("last_post_time", 0.0),
            min_interval=self.settings.min_post_interval,
            clock=self.clock,
            sleep=self.sleep,
        )
        await wait_for_interval(
            last, self.settings.min_post_interval, clock=self.clock, sleep=self.sleep
        )
        tier = reply.get("model_tier") or DEFAULT_MODEL_TIER
        await self.sink.send_message(params.channel_id, self._usage_report(reply["usage"], tier))
        await self.sink.delete_placeholder(params.correlation_token)

    # ---------------------------------------------------------------- summarize

    async def _summarize(self, params: JobParams) -> None:
        # A summary always covers the channel itself, never a parent.
        self._transition(params, JobState.FETCHING_CONTEXT)

        async def _fetch() -> list[dict[str, Any]]:
            messages = await self.assembler.fetch_context(params.channel_id, is_thread=False)
            return [m.to_dict() for m in messages]

        messages = [Message.from_dict(m) for m in await self.steps.do("fetch-context", _fetch)]
        turns = await self.assembler.build_conversation(messages)
        if not turns:
            await self.steps.do("post-no-history", lambda: self._notice(params, NO_HISTORY))
            self._transition(params, JobState.DONE)
            return

        result = await self._summarize_turns(
            params, turns, SUMMARIZE_REQUEST, SUMMARIZE_SYSTEM_PROMPT
        )

        async def _post() -> None:
            await send_long_message(
                self.sink,
                params.channel_id,
                f"{CHECKPOINT_MARKER}\n{result['text']}",
                self.settings.message_limit,
            )
            await self.sink.send_message(
                params.channel_id, self._usage_report(result["usage"], DEFAULT_MODEL_TIER)
            )
            await self.sink.delete_placeholder(params.correlation_token)

        self._transition(params, JobState.POSTING_RESULTS)
        await self.steps.do("post-response", _post)
        self._transition(params, JobState.DONE)

    # ---------------------------------------------------------------- post-to-channel

    async def _post_to_channel(self, params: JobParams) -> None:
        self._transition(params, JobState.FETCHING_CONTEXT)
        thread = await self._channel_info(params, "get-thread-info")
        if not thread.is_thread or not thread.parent_id:
            raise MissingContextError(NO_PARENT)

        async def _fetch() -> list[dict[str, Any]]:
            return [m.to_dict() for m in await self.assembler.fetch_own_messages(params.channel_id)]

        messages = [Message.from_dict(m) for m in await self.steps.do("fetch-context", _fetch)]
        turns = await self.assembler.build_conversation(messages)
        if not turns:
            await self.steps.do("post-no-history", lambda: self._notice(params, NO_HISTORY))
            self._transition(params, JobState.DONE)
            return

        result = await self._summarize_turns(
            params, turns, EXTRACT_REQUEST, DOCUMENT_SYSTEM_PROMPT
        )
        parent_id = thread.parent_id

        async def _post() -> None:
            await send_long_message(
                self.sink,
                parent_id,
                f'From "{thread.name or "thread"}":\n{result["text"]}',
                self.settings.message_limit,
            )
            await self.sink.delete_placeholder(params.correlation_token)

        self._transition(params, JobState.POSTING_RESULTS)
        await self.steps.do("post-response", _post)
        self._transition(params, JobState.DONE)

    # ---------------------------------------------------------------- branch-with-summary

    async def _branch_with_summary(self, params: JobParams) -> None:
        messages = await self._fetch_context(params)
        source = await self._channel_info(params, "get-channel-info")
        if params.is_thread and not source.parent_id:
            raise MissingContextError(NO_PARENT_FOR_THREAD)
        if not params.is_thread and not params.guild_id:
            raise MissingContextError(NO_GUILD)

        turns = await self.assembler.build_conversation(messages)
        if not turns:
            await self.steps.do("post-no-history", lambda: self._notice(params, NO_HISTORY))
            self._transition(params, JobState.DONE)
            return

        result = await self._summarize_turns(
            params, turns, BRANCH_SUMMARY_REQUEST, SUMMARIZE_SYSTEM_PROMPT
        )
        source_name = source.name or "thread"

        async def _create() -> str:
            if params.is_thread:
                assert source.parent_id is not None
                starter = await self.sink.send_message(
                    source.parent_id, f'**Branch with summary from "{source_name}"**'
                )
                return await self.sink.create_thread(
                    source.parent_id, starter, f"Branch of {source_name}"
                )
            assert params.guild_id is not None
            return await self.sink.create_channel(
                params.guild_id, f"branch-of-{source_name}", source.parent_id
            )

        self._transition(params, JobState.POSTING_RESULTS)
        target_id = await self.steps.do("create-destination", _create)
        _LOG.info("job %s: created branch destination %s", self.steps.job_id, target_id)

        async def _post() -> None:
            await send_long_message(
                self.sink,
                target_id,
                f"{CHECKPOINT_MARKER}\n{result['text']}",
                self.settings.message_limit,
            )
            await self.sink.send_message(
                target_id, self._usage_report(result["usage"], DEFAULT_MODEL_TIER)
            )
            await self.sink.send_message(
                params.channel_id, f"Created new branch with summary: <#{target_id}>"
            )
            await self.sink.delete_placeholder(params.correlation_token)

        await self.steps.do("post-response", _post)
        self._transition(params, JobState.DONE)

    # ---------------------------------------------------------------- branch

    async def _branch(self, params: JobParams) -> None:
        if not params.target_message_id:
            raise MissingContextError(NO_TARGET)
        self._transition(params, JobState.FETCHING_CONTEXT)
        source = await self._channel_info(params, "get-channel-info")
        # Branching from a thread puts the new thread next to it in the parent.
        home_id = source.parent_id if source.is_thread and source.parent_id else params.channel_id
        from_thread = home_id != params.channel_id
        link = branch_link(params.guild_id, params.channel_id, params.target_message_id)
        mention = f"<@{params.user_id}>" if params.user_id else "Someone"

        async def _create() -> str:
            where = f"<#{params.channel_id}>" if from_thread else "this channel"
            starter = await self.sink.send_message(home_id, f"{mention}'s branch of {where}")
            return await self.sink.create_thread(
                home_id, starter, f"Branch of {source.name or 'conversation'}"
            )

        self._transition(params, JobState.POSTING_RESULTS)
        thread_id = await self.steps.do("create-branch", _create)

        async def _mark() -> None:
            await self.sink.send_message(
                thread_id,
                format_branch_marker(params.guild_id, params.channel_id, params.target_message_id),
            )
            await self.sink.send_message(
                params.channel_id,
                f"{mention} branched from [this message]({link}) in <#{thread_id}>",
            )
            await self.sink.delete_placeholder(params.correlation_token)

        await self.steps.do("post-branch-marker", _mark)
        self._transition(params, JobState.DONE)
