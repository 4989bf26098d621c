"""Agent iteration controller.

One ``AgentLoopController.run`` call handles one chat request::

    Init → RequestingUpstream ─┬─ NoToolCalls  → replay upstream content → Terminal
                               └─ HasToolCalls → ExecutingTools → SynthesizingAnswer → Terminal

Each iteration sends the full conversation plus tool declarations upstream,
folds the streamed tool-call fragments, and falls back to pattern detection
on the first iteration only.  Tool calls are deduplicated by id and executed
one at a time through the retry/correction engine.

By default the request ends after one tool round with an answer synthesized
from the results.  With ``multi_round`` the results are fed back to the model
instead, until it answers in text or the iteration cap is hit.

All request state (conversation, step counter, fallback guard) lives on the
per-request ``_RequestState``; nothing is shared between requests except the
history sink.
"""
from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from gateway.config import DEFAULT_USER_ID, settings
from gateway.contracts.json_types import JSONObject
from gateway.contracts.llm_types import (
    AssistantMessage,
    ChatMessage,
    OpenAIStreamChunk,
    ToolResultMessage,
    ToolSchemaDict,
    UpstreamEvent,
    UpstreamRequestPayload,
)
from gateway.core.accumulator import ToolCallAccumulator, ToolCallRequest
from gateway.core.answer import synthesize_answer
from gateway.core.correction import RetryCorrectionEngine, ToolCallOutcome
from gateway.core.fallback import FallbackIntentDetector
from gateway.core.llm_client import UpstreamError
from gateway.core.prompts import build_system_prompt
from gateway.core.stream_parser import UpstreamStreamParser
from gateway.core.tools.registry import ToolRegistry
from gateway.core.tracing import TraceContext, create_trace_context, log_llm_call, trace_span
from gateway.protocol.emitter import ClientEventEmitter

logger = logging.getLogger(__name__)

CancelCheck = Callable[[], Awaitable[bool]]


class UpstreamSource(Protocol):
    """What the loop needs from the upstream client."""

    model: str

    def build_payload(
        self, messages: Sequence[ChatMessage], tools: Sequence[ToolSchemaDict]
    ) -> UpstreamRequestPayload: ...

    def stream_chat(self, payload: UpstreamRequestPayload) -> AsyncIterator[bytes]: ...


class HistorySink(Protocol):
    """Fire-and-forget per-user history writer."""

    def append(self, user_id: str, message: ChatMessage) -> None: ...


async def _never_cancelled() -> bool:
    return False


@dataclass
class UpstreamTurn:
    """Everything one upstream call produced."""
    content: str
    raw_chunks: list[OpenAIStreamChunk]
    tool_calls: list[ToolCallRequest]
    finish_reason: str | None = None


@dataclass
class _RequestState:
    messages: list[ChatMessage]
    user_id: str
    trace: TraceContext
    emitter: ClientEventEmitter
    detector: FallbackIntentDetector
    input_count: int = 0
    iteration: int = 0
    cancelled: bool = False
    last_results: list[tuple[str, JSONObject]] = field(default_factory=list)


def _latest_user_text(messages: Sequence[ChatMessage]) -> str:
    for message in reversed(messages):
        if message.get("role") == "user":
            return message.get("content") or ""
    return ""


def dedupe_tool_calls(calls: Sequence[ToolCallRequest], trace_id: str = "") -> list[ToolCallRequest]:
    """Keep the first request for each id, in order."""
    seen: set[str] = set()
    unique: list[ToolCallRequest] = []
    for call in calls:
        if call.id in seen:
            logger.warning(f"[{trace_id[:8]}] ⚠️ Duplicate tool call id {call.id} ({call.name}); dropped")
            continue
        seen.add(call.id)
        unique.append(call)
    return unique


class AgentLoopController:
    """Drives the ask-model / run-tools iteration for one request at a time."""

    def __init__(
        self,
        upstream: UpstreamSource,
        registry: ToolRegistry,
        history: HistorySink | None = None,
        max_iterations: int | None = None,
        multi_round: bool | None = None,
        max_tool_attempts: int | None = None,
    ):
        self.upstream = upstream
        self.registry = registry
        self.history = history
        self.max_iterations = max_iterations if max_iterations is not None else settings.agent_max_iterations
        self.multi_round = multi_round if multi_round is not None else settings.agent_multi_round
        self.max_tool_attempts = max_tool_attempts

    async def run(
        self,
        messages: Sequence[ChatMessage],
        user_id: str = DEFAULT_USER_ID,
        is_cancelled: CancelCheck | None = None,
    ) -> AsyncIterator[str]:
        """Yield SSE frames for one request, ending with exactly one ``[DONE]``.

        An upstream failure becomes an error event before the terminal marker.
        On client disconnect nothing further is yielded.
        """
        trace = create_trace_context(user_id=user_id)
        state = _RequestState(
            messages=list(messages),
            user_id=user_id,
            trace=trace,
            emitter=ClientEventEmitter(trace.trace_id),
            detector=FallbackIntentDetector(),
        )
        check = is_cancelled or _never_cancelled

        try:
            async for frame in self._iterate(state, check):
                yield frame
        except UpstreamError as e:
            if state.cancelled:
                return
            logger.error(f"[{trace.trace_id[:8]}] ❌ Upstream failed: {e.message}")
            yield state.emitter.error(e.message, code=e.code)

        if state.cancelled:
            logger.info(f"[{trace.trace_id[:8]}] 🔌 Client disconnected; request abandoned")
            return
        yield state.emitter.done()

    def _input_count(self, messages: Sequence[ChatMessage]) -> int:
        roles = ("user", "tool") if self.multi_round else ("user",)
        return sum(1 for m in messages if m.get("role") in roles)

    def _seed_system_message(self, state: _RequestState) -> None:
        if any(m.get("role") == "system" for m in state.messages):
            return
        state.messages.insert(0, {"role": "system", "content": build_system_prompt(self.registry)})

    def _record(self, state: _RequestState, message: ChatMessage) -> None:
        if self.history is not None:
            self.history.append(state.user_id, message)

    def _initial_thought(self, utterance: str) -> str:
        lines = [
            f"Analyzing the request: \"{utterance}\"",
            "Deciding whether a tool is needed...",
            "Candidates:",
        ]
        for name in self.registry.names():
            meta = self.registry.get_meta(name)
            category = meta.category.value if meta else "tool"
            lines.append(f"  - {category} → {name}")
        return "\n".join(lines)

    async def _iterate(self, state: _RequestState, is_cancelled: CancelCheck) -> AsyncIterator[str]:
        emitter = state.emitter
        trace_id = state.trace.trace_id
        engine = RetryCorrectionEngine(
            self.registry, max_attempts=self.max_tool_attempts, trace_id=trace_id,
        )

        utterance = _latest_user_text(state.messages)
        if utterance:
            self._record(state, {"role": "user", "content": utterance})
        self._seed_system_message(state)
        yield emitter.thought(self._initial_thought(utterance))

        while state.iteration < self.max_iterations:
            state.iteration += 1
            count = self._input_count(state.messages)
            if state.iteration > 1 and count <= state.input_count:
                logger.info(f"[{trace_id[:8]}] No new input since the last iteration; ending loop")
                return
            state.input_count = count

            if await is_cancelled():
                state.cancelled = True
                return

            turn = await self._call_upstream(state, is_cancelled)
            if turn is None:
                return

            calls = turn.tool_calls
            if not calls and state.iteration == 1:
                calls = state.detector.detect(state.messages)
                if calls:
                    names = ", ".join(c.name for c in calls)
                    yield emitter.thought(
                        f"The model did not request a tool; the message itself calls for: {names}"
                    )

            if not calls:
                logger.info(f"[{trace_id[:8]}] No tool calls; replaying {len(turn.raw_chunks)} upstream chunks")
                for chunk in turn.raw_chunks:
                    yield emitter.passthrough(chunk)
                if turn.content:
                    self._record(state, {"role": "assistant", "content": turn.content})
                return

            calls = dedupe_tool_calls(calls, trace_id)
            assistant: AssistantMessage = {
                "role": "assistant",
                "content": turn.content or None,
                "tool_calls": [c.to_entry() for c in calls],
            }
            state.messages.append(assistant)

            results: list[tuple[str, JSONObject]] = []
            for call in calls:
                outcome: ToolCallOutcome | None = None
                with trace_span(state.trace, f"tool:{call.name}", {"tool_call_id": call.id}):
                    async for item in engine.run(call, emitter, is_cancelled):
                        if isinstance(item, ToolCallOutcome):
                            outcome = item
                        else:
                            yield item
                if outcome is None:
                    state.cancelled = True
                    return
                tool_message: ToolResultMessage = {
                    "role": "tool",
                    "tool_call_id": call.id,
                    "name": call.name,
                    "content": outcome.content(),
                }
                state.messages.append(tool_message)
                results.append((call.name, outcome.result))
            state.last_results = results

            if not self.multi_round:
                yield emitter.thought(
                    "Tool execution finished and the results are in.\n"
                    "Composing the final answer from the observations."
                )
                yield self._final_answer(state, synthesize_answer(results))
                return

            yield emitter.thought("Tool results received; asking the model to continue.")

        logger.warning(f"[{trace_id[:8]}] Iteration cap ({self.max_iterations}) reached")
        yield emitter.thought(
            f"Reached the iteration limit ({self.max_iterations}); answering with the results so far."
        )
        if state.last_results:
            answer = synthesize_answer(state.last_results)
        else:
            answer = f"I stopped after {self.max_iterations} steps without reaching an answer."
        yield self._final_answer(state, answer)

    def _final_answer(self, state: _RequestState, answer: str) -> str:
        frame = state.emitter.final_answer(answer)
        self._record(state, {"role": "assistant", "content": answer})
        return frame

    async def _call_upstream(self, state: _RequestState, is_cancelled: CancelCheck) -> UpstreamTurn | None:
        """Run one streaming call; ``None`` means the client went away."""
        payload = self.upstream.build_payload(state.messages, self.registry.declare())
        parser = UpstreamStreamParser()
        accumulator = ToolCallAccumulator()
        content: list[str] = []
        raw_chunks: list[OpenAIStreamChunk] = []

        def absorb(event: UpstreamEvent) -> None:
            if event["type"] == "error":
                raise UpstreamError(event["message"], code=event["code"])
            if event["type"] == "terminal":
                return
            raw = event.get("raw")
            if raw is not None:
                raw_chunks.append(raw)
            if event["type"] == "content":
                content.append(event["text"])
            elif event["type"] == "tool_call_fragment":
                accumulator.add(event)

        started = time.time()
        source = self.upstream.stream_chat(payload)
        with trace_span(state.trace, "upstream_call", {"iteration": state.iteration}):
            try:
                async for data in source:
                    if await is_cancelled():
                        state.cancelled = True
                        return None
                    for event in parser.feed(data):
                        absorb(event)
                for event in parser.close():
                    absorb(event)
            finally:
                aclose = getattr(source, "aclose", None)
                if aclose is not None:
                    await aclose()

        turn = UpstreamTurn(
            content="".join(content),
            raw_chunks=raw_chunks,
            tool_calls=accumulator.finish(),
            finish_reason=parser.finish_reason,
        )
        log_llm_call(
            state.trace.trace_id,
            model=getattr(self.upstream, "model", "unknown"),
            iteration=state.iteration,
            duration_ms=(time.time() - started) * 1000,
            tool_call_count=len(turn.tool_calls),
            content_chars=len(turn.content),
        )
        return turn
