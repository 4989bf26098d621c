"""Bounded retry with self-correction for one tool call.

Per-call state machine::

    PENDING → EXECUTING → SUCCEEDED
                        → FAILED → CORRECTING → EXECUTING …
                                              → EXHAUSTED

Failures are classified by an ordered table of ``CorrectionRule`` entries
(tool name, error classifier, corrective transform).  The first matching rule
produces a ``CorrectionDecision``.  Attempts never exceed ``max_attempts``;
a ``can_retry=False`` decision ends the call immediately.

``RetryCorrectionEngine.run`` is an async generator: it yields SSE frames for
the reasoning channel as attempts happen and finishes with a
``ToolCallOutcome`` sentinel carrying the result payload.  Tool failures never
propagate past it.
"""
from __future__ import annotations

import json
import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from gateway.config import settings
from gateway.contracts.json_types import JSONObject, JSONValue
from gateway.core.accumulator import ToolCallRequest
from gateway.core.answer import summarize_observation
from gateway.core.tools.registry import ToolExecutionError, ToolRegistry
from gateway.core.tracing import log_correction, log_tool_call
from gateway.protocol.emitter import ClientEventEmitter

logger = logging.getLogger(__name__)

UNAVAILABLE_SUGGESTION = (
    "The tool is temporarily unavailable. Please try again later or rephrase the question."
)


class ToolCallState(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CORRECTING = "correcting"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class CorrectionDecision:
    analysis: str
    strategy: str
    corrected_arguments: JSONObject
    can_retry: bool


# ═══════════════════════════════════════════════════════════════════════
# Rule table
# ═══════════════════════════════════════════════════════════════════════

Classifier = Callable[[str], bool]
Transform = Callable[[JSONObject, str], CorrectionDecision]


@dataclass(frozen=True)
class CorrectionRule:
    tool: str | None  # None matches any tool
    classifier: Classifier
    transform: Transform
    name: str = ""


def _contains(*needles: str) -> Classifier:
    def classify(error: str) -> bool:
        return any(n in error for n in needles)
    return classify


def _always(_: str) -> bool:
    return True


_OPERATORS = re.compile(r"[+\-*/]")
_TRAILING_OPS = re.compile(r"[+\-*/]+$")
_LEADING_OPS = re.compile(r"^[+*/]+")
_OPERATOR_RUNS = re.compile(r"[+\-*/]{2,}")
_POWER = "**"
_DISALLOWED = re.compile(r"[^0-9+\-*/().%\s]")


def _repair_expression(expression: str) -> tuple[str, str, str]:
    """Return ``(analysis, strategy, repaired)`` for a malformed expression."""
    expr = expression.strip()
    if _TRAILING_OPS.search(expr):
        return (
            "Expression is incomplete (ends with an operator)",
            "Remove the trailing operator and evaluate the rest",
            _TRAILING_OPS.sub("", expr).strip(),
        )
    if _LEADING_OPS.search(expr):
        return (
            "Expression is incomplete (starts with an operator)",
            "Remove the leading operator",
            _LEADING_OPS.sub("", expr).strip(),
        )
    if any(run != _POWER for run in _OPERATOR_RUNS.findall(expr)):
        return (
            "Expression contains consecutive operators",
            "Collapse consecutive operators",
            _OPERATOR_RUNS.sub(lambda m: m.group() if m.group() == _POWER else "+", expr),
        )
    left, right = expr.count("("), expr.count(")")
    if left != right:
        analysis = f"Unbalanced parentheses (open: {left}, close: {right})"
        if left > right:
            return analysis, "Append the missing closing parenthesis", expr + ")" * (left - right)
        return analysis, "Prepend the missing opening parenthesis", "(" * (right - left) + expr
    return (
        "Math expression syntax error",
        "Strip disallowed characters and simplify",
        re.sub(r"\s+", "", _DISALLOWED.sub("", expr)),
    )


def _correct_syntax(args: JSONObject, error: str) -> CorrectionDecision:
    original = args.get("expression")
    expression = original if isinstance(original, str) else ""
    analysis, strategy, repaired = _repair_expression(expression)
    corrected: JSONObject = {**args, "expression": repaired}

    if not repaired:
        return CorrectionDecision(
            "Expression is empty or entirely invalid", "Cannot correct automatically", corrected, False,
        )
    if not _OPERATORS.search(repaired):
        return CorrectionDecision(
            "Expression is incomplete: an operand is missing",
            "Cannot correct automatically; ask for the complete expression",
            corrected,
            False,
        )
    if repaired == expression.strip() or not re.search(r"\d", repaired):
        return CorrectionDecision(analysis, "No automatic correction applies", corrected, False)
    return CorrectionDecision(analysis, strategy, corrected, True)


def _no_retry(analysis: str, strategy: str) -> Transform:
    def transform(args: JSONObject, error: str) -> CorrectionDecision:
        return CorrectionDecision(analysis, strategy, dict(args), False)
    return transform


def _reset_clock_format(args: JSONObject, error: str) -> CorrectionDecision:
    return CorrectionDecision(
        "Time service temporarily unavailable", "Retry with the default format", {"format": "full"}, True,
    )


def _simplify_search(args: JSONObject, error: str) -> CorrectionDecision:
    corrected: JSONObject = dict(args)
    query = corrected.get("query")
    if isinstance(query, str) and len(query) > 20:
        corrected["query"] = query[:20]
    corrected["limit"] = 3
    return CorrectionDecision(
        "Search request timed out or hit a network error",
        "Shorten the query and request fewer results",
        corrected,
        True,
    )


def _generic_search(args: JSONObject, error: str) -> CorrectionDecision:
    return CorrectionDecision(
        "Search target not found", "Retry with a more general search", dict(args), True,
    )


def _truncate_text(args: JSONObject, error: str) -> CorrectionDecision:
    corrected: JSONObject = dict(args)
    text = corrected.get("text")
    if isinstance(text, str) and len(text) > 500:
        corrected["text"] = text[:500]
    return CorrectionDecision(
        "Text processing failed", "Simplify the text or change the operation", corrected, True,
    )


def _same_arguments(args: JSONObject, error: str) -> CorrectionDecision:
    return CorrectionDecision("Tool execution failed", "Retry with the original arguments", dict(args), True)


CORRECTION_RULES: tuple[CorrectionRule, ...] = (
    CorrectionRule(
        "calculate",
        _contains("syntax", "parse", "unexpected", "invalid", "token", "never closed", "unmatched"),
        _correct_syntax,
        name="calculate-syntax",
    ),
    CorrectionRule(
        "calculate",
        _contains("undefined", "nan"),
        _no_retry("Result is undefined (division by zero or an invalid operation)", "Check the expression logic"),
        name="calculate-undefined",
    ),
    CorrectionRule(
        "calculate",
        _always,
        _no_retry("Calculator failed", "Check the expression format"),
        name="calculate-other",
    ),
    CorrectionRule("getCurrentTime", _always, _reset_clock_format, name="clock-default-format"),
    CorrectionRule("searchWeb", _contains("timeout", "network"), _simplify_search, name="search-simplify"),
    CorrectionRule("searchWeb", _contains("404", "not found"), _generic_search, name="search-not-found"),
    CorrectionRule("searchImages", _contains("timeout", "network"), _simplify_search, name="images-simplify"),
    CorrectionRule("searchImages", _contains("404", "not found"), _generic_search, name="images-not-found"),
    CorrectionRule("textProcess", _always, _truncate_text, name="text-truncate"),
    CorrectionRule(None, _always, _same_arguments, name="default"),
)


def analyze_failure(
    tool_name: str,
    arguments: JSONObject,
    error: str,
    rules: tuple[CorrectionRule, ...] = CORRECTION_RULES,
) -> CorrectionDecision:
    """Classify a failure and propose corrected arguments (first matching rule wins)."""
    lowered = error.lower()
    for rule in rules:
        if rule.tool is not None and rule.tool != tool_name:
            continue
        if rule.classifier(lowered):
            logger.debug(f"Correction rule {rule.name or rule.tool} matched for {tool_name}")
            return rule.transform(arguments, error)
    return _same_arguments(arguments, error)


# ═══════════════════════════════════════════════════════════════════════
# Engine
# ═══════════════════════════════════════════════════════════════════════


@dataclass
class ToolCallOutcome:
    """Sentinel yielded last by ``RetryCorrectionEngine.run``."""
    request: ToolCallRequest
    state: ToolCallState
    result: JSONObject
    arguments: JSONObject
    attempts: int
    last_error: str | None = None
    decisions: list[CorrectionDecision] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == ToolCallState.SUCCEEDED

    def content(self) -> str:
        """Payload for the ``tool`` message."""
        return json.dumps(self.result, ensure_ascii=False)


def parse_arguments(raw: str) -> tuple[JSONObject, str | None]:
    """Decode raw argument text; returns ``({}, error)`` when it is not a JSON object."""
    if not raw or not raw.strip():
        return {}, None
    try:
        value: JSONValue = json.loads(raw)
    except json.JSONDecodeError as exc:
        return {}, f"invalid JSON arguments ({exc.msg})"
    if not isinstance(value, dict):
        return {}, f"arguments must be a JSON object, got {type(value).__name__}"
    return value, None


def _failure_text(result: JSONObject) -> str:
    error = result.get("error")
    return str(error) if error else "Tool returned a failure status"


class RetryCorrectionEngine:
    """Executes tool calls through a registry with bounded self-correction."""

    def __init__(
        self,
        registry: ToolRegistry,
        max_attempts: int | None = None,
        rules: tuple[CorrectionRule, ...] = CORRECTION_RULES,
        trace_id: str = "",
    ):
        self.registry = registry
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.tool_max_attempts)
        self.rules = rules
        self.trace_id = trace_id

    async def run(
        self,
        request: ToolCallRequest,
        emitter: ClientEventEmitter,
        is_cancelled: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncIterator[str | ToolCallOutcome]:
        state = ToolCallState.PENDING
        arguments, parse_error = parse_arguments(request.arguments)
        if parse_error:
            logger.warning(f"[{self.trace_id[:8]}] Tool {request.name}: {parse_error}")
            yield emitter.thought(
                f"❌ Could not parse the arguments for `{request.name}`: {parse_error}\n"
                f"Correction: retrying with empty arguments"
            )

        decisions: list[CorrectionDecision] = []
        last_error: str | None = None
        attempt = 0

        while attempt < self.max_attempts:
            if is_cancelled is not None and await is_cancelled():
                logger.info(f"[{self.trace_id[:8]}] Client gone; skipping {request.name}")
                return
            attempt += 1
            state = ToolCallState.EXECUTING
            for frame in emitter.action(request.name, arguments):
                yield frame

            try:
                result = await self.registry.execute(request.name, arguments)
            except ToolExecutionError as exc:
                result = {"success": False, "error": exc.message}

            if result.get("success") is not False:
                state = ToolCallState.SUCCEEDED
                log_tool_call(self.trace_id, request.name, arguments, True, attempt=attempt)
                yield emitter.observation(summarize_observation(request.name, result))
                yield ToolCallOutcome(
                    request=request,
                    state=state,
                    result=result,
                    arguments=arguments,
                    attempts=attempt,
                    decisions=decisions,
                )
                return

            state = ToolCallState.FAILED
            last_error = _failure_text(result)
            log_tool_call(self.trace_id, request.name, arguments, False, attempt=attempt, error=last_error)

            state = ToolCallState.CORRECTING
            decision = analyze_failure(request.name, arguments, last_error, self.rules)
            decisions.append(decision)
            log_correction(self.trace_id, request.name, decision.analysis, decision.strategy, decision.can_retry)

            if attempt >= self.max_attempts:
                break
            yield emitter.thought(
                f"⚠️ Tool failed (attempt {attempt}/{self.max_attempts})\n"
                f"Error: {last_error}\n"
                f"Analysis: {decision.analysis}\n"
                f"Correction: {decision.strategy}"
            )
            if not decision.can_retry:
                logger.info(f"[{self.trace_id[:8]}] {request.name}: not correctable, giving up")
                break
            arguments = decision.corrected_arguments

        state = ToolCallState.EXHAUSTED
        yield emitter.thought(
            f"❌ Tool `{request.name}` failed after {attempt} attempt(s)\n"
            f"Final error: {last_error}\n"
            f"Falling back to a degraded answer"
        )
        yield ToolCallOutcome(
            request=request,
            state=state,
            result={
                "success": False,
                "error": last_error or "Tool failed",
                "attempts": attempt,
                "suggestion": UNAVAILABLE_SUGGESTION,
            },
            arguments=arguments,
            attempts=attempt,
            last_error=last_error,
            decisions=decisions,
        )
