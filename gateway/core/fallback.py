"""Recover tool-call intent from the user's text when the model emitted none.

Small upstream models often answer "what is 12 + 7" in prose instead of
calling ``calculate``.  The detector re-derives likely calls from the latest
user message with ordered pattern rules:

  1. arithmetic   — explicit expression, "12 plus 7", a follow-up such as
                    "then add 5" (left operand taken from the previous
                    numeric result), or calculation keywords plus numbers
  2. temporal     — date / time / full
  3. web search   — query = utterance minus trigger and filler words
  4. image search — same, with image keywords

Rules are written for English and Chinese phrasings.  An arithmetic match
returns immediately with the single ``calculate`` call; the remaining
categories may all fire together.
"""
from __future__ import annotations

import json
import logging
import re
import uuid
from collections.abc import Sequence

from gateway.contracts.llm_types import ChatMessage
from gateway.core.accumulator import ToolCallRequest

logger = logging.getLogger(__name__)


# ── Arithmetic ────────────────────────────────────────────────────────────────

_CALC_KEYWORDS = re.compile(
    r"帮我计算|帮我算|等于多少|是多少|计算|算|求|等于|结果|加上|减去|乘以|除以|加|减|乘|除"
    r"|\b(?:calculate|calc|compute|evaluate|solve|sum|plus|minus|times|multiplied|divided|how much is|what is)\b",
    re.IGNORECASE,
)

_MATH_EXPR = re.compile(r"([\d\s(]+[+\-*/][\d\s+\-*/()]+)")

_OPERATOR_WORDS: tuple[tuple[str, str], ...] = (
    ("加上|加|plus|add|added to", "+"),
    ("减去|减|minus|subtract|less", "-"),
    ("乘以|乘|times|multiplied by|multiply by", "*"),
    ("除以|除|divided by|divide by|over", "/"),
)
_OP_ALTERNATION = "|".join(
    sorted((w for words, _ in _OPERATOR_WORDS for w in words.split("|")), key=len, reverse=True)
)

_NUMBER = r"\d+(?:\.\d+)?"

_WORD_OP_EXPR = re.compile(
    rf"({_NUMBER})\s*({_OP_ALTERNATION})\s*({_NUMBER})",
    re.IGNORECASE,
)

_FOLLOW_UP = re.compile(
    rf"(?P<lead>再|然后|接着|\band then\b|\bthen\b|\bnow\b)?\s*"
    rf"(?P<op>{_OP_ALTERNATION})\s*(?P<num>{_NUMBER})\s*"
    r"(?P<tail>等于多少|是多少|等于|结果|\?|？)?",
    re.IGNORECASE,
)

_ASSISTANT_NUMBER = re.compile(
    rf"(?:=|结果|等于|是|\bresult is\b|\bequals\b|\bis\b)\s*(-?{_NUMBER})",
    re.IGNORECASE,
)

_HAS_OPERATOR = re.compile(r"[+\-*/]")
_HAS_DIGIT = re.compile(r"\d")


def _operator_symbol(word: str) -> str:
    lowered = word.lower()
    for words, symbol in _OPERATOR_WORDS:
        if lowered in words.split("|"):
            return symbol
    return ""


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def _is_valid_expression(expression: str) -> bool:
    return bool(_HAS_OPERATOR.search(expression) and _HAS_DIGIT.search(expression))


def _previous_result(history: Sequence[ChatMessage]) -> float | None:
    """Most recent numeric value from prior tool results or assistant replies."""
    for message in reversed(history):
        role = message.get("role")
        content = message.get("content") or ""
        if role == "tool":
            try:
                payload = json.loads(content)
            except (TypeError, json.JSONDecodeError):
                continue
            if isinstance(payload, dict) and payload.get("success") is not False:
                result = payload.get("result")
                if isinstance(result, (int, float)) and not isinstance(result, bool):
                    return float(result)
        elif role == "assistant":
            matches = _ASSISTANT_NUMBER.findall(content)
            if matches:
                return float(matches[-1])
    return None


def _expression_candidates(text: str, history: Sequence[ChatMessage]) -> list[tuple[str, str]]:
    """Arithmetic sub-rules in priority order as ``(rule, expression)`` pairs."""
    candidates: list[tuple[str, str]] = []

    match = _MATH_EXPR.search(text)
    if match:
        candidates.append(("expression", re.sub(r"\s+", "", match.group(1))))

    match = _WORD_OP_EXPR.search(text)
    if match:
        symbol = _operator_symbol(match.group(2))
        candidates.append(("operator-words", f"{match.group(1)}{symbol}{match.group(3)}"))

    for match in _FOLLOW_UP.finditer(text):
        if not (match.group("lead") or match.group("tail")):
            continue
        previous = _previous_result(history)
        if previous is None:
            logger.info("Follow-up arithmetic without a previous result; using 0")
            previous = 0.0
        symbol = _operator_symbol(match.group("op"))
        candidates.append(("follow-up", f"{_format_number(previous)}{symbol}{match.group('num')}"))
        break

    if _CALC_KEYWORDS.search(text):
        runs = re.findall(r"[\d+\-*/()\s]+", text)
        expression = re.sub(r"\s+", "", "".join(runs))
        if not _is_valid_expression(expression):
            numbers = re.findall(_NUMBER, text)
            expression = "+".join(numbers) if len(numbers) >= 2 else ""
        if expression:
            candidates.append(("keywords", expression))

    return candidates


# ── Temporal ──────────────────────────────────────────────────────────────────

_TIME_KEYWORDS = re.compile(
    r"时间|现在几点|几点|日期|今天|当前时间|几号|几月|星期"
    r"|\b(?:time|date|today|clock|what day|day of the week)\b",
    re.IGNORECASE,
)
_DATE_ONLY = re.compile(
    r"几号|几月|今天是|日期|星期|哪一天|\b(?:date|today|what day|day of the week)\b",
    re.IGNORECASE,
)
_TIME_WORDS = re.compile(r"几点|时间|\b(?:time|clock|hour)\b", re.IGNORECASE)
_TIME_ONLY = re.compile(r"几点|现在几点|\b(?:what time|clock|hour)\b|\btime\b", re.IGNORECASE)
_DATE_WORDS = re.compile(r"几号|几月|日期|\bdate\b", re.IGNORECASE)


def _time_format(text: str) -> str:
    if _DATE_ONLY.search(text) and not _TIME_WORDS.search(text):
        return "date"
    if _TIME_ONLY.search(text) and not _DATE_WORDS.search(text):
        return "time"
    return "full"


# ── Search ────────────────────────────────────────────────────────────────────

_SEARCH_KEYWORDS = re.compile(
    r"搜索一下|帮我搜|搜索|查找|查询|找"
    r"|\b(?:search(?: for)?|look up|lookup|find|google)\b",
    re.IGNORECASE,
)
_IMAGE_KEYWORDS = re.compile(
    r"找图片|搜图片|图片搜索|搜图|图片|照片|图"
    r"|\b(?:images?|pictures?|photos?|pics?)\b",
    re.IGNORECASE,
)
_FILLER = re.compile(
    r"关于|的|信息"
    r"|\b(?:about|information|info|of|for|some|me|show|please|online|on the web)\b",
    re.IGNORECASE,
)


def _strip_query(text: str, keywords: re.Pattern[str]) -> str:
    query = keywords.sub(" ", text)
    query = _FILLER.sub(" ", query)
    query = re.sub(r"\s+", " ", query)
    return query.strip(" \t,.;:!?，。；：！？")


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def _latest_user_text(messages: Sequence[ChatMessage]) -> str:
    for message in reversed(messages):
        if message.get("role") == "user":
            return message.get("content") or ""
    return ""


class FallbackIntentDetector:
    """Pattern-based tool-call recovery.  One instance per user turn.

    ``detect`` fires at most once; later calls return ``[]`` so a multi-pass
    loop cannot re-trigger tools for the same utterance.
    """

    def __init__(self) -> None:
        self._fired = False

    @property
    def fired(self) -> bool:
        return self._fired

    def detect(self, messages: Sequence[ChatMessage], start_index: int = 0) -> list[ToolCallRequest]:
        if self._fired:
            logger.debug("Fallback detection already ran for this turn; skipping")
            return []
        self._fired = True

        text = _latest_user_text(messages)
        if not text.strip():
            return []
        logger.info(f"🔎 Fallback detection on: {text[:100]!r}")

        index = start_index
        for rule, expression in _expression_candidates(text, messages[:-1]):
            if _is_valid_expression(expression):
                logger.info(f"✅ Fallback arithmetic ({rule}): {expression}")
                return [_request("calc", index, "calculate", {"expression": expression})]
            logger.debug(f"Rejected arithmetic candidate ({rule}): {expression!r}")

        requests: list[ToolCallRequest] = []

        if _TIME_KEYWORDS.search(text):
            fmt = _time_format(text)
            requests.append(_request("time", index, "getCurrentTime", {"format": fmt}))
            index += 1
            logger.info(f"✅ Fallback time query, format={fmt}")

        if _SEARCH_KEYWORDS.search(text):
            query = _strip_query(text, _SEARCH_KEYWORDS)
            if len(query) >= 2:
                requests.append(_request("search", index, "searchWeb", {"query": query}))
                index += 1
                logger.info(f"✅ Fallback web search: {query!r}")

        if _IMAGE_KEYWORDS.search(text):
            query = _strip_query(text, _IMAGE_KEYWORDS)
            if query:
                requests.append(_request("images", index, "searchImages", {"query": query}))
                index += 1
                logger.info(f"✅ Fallback image search: {query!r}")

        return requests


def _request(prefix: str, index: int, name: str, arguments: dict[str, str]) -> ToolCallRequest:
    return ToolCallRequest(
        id=_new_id(prefix),
        index=index,
        name=name,
        arguments=json.dumps(arguments, ensure_ascii=False),
    )
