"""Built-in tool handlers.

Every handler is ``async (args) -> result`` and reports input problems it can
detect as ``{"success": False, "error": ...}`` instead of raising.  Error
texts use stable words (``syntax``, ``undefined``, ``timeout``, ``network``,
``not found``) that the self-correction rules key on.
"""
from __future__ import annotations

import ast
import logging
import math
import operator
import re
from datetime import datetime, timezone
from typing import Callable
from urllib.parse import quote, urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from gateway.config import settings
from gateway.contracts.json_types import JSONObject, JSONValue, jnum

logger = logging.getLogger(__name__)


def _failure(error: str) -> JSONObject:
    return {"success": False, "error": error}


def _str_arg(args: JSONObject, key: str) -> str | None:
    value = args.get(key)
    if isinstance(value, str):
        return value
    if value is None:
        return None
    return str(value)


# ── calculate ─────────────────────────────────────────────────────────────────

_DISALLOWED_CHARS = re.compile(r"[^0-9+\-*/().%\s]")
# Every intermediate value stays within 10**300, so results always render as text.
_MAX_DIGITS = 300
_MAX_MAGNITUDE = 10 ** _MAX_DIGITS

_BINARY_OPS: dict[type, Callable[[float, float], float]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS: dict[type, Callable[[float], float]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


class _UnsupportedExpression(ValueError):
    pass


class _UndefinedResult(ArithmeticError):
    pass


def _check_power(base: float, exponent: float) -> None:
    """Reject a power whose result would exceed the magnitude bound before computing it."""
    if base == 0 or abs(base) == 1:
        return
    if exponent * math.log10(abs(base)) > _MAX_DIGITS:
        raise _UndefinedResult("result is too large")


def _bounded(value: float) -> float:
    if isinstance(value, complex):
        raise _UndefinedResult("result is not a real number")
    if abs(value) > _MAX_MAGNITUDE:
        raise _UndefinedResult("result is too large")
    return value


def _evaluate(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _evaluate(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return _bounded(node.value)
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        left = _evaluate(node.left)
        right = _evaluate(node.right)
        if isinstance(node.op, ast.Pow):
            _check_power(left, right)
        return _bounded(_BINARY_OPS[type(node.op)](left, right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_evaluate(node.operand))
    raise _UnsupportedExpression(f"unsupported token '{type(node).__name__}'")


def _normalise_number(value: float) -> int | float:
    if isinstance(value, int):
        return value
    if value.is_integer():
        return int(value)
    return round(value, 10)


async def calculate(args: JSONObject) -> JSONObject:
    expression = (_str_arg(args, "expression") or "").strip()
    sanitized = re.sub(r"\s+", "", _DISALLOWED_CHARS.sub("", expression))
    if not sanitized:
        return _failure("Syntax error in expression: expression is empty")

    try:
        tree = ast.parse(sanitized, mode="eval")
        value = _evaluate(tree)
    except SyntaxError as exc:
        return _failure(f"Syntax error in expression: {exc.msg}")
    except ZeroDivisionError:
        return _failure("Division by zero: undefined result")
    except _UnsupportedExpression as exc:
        return _failure(f"Invalid expression: {exc}")
    except _UndefinedResult as exc:
        return _failure(f"Calculation {exc}: undefined result")
    except OverflowError:
        return _failure("Result is too large: undefined result")
    except ValueError:
        # int literals beyond the interpreter's digit limit
        return _failure("Number is too large: undefined result")

    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return _failure("Result is NaN or infinite: undefined result")
    return {"success": True, "result": _normalise_number(value), "expression": expression}


# ── getCurrentTime ────────────────────────────────────────────────────────────

_TIME_FORMATS = {
    "date": "%Y/%m/%d",
    "time": "%H:%M:%S",
    "full": "%Y/%m/%d %H:%M:%S",
}


def _clock_zone() -> ZoneInfo | timezone:
    try:
        return ZoneInfo(settings.clock_timezone)
    except ZoneInfoNotFoundError:
        logger.warning(f"Unknown clock timezone {settings.clock_timezone!r}; using UTC")
        return timezone.utc


async def get_current_time(args: JSONObject) -> JSONObject:
    fmt = _str_arg(args, "format") or "full"
    pattern = _TIME_FORMATS.get(fmt)
    if pattern is None:
        return _failure(f"Unsupported time format: {fmt}")
    now = datetime.now(_clock_zone())
    return {"success": True, "format": fmt, "value": now.strftime(pattern)}


# ── searchWeb / searchImages ──────────────────────────────────────────────────


def _limit_arg(args: JSONObject) -> int:
    raw = args.get("limit")
    number = jnum(raw)
    if number is None and isinstance(raw, str) and raw.strip().isdigit():
        number = int(raw)
    if number is None:
        return settings.search_result_limit
    return max(1, min(int(number), 20))


def _offline_results(query: str, kind: str, limit: int) -> list[JSONValue]:
    if kind == "images":
        seed = quote(query, safe="")
        return [f"![{query} {i}](https://picsum.photos/seed/{seed}-{i}/400/300)" for i in range(1, limit + 1)]
    return [f'Result {i} about "{query}": summary of matching pages.' for i in range(1, limit + 1)]


async def _search(args: JSONObject, kind: str) -> JSONObject:
    query = (_str_arg(args, "query") or "").strip()
    if not query:
        return _failure("Missing required argument: query")
    limit = _limit_arg(args)

    if not settings.search_api_url:
        results = _offline_results(query, kind, limit)
        return {"success": True, "query": query, "results": results, "count": len(results), "source": "offline"}

    url = settings.search_api_url
    try:
        async with httpx.AsyncClient(timeout=settings.search_timeout) as client:
            response = await client.get(url, params={"q": query, "limit": limit, "type": kind})
    except httpx.TimeoutException:
        return _failure(f"Search request timeout after {settings.search_timeout}s")
    except httpx.TransportError as exc:
        return _failure(f"Search network error: {exc}")

    if response.status_code == 404:
        return _failure("Search endpoint not found (404)")
    if response.status_code != 200:
        return _failure(f"Search failed with HTTP {response.status_code}")

    try:
        body = response.json()
    except ValueError:
        return _failure("Search returned an invalid response body")
    raw_results = body.get("results") if isinstance(body, dict) else None
    if not isinstance(raw_results, list):
        return _failure("Search response has no results list")

    results: list[JSONValue] = [r if isinstance(r, str) else str(r) for r in raw_results[:limit]]
    return {
        "success": True,
        "query": query,
        "results": results,
        "count": len(results),
        "source": urlparse(url).netloc or url,
    }


async def search_web(args: JSONObject) -> JSONObject:
    return await _search(args, "web")


async def search_images(args: JSONObject) -> JSONObject:
    return await _search(args, "images")


# ── textProcess ───────────────────────────────────────────────────────────────


async def text_process(args: JSONObject) -> JSONObject:
    text = _str_arg(args, "text")
    operation = _str_arg(args, "operation") or ""
    if text is None:
        return _failure("Missing required argument: text")

    result: JSONValue
    if operation == "uppercase":
        result = text.upper()
    elif operation == "lowercase":
        result = text.lower()
    elif operation == "reverse":
        result = text[::-1]
    elif operation == "count":
        result = {
            "characters": len(text),
            "words": len(text.split()),
            "lines": len(text.split("\n")),
        }
    else:
        return _failure(f"Unsupported operation: {operation or '(none)'}")
    return {"success": True, "operation": operation, "result": result}
