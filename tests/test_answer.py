"""Tests for result narration (gateway/core/answer.py)."""
from __future__ import annotations

from gateway.core.answer import narrate_result, summarize_observation, synthesize_answer
from gateway.core.correction import UNAVAILABLE_SUGGESTION


def test_calculation() -> None:
    result = {"success": True, "result": 19, "expression": "12+7"}
    assert narrate_result("calculate", result) == "12+7 = 19"
    assert summarize_observation("calculate", result) == "Calculation result: 12+7 = 19"


def test_clock_by_format() -> None:
    assert narrate_result("getCurrentTime", {"success": True, "format": "date", "value": "2026/10/19"}) == (
        "The current date is 2026/10/19"
    )
    assert narrate_result("getCurrentTime", {"success": True, "format": "time", "value": "08:00:00"}) == (
        "The current time is 08:00:00"
    )
    assert narrate_result("getCurrentTime", {"success": True, "format": "full", "value": "x"}) == (
        "The current date and time is x"
    )


def test_web_search_is_numbered_with_source() -> None:
    result = {
        "success": True,
        "query": "asyncio",
        "results": ["first", "second"],
        "count": 2,
        "source": "offline",
    }
    text = narrate_result("searchWeb", result)
    assert text.startswith('🔍 Search results for "asyncio" (2 found)')
    assert "1. first\n2. second" in text
    assert text.endswith("Source: offline")


def test_web_search_caps_at_ten_and_prefers_prose() -> None:
    lines = [f"line {i}" for i in range(30)] + ["https://example.com"]
    text = narrate_result("searchWeb", {"success": True, "query": "q", "results": lines, "count": len(lines)})
    assert "10. line 9" in text
    assert "11." not in text
    assert "https://" not in text


def test_images_are_markdown() -> None:
    result = {"success": True, "query": "cats", "results": ["![cats 1](https://img/1)"], "count": 1}
    assert narrate_result("searchImages", result).endswith("![cats 1](https://img/1)")


def test_failure_is_narrated() -> None:
    result = {"success": False, "error": "timeout", "attempts": 2, "suggestion": UNAVAILABLE_SUGGESTION}
    text = narrate_result("searchWeb", result)
    assert text.startswith("Web search is temporarily unavailable.")
    assert "Last error: timeout." in text
    assert text.endswith(UNAVAILABLE_SUGGESTION)


def test_synthesize_joins_in_order() -> None:
    text = synthesize_answer([
        ("calculate", {"success": True, "result": 2, "expression": "1+1"}),
        ("textProcess", {"success": True, "operation": "reverse", "result": "cba"}),
    ])
    assert text == "1+1 = 2\n\nText reverse result: cba"


def test_synthesize_empty() -> None:
    assert synthesize_answer([])
