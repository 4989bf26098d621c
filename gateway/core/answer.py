"""Natural-language narration of tool results.

``summarize_observation`` renders the one-line observation for the reasoning
channel; ``synthesize_answer`` builds the final answer text for a whole tool
round directly from the results, with no extra model call.  Failed calls are
narrated, never shown as raw error objects.
"""
from __future__ import annotations

import json
from collections.abc import Sequence

from gateway.contracts.json_types import JSONObject, JSONValue

_MAX_SEARCH_LINES = 10
_MIN_SEARCH_LINES = 5
_TOOL_LABELS = {
    "calculate": "The calculator",
    "getCurrentTime": "The clock",
    "searchWeb": "Web search",
    "searchImages": "Image search",
    "textProcess": "Text processing",
}


def _compact(value: JSONValue) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _clock_label(result: JSONObject) -> str:
    fmt = result.get("format")
    if fmt == "date":
        return "date"
    if fmt == "time":
        return "time"
    return "date and time"


def _string_results(result: JSONObject) -> list[str]:
    raw = result.get("results")
    if not isinstance(raw, list):
        return []
    return [r if isinstance(r, str) else _compact(r) for r in raw]


def summarize_observation(tool_name: str, result: JSONObject) -> str:
    """Short human summary of a successful result."""
    if tool_name == "calculate":
        return f"Calculation result: {result.get('expression')} = {result.get('result')}"
    if tool_name == "getCurrentTime":
        return f"Current {_clock_label(result)}: {result.get('value')}"
    if tool_name in ("searchWeb", "searchImages"):
        noun = "images" if tool_name == "searchImages" else "results"
        return f"Found {result.get('count', len(_string_results(result)))} {noun} for \"{result.get('query')}\""
    if tool_name == "textProcess":
        return f"{result.get('operation')}: {_compact(result.get('result'))}"
    return _compact(result)


def _is_link(line: str) -> bool:
    return "http://" in line or "https://" in line


def _pick_search_lines(lines: list[str]) -> list[str]:
    """Up to ten lines, preferring prose over bare links."""
    display = min(len(lines), _MAX_SEARCH_LINES)
    if len(lines) > _MAX_SEARCH_LINES:
        display = max(_MIN_SEARCH_LINES, min(_MAX_SEARCH_LINES, len(lines) // 2))

    picked: list[str] = []
    prose = 0
    for line in lines:
        if len(picked) >= display:
            break
        if not _is_link(line):
            picked.append(line)
            prose += 1
        elif prose >= 3:
            picked.append(line)
    if not picked:
        picked = lines[:_MIN_SEARCH_LINES]
    return picked


def _narrate_success(tool_name: str, result: JSONObject) -> str:
    if tool_name == "calculate":
        return f"{result.get('expression')} = {result.get('result')}"
    if tool_name == "getCurrentTime":
        return f"The current {_clock_label(result)} is {result.get('value')}"
    if tool_name == "searchWeb":
        lines = _pick_search_lines(_string_results(result))
        header = f"🔍 Search results for \"{result.get('query')}\" ({result.get('count', len(lines))} found)"
        body = "\n".join(f"{i}. {line}" for i, line in enumerate(lines, start=1))
        source = result.get("source")
        footer = f"\n\nSource: {source}" if source else ""
        return f"{header}\n\n{body}{footer}"
    if tool_name == "searchImages":
        lines = _string_results(result)[:_MAX_SEARCH_LINES]
        header = f"🖼️ Images for \"{result.get('query')}\""
        return header + "\n\n" + "\n".join(lines)
    if tool_name == "textProcess":
        return f"Text {result.get('operation')} result: {_compact(result.get('result'))}"
    return _compact(result)


def _narrate_failure(tool_name: str, result: JSONObject) -> str:
    label = _TOOL_LABELS.get(tool_name, f"The tool {tool_name}")
    parts = [f"{label} is temporarily unavailable."]
    if result.get("error"):
        parts.append(f"Last error: {result['error']}.")
    if result.get("suggestion"):
        parts.append(str(result["suggestion"]))
    return " ".join(parts)


def narrate_result(tool_name: str, result: JSONObject) -> str:
    if result.get("success") is False:
        return _narrate_failure(tool_name, result)
    return _narrate_success(tool_name, result)


def synthesize_answer(results: Sequence[tuple[str, JSONObject]]) -> str:
    """Final answer text for a tool round, one paragraph per call in order."""
    if not results:
        return "I could not find anything to report for this request."
    return "\n\n".join(narrate_result(name, result) for name, result in results)
