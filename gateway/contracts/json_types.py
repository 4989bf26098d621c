"""Generic JSON type aliases.

``JSONValue`` / ``JSONObject`` are used where a payload's shape is genuinely
unknown: raw upstream chunks before inspection, tool arguments before a
handler reads them, tool results before narration.

PYDANTIC COMPATIBILITY RULE: never use ``JSONValue`` or ``JSONObject`` in a
Pydantic ``BaseModel`` field.  The recursive forward references are mypy-only;
Pydantic fails to resolve them across module boundaries.  Use
``dict[str, object]`` for opaque JSON inside models instead.
"""
from __future__ import annotations

JSONScalar = str | int | float | bool | None
"""A JSON leaf value with no recursive structure."""

JSONValue = str | int | float | bool | None | list["JSONValue"] | dict[str, "JSONValue"]
"""Recursive JSON value — the most precise mypy-safe alternative to ``Any``."""

JSONObject = dict[str, JSONValue]
"""A JSON object with unknown keys."""


def jnum(value: JSONValue) -> int | float | None:
    """Return ``value`` when it is a real number (bools excluded), else ``None``."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    return None
