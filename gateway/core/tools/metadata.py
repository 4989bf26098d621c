"""Tool metadata models and enums."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ToolCategory(str, Enum):
    ARITHMETIC = "arithmetic"
    CLOCK = "clock"
    SEARCH = "search"
    TEXT = "text"


@dataclass(frozen=True)
class ToolMeta:
    name: str
    category: ToolCategory
    # Routing hints:
    network_bound: bool = False   # waits on remote I/O; subject to tool_timeout
    label: str = ""               # human label used in narration
