"""
Tool collaborators for the agent loop.

Each tool is a named async handler with an OpenAI-format schema and a
``ToolMeta``.  Categories:
  * ARITHMETIC  — calculate
  * CLOCK       — getCurrentTime
  * SEARCH      — searchWeb, searchImages (network-bound)
  * TEXT        — textProcess
"""
from __future__ import annotations

from gateway.core.tools.definitions import ALL_TOOLS
from gateway.core.tools.metadata import ToolCategory, ToolMeta
from gateway.core.tools.registry import (
    ToolExecutionError,
    ToolHandler,
    ToolRegistry,
    build_default_registry,
)

__all__ = [
    "ALL_TOOLS",
    "ToolCategory",
    "ToolExecutionError",
    "ToolHandler",
    "ToolMeta",
    "ToolRegistry",
    "build_default_registry",
]
