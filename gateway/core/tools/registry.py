"""Tool registry — named handlers behind one ``execute`` contract."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from gateway.config import settings
from gateway.contracts.json_types import JSONObject
from gateway.contracts.llm_types import ToolSchemaDict
from gateway.core.tools import handlers
from gateway.core.tools.definitions import (
    CALCULATE_TOOL,
    GET_CURRENT_TIME_TOOL,
    SEARCH_IMAGES_TOOL,
    SEARCH_WEB_TOOL,
    TEXT_PROCESS_TOOL,
)
from gateway.core.tools.metadata import ToolCategory, ToolMeta

logger = logging.getLogger(__name__)

ToolHandler = Callable[[JSONObject], Awaitable[JSONObject]]


class ToolExecutionError(Exception):
    """A tool handler raised or exceeded its timeout.

    Only the retry/correction engine catches this.
    """

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        self.message = message
        super().__init__(f"{tool_name}: {message}")


class ToolRegistry:
    """Maps tool names to their schema, metadata and async handler."""

    def __init__(self, timeout: float | None = None):
        self._timeout = timeout
        self._meta: dict[str, ToolMeta] = {}
        self._schemas: dict[str, ToolSchemaDict] = {}
        self._handlers: dict[str, ToolHandler] = {}

    def register(self, meta: ToolMeta, schema: ToolSchemaDict, handler: ToolHandler) -> None:
        if schema["function"]["name"] != meta.name:
            raise ValueError(
                f"Schema name {schema['function']['name']!r} does not match tool {meta.name!r}"
            )
        if meta.name in self._handlers:
            logger.warning(f"Tool {meta.name} re-registered; replacing previous handler")
        self._meta[meta.name] = meta
        self._schemas[meta.name] = schema
        self._handlers[meta.name] = handler

    def declare(self) -> list[ToolSchemaDict]:
        """Schemas advertised to the model, in registration order."""
        return list(self._schemas.values())

    def names(self) -> list[str]:
        return list(self._handlers.keys())

    def has(self, name: str) -> bool:
        return name in self._handlers

    def get_meta(self, name: str) -> ToolMeta | None:
        return self._meta.get(name)

    def label_for(self, name: str) -> str:
        meta = self._meta.get(name)
        return meta.label if meta and meta.label else name

    async def execute(self, name: str, args: JSONObject) -> JSONObject:
        """Run one tool.

        Unknown names and handler-detected input problems come back as
        ``{"success": False, "error": ...}``.  A raising or timed-out handler
        raises ``ToolExecutionError``.
        """
        handler = self._handlers.get(name)
        if handler is None:
            return {"success": False, "error": f"Unknown tool: {name}"}

        timeout = self._timeout if self._timeout is not None else settings.tool_timeout
        try:
            return await asyncio.wait_for(handler(args), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ToolExecutionError(name, f"timeout after {timeout}s") from exc
        except ToolExecutionError:
            raise
        except Exception as exc:
            logger.exception(f"Tool {name} raised")
            raise ToolExecutionError(name, str(exc) or type(exc).__name__) from exc


def build_default_registry(timeout: float | None = None) -> ToolRegistry:
    """Registry with the built-in calculator, clock, search and text tools."""
    registry = ToolRegistry(timeout=timeout)
    registry.register(
        ToolMeta("calculate", ToolCategory.ARITHMETIC, label="Calculator"),
        CALCULATE_TOOL,
        handlers.calculate,
    )
    registry.register(
        ToolMeta("getCurrentTime", ToolCategory.CLOCK, label="Clock"),
        GET_CURRENT_TIME_TOOL,
        handlers.get_current_time,
    )
    registry.register(
        ToolMeta("searchWeb", ToolCategory.SEARCH, network_bound=True, label="Web search"),
        SEARCH_WEB_TOOL,
        handlers.search_web,
    )
    registry.register(
        ToolMeta("searchImages", ToolCategory.SEARCH, network_bound=True, label="Image search"),
        SEARCH_IMAGES_TOOL,
        handlers.search_images,
    )
    registry.register(
        ToolMeta("textProcess", ToolCategory.TEXT, label="Text processing"),
        TEXT_PROCESS_TOOL,
        handlers.text_process,
    )
    return registry
