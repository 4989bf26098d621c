"""Tests for the tool registry and built-in handlers (gateway/core/tools/)."""
from __future__ import annotations

import asyncio
import re
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from gateway.contracts.json_types import JSONObject
from gateway.core.tools import (
    ALL_TOOLS,
    ToolCategory,
    ToolExecutionError,
    ToolMeta,
    ToolRegistry,
    build_default_registry,
)
from gateway.core.tools import handlers
from gateway.core.tools.definitions import CALCULATE_TOOL, TEXT_PROCESS_TOOL


class TestRegistry:

    def test_default_registry_declares_all_tools(self) -> None:
        registry = build_default_registry()
        assert registry.names() == ["calculate", "getCurrentTime", "searchWeb", "searchImages", "textProcess"]
        assert registry.declare() == ALL_TOOLS
        assert all(schema["type"] == "function" for schema in registry.declare())

    def test_metadata(self) -> None:
        registry = build_default_registry()
        meta = registry.get_meta("searchWeb")
        assert meta is not None
        assert meta.category == ToolCategory.SEARCH
        assert meta.network_bound is True
        assert registry.get_meta("calculate").network_bound is False
        assert registry.label_for("getCurrentTime") == "Clock"
        assert registry.label_for("unknown") == "unknown"

    def test_register_rejects_mismatched_schema(self) -> None:
        registry = ToolRegistry()
        with pytest.raises(ValueError):
            registry.register(ToolMeta("textProcess", ToolCategory.TEXT), CALCULATE_TOOL, handlers.calculate)

    @pytest.mark.anyio
    async def test_unknown_tool(self) -> None:
        result = await build_default_registry().execute("nope", {})
        assert result == {"success": False, "error": "Unknown tool: nope"}

    @pytest.mark.anyio
    async def test_timeout_raises_tool_execution_error(self) -> None:
        async def slow(args: JSONObject) -> JSONObject:
            await asyncio.sleep(5)
            return {"success": True}

        registry = ToolRegistry(timeout=0.01)
        registry.register(ToolMeta("textProcess", ToolCategory.TEXT), TEXT_PROCESS_TOOL, slow)
        with pytest.raises(ToolExecutionError) as exc_info:
            await registry.execute("textProcess", {})
        assert exc_info.value.tool_name == "textProcess"
        assert "timeout" in exc_info.value.message

    @pytest.mark.anyio
    async def test_handler_exception_is_wrapped(self) -> None:
        async def broken(args: JSONObject) -> JSONObject:
            raise KeyError("missing")

        registry = ToolRegistry(timeout=1)
        registry.register(ToolMeta("textProcess", ToolCategory.TEXT), TEXT_PROCESS_TOOL, broken)
        with pytest.raises(ToolExecutionError):
            await registry.execute("textProcess", {})


class TestCalculate:

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "expression, expected",
        [
            ("12+7", 19),
            ("2 * (3 + 4)", 14),
            ("10/4", 2.5),
            ("9/3", 3),
            ("-5 + 2", -3),
            ("2**10", 1024),
            ("17 % 5", 2),
            ("0.1+0.2", 0.3),
        ],
    )
    async def test_evaluates(self, expression: str, expected: float) -> None:
        result = await handlers.calculate({"expression": expression})
        assert result["success"] is True
        assert result["result"] == expected
        assert result["expression"] == expression

    @pytest.mark.anyio
    async def test_integral_results_are_ints(self) -> None:
        result = await handlers.calculate({"expression": "6/2"})
        assert result["result"] == 3
        assert isinstance(result["result"], int)

    @pytest.mark.anyio
    async def test_disallowed_characters_are_stripped(self) -> None:
        result = await handlers.calculate({"expression": "12 apples + 7 pears"})
        assert result["success"] is True
        assert result["result"] == 19

    @pytest.mark.anyio
    async def test_names_and_calls_never_evaluate(self) -> None:
        result = await handlers.calculate({"expression": "__import__('os').system('true')"})
        assert result["success"] is False

    @pytest.mark.anyio
    async def test_syntax_error(self) -> None:
        result = await handlers.calculate({"expression": "12+"})
        assert result["success"] is False
        assert result["error"].startswith("Syntax error in expression")

    @pytest.mark.anyio
    async def test_empty_expression(self) -> None:
        result = await handlers.calculate({"expression": "abc"})
        assert result == {"success": False, "error": "Syntax error in expression: expression is empty"}

    @pytest.mark.anyio
    async def test_division_by_zero(self) -> None:
        result = await handlers.calculate({"expression": "1/0"})
        assert result["success"] is False
        assert "undefined result" in result["error"]

    @pytest.mark.anyio
    async def test_huge_exponent_rejected(self) -> None:
        result = await handlers.calculate({"expression": "2**100000"})
        assert result["success"] is False
        assert "undefined result" in result["error"]

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "expression",
        [
            "(10**100)**100",
            "(((10**100)**100)**100)**100",
            "10**300*10**300",
            "0.1**-400",
        ],
    )
    async def test_results_beyond_magnitude_bound_fail_cleanly(self, expression: str) -> None:
        result = await handlers.calculate({"expression": expression})
        assert result["success"] is False
        assert "undefined result" in result["error"]
        assert "invalid" not in result["error"].lower()

    @pytest.mark.anyio
    async def test_large_power_within_bound_is_exact(self) -> None:
        result = await handlers.calculate({"expression": "2**200"})
        assert result["success"] is True
        assert result["result"] == 2**200

    @pytest.mark.anyio
    async def test_fractional_power_of_negative_is_undefined(self) -> None:
        result = await handlers.calculate({"expression": "(-8)**0.5"})
        assert result["success"] is False
        assert "undefined result" in result["error"]


class TestClock:

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "fmt, pattern",
        [
            ("date", r"^\d{4}/\d{2}/\d{2}$"),
            ("time", r"^\d{2}:\d{2}:\d{2}$"),
            ("full", r"^\d{4}/\d{2}/\d{2} \d{2}:\d{2}:\d{2}$"),
        ],
    )
    async def test_formats(self, fmt: str, pattern: str) -> None:
        result = await handlers.get_current_time({"format": fmt})
        assert result["success"] is True
        assert result["format"] == fmt
        assert re.match(pattern, result["value"])

    @pytest.mark.anyio
    async def test_default_is_full(self) -> None:
        result = await handlers.get_current_time({})
        assert result["format"] == "full"

    @pytest.mark.anyio
    async def test_unknown_format(self) -> None:
        result = await handlers.get_current_time({"format": "epoch"})
        assert result["success"] is False


class TestSearch:

    @pytest.mark.anyio
    async def test_offline_web_results(self) -> None:
        with patch.object(handlers.settings, "search_api_url", None):
            result = await handlers.search_web({"query": "python", "limit": 3})
        assert result["success"] is True
        assert result["count"] == 3
        assert result["source"] == "offline"
        assert result["results"][0].startswith('Result 1 about "python"')

    @pytest.mark.anyio
    async def test_offline_image_results_are_markdown(self) -> None:
        with patch.object(handlers.settings, "search_api_url", None):
            result = await handlers.search_images({"query": "red panda", "limit": 2})
        assert result["count"] == 2
        assert all(line.startswith("![red panda") for line in result["results"])

    @pytest.mark.anyio
    async def test_missing_query(self) -> None:
        result = await handlers.search_web({})
        assert result["success"] is False

    def _mock_client(self, *, response: MagicMock | None = None, error: Exception | None = None) -> MagicMock:
        client = MagicMock()
        client.get = AsyncMock(return_value=response, side_effect=error)
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=None)
        return client

    @pytest.mark.anyio
    async def test_remote_results(self) -> None:
        response = MagicMock(status_code=200)
        response.json.return_value = {"results": ["first hit", "second hit"]}
        client = self._mock_client(response=response)
        with patch.object(handlers.settings, "search_api_url", "https://search.example.com/api"), \
                patch("gateway.core.tools.handlers.httpx.AsyncClient", return_value=client):
            result = await handlers.search_web({"query": "gateways"})
        assert result["success"] is True
        assert result["results"] == ["first hit", "second hit"]
        assert result["source"] == "search.example.com"
        client.get.assert_awaited_once()
        assert client.get.call_args.kwargs["params"]["type"] == "web"

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "error, needle",
        [
            (httpx.ReadTimeout("slow"), "timeout"),
            (httpx.ConnectError("refused"), "network"),
        ],
    )
    async def test_remote_transport_failures(self, error: Exception, needle: str) -> None:
        client = self._mock_client(error=error)
        with patch.object(handlers.settings, "search_api_url", "https://search.example.com/api"), \
                patch("gateway.core.tools.handlers.httpx.AsyncClient", return_value=client):
            result = await handlers.search_images({"query": "cats"})
        assert result["success"] is False
        assert needle in result["error"]

    @pytest.mark.anyio
    async def test_remote_404(self) -> None:
        client = self._mock_client(response=MagicMock(status_code=404))
        with patch.object(handlers.settings, "search_api_url", "https://search.example.com/api"), \
                patch("gateway.core.tools.handlers.httpx.AsyncClient", return_value=client):
            result = await handlers.search_web({"query": "cats"})
        assert result["success"] is False
        assert "not found" in result["error"]


class TestTextProcess:

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "operation, expected",
        [
            ("uppercase", "HELLO WORLD"),
            ("lowercase", "hello world"),
            ("reverse", "dlroW olleH"),
        ],
    )
    async def test_transforms(self, operation: str, expected: str) -> None:
        result = await handlers.text_process({"text": "Hello World", "operation": operation})
        assert result == {"success": True, "operation": operation, "result": expected}

    @pytest.mark.anyio
    async def test_count(self) -> None:
        result = await handlers.text_process({"text": "one two\nthree", "operation": "count"})
        assert result["result"] == {"characters": 13, "words": 3, "lines": 2}

    @pytest.mark.anyio
    async def test_unknown_operation(self) -> None:
        result = await handlers.text_process({"text": "x", "operation": "rot13"})
        assert result["success"] is False
