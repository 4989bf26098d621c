"""
Tool definitions in OpenAI tool schema format.

These are advertised to the upstream model on every request
(``tool_choice: "auto"``).  Names are camelCase because existing clients
and prompts refer to them that way.
"""

from __future__ import annotations

from gateway.contracts.llm_types import ToolSchemaDict

CALCULATE_TOOL: ToolSchemaDict = {
    "type": "function",
    "function": {
        "name": "calculate",
        "description": (
            "Evaluate a math expression. Supports + - * / % ** and parentheses, "
            "e.g. \"2 + 2\", \"10 * 5\", \"(3 + 4) * 2\"."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "expression": {"type": "string", "description": "The arithmetic expression to evaluate"},
            },
            "required": ["expression"],
        },
    },
}

GET_CURRENT_TIME_TOOL: ToolSchemaDict = {
    "type": "function",
    "function": {
        "name": "getCurrentTime",
        "description": "Get the current date and/or time.",
        "parameters": {
            "type": "object",
            "properties": {
                "format": {
                    "type": "string",
                    "enum": ["full", "date", "time"],
                    "description": "full (date and time), date (date only), time (time only)",
                },
            },
            "required": [],
        },
    },
}

SEARCH_WEB_TOOL: ToolSchemaDict = {
    "type": "function",
    "function": {
        "name": "searchWeb",
        "description": "Search the web for information, news or reference material.",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search keywords"},
                "limit": {"type": "integer", "description": "Maximum number of results", "minimum": 1, "maximum": 20},
            },
            "required": ["query"],
        },
    },
}

SEARCH_IMAGES_TOOL: ToolSchemaDict = {
    "type": "function",
    "function": {
        "name": "searchImages",
        "description": "Search for images matching a description.",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "What the images should show"},
                "limit": {"type": "integer", "description": "Maximum number of images", "minimum": 1, "maximum": 20},
            },
            "required": ["query"],
        },
    },
}

TEXT_PROCESS_TOOL: ToolSchemaDict = {
    "type": "function",
    "function": {
        "name": "textProcess",
        "description": "Transform or analyse text: change case, reverse it, or count characters/words/lines.",
        "parameters": {
            "type": "object",
            "properties": {
                "text": {"type": "string", "description": "The text to process"},
                "operation": {
                    "type": "string",
                    "enum": ["uppercase", "lowercase", "reverse", "count"],
                    "description": "The operation to apply",
                },
            },
            "required": ["text", "operation"],
        },
    },
}

ALL_TOOLS: list[ToolSchemaDict] = [
    CALCULATE_TOOL,
    GET_CURRENT_TIME_TOOL,
    SEARCH_WEB_TOOL,
    SEARCH_IMAGES_TOOL,
    TEXT_PROCESS_TOOL,
]
