"""agent-gateway CLI — Typer application root.

Entry point for the ``agent-gateway`` console script and ``python -m gateway``.

``serve``  runs the API under uvicorn.
``ask``    sends one message to a running gateway and prints the stream::

    $ agent-gateway ask "what is 12 + 7?"
    💭 **Thought (Step 1):** ...
    ✅ **Final Answer:**
    12 + 7 = 19
"""
from __future__ import annotations

import asyncio
import enum
import json
from typing import Optional

import httpx
import typer

from gateway.config import DEFAULT_USER_ID, settings
from gateway.protocol.emitter import ProtocolSerializationError, parse_event
from gateway.protocol.events import (
    CompletionChunkEvent,
    ErrorEvent,
    RawChunkEvent,
    ReasoningEvent,
)


class ExitCode(enum.IntEnum):
    """CLI exit codes.

    0 — success
    1 — user error (bad arguments)
    3 — gateway reported an error, or it could not be reached
    """

    SUCCESS = 0
    USER_ERROR = 1
    INTERNAL_ERROR = 3


cli = typer.Typer(
    name="agent-gateway",
    help="ReAct agent gateway with streamed reasoning.",
    no_args_is_help=True,
)


@cli.command("serve", help="Run the gateway API server.")
def serve(
    host: str = typer.Option(settings.host, "--host", help="Interface to bind."),
    port: int = typer.Option(settings.port, "--port", help="Port to listen on."),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes (development)."),
) -> None:
    import uvicorn

    uvicorn.run("gateway.main:app", host=host, port=port, reload=reload)


def _render(event: object) -> Optional[str]:
    """Text to print for one decoded event (``None`` = nothing to show)."""
    if isinstance(event, ReasoningEvent):
        return event.content
    if isinstance(event, CompletionChunkEvent):
        return event.choices[0].delta.content if event.choices else None
    if isinstance(event, RawChunkEvent):
        choices = event.chunk.get("choices") or []
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            delta = choices[0].get("delta") or {}
            if isinstance(delta, dict):
                content = delta.get("content")
                return content if isinstance(content, str) and content else None
    return None


async def _ask(url: str, message: str, user_id: str, timeout: float) -> int:
    body = {"messages": [{"role": "user", "content": message}], "userId": user_id}
    exit_code = int(ExitCode.SUCCESS)
    async with httpx.AsyncClient(timeout=timeout) as client:
        async with client.stream("POST", f"{url.rstrip('/')}/api/chat", json=body) as response:
            if response.status_code != 200:
                await response.aread()
                typer.echo(f"❌ Gateway returned {response.status_code}: {response.text}", err=True)
                return int(ExitCode.USER_ERROR if response.status_code < 500 else ExitCode.INTERNAL_ERROR)

            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if data == "[DONE]":
                    break
                try:
                    event = parse_event(json.loads(data))
                except (json.JSONDecodeError, ProtocolSerializationError) as e:
                    typer.echo(f"⚠️ Skipping unreadable event: {e}", err=True)
                    continue
                if isinstance(event, ErrorEvent):
                    typer.echo(f"❌ {event.error.message}", err=True)
                    exit_code = int(ExitCode.INTERNAL_ERROR)
                    continue
                text = _render(event)
                if text is not None:
                    # Replayed upstream chunks are token fragments; print them inline.
                    typer.echo(text, nl=not isinstance(event, RawChunkEvent))
    return exit_code


@cli.command("ask", help="Send one message to a running gateway and print the stream.")
def ask(
    message: str = typer.Argument(..., help="The user message."),
    url: str = typer.Option(
        f"http://localhost:{settings.port}", "--url", help="Gateway base URL."
    ),
    user_id: str = typer.Option(DEFAULT_USER_ID, "--user-id", help="History/preferences key."),
    timeout: float = typer.Option(120.0, "--timeout", help="Overall request timeout in seconds."),
) -> None:
    if not message.strip():
        typer.echo("❌ Message must not be empty.", err=True)
        raise typer.Exit(code=int(ExitCode.USER_ERROR))
    try:
        code = asyncio.run(_ask(url, message, user_id, timeout))
    except httpx.TimeoutException:
        typer.echo(f"❌ Timed out waiting for {url}", err=True)
        raise typer.Exit(code=int(ExitCode.INTERNAL_ERROR))
    except httpx.HTTPError as exc:
        typer.echo(f"❌ Could not reach {url}: {exc}", err=True)
        raise typer.Exit(code=int(ExitCode.INTERNAL_ERROR))
    if code:
        raise typer.Exit(code=code)


if __name__ == "__main__":
    cli()
