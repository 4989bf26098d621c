"""
Upstream client for an OpenAI-compatible chat-completions endpoint.

Only the streaming call is used: the agent loop posts the conversation plus
tool declarations and consumes the raw SSE bytes through
``gateway.core.stream_parser``.  Decoding lives in the parser so the byte
stream can be split anywhere.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from typing import Optional

import httpx

from gateway.config import settings
from gateway.contracts.llm_types import ChatMessage, ToolSchemaDict, UpstreamRequestPayload

logger = logging.getLogger(__name__)


class UpstreamError(Exception):
    """Non-200 status, transport failure, timeout, or an in-stream error object."""

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(message)


class UpstreamClient:
    """
    Streaming client for the upstream model.

    The underlying ``httpx.AsyncClient`` is created lazily and shared across
    requests; ``close()`` releases it on shutdown.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.upstream_api_key
        self.base_url = (base_url or settings.upstream_base_url).rstrip("/")
        self.model = model or settings.upstream_model
        self.timeout = timeout or settings.upstream_timeout
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=headers)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def build_payload(
        self,
        messages: Sequence[ChatMessage],
        tools: Sequence[ToolSchemaDict],
    ) -> UpstreamRequestPayload:
        return {
            "model": self.model,
            "messages": list(messages),
            "tools": list(tools),
            "tool_choice": "auto",
            "max_tokens": settings.upstream_max_tokens,
            "temperature": settings.upstream_temperature,
            "stream": True,
        }

    async def stream_chat(self, payload: UpstreamRequestPayload) -> AsyncIterator[bytes]:
        """Yield raw response bytes for one streaming completion.

        The whole call is bounded by ``timeout``: httpx bounds each connect and
        read, and the elapsed time is re-checked between chunks.  Closing the
        generator early (client disconnect) closes the upstream response.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        url = f"{self.base_url}/chat/completions"
        logger.info(
            f"🚀 Streaming request upstream: model={payload['model']}, "
            f"messages={len(payload['messages'])}, tools={len(payload['tools'])}"
        )

        try:
            async with self.client.stream("POST", url, json=payload) as response:
                if response.status_code != 200:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")[:500]
                    logger.error(f"Upstream error {response.status_code}: {error_text}")
                    raise UpstreamError(
                        f"Upstream returned HTTP {response.status_code}: {error_text}",
                        code=str(response.status_code),
                        status_code=response.status_code,
                    )

                async for chunk in response.aiter_bytes():
                    if loop.time() > deadline:
                        raise UpstreamError(
                            f"Upstream call exceeded {self.timeout}s", code="timeout",
                        )
                    yield chunk
        except httpx.TimeoutException as e:
            logger.error(f"Upstream timeout: {e}")
            raise UpstreamError(f"Upstream call timed out after {self.timeout}s", code="timeout") from e
        except httpx.HTTPError as e:
            logger.error(f"Upstream HTTP error: {e}")
            raise UpstreamError(f"Upstream transport error: {e}", code="network") from e


_upstream_client: Optional[UpstreamClient] = None


def get_upstream_client() -> UpstreamClient:
    """Process-wide shared client (connection pooling across requests)."""
    global _upstream_client
    if _upstream_client is None:
        _upstream_client = UpstreamClient()
    return _upstream_client


async def close_upstream_client() -> None:
    global _upstream_client
    if _upstream_client is not None:
        await _upstream_client.close()
        _upstream_client = None
