"""
Request Tracing for the Agent Gateway.

Provides correlation IDs and structured logging for debugging production issues.

Every chat request gets a trace_id that propagates through:
- Upstream model calls
- Tool-call accumulation and fallback detection
- Tool execution and self-correction
- Event emission

Usage:
    from gateway.core.tracing import get_trace_context, trace_span

    ctx = get_trace_context()
    with trace_span(ctx, "upstream_call") as span:
        span.set_attribute("iteration", iteration)
        ...
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generator, Optional

logger = logging.getLogger(__name__)


class SpanStatus(str, Enum):
    """Status of a trace span."""
    OK = "ok"
    ERROR = "error"


@dataclass
class Span:
    """A single traced operation."""
    name: str
    trace_id: str
    span_id: str
    parent_span_id: Optional[str]
    start_time: float
    end_time: Optional[float] = None
    status: SpanStatus = SpanStatus.OK
    attributes: dict[str, Any] = field(default_factory=dict)

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    def set_error(self, error: BaseException) -> None:
        """Mark span as error."""
        self.status = SpanStatus.ERROR
        self.set_attribute("error.type", type(error).__name__)
        self.set_attribute("error.message", str(error))

    @property
    def duration_ms(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time) * 1000


@dataclass
class TraceContext:
    """Context for a traced request."""
    trace_id: str
    user_id: Optional[str] = None
    spans: list[Span] = field(default_factory=list)
    current_span: Optional[Span] = None
    _span_stack: list[Span] = field(default_factory=list)


# Context variable for request-scoped trace context
_trace_context: ContextVar[Optional[TraceContext]] = ContextVar("trace_context", default=None)


def create_trace_context(user_id: Optional[str] = None) -> TraceContext:
    """Create a new trace context for a request."""
    ctx = TraceContext(trace_id=str(uuid.uuid4()), user_id=user_id)
    _trace_context.set(ctx)
    return ctx


def get_trace_context() -> TraceContext:
    """Get current trace context, creating one if needed."""
    ctx = _trace_context.get()
    if ctx is None:
        ctx = create_trace_context()
    return ctx


def get_trace_id() -> str:
    return get_trace_context().trace_id


def clear_trace_context() -> None:
    """Clear trace context (for testing)."""
    _trace_context.set(None)


@contextmanager
def trace_span(
    ctx: TraceContext,
    name: str,
    attributes: Optional[dict[str, Any]] = None,
) -> Generator[Span, None, None]:
    """
    Context manager for tracing a span.

    Usage:
        with trace_span(ctx, "tool_execution") as span:
            span.set_attribute("tool", name)
            result = await registry.execute(name, args)
    """
    parent_span = ctx.current_span
    span = Span(
        name=name,
        trace_id=ctx.trace_id,
        span_id=str(uuid.uuid4())[:8],
        parent_span_id=parent_span.span_id if parent_span else None,
        start_time=time.time(),
        attributes=attributes or {},
    )

    ctx._span_stack.append(span)
    ctx.current_span = span
    ctx.spans.append(span)

    try:
        yield span
    except Exception as e:
        span.set_error(e)
        raise
    finally:
        span.end_time = time.time()
        ctx._span_stack.pop()
        ctx.current_span = ctx._span_stack[-1] if ctx._span_stack else None
        log_span(span)


def log_span(span: Span) -> None:
    """Log a completed span with structured data."""
    log_data = {
        "trace_id": span.trace_id,
        "span_id": span.span_id,
        "span_name": span.name,
        "duration_ms": span.duration_ms,
        "status": span.status.value,
    }
    log_data.update({f"attr.{k}": v for k, v in span.attributes.items()})

    if span.status == SpanStatus.ERROR:
        logger.error(f"[{span.trace_id[:8]}] ✗ {span.name}", extra=log_data)
    else:
        logger.info(f"[{span.trace_id[:8]}] ✓ {span.name} ({span.duration_ms:.0f}ms)", extra=log_data)


# =============================================================================
# Structured Logging Helpers
# =============================================================================

def log_llm_call(
    trace_id: str,
    model: str,
    iteration: int,
    duration_ms: float,
    tool_call_count: int,
    content_chars: int,
) -> None:
    """Log one upstream model call."""
    logger.info(
        f"[{trace_id[:8]}] 🤖 LLM: {model} iter={iteration} "
        f"({tool_call_count} tool calls, {content_chars} chars, {duration_ms:.0f}ms)",
        extra={
            "trace_id": trace_id,
            "event": "llm_call",
            "model": model,
            "iteration": iteration,
            "duration_ms": duration_ms,
            "tool_call_count": tool_call_count,
            "content_chars": content_chars,
        },
    )


def log_tool_call(
    trace_id: str,
    tool_name: str,
    params: dict[str, Any],
    success: bool,
    attempt: int = 1,
    error: Optional[str] = None,
) -> None:
    """Log tool call execution."""
    level = logging.INFO if success else logging.WARNING
    status = "✓" if success else "✗"

    logger.log(
        level,
        f"[{trace_id[:8]}] {status} Tool: {tool_name} (attempt {attempt})",
        extra={
            "trace_id": trace_id,
            "event": "tool_call",
            "tool_name": tool_name,
            "attempt": attempt,
            "success": success,
            "error": error,
            "params_keys": list(params.keys()),
        },
    )


def log_correction(
    trace_id: str,
    tool_name: str,
    analysis: str,
    strategy: str,
    can_retry: bool,
) -> None:
    """Log a self-correction decision for a failed tool call."""
    logger.info(
        f"[{trace_id[:8]}] 🩹 Correction: {tool_name} → {'retry' if can_retry else 'give up'}",
        extra={
            "trace_id": trace_id,
            "event": "tool_correction",
            "tool_name": tool_name,
            "analysis": analysis,
            "strategy": strategy,
            "can_retry": can_retry,
        },
    )
