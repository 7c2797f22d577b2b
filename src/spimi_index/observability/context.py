"""Trace context carried through a build run so log lines can be correlated."""

from __future__ import annotations

from contextvars import ContextVar, Token
from uuid import uuid4


trace_context: ContextVar[dict | None] = ContextVar("trace_context", default=None)


def generate_trace_id() -> str:
    """Generate a 32-char hex trace ID."""
    return uuid4().hex


def generate_span_id() -> str:
    """Generate a 16-char hex span ID."""
    return uuid4().hex[:16]


def get_trace_context() -> dict:
    """Get current trace context with trace_id and span_id."""
    ctx = trace_context.get()
    if ctx is None or not ctx.get("trace_id"):
        ctx = {"trace_id": generate_trace_id(), "span_id": generate_span_id()}
        trace_context.set(ctx)
    return ctx


def set_trace_context(trace_id: str, span_id: str, **extra: object) -> None:
    """Set trace context for the current thread or task."""
    trace_context.set({"trace_id": trace_id, "span_id": span_id, **extra})


def update_span_id(span_id: str) -> None:
    """Update span_id while preserving trace_id and extras."""
    ctx = trace_context.get() or {}
    trace_context.set({**ctx, "span_id": span_id})


def bind_build_run(build_run: str) -> Token:
    """Attach a build-run identifier to the current context.

    Returns the token to pass to ``reset_trace_context`` when the run ends.
    """
    ctx = get_trace_context()
    return trace_context.set({**ctx, "build_run": build_run})


def bind_lane(lane: int) -> Token:
    """Attach the lane index of the current worker thread."""
    ctx = get_trace_context()
    return trace_context.set({**ctx, "lane": lane})


def reset_trace_context(token: Token) -> None:
    trace_context.reset(token)
