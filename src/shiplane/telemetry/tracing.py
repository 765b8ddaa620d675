"""OpenTelemetry tracing utilities for shiplane.

Provides a thread-safe tracer cache with a NoOpTracer fallback and the
create_span() context manager used around promotions, strategy
transitions and autoscaler ticks.

Span Names:
    - shiplane.promote: One environment promotion
    - shiplane.strategy.blue_green: Blue/green transition
    - shiplane.strategy.canary: Canary transition
    - shiplane.autoscaler.tick: One autoscaler evaluation
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.trace import INVALID_TRACE_ID, Status, StatusCode

if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.trace import Span, Tracer

_TRACER_NAME = "shiplane"

# Module-level state for thread-safe tracer management
_tracers: dict[str, Tracer] = {}
_tracer_init_failed: bool = False
_lock = threading.Lock()


def get_tracer(name: str = _TRACER_NAME) -> Tracer:
    """Get or create a cached tracer instance.

    Uses double-checked locking for lazy initialization and returns a
    NoOpTracer if OpenTelemetry initialization fails.

    Args:
        name: The tracer name. Each unique name gets its own tracer.

    Returns:
        OpenTelemetry Tracer instance for the given name.
    """
    global _tracer_init_failed

    if name in _tracers:
        return _tracers[name]
    if _tracer_init_failed:
        return trace.NoOpTracer()

    with _lock:
        if name in _tracers:
            return _tracers[name]
        if _tracer_init_failed:
            return trace.NoOpTracer()
        try:
            tracer = trace.get_tracer(name)
        except Exception:
            # OTel global state corrupted (common in test environments)
            _tracer_init_failed = True
            return trace.NoOpTracer()
        _tracers[name] = tracer
        return tracer


def set_tracer(tracer: Tracer | None, name: str = _TRACER_NAME) -> None:
    """Set or clear the tracer for ``name`` (for testing).

    Example:
        >>> from unittest.mock import MagicMock
        >>> set_tracer(MagicMock())
    """
    with _lock:
        if tracer is None:
            _tracers.pop(name, None)
        else:
            _tracers[name] = tracer


def reset_tracer() -> None:
    """Clear cached tracers and the initialization failure flag."""
    global _tracer_init_failed
    with _lock:
        _tracers.clear()
        _tracer_init_failed = False


@contextmanager
def create_span(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Create a span as a context manager.

    The span ends when the context exits. Nested calls create parent-child
    relationships automatically. Exceptions mark the span as errored and
    propagate unchanged.

    Args:
        name: The name for the span.
        attributes: Optional dictionary of attributes to set on the span.
            None values are skipped.

    Yields:
        The created span for additional attribute setting.

    Examples:
        >>> with create_span("shiplane.promote", attributes={"environment": "dev"}) as span:
        ...     span.set_attribute("outcome", "succeeded")
    """
    tracer = get_tracer()
    with tracer.start_as_current_span(
        name,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.set_attribute("exception.type", type(e).__name__)
            span.set_attribute("exception.message", str(e))
            raise


def current_trace_id() -> str | None:
    """Return the active trace id as 32 hex characters, or None."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.trace_id == INVALID_TRACE_ID:
        return None
    return format(ctx.trace_id, "032x")


__all__ = [
    "create_span",
    "current_trace_id",
    "get_tracer",
    "reset_tracer",
    "set_tracer",
]
