"""Telemetry for shiplane: tracing, log correlation and metrics."""

from __future__ import annotations

from shiplane.telemetry.logging import add_trace_context, configure_logging
from shiplane.telemetry.metrics import ReleaseMetrics, get_release_metrics
from shiplane.telemetry.tracing import (
    create_span,
    current_trace_id,
    get_tracer,
    reset_tracer,
    set_tracer,
)

__all__ = [
    "ReleaseMetrics",
    "add_trace_context",
    "configure_logging",
    "create_span",
    "current_trace_id",
    "get_release_metrics",
    "get_tracer",
    "reset_tracer",
    "set_tracer",
]
