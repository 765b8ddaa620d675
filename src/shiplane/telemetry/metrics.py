"""OpenTelemetry metrics for promotions and scaling.

Metrics Emitted:
    Counters:
        - shiplane_promotions_total: Environment promotions by environment and outcome
        - shiplane_rollbacks_total: Strategy rollbacks by environment and strategy
        - shiplane_scaling_events_total: Applied scaling changes by direction

    Histograms:
        - shiplane_promotion_duration_seconds: Duration of environment promotions

Example:
    >>> metrics = ReleaseMetrics()
    >>> metrics.record_promotion("staging", "succeeded", duration_seconds=312.4)
    >>> metrics.record_scaling("up")
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from opentelemetry import metrics

if TYPE_CHECKING:
    from opentelemetry.metrics import Counter, Histogram


class ReleaseMetrics:
    """OpenTelemetry metrics collector for release operations.

    Instruments are created lazily on first use. With no MeterProvider
    configured every call is a no-op.
    """

    PROMOTIONS_TOTAL = "shiplane_promotions_total"
    ROLLBACKS_TOTAL = "shiplane_rollbacks_total"
    SCALING_EVENTS_TOTAL = "shiplane_scaling_events_total"
    PROMOTION_DURATION_SECONDS = "shiplane_promotion_duration_seconds"

    def __init__(self, meter_name: str = "shiplane", meter_version: str = "0.1.0") -> None:
        self._meter = metrics.get_meter(meter_name, meter_version)
        self._promotions_counter: Counter | None = None
        self._rollbacks_counter: Counter | None = None
        self._scaling_counter: Counter | None = None
        self._duration_histogram: Histogram | None = None

    @property
    def promotions_counter(self) -> Counter:
        """Get or create the promotions counter."""
        if self._promotions_counter is None:
            self._promotions_counter = self._meter.create_counter(
                self.PROMOTIONS_TOTAL,
                unit="1",
                description="Total environment promotions by environment and outcome",
            )
        return self._promotions_counter

    @property
    def rollbacks_counter(self) -> Counter:
        """Get or create the rollbacks counter."""
        if self._rollbacks_counter is None:
            self._rollbacks_counter = self._meter.create_counter(
                self.ROLLBACKS_TOTAL,
                unit="1",
                description="Total strategy rollbacks by environment and strategy",
            )
        return self._rollbacks_counter

    @property
    def scaling_counter(self) -> Counter:
        """Get or create the scaling events counter."""
        if self._scaling_counter is None:
            self._scaling_counter = self._meter.create_counter(
                self.SCALING_EVENTS_TOTAL,
                unit="1",
                description="Total applied scaling changes by direction",
            )
        return self._scaling_counter

    @property
    def duration_histogram(self) -> Histogram:
        """Get or create the promotion duration histogram."""
        if self._duration_histogram is None:
            self._duration_histogram = self._meter.create_histogram(
                self.PROMOTION_DURATION_SECONDS,
                unit="s",
                description="Duration of environment promotions in seconds",
            )
        return self._duration_histogram

    def record_promotion(
        self,
        environment: str,
        outcome: str,
        duration_seconds: float | None = None,
    ) -> None:
        """Record a concluded environment promotion."""
        attributes = {"environment": environment, "outcome": outcome}
        self.promotions_counter.add(1, attributes)
        if duration_seconds is not None:
            self.duration_histogram.record(duration_seconds, attributes)

    def record_rollback(self, environment: str, strategy: str) -> None:
        """Record a strategy rollback."""
        self.rollbacks_counter.add(1, {"environment": environment, "strategy": strategy})

    def record_scaling(self, direction: str) -> None:
        """Record an applied scaling change."""
        self.scaling_counter.add(1, {"direction": direction})


_metrics: ReleaseMetrics | None = None


def get_release_metrics() -> ReleaseMetrics:
    """Return the process-wide ReleaseMetrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = ReleaseMetrics()
    return _metrics


__all__ = ["ReleaseMetrics", "get_release_metrics"]
