"""Autoscaling control loop."""

from __future__ import annotations

from shiplane.autoscaling.controller import Autoscaler, round_half_up
from shiplane.autoscaling.scheduler import AutoscalerScheduler

__all__ = ["Autoscaler", "AutoscalerScheduler", "round_half_up"]
