"""Deployment strategies (blue/green, canary) and the engine running them."""

from __future__ import annotations

from shiplane.strategies.base import Strategy, StrategyContext, StrategyResult
from shiplane.strategies.blue_green import BlueGreenStrategy
from shiplane.strategies.canary import CanaryStrategy
from shiplane.strategies.engine import StrategyEngine

__all__ = [
    "BlueGreenStrategy",
    "CanaryStrategy",
    "Strategy",
    "StrategyContext",
    "StrategyEngine",
    "StrategyResult",
]
