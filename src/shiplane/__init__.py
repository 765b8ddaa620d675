"""shiplane - release orchestration and autoscaling for container images.

Drives a newly built image through an ordered list of environments with
blue/green or canary deployments, approval gates and automatic rollback,
while an autoscaling control loop sizes every live deployment.

Example:
    >>> from shiplane import ReleaseOrchestrator, StrategyContext, load_release_config
    >>> config = load_release_config("release.yaml")
    >>> orchestrator = ReleaseOrchestrator(config, StrategyContext(store, provisioner, probe, metrics))
    >>> await orchestrator.start()
"""

from __future__ import annotations

__version__ = "0.1.0"

from shiplane.autoscaling import Autoscaler, AutoscalerScheduler
from shiplane.config import load_release_config
from shiplane.errors import ReleaseError
from shiplane.orchestrator.approvals import ApprovalGate
from shiplane.orchestrator.orchestrator import ReleaseOrchestrator
from shiplane.registry import ArtifactRegistryIndex
from shiplane.resilience import CancelToken, RetryPolicy
from shiplane.strategies import StrategyContext, StrategyEngine, StrategyResult

__all__ = [
    "ApprovalGate",
    "ArtifactRegistryIndex",
    "Autoscaler",
    "AutoscalerScheduler",
    "CancelToken",
    "ReleaseError",
    "ReleaseOrchestrator",
    "RetryPolicy",
    "StrategyContext",
    "StrategyEngine",
    "StrategyResult",
    "__version__",
    "load_release_config",
]
