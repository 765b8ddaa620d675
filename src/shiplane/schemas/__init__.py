"""Pydantic schemas for shiplane.

Example:
    >>> from shiplane.schemas import ReleaseConfig
    >>> config = ReleaseConfig.model_validate(yaml_data)
"""

from __future__ import annotations

from shiplane.schemas.autoscaling import (
    AutoscalerConfig,
    MetricSample,
    ScalingDecision,
    ScalingDirection,
)
from shiplane.schemas.deployment import (
    SCALING_FIELDS,
    STRATEGY_FIELDS,
    TRANSITION_STATES,
    Deployment,
    InstanceSet,
    StrategyState,
)
from shiplane.schemas.image import SHA256_DIGEST_PATTERN, Image, PromotionStatus
from shiplane.schemas.promotion import (
    VALID_WEBHOOK_EVENTS,
    EnvironmentConfig,
    EnvironmentLock,
    PromotionOutcome,
    PromotionRecord,
    ReleaseConfig,
    ServiceConfig,
    WebhookConfig,
)
from shiplane.schemas.strategy import (
    BlueGreenConfig,
    CanaryConfig,
    RetryConfig,
    StrategyKind,
)

__all__ = [
    "SCALING_FIELDS",
    "SHA256_DIGEST_PATTERN",
    "STRATEGY_FIELDS",
    "TRANSITION_STATES",
    "VALID_WEBHOOK_EVENTS",
    "AutoscalerConfig",
    "BlueGreenConfig",
    "CanaryConfig",
    "Deployment",
    "EnvironmentConfig",
    "EnvironmentLock",
    "Image",
    "InstanceSet",
    "MetricSample",
    "PromotionOutcome",
    "PromotionRecord",
    "PromotionStatus",
    "ReleaseConfig",
    "RetryConfig",
    "ScalingDecision",
    "ScalingDirection",
    "ServiceConfig",
    "StrategyKind",
    "StrategyState",
]
