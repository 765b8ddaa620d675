"""Exception hierarchy for shiplane.

All exceptions inherit from ReleaseError, so callers can catch every
release failure with a single except clause.

Exception Hierarchy:
    ReleaseError (base)
    ├── ConfigurationError             # Invalid environment/strategy/service config
    ├── ProvisionError                 # Provisioner/transport call failed (retryable)
    ├── VerificationFailure            # Health or metric thresholds breached
    ├── ApprovalTimeout                # Approval gate unresolved in time (paused)
    ├── ApprovalRejected               # Approval gate rejected
    ├── PromotionCancelled             # Promotion cancelled by an operator
    ├── DegradedStateError             # Rollback itself failed
    ├── ImageNotFoundError             # Digest/tag unknown to the registry index
    ├── DigestMismatchError            # Pulled image digest differs from pushed one
    ├── EnvironmentLockedError         # Target environment is locked
    ├── DeploymentNotFoundError        # No deployment for (environment, service)
    ├── PromotionNotFoundError         # Unknown promotion id
    └── InvalidOutcomeTransitionError  # Concluding an already concluded record

Exit Codes:
    0 - Success
    1 - General error (ReleaseError)
    2 - Configuration error
    3 - Not found (image or deployment)
    4 - Environment locked
    5 - Provisioner unavailable
    6 - Verification failed
    7 - Degraded, manual intervention required

Example:
    >>> from shiplane.errors import ProvisionError
    >>> raise ProvisionError("create_instances", "quota exceeded")
    Traceback (most recent call last):
        ...
    ProvisionError: Provisioner call create_instances failed: quota exceeded
"""

from __future__ import annotations


class ReleaseError(Exception):
    """Base exception for all shiplane errors.

    Attributes:
        exit_code: CLI exit code for this error type (default: 1).
    """

    exit_code: int = 1


class ConfigurationError(ReleaseError):
    """Raised when environment, strategy or service configuration is invalid.

    Configuration errors are fatal: they are surfaced immediately, never
    retried, and always raised before any infrastructure is touched.

    Example:
        >>> raise ConfigurationError("unknown service for repository acme/web")
        Traceback (most recent call last):
            ...
        ConfigurationError: Invalid configuration: unknown service for repository acme/web
    """

    exit_code: int = 2

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid configuration: {reason}")


class ProvisionError(ReleaseError):
    """Raised when an infrastructure call fails.

    Retryable by default: the strategy engine retries these with bounded
    exponential backoff before treating them as a hard failure.

    Attributes:
        operation: Provisioner operation that failed.
        reason: Description of the failure.
        retryable: Whether the retry policy should try again.
        exit_code: CLI exit code (5).
    """

    exit_code: int = 5

    def __init__(self, operation: str, reason: str, *, retryable: bool = True) -> None:
        self.operation = operation
        self.reason = reason
        self.retryable = retryable
        super().__init__(f"Provisioner call {operation} failed: {reason}")


class VerificationFailure(ReleaseError):
    """Raised when health checks or canary metrics breach thresholds.

    Never retried; always triggers an automatic rollback.
    """

    exit_code: int = 6

    def __init__(self, deployment_id: str, reason: str) -> None:
        self.deployment_id = deployment_id
        self.reason = reason
        super().__init__(f"Verification failed for {deployment_id}: {reason}")


class ApprovalTimeout(ReleaseError):
    """Raised when an approval gate is not resolved within its timeout.

    The promotion is paused, not failed: the record stays pending and a
    later run of the same image resumes it.
    """

    def __init__(self, promotion_id: str, timeout_seconds: float) -> None:
        self.promotion_id = promotion_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Approval for promotion {promotion_id} not resolved "
            f"within {timeout_seconds:g}s"
        )


class ApprovalRejected(ReleaseError):
    """Raised when an approval gate is rejected."""

    def __init__(
        self,
        promotion_id: str,
        rejected_by: str,
        reason: str | None = None,
    ) -> None:
        self.promotion_id = promotion_id
        self.rejected_by = rejected_by
        self.reason = reason
        msg = f"rejected by {rejected_by}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class PromotionCancelled(ReleaseError):
    """Raised when an in-flight promotion is cancelled."""

    def __init__(self, promotion_id: str, stage: str) -> None:
        self.promotion_id = promotion_id
        self.stage = stage
        subject = f"Promotion {promotion_id}" if promotion_id else "Promotion"
        super().__init__(f"{subject} cancelled during {stage}")


class DegradedStateError(ReleaseError):
    """Raised when a rollback fails and the deployment needs an operator.

    Attributes:
        deployment_id: "<environment>/<service>" of the degraded deployment.
        reason: What failed during rollback.
        exit_code: CLI exit code (7).
    """

    exit_code: int = 7

    def __init__(self, deployment_id: str, reason: str) -> None:
        self.deployment_id = deployment_id
        self.reason = reason
        super().__init__(
            f"Deployment {deployment_id} is degraded and requires manual "
            f"intervention: {reason}"
        )


class ImageNotFoundError(ReleaseError):
    """Raised when an image reference is unknown to the registry index."""

    exit_code: int = 3

    def __init__(self, reference: str, available: list[str] | None = None) -> None:
        self.reference = reference
        self.available = available

        msg = f"Image not found: {reference}"
        if available:
            preview = ", ".join(available[:5])
            if len(available) > 5:
                preview += f" (and {len(available) - 5} more)"
            msg += f". Known tags: {preview}"
        super().__init__(msg)


class DigestMismatchError(ReleaseError):
    """Raised when the registry returns a different digest than announced."""

    def __init__(self, reference: str, expected: str, actual: str) -> None:
        self.reference = reference
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Digest mismatch for {reference}: expected {expected[:19]}..., "
            f"got {actual[:19]}..."
        )


class EnvironmentLockedError(ReleaseError):
    """Raised when promoting into a locked environment."""

    exit_code: int = 4

    def __init__(self, environment: str, locked_by: str, reason: str) -> None:
        self.environment = environment
        self.locked_by = locked_by
        self.reason = reason
        super().__init__(
            f"Environment '{environment}' is locked by {locked_by or 'unknown'}: {reason}"
        )


class DeploymentNotFoundError(ReleaseError):
    """Raised when no deployment exists for an (environment, service) pair."""

    exit_code: int = 3

    def __init__(self, environment: str, service: str) -> None:
        self.environment = environment
        self.service = service
        super().__init__(f"No deployment of '{service}' in environment '{environment}'")


class PromotionNotFoundError(ReleaseError):
    """Raised when a promotion id is unknown (or has no pending approval)."""

    exit_code: int = 3

    def __init__(self, promotion_id: str) -> None:
        self.promotion_id = promotion_id
        super().__init__(f"Promotion {promotion_id} not found")


class InvalidOutcomeTransitionError(ReleaseError):
    """Raised when a concluded promotion record would be changed again."""

    def __init__(self, promotion_id: str, current: str, requested: str) -> None:
        self.promotion_id = promotion_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Promotion {promotion_id} already concluded as '{current}', "
            f"cannot change to '{requested}'"
        )


__all__ = [
    "ApprovalRejected",
    "ApprovalTimeout",
    "ConfigurationError",
    "DegradedStateError",
    "DeploymentNotFoundError",
    "DigestMismatchError",
    "EnvironmentLockedError",
    "ImageNotFoundError",
    "InvalidOutcomeTransitionError",
    "PromotionCancelled",
    "PromotionNotFoundError",
    "ProvisionError",
    "ReleaseError",
    "VerificationFailure",
]
