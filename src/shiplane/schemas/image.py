"""Image schemas for the artifact registry index.

Key Components:
    Image: An immutable, content-addressed container image
    PromotionStatus: Per-environment promotion status of an image digest
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

SHA256_DIGEST_PATTERN = r"^sha256:[a-f0-9]{64}$"
"""Regex pattern for valid SHA256 digest format (sha256:<64 hex chars>)."""


class PromotionStatus(str, Enum):
    """Promotion status of an image digest in one environment.

    Attributes:
        PENDING: A promotion into the environment is in progress.
        PROMOTED: The image is (or was) committed in the environment.
        ROLLED_BACK: The image was rolled back out of the environment.
        FAILED: Promotion failed (rejected, cancelled or degraded).
    """

    PENDING = "pending"
    PROMOTED = "promoted"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class Image(BaseModel):
    """A built container image.

    Immutable once pushed. The digest is the canonical identity; the tag
    recorded here is the tag the image was announced with, while the
    registry index keeps tags as mutable pointers to digests.

    Attributes:
        repository: Image repository (e.g., "acme/web").
        tag: Tag the image was pushed with (e.g., "abc123" or "latest").
        digest: Content digest (sha256:<64 hex chars>).
        created_at: When the image was registered (UTC).

    Examples:
        >>> image = Image(repository="acme/web", tag="abc123", digest="sha256:" + "a" * 64)
        >>> image.reference
        'acme/web@sha256:aaaaaaaaaaaa'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    repository: str = Field(
        ...,
        min_length=1,
        description="Image repository",
    )
    tag: str = Field(
        ...,
        min_length=1,
        max_length=128,
        description="Tag the image was announced with",
    )
    digest: str = Field(
        ...,
        pattern=SHA256_DIGEST_PATTERN,
        description="Content digest of the image",
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Registration timestamp (UTC)",
    )

    @property
    def short_digest(self) -> str:
        """First 12 hex characters of the digest."""
        return self.digest.split(":", 1)[1][:12]

    @property
    def reference(self) -> str:
        """Human-readable reference, repository@sha256:<12 chars>."""
        return f"{self.repository}@sha256:{self.short_digest}"

    def __str__(self) -> str:
        return f"{self.repository}:{self.tag}"
