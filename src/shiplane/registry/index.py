"""Artifact registry index.

Tracks the known image versions of every repository and the promotion
status of each digest per environment. Digests are the canonical identity
of an image; tags are mutable pointers, so pushing ``latest`` twice moves
the pointer while both digests stay known.

Example:
    >>> index = ArtifactRegistryIndex()
    >>> image = index.register("acme/web", "abc123", "sha256:" + "a" * 64)
    >>> index.resolve("acme/web", "abc123") == image
    True
    >>> index.mark(image.digest, "dev", PromotionStatus.PROMOTED)
    >>> index.status(image.digest)
    {'dev': <PromotionStatus.PROMOTED: 'promoted'>}
"""

from __future__ import annotations

import structlog

from shiplane.errors import DigestMismatchError, ImageNotFoundError
from shiplane.protocols import ImageRegistry
from shiplane.schemas.image import Image, PromotionStatus

logger = structlog.get_logger(__name__)

LATEST_TAG = "latest"


class ArtifactRegistryIndex:
    """In-process index of images, tags and promotion status.

    Attributes:
        registry: Optional image registry used to verify and publish images.
    """

    def __init__(self, registry: ImageRegistry | None = None) -> None:
        self.registry = registry
        self._images: dict[str, Image] = {}
        # repository -> digests, oldest first
        self._versions: dict[str, list[str]] = {}
        # repository -> tag -> digest
        self._tags: dict[str, dict[str, str]] = {}
        # digest -> environment -> status
        self._status: dict[str, dict[str, PromotionStatus]] = {}

    def register(self, repository: str, tag: str, digest: str) -> Image:
        """Register an image and point ``tag`` at it.

        Registering a known digest again only moves the tag pointer; the
        original Image (and its created_at) is kept.

        Args:
            repository: Image repository.
            tag: Tag the image was pushed with.
            digest: Content digest.

        Returns:
            The registered Image.
        """
        image = self._images.get(digest)
        if image is None:
            image = Image(repository=repository, tag=tag, digest=digest)
            self._images[digest] = image
            self._versions.setdefault(repository, []).append(digest)
            self._status[digest] = {}
            logger.info(
                "image_registered",
                repository=repository,
                tag=tag,
                digest=image.short_digest,
            )

        previous = self._tags.setdefault(repository, {}).get(tag)
        self._tags[repository][tag] = digest
        if previous is not None and previous != digest:
            logger.debug(
                "tag_moved",
                repository=repository,
                tag=tag,
                previous=previous,
                digest=digest,
            )
        return image

    async def register_verified(self, repository: str, tag: str, digest: str) -> Image:
        """Register an image after checking the registry resolves ``tag`` to ``digest``.

        Raises:
            DigestMismatchError: If the registry reports a different digest.
            ImageNotFoundError: If no registry is configured.
        """
        if self.registry is None:
            raise ImageNotFoundError(f"{repository}:{tag}")
        pulled = await self.registry.pull(repository, tag)
        if pulled.digest != digest:
            raise DigestMismatchError(f"{repository}:{tag}", digest, pulled.digest)
        return self.register(repository, tag, digest)

    async def publish(self, image: Image, commit_sha: str) -> Image:
        """Push a built image under its commit SHA and ``latest``, then register it.

        Args:
            image: Built image (its digest is recomputed by the registry).
            commit_sha: Source commit the image was built from.

        Returns:
            The registered Image, tagged with the commit SHA.

        Raises:
            ImageNotFoundError: If no registry is configured.
        """
        if self.registry is None:
            raise ImageNotFoundError(str(image))
        digest = await self.registry.push(image, [commit_sha, LATEST_TAG])
        registered = self.register(image.repository, commit_sha, digest)
        self.register(image.repository, LATEST_TAG, digest)
        return registered

    def resolve(self, repository: str, tag: str) -> Image:
        """Resolve a tag to the image it currently points at.

        Raises:
            ImageNotFoundError: If the tag is unknown.
        """
        tags = self._tags.get(repository, {})
        digest = tags.get(tag)
        if digest is None:
            raise ImageNotFoundError(f"{repository}:{tag}", available=sorted(tags))
        return self._images[digest]

    def get(self, digest: str) -> Image:
        """Look up an image by digest.

        Raises:
            ImageNotFoundError: If the digest is unknown.
        """
        image = self._images.get(digest)
        if image is None:
            raise ImageNotFoundError(digest)
        return image

    def tags(self, digest: str) -> list[str]:
        """Tags currently pointing at ``digest``."""
        image = self.get(digest)
        return sorted(
            tag for tag, target in self._tags.get(image.repository, {}).items() if target == digest
        )

    def versions(self, repository: str) -> list[Image]:
        """Known images of a repository, newest first."""
        return [self._images[d] for d in reversed(self._versions.get(repository, []))]

    def mark(self, digest: str, environment: str, status: PromotionStatus) -> None:
        """Record the promotion status of ``digest`` in ``environment``."""
        self.get(digest)
        self._status[digest][environment] = status

    def status(self, digest: str) -> dict[str, PromotionStatus]:
        """Promotion status of ``digest`` per environment."""
        self.get(digest)
        return dict(self._status[digest])

    def latest(self, repository: str, environment: str) -> Image | None:
        """Newest image of ``repository`` promoted into ``environment``."""
        for image in self.versions(repository):
            if self._status[image.digest].get(environment) == PromotionStatus.PROMOTED:
                return image
        return None


__all__ = ["LATEST_TAG", "ArtifactRegistryIndex"]
