"""Artifact registry index."""

from __future__ import annotations

from shiplane.registry.index import LATEST_TAG, ArtifactRegistryIndex

__all__ = ["LATEST_TAG", "ArtifactRegistryIndex"]
