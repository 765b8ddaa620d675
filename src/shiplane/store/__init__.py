"""Persistence of promotion records, deployments and environment locks."""

from __future__ import annotations

from shiplane.store.base import ReleaseStore
from shiplane.store.memory import InMemoryReleaseStore
from shiplane.store.repository import SqlReleaseStore

__all__ = ["InMemoryReleaseStore", "ReleaseStore", "SqlReleaseStore"]
