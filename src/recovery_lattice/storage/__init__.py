"""Run and artifact storage."""

from .artifacts import ArtifactRef, ArtifactStore, LocalStore
from .run_store import ArtifactRunStore, InMemoryRunStore, RunStore

__all__ = [
    "ArtifactRef",
    "ArtifactStore",
    "LocalStore",
    "RunStore",
    "InMemoryRunStore",
    "ArtifactRunStore",
]
