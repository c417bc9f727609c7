"""
Artifact storage for run records and audit traces.
Pluggable backends behind ``ArtifactStore``; the filesystem ``LocalStore`` is
the one shipped.
"""

import json
import re
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..observability.logging import get_logger

log = get_logger("lattice.storage")

_UNSAFE = re.compile(r"[^A-Za-z0-9_.\-]")


@dataclass
class ArtifactRef:
    """Reference to a stored artifact."""

    uri: str  # e.g. "file:///path/to/file"
    backend: str
    size_bytes: int | None = None
    content_type: str | None = None


def run_prefix(run_id: str) -> str:
    """Directory prefix holding a run's artifacts."""
    return f"runs/{_UNSAFE.sub('_', str(run_id))}"


class ArtifactStore(ABC):
    """Abstract interface for artifact storage."""

    @abstractmethod
    def save_text(self, relpath: str, text: str) -> ArtifactRef:
        """Save text content to storage."""

    @abstractmethod
    def save_json(self, relpath: str, obj: Any) -> ArtifactRef:
        """Save JSON object to storage."""

    @abstractmethod
    def read_text(self, relpath: str) -> str:
        """Read text content; raises FileNotFoundError when missing."""

    @abstractmethod
    def read_json(self, relpath: str) -> Any:
        """Read JSON object from storage."""

    @abstractmethod
    def exists(self, relpath: str) -> bool:
        pass

    @abstractmethod
    def delete(self, relpath: str) -> bool:
        pass

    @abstractmethod
    def list_artifacts(self, prefix: str = "") -> list[str]:
        """List all artifacts with optional prefix filter."""


class LocalStore(ArtifactStore):
    """Local filesystem artifact storage."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        log.info("Local artifact store initialized", root=str(self.root))

    def _path(self, relpath: str) -> Path:
        return self.root / relpath

    def save_text(self, relpath: str, text: str) -> ArtifactRef:
        path = self._path(relpath)
        path.parent.mkdir(parents=True, exist_ok=True)

        # write-then-rename so readers never see a half-written file
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(text, encoding="utf-8")
        tmp.replace(path)

        log.debug("Saved text artifact", path=relpath, size=len(text))

        return ArtifactRef(
            uri=f"file://{path.resolve()}",
            backend="local",
            size_bytes=len(text.encode("utf-8")),
            content_type="text/plain",
        )

    def save_json(self, relpath: str, obj: Any) -> ArtifactRef:
        text = json.dumps(obj, indent=2, default=str)
        ref = self.save_text(relpath, text)
        ref.content_type = "application/json"
        return ref

    def read_text(self, relpath: str) -> str:
        path = self._path(relpath)
        if not path.exists():
            raise FileNotFoundError(f"Artifact not found: {relpath}")

        return path.read_text(encoding="utf-8")

    def read_json(self, relpath: str) -> Any:
        return json.loads(self.read_text(relpath))

    def exists(self, relpath: str) -> bool:
        return self._path(relpath).exists()

    def delete(self, relpath: str) -> bool:
        path = self._path(relpath)
        if path.exists():
            if path.is_file():
                path.unlink()
            else:
                shutil.rmtree(path)
            log.debug("Deleted artifact", path=relpath)
            return True
        return False

    def list_artifacts(self, prefix: str = "") -> list[str]:
        artifacts = []
        search_path = self.root / prefix if prefix else self.root

        if search_path.exists():
            for path in search_path.rglob("*"):
                if path.is_file() and not path.name.endswith(".tmp"):
                    artifacts.append(path.relative_to(self.root).as_posix())

        return sorted(artifacts)


def save_trace_snapshot(store: ArtifactStore, run_id: str, snapshot: dict[str, Any]) -> ArtifactRef:
    """Save a run's audit trace next to its record."""
    return store.save_json(f"{run_prefix(run_id)}/trace.json", snapshot)
