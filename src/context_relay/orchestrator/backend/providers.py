"""Resource providers backed by a directory tree or a dict."""

from __future__ import annotations

import math
import os
import threading
from collections.abc import Iterator, Mapping
from pathlib import Path

CHARS_PER_UNIT = 4


def estimate_units_for_text(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_UNIT)


class FileSystemResourceProvider:
    """Resources are POSIX-style paths relative to ``root``."""

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()

    def read(self, resource_id: str) -> str:
        return self._path(resource_id).read_text("utf-8")

    def write(self, resource_id: str, content: str) -> None:
        path = self._path(resource_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.tmp")
        tmp_path.write_text(content, "utf-8")
        os.replace(tmp_path, path)

    def estimate_units(self, resource_id: str) -> int:
        return math.ceil(self._path(resource_id).stat().st_size / CHARS_PER_UNIT)

    def discover(self, *, exclude: tuple[Path, ...] = ()) -> list[str]:
        """List regular files under the root, skipping hidden entries."""

        excluded = {path.resolve() for path in exclude}
        return sorted(self._walk(excluded))

    def _walk(self, excluded: set[Path]) -> Iterator[str]:
        for path in self.root.rglob("*"):
            relative = path.relative_to(self.root)
            if any(part.startswith(".") for part in relative.parts):
                continue
            if not path.is_file() or path.resolve() in excluded:
                continue
            yield relative.as_posix()

    def _path(self, resource_id: str) -> Path:
        if not resource_id or Path(resource_id).is_absolute():
            raise ValueError(f"Resource id must be a relative path: {resource_id!r}")
        path = (self.root / resource_id).resolve()
        if not path.is_relative_to(self.root):
            raise ValueError(f"Resource id escapes the resource root: {resource_id!r}")
        return path


class InMemoryResourceProvider:
    """Dict-backed provider for tests and demos."""

    def __init__(self, resources: Mapping[str, str] | None = None) -> None:
        self._lock = threading.Lock()
        self._resources = dict(resources or {})
        self.writes: list[tuple[str, str]] = []

    def read(self, resource_id: str) -> str:
        with self._lock:
            try:
                return self._resources[resource_id]
            except KeyError as error:
                raise FileNotFoundError(f"Unknown resource: {resource_id}") from error

    def write(self, resource_id: str, content: str) -> None:
        with self._lock:
            self._resources[resource_id] = content
            self.writes.append((resource_id, content))

    def estimate_units(self, resource_id: str) -> int:
        return estimate_units_for_text(self.read(resource_id))
