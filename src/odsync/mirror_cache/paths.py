"""Mapping from request keys to on-disk locations."""

from __future__ import annotations

import os
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from .errors import InvalidCacheKey


TEMP_MARKER = ".tmp."


@dataclass(frozen=True, slots=True)
class EntryPaths:
    """Locations belonging to one cache entry.

    ``temp_prefix`` is the object path plus ``.tmp.``; every in-flight
    artifact for the entry starts with it.
    """

    key: str
    object_path: Path
    temp_prefix: str
    sidecar_path: Path

    def new_temp_path(self) -> Path:
        suffix = f"{os.getpid()}.{time.time_ns()}.{secrets.token_hex(4)}"
        return Path(self.temp_prefix + suffix)

    def temp_artifacts(self) -> Iterator[Path]:
        parent = self.object_path.parent
        marker = self.object_path.name + TEMP_MARKER
        try:
            with os.scandir(parent) as entries:
                for entry in entries:
                    if entry.name.startswith(marker):
                        yield Path(entry.path)
        except (FileNotFoundError, NotADirectoryError):
            return


def temp_owner_pid(temp_path: Path) -> Optional[int]:
    """Return the process id embedded in a temp artifact name, if any."""
    _, _, suffix = temp_path.name.rpartition(TEMP_MARKER)
    head, _, _ = suffix.partition(".")
    try:
        return int(head)
    except ValueError:
        return None


class StorageLayout:
    """Resolves cache keys to paths strictly inside ``root``.

    Keys are split on ``/``; empty and ``.`` segments are dropped, ``..``
    segments are rejected. The key itself is what the origin is asked for;
    on disk each segment goes through :meth:`storage_name`, so an object
    such as ``Leap.iso.sha256`` can sit next to the sidecar of ``Leap.iso``.
    """

    def __init__(self, root: Path, sidecar_suffix: str = ".sha256") -> None:
        self.root = Path(root).expanduser().resolve()
        self.sidecar_suffix = sidecar_suffix

    def normalize(self, key: str) -> str:
        if not key or "\x00" in key:
            raise InvalidCacheKey("Invalid cache key")
        segments: list[str] = []
        for segment in key.split("/"):
            if segment in ("", "."):
                continue
            if segment == "..":
                raise InvalidCacheKey("Path traversal is not allowed")
            segments.append(segment)
        if not segments:
            raise InvalidCacheKey("Empty cache key")
        return "/".join(segments)

    def storage_name(self, segment: str) -> str:
        """On-disk name for one key segment.

        ``%`` is always escaped. A segment that contains ``.tmp.`` or ends with
        the sidecar suffix also has every ``.`` escaped, so no stored name can
        be mistaken for a sidecar or temp artifact. The mapping is injective.
        """
        escaped = segment.replace("%", "%25")
        if TEMP_MARKER in segment or segment.endswith(self.sidecar_suffix):
            escaped = escaped.replace(".", "%2E")
        return escaped

    def resolve(self, key: str) -> EntryPaths:
        normalized = self.normalize(key)
        object_path = self.root.joinpath(*(self.storage_name(segment) for segment in normalized.split("/")))
        if not object_path.is_relative_to(self.root) or object_path == self.root:
            raise InvalidCacheKey("Invalid cache key")
        return EntryPaths(
            key=normalized,
            object_path=object_path,
            temp_prefix=str(object_path) + TEMP_MARKER,
            sidecar_path=object_path.with_name(object_path.name + self.sidecar_suffix),
        )
