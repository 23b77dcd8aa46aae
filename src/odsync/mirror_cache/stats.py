"""Aggregate statistics over the storage tree."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .paths import TEMP_MARKER


@dataclass(frozen=True, slots=True)
class StorageStats:
    cached_files: int
    total_bytes: int
    sidecars: int
    temp_artifacts: int

    @property
    def total_mb(self) -> int:
        return self.total_bytes // (1024 * 1024)


def collect_stats(root: Path, sidecar_suffix: str = ".sha256") -> StorageStats:
    """Walk ``root`` and count published objects.

    Sidecars and temp artifacts are tallied separately and excluded from the
    object count and byte total. Files that vanish mid-walk are skipped.
    """
    cached_files = 0
    total_bytes = 0
    sidecars = 0
    temps = 0
    if not root.exists():
        return StorageStats(0, 0, 0, 0)
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            if TEMP_MARKER in name:
                temps += 1
                continue
            if name.endswith(sidecar_suffix):
                sidecars += 1
                continue
            try:
                size = os.stat(os.path.join(dirpath, name)).st_size
            except OSError:
                continue
            cached_files += 1
            total_bytes += size
    return StorageStats(cached_files, total_bytes, sidecars, temps)
