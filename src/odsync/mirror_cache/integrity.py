"""Completeness and corruption checks for cache entries."""

from __future__ import annotations

import hashlib
import os
import time
from enum import Enum
from pathlib import Path
from typing import Optional

import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter
from .paths import EntryPaths, temp_owner_pid


LOGGER = structlog.get_logger("odsync.mirror_cache.integrity")

CORRUPTION_REPAIRED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("odsync_cache_corruption_repaired_total", "Entries removed after a checksum mismatch")
)
ORPHANS_REMOVED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("odsync_cache_orphan_temps_removed_total", "Stale temp artifacts reclaimed before a fill")
)


class EntryState(str, Enum):
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"


def sha256_file(path: Path, chunk_size: int = 1024 * 1024) -> str:
    hasher = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def read_sidecar(path: Path) -> Optional[str]:
    """Return the recorded digest, or None when no usable sidecar exists."""
    try:
        content = path.read_text(encoding="ascii")
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as exc:
        LOGGER.debug("sidecar_unreadable", path=str(path), error=str(exc))
        return None
    return content.strip().lower()


class IntegrityValidator:
    """Classifies an entry as COMPLETE or INCOMPLETE.

    A sidecar digest is verified when present; an entry without one is
    trusted if it is structurally sound, so corruption of an object that
    never got a sidecar goes undetected. On mismatch the object and its
    sidecar are deleted and the entry reports INCOMPLETE, which makes the
    next request re-fetch it.
    """

    def __init__(self, chunk_size: int = 1024 * 1024) -> None:
        self._chunk_size = chunk_size

    def check(self, paths: EntryPaths) -> EntryState:
        try:
            info = paths.object_path.stat()
        except OSError:
            return EntryState.INCOMPLETE
        if paths.object_path.is_dir() or info.st_size == 0:
            return EntryState.INCOMPLETE

        if any(True for _ in paths.temp_artifacts()):
            return EntryState.INCOMPLETE

        expected = read_sidecar(paths.sidecar_path)
        if expected is None:
            return EntryState.COMPLETE

        try:
            actual = sha256_file(paths.object_path, self._chunk_size)
        except OSError as exc:
            LOGGER.warning("checksum_unreadable", key=paths.key, error=str(exc))
            return EntryState.INCOMPLETE

        if actual != expected:
            LOGGER.warning("checksum_mismatch", key=paths.key, expected=expected, actual=actual)
            self._discard(paths)
            CORRUPTION_REPAIRED_COUNTER.inc()
            return EntryState.INCOMPLETE
        return EntryState.COMPLETE

    def reclaim_orphans(self, paths: EntryPaths, grace_seconds: float) -> int:
        """Delete temp artifacts that cannot belong to a live fill.

        Only safe while holding the entry's fill permit: artifacts created by
        this process are then debris, and foreign ones are removed once older
        than ``grace_seconds``.
        """
        removed = 0
        pid = os.getpid()
        now = time.time()
        for temp_path in list(paths.temp_artifacts()):
            if temp_owner_pid(temp_path) != pid:
                try:
                    age = now - temp_path.stat().st_mtime
                except FileNotFoundError:
                    continue
                if age < grace_seconds:
                    continue
            try:
                temp_path.unlink(missing_ok=True)
            except OSError as exc:
                LOGGER.warning("orphan_temp_unremovable", key=paths.key, path=str(temp_path), error=str(exc))
                continue
            removed += 1
            LOGGER.info("orphan_temp_removed", key=paths.key, path=str(temp_path))
        if removed:
            ORPHANS_REMOVED_COUNTER.inc(removed)
        return removed

    @staticmethod
    def _discard(paths: EntryPaths) -> None:
        for path in (paths.object_path, paths.sidecar_path):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                LOGGER.error("corrupt_entry_unremovable", key=paths.key, path=str(path), error=str(exc))
