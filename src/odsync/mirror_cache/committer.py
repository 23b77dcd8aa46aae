"""Publishing fetched bytes as cache objects."""

from __future__ import annotations

import asyncio
import hashlib
import os
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterable, BinaryIO, Optional

import structlog

from .cancellation import CancellationToken
from .errors import CommitFailure, LengthMismatchError
from .paths import EntryPaths


LOGGER = structlog.get_logger("odsync.mirror_cache.committer")


@dataclass(frozen=True, slots=True)
class CommitResult:
    path: Path
    digest: str
    size: int


def _sync_and_close(handle: BinaryIO) -> None:
    try:
        handle.flush()
        os.fsync(handle.fileno())
    finally:
        handle.close()


class AtomicCommitter:
    """Streams a body into a temp artifact and renames it into place.

    The temp file is fsynced before the rename, so a crash leaves either an
    orphaned temp artifact (the entry reads as INCOMPLETE) or a complete
    object. The final path never holds partially written bytes. On every
    failure the temp artifact is deleted before the error is raised.
    """

    async def commit(
        self,
        paths: EntryPaths,
        chunks: AsyncIterable[bytes],
        expected_length: Optional[int] = None,
        token: Optional[CancellationToken] = None,
    ) -> CommitResult:
        try:
            await asyncio.to_thread(paths.object_path.parent.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            raise CommitFailure(f"mkdir error for {paths.key}: {exc}") from exc

        temp_path = paths.new_temp_path()
        try:
            handle: BinaryIO = await asyncio.to_thread(temp_path.open, "xb")
        except OSError as exc:
            raise CommitFailure(f"create temp file error for {paths.key}: {exc}") from exc

        hasher = hashlib.sha256()
        written = 0
        sidecar_written = False
        published = False
        try:
            try:
                async for chunk in chunks:
                    if token is not None:
                        token.raise_if_cancelled()
                    await asyncio.to_thread(handle.write, chunk)
                    hasher.update(chunk)
                    written += len(chunk)
                if expected_length is not None and written != expected_length:
                    raise LengthMismatchError(expected_length, written)
                if token is not None:
                    token.raise_if_cancelled()
            except BaseException:
                handle.close()
                raise
            await asyncio.to_thread(_sync_and_close, handle)

            digest = hasher.hexdigest()
            sidecar_written = await self._write_sidecar(paths, digest)
            if token is not None:
                token.raise_if_cancelled()
            await asyncio.to_thread(os.replace, temp_path, paths.object_path)
            published = True
        except OSError as exc:
            raise CommitFailure(f"commit error for {paths.key}: {exc}") from exc
        finally:
            if not published:
                self._discard(paths, temp_path, sidecar_written)

        LOGGER.debug("commit_published", key=paths.key, bytes=written, sha256=digest[:16])
        return CommitResult(path=paths.object_path, digest=digest, size=written)

    @staticmethod
    async def _write_sidecar(paths: EntryPaths, digest: str) -> bool:
        try:
            await asyncio.to_thread(paths.sidecar_path.write_text, digest, "ascii")
        except OSError as exc:
            LOGGER.warning("sidecar_write_failed", key=paths.key, error=str(exc))
            return False
        return True

    @staticmethod
    def _discard(paths: EntryPaths, temp_path: Path, sidecar_written: bool) -> None:
        targets = [temp_path, paths.sidecar_path] if sidecar_written else [temp_path]
        for path in targets:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                LOGGER.error("temp_cleanup_failed", key=paths.key, path=str(path), error=str(exc))
