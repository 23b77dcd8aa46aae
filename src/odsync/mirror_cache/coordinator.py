"""Cache-fill coordination: check, lock, re-check, fetch, commit, verify."""

from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge
from .cancellation import CancellationToken
from .committer import AtomicCommitter
from .errors import CommitFailure, InvalidCacheKey, UpstreamNotFound, UpstreamTransientError, VerifyFailure
from .integrity import EntryState, IntegrityValidator
from .locks import KeyLockManager, Permit
from .paths import EntryPaths, StorageLayout
from .upstream import UpstreamFetcher


LOGGER = structlog.get_logger("odsync.mirror_cache")
TRACER = trace.get_tracer("odsync.mirror_cache")

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("odsync_cache_requests_total", "Cache requests handled"))
HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("odsync_cache_hits_total", "Requests served from local storage"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("odsync_cache_misses_total", "Requests that needed a fill"))
STORED_COUNTER = GLOBAL_REGISTRY.register(Counter("odsync_cache_stored_total", "Objects fetched and committed"))
UPSTREAM_FETCH_COUNTER = GLOBAL_REGISTRY.register(
    Counter("odsync_cache_upstream_fetches_total", "Requests issued to the origin")
)
UPSTREAM_ERROR_COUNTER = GLOBAL_REGISTRY.register(
    Counter("odsync_cache_upstream_errors_total", "Fills that ended in an upstream or commit error")
)
VERIFY_FAILED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("odsync_cache_verify_failures_total", "Committed objects that failed verification")
)
BYTES_FETCHED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("odsync_cache_bytes_fetched_total", "Bytes committed from the origin")
)
INFLIGHT_FILLS_GAUGE = GLOBAL_REGISTRY.register(Gauge("odsync_cache_inflight_fills", "Fills currently running"))


class FillOutcome(str, Enum):
    HIT = "hit"
    STORED = "stored"
    NOT_FOUND = "not_found"
    UPSTREAM_ERROR = "upstream_error"
    VERIFY_FAILED = "verify_failed"
    INVALID_KEY = "invalid_key"


class CoordinatorState(str, Enum):
    CHECK_FAST = "check_fast"
    LOCKED_CHECK = "locked_check"
    FETCHING = "fetching"
    COMMITTING = "committing"
    VERIFYING = "verifying"


_STATUS_CODES = {
    FillOutcome.HIT: 200,
    FillOutcome.STORED: 200,
    FillOutcome.NOT_FOUND: 404,
    FillOutcome.UPSTREAM_ERROR: 502,
    FillOutcome.VERIFY_FAILED: 500,
    FillOutcome.INVALID_KEY: 400,
}

_MESSAGES = {
    FillOutcome.NOT_FOUND: "File not found on upstream",
    FillOutcome.UPSTREAM_ERROR: "Failed to fetch from upstream",
    FillOutcome.VERIFY_FAILED: "File verification failed",
    FillOutcome.INVALID_KEY: "Invalid cache key",
}


@dataclass(frozen=True, slots=True)
class CacheResult:
    """What the routing layer needs: a file to serve or a status and message."""

    outcome: FillOutcome
    key: str
    path: Optional[Path] = None
    message: Optional[str] = None
    detail: Optional[str] = None
    size: Optional[int] = None
    digest: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (FillOutcome.HIT, FillOutcome.STORED)

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self.outcome]

    @classmethod
    def failure(cls, outcome: FillOutcome, key: str, detail: Optional[str] = None) -> "CacheResult":
        return cls(outcome=outcome, key=key, message=_MESSAGES[outcome], detail=detail)


class CacheCoordinator:
    """Entry point for every cacheable request.

    A complete entry is served without taking a lock. On a miss the caller
    queues for the key's permit; once granted, the fill runs as its own task
    so that aborting the request does not abort the fill, and the permit is
    released by that task whatever the outcome. Waiters that queued behind a
    failed fill receive the same failure instead of contacting the origin
    again.
    """

    def __init__(
        self,
        layout: StorageLayout,
        fetcher: UpstreamFetcher,
        *,
        locks: Optional[KeyLockManager] = None,
        validator: Optional[IntegrityValidator] = None,
        committer: Optional[AtomicCommitter] = None,
        orphan_grace_seconds: float = 3600.0,
    ) -> None:
        self.layout = layout
        self.locks = locks if locks is not None else KeyLockManager()
        self._fetcher = fetcher
        self._validator = validator if validator is not None else IntegrityValidator()
        self._committer = committer if committer is not None else AtomicCommitter()
        self._orphan_grace_seconds = orphan_grace_seconds
        self._fills: dict[asyncio.Task, CancellationToken] = {}

    @property
    def inflight_fills(self) -> int:
        return len(self._fills)

    async def check(self, paths: EntryPaths) -> EntryState:
        return await asyncio.to_thread(self._validator.check, paths)

    async def handle_request(self, request_path: str) -> CacheResult:
        REQUEST_COUNTER.inc()
        try:
            paths = self.layout.resolve(request_path)
        except InvalidCacheKey as exc:
            LOGGER.info("invalid_cache_key", path=request_path, error=str(exc))
            return CacheResult.failure(FillOutcome.INVALID_KEY, request_path, detail=str(exc))

        with TRACER.start_as_current_span("mirror_cache.request", attributes={"odsync.cache_key": paths.key}) as span:
            if await self.check(paths) is EntryState.COMPLETE:
                HIT_COUNTER.inc()
                LOGGER.info("cache_hit", key=paths.key)
                span.set_attribute("odsync.outcome", FillOutcome.HIT.value)
                return CacheResult(outcome=FillOutcome.HIT, key=paths.key, path=paths.object_path)

            MISS_COUNTER.inc()
            LOGGER.info("cache_miss", key=paths.key)
            permit = await self.locks.acquire(paths.key)
            token = CancellationToken()
            fill = asyncio.create_task(self._fill(paths, permit, token), name=f"odsync-fill:{paths.key}")
            self._fills[fill] = token
            fill.add_done_callback(functools.partial(self._fill_done, permit))
            result = await asyncio.shield(fill)
            span.set_attribute("odsync.outcome", result.outcome.value)
            return result

    async def aclose(self, grace_seconds: float = 5.0) -> None:
        """Cancel in-flight fills; used on shutdown."""
        if not self._fills:
            return
        tasks = list(self._fills)
        for token in self._fills.values():
            token.cancel("service shutting down")
        _, pending = await asyncio.wait(tasks, timeout=grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)

    def _fill_done(self, permit: Permit, task: asyncio.Task) -> None:
        self._fills.pop(task, None)
        if task.cancelled():
            # A task cancelled before its first step never runs _fill's finally.
            if not permit.released:
                permit.release()
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("fill_crashed", task=task.get_name(), error=repr(exc))

    async def _fill(self, paths: EntryPaths, permit: Permit, token: CancellationToken) -> CacheResult:
        INFLIGHT_FILLS_GAUGE.inc()
        try:
            with TRACER.start_as_current_span("mirror_cache.fill", attributes={"odsync.cache_key": paths.key}) as span:
                if await self.check(paths) is EntryState.COMPLETE:
                    HIT_COUNTER.inc()
                    LOGGER.info("cache_hit_after_wait", key=paths.key)
                    return CacheResult(outcome=FillOutcome.HIT, key=paths.key, path=paths.object_path)

                inherited = permit.inherited
                if isinstance(inherited, CacheResult) and not inherited.ok:
                    LOGGER.info("fill_failure_shared", key=paths.key, outcome=inherited.outcome.value)
                    return inherited

                result = await self._fetch_and_commit(paths, token)
                permit.publish(result)
                span.set_attribute("odsync.outcome", result.outcome.value)
                if result.size is not None:
                    span.set_attribute("odsync.bytes", result.size)
                return result
        finally:
            permit.release()
            INFLIGHT_FILLS_GAUGE.dec()

    async def _verify(self, paths: EntryPaths) -> None:
        if await self.check(paths) is not EntryState.COMPLETE:
            raise VerifyFailure(f"post-commit check failed for {paths.key}")

    async def _fetch_and_commit(self, paths: EntryPaths, token: CancellationToken) -> CacheResult:
        await asyncio.to_thread(self._validator.reclaim_orphans, paths, self._orphan_grace_seconds)

        state = CoordinatorState.FETCHING
        UPSTREAM_FETCH_COUNTER.inc()
        try:
            async with self._fetcher.fetch(paths.key, token) as upstream:
                state = CoordinatorState.COMMITTING
                committed = await self._committer.commit(
                    paths,
                    upstream.chunks(token),
                    upstream.expected_length,
                    token,
                )
        except UpstreamNotFound as exc:
            LOGGER.info("upstream_not_found", key=paths.key, error=str(exc))
            return CacheResult.failure(FillOutcome.NOT_FOUND, paths.key, detail=str(exc))
        except UpstreamTransientError as exc:
            UPSTREAM_ERROR_COUNTER.inc()
            LOGGER.warning("upstream_error", key=paths.key, state=state.value, error=str(exc))
            return CacheResult.failure(FillOutcome.UPSTREAM_ERROR, paths.key, detail=str(exc))
        except CommitFailure as exc:
            UPSTREAM_ERROR_COUNTER.inc()
            LOGGER.error("commit_failed", key=paths.key, state=state.value, error=str(exc))
            return CacheResult.failure(FillOutcome.UPSTREAM_ERROR, paths.key, detail=str(exc))

        state = CoordinatorState.VERIFYING
        try:
            await self._verify(paths)
        except VerifyFailure as exc:
            VERIFY_FAILED_COUNTER.inc()
            LOGGER.error("verification_failed", key=paths.key, state=state.value, sha256=committed.digest)
            return CacheResult.failure(FillOutcome.VERIFY_FAILED, paths.key, detail=str(exc))

        STORED_COUNTER.inc()
        BYTES_FETCHED_COUNTER.inc(committed.size)
        LOGGER.info("cache_stored", key=paths.key, bytes=committed.size, sha256=committed.digest[:16])
        return CacheResult(
            outcome=FillOutcome.STORED,
            key=paths.key,
            path=committed.path,
            size=committed.size,
            digest=committed.digest,
        )
