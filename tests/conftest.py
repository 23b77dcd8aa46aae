from __future__ import annotations

from pathlib import Path

import pytest

from odsync.mirror_cache.coordinator import CacheCoordinator
from odsync.mirror_cache.paths import StorageLayout
from odsync.mirror_cache.upstream import UpstreamFetcher
from tests.utils.origin import ORIGIN, FakeOrigin


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def storage_root(tmp_path: Path) -> Path:
    root = tmp_path / "storage"
    root.mkdir()
    return root


@pytest.fixture
def layout(storage_root: Path) -> StorageLayout:
    return StorageLayout(storage_root)


@pytest.fixture
def origin() -> FakeOrigin:
    return FakeOrigin()


@pytest.fixture
def make_coordinator(layout: StorageLayout, origin: FakeOrigin):
    def _factory(chunk_size: int = 1024 * 1024, **kwargs) -> CacheCoordinator:
        fetcher = UpstreamFetcher(origin.client(), ORIGIN, chunk_size=chunk_size)
        return CacheCoordinator(layout, fetcher, **kwargs)

    return _factory
