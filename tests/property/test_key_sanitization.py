"""Property-based tests for cache key mapping."""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest
from hypothesis import given, strategies as st

from odsync.mirror_cache.errors import InvalidCacheKey
from odsync.mirror_cache.paths import StorageLayout


@given(st.text(min_size=1, max_size=64, alphabet=st.characters(min_codepoint=33, max_codepoint=126)))
def test_resolved_paths_stay_inside_root(cache_key: str) -> None:
    with tempfile.TemporaryDirectory() as tmp_dir:
        layout = StorageLayout(Path(tmp_dir))
        try:
            paths = layout.resolve(cache_key)
        except InvalidCacheKey:
            return
        assert paths.object_path.is_relative_to(layout.root)
        assert paths.object_path != layout.root
        assert ".." not in paths.object_path.relative_to(layout.root).parts


@given(st.text(min_size=1, max_size=64))
def test_parent_escape_always_rejected(cache_key: str) -> None:
    with tempfile.TemporaryDirectory() as tmp_dir:
        layout = StorageLayout(Path(tmp_dir))
        with pytest.raises(InvalidCacheKey):
            layout.resolve(f"../{cache_key}")


@given(st.lists(st.text(alphabet="abcxyz-_", min_size=1, max_size=8), min_size=1, max_size=5))
def test_resolution_is_deterministic(segments: list[str]) -> None:
    with tempfile.TemporaryDirectory() as tmp_dir:
        layout = StorageLayout(Path(tmp_dir))
        key = "/" + "/".join(segments)
        assert layout.resolve(key) == layout.resolve(key)
        assert layout.resolve(key).key == "/".join(segments)


@given(st.lists(st.text(alphabet="ab.%tmpsh256", min_size=1, max_size=12), min_size=2, max_size=2, unique=True))
def test_distinct_keys_never_share_storage(names: list[str]) -> None:
    with tempfile.TemporaryDirectory() as tmp_dir:
        layout = StorageLayout(Path(tmp_dir))
        try:
            first, second = (layout.resolve("/pool/" + name) for name in names)
        except InvalidCacheKey:
            return
        if first.key == second.key:
            return
        first_names = {first.object_path.name, first.sidecar_path.name}
        assert second.object_path.name not in first_names
        assert first.object_path.name not in {second.object_path.name, second.sidecar_path.name}
        assert not second.object_path.name.startswith(first.object_path.name + ".tmp.")
        assert not first.object_path.name.startswith(second.object_path.name + ".tmp.")
