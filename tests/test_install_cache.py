"""Tests for InstallCache – dependency hashing, skip decisions and lockfile reuse."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import FakeSandbox
from sandpit.errors import CacheStoreError
from sandpit.install_cache import (
    CacheRecord,
    CacheStore,
    FileCacheStore,
    InstallCache,
    MemoryCacheStore,
    deps_hash,
)
from sandpit.resolver import Manifest


def _manifest(deps=None, dev=None, **extra) -> Manifest:
    return Manifest(data={"name": "app", "dependencies": deps or {}, "devDependencies": dev or {}, **extra})


class _BrokenStore(CacheStore):
    async def get(self, key):
        raise CacheStoreError("store offline")

    async def put(self, key, value):
        raise CacheStoreError("store offline")

    async def delete(self, key):
        raise CacheStoreError("store offline")


# ===========================================================================
# Hash stability
# ===========================================================================

class TestDepsHash:
    def test_order_independent(self) -> None:
        a = _manifest({"react": "^18", "zustand": "latest"}, {"vite": "^5", "typescript": "^5"})
        b = _manifest({"zustand": "latest", "react": "^18"}, {"typescript": "^5", "vite": "^5"})
        assert deps_hash(a) == deps_hash(b)

    def test_unrelated_fields_ignored(self) -> None:
        a = _manifest({"a": "1"}, scripts={"dev": "vite"})
        b = _manifest({"a": "1"}, description="changed")
        assert deps_hash(a) == deps_hash(b)

    def test_version_change_changes_hash(self) -> None:
        assert deps_hash(_manifest({"a": "1"})) != deps_hash(_manifest({"a": "2"}))

    def test_moving_between_groups_keeps_hash(self) -> None:
        assert deps_hash(_manifest({"a": "1"})) == deps_hash(_manifest(dev={"a": "1"}))


# ===========================================================================
# needs_install
# ===========================================================================

class TestNeedsInstall:
    @pytest.mark.asyncio
    async def test_no_record(self) -> None:
        cache = InstallCache(MemoryCacheStore(), FakeSandbox())
        assert await cache.needs_install(_manifest({"a": "1"})) is True

    @pytest.mark.asyncio
    async def test_hash_match_and_artifacts_present(self) -> None:
        sandbox = FakeSandbox()
        sandbox.dirs.add("node_modules")
        store = MemoryCacheStore()
        m = _manifest({"a": "1"})
        await store.put("sandpit:install-cache", CacheRecord(dependency_hash=deps_hash(m)).to_json())
        cache = InstallCache(store, sandbox)
        assert await cache.needs_install(m) is False

    @pytest.mark.asyncio
    async def test_hash_match_but_artifacts_missing(self) -> None:
        store = MemoryCacheStore()
        m = _manifest({"a": "1"})
        await store.put("sandpit:install-cache", CacheRecord(dependency_hash=deps_hash(m)).to_json())
        cache = InstallCache(store, FakeSandbox())
        assert await cache.needs_install(m) is True

    @pytest.mark.asyncio
    async def test_hash_changed(self) -> None:
        sandbox = FakeSandbox()
        sandbox.dirs.add("node_modules")
        store = MemoryCacheStore()
        await store.put("sandpit:install-cache", CacheRecord(dependency_hash="0" * 16).to_json())
        cache = InstallCache(store, sandbox)
        assert await cache.needs_install(_manifest({"a": "1"})) is True

    @pytest.mark.asyncio
    async def test_broken_store_is_a_miss(self) -> None:
        sandbox = FakeSandbox()
        sandbox.dirs.add("node_modules")
        cache = InstallCache(_BrokenStore(), sandbox)
        assert await cache.needs_install(_manifest({"a": "1"})) is True

    @pytest.mark.asyncio
    async def test_corrupt_record_is_a_miss(self) -> None:
        store = MemoryCacheStore()
        store.data["sandpit:install-cache"] = "{not json"
        cache = InstallCache(store, FakeSandbox())
        assert await cache.load_record() is None
        assert await cache.needs_install(_manifest()) is True


# ===========================================================================
# Lockfile save / restore
# ===========================================================================

class TestLockfile:
    @pytest.mark.asyncio
    async def test_save_prefers_primary_lockfile(self) -> None:
        sandbox = FakeSandbox({"pnpm-lock.yaml": "lockfileVersion: '9.0'\n", "package-lock.json": "{}"})
        cache = InstallCache(MemoryCacheStore(), sandbox)
        record = await cache.save(_manifest({"a": "1"}))
        assert record is not None
        assert record.lockfile_name == "pnpm-lock.yaml"
        assert record.lockfile_blob == "lockfileVersion: '9.0'\n"

    @pytest.mark.asyncio
    async def test_save_falls_back_to_second_name(self) -> None:
        sandbox = FakeSandbox({"package-lock.json": '{"lockfileVersion": 3}'})
        cache = InstallCache(MemoryCacheStore(), sandbox)
        record = await cache.save(_manifest({"a": "1"}))
        assert record.lockfile_name == "package-lock.json"

    @pytest.mark.asyncio
    async def test_save_without_lockfile_keeps_hash(self) -> None:
        cache = InstallCache(MemoryCacheStore(), FakeSandbox())
        m = _manifest({"a": "1"})
        record = await cache.save(m)
        assert record.lockfile_blob is None
        assert (await cache.load_record()).dependency_hash == deps_hash(m)

    @pytest.mark.asyncio
    async def test_restore_is_byte_identical(self) -> None:
        blob = "lockfileVersion: '9.0'\r\n\npackages:\n  /zustand@4.5.0: {}\n  ü: ✓\n"
        store = MemoryCacheStore()
        first = FakeSandbox({"pnpm-lock.yaml": blob})
        await InstallCache(store, first).save(_manifest({"zustand": "latest"}))

        second = FakeSandbox()
        out: list[str] = []
        assert await InstallCache(store, second).restore_lockfile(out.append) is True
        assert second.files["pnpm-lock.yaml"] == blob
        assert any("Restored cached pnpm-lock.yaml" in line for line in out)

    @pytest.mark.asyncio
    async def test_restore_without_record(self) -> None:
        sandbox = FakeSandbox()
        assert await InstallCache(MemoryCacheStore(), sandbox).restore_lockfile() is False
        assert sandbox.files == {}

    @pytest.mark.asyncio
    async def test_restore_write_failure_never_raises(self) -> None:
        store = MemoryCacheStore()
        await InstallCache(store, FakeSandbox({"pnpm-lock.yaml": "x"})).save(_manifest())
        sandbox = FakeSandbox()
        sandbox.fail_writes = True
        out: list[str] = []
        assert await InstallCache(store, sandbox).restore_lockfile(out.append) is False
        assert any("Could not restore" in line for line in out)

    @pytest.mark.asyncio
    async def test_save_with_broken_store_reports(self) -> None:
        out: list[str] = []
        cache = InstallCache(_BrokenStore(), FakeSandbox())
        assert await cache.save(_manifest(), out.append) is None
        assert any("Could not save install cache" in line for line in out)

    @pytest.mark.asyncio
    async def test_invalidate_and_stats(self) -> None:
        store = MemoryCacheStore()
        cache = InstallCache(store, FakeSandbox({"pnpm-lock.yaml": "abc"}))
        await cache.save(_manifest({"a": "1"}))
        stats = await cache.stats()
        assert stats["lockfile_name"] == "pnpm-lock.yaml"
        assert stats["lockfile_bytes"] == 3
        await cache.invalidate()
        assert await cache.load_record() is None


# ===========================================================================
# FileCacheStore
# ===========================================================================

class TestFileCacheStore:
    @pytest.mark.asyncio
    async def test_survives_new_instance(self, tmp_path: Path) -> None:
        path = tmp_path / "cache" / "install-cache.json"
        await FileCacheStore(path).put("k", "v")
        assert await FileCacheStore(path).get("k") == "v"
        assert json.loads(path.read_text()) == {"k": "v"}

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        assert await FileCacheStore(tmp_path / "nope.json").get("k") is None

    @pytest.mark.asyncio
    async def test_corrupt_file_raises_and_put_replaces(self, tmp_path: Path) -> None:
        path = tmp_path / "install-cache.json"
        path.write_text("garbage")
        store = FileCacheStore(path)
        with pytest.raises(CacheStoreError):
            await store.get("k")
        await store.put("k", "v")
        assert await store.get("k") == "v"

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path: Path) -> None:
        store = FileCacheStore(tmp_path / "c.json")
        await store.put("a", "1")
        await store.put("b", "2")
        await store.delete("a")
        assert await store.get("a") is None
        assert await store.get("b") == "2"
