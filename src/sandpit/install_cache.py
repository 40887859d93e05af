"""Install cache – skip redundant package installs.

- Hashes the merged ``dependencies`` + ``devDependencies`` map (sorted keys)
  so that reordering entries or editing unrelated fields (scripts,
  description) does **not** force a reinstall.
- An install is skipped only when the stored hash matches **and** the
  install-artifacts directory (``node_modules``) is still in the sandbox.
- After a successful install the generated lockfile is kept in a durable
  store and written back before the next install to speed up resolution.

The cache uses one fixed key, so it describes a single project at a time.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional, Sequence

from .config import DEFAULT_LOCKFILE_NAMES
from .errors import CacheStoreError
from .resolver import Manifest
from .sandbox import Sandbox
from .sandbox_helpers import OutputSink, _emit

logger = logging.getLogger("sandpit.install")


def deps_hash(manifest: Manifest) -> str:
    """Stable fingerprint of the declared dependency map."""
    raw = json.dumps(_sorted_deps(manifest.merged_dependencies()), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(raw.encode()).hexdigest()[:16]


@dataclass
class CacheRecord:
    """Result of the last successful install."""

    dependency_hash: str
    lockfile_blob: Optional[str] = None
    lockfile_name: Optional[str] = None
    saved_at: float = field(default_factory=time.time)

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "CacheRecord":
        try:
            data = json.loads(raw)
            if not isinstance(data, dict) or not isinstance(data.get("dependency_hash"), str):
                raise ValueError("missing dependency_hash")
            blob = data.get("lockfile_blob")
            if blob is not None and not isinstance(blob, str):
                raise ValueError("lockfile_blob must be text")
            return cls(
                dependency_hash=data["dependency_hash"],
                lockfile_blob=blob,
                lockfile_name=data.get("lockfile_name"),
                saved_at=float(data.get("saved_at") or 0.0),
            )
        except (TypeError, ValueError) as e:
            raise CacheStoreError(f"corrupt cache record: {e}") from e


# ------------------------------------------------------------------
# Durable stores
# ------------------------------------------------------------------

class CacheStore(ABC):
    """String key/value store that survives restarts."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def put(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...


class MemoryCacheStore(CacheStore):
    def __init__(self) -> None:
        self.data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def put(self, key: str, value: str) -> None:
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)


class FileCacheStore(CacheStore):
    """All keys in one JSON document, replaced atomically on every write.

    One file corresponds to one origin; give each workbench its own file to
    keep their caches apart.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = Lock()

    def _load(self) -> Dict[str, str]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise CacheStoreError(f"cache store unavailable: {e}") from e
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise CacheStoreError(f"cache store corrupt: {e}") from e
        if not isinstance(data, dict):
            raise CacheStoreError("cache store corrupt: expected an object")
        return data

    def _dump(self, data: Dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".cache-", suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp, self.path)
        except OSError as e:
            raise CacheStoreError(f"cache store unavailable: {e}") from e

    def _get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._load().get(key)
        return value if isinstance(value, str) else None

    def _put(self, key: str, value: str) -> None:
        with self._lock:
            try:
                data = self._load()
            except CacheStoreError:
                logger.warning("Replacing corrupt cache store %s", self.path)
                data = {}
            data[key] = value
            self._dump(data)

    def _delete(self, key: str) -> None:
        with self._lock:
            try:
                data = self._load()
            except CacheStoreError:
                data = {}
            if data.pop(key, None) is not None:
                self._dump(data)

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.get_running_loop().run_in_executor(None, self._get, key)

    async def put(self, key: str, value: str) -> None:
        await asyncio.get_running_loop().run_in_executor(None, self._put, key, value)

    async def delete(self, key: str) -> None:
        await asyncio.get_running_loop().run_in_executor(None, self._delete, key)


# ------------------------------------------------------------------
# Install cache
# ------------------------------------------------------------------

class InstallCache:
    """Decides whether an install is needed and keeps the resulting lockfile."""

    def __init__(
        self,
        store: CacheStore,
        sandbox: Sandbox,
        *,
        key: str = "sandpit:install-cache",
        artifacts_dir: str = "node_modules",
        lockfile_names: Sequence[str] = DEFAULT_LOCKFILE_NAMES,
    ) -> None:
        self.store = store
        self.sandbox = sandbox
        self.key = key
        self.artifacts_dir = artifacts_dir
        self.lockfile_names = tuple(lockfile_names)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def load_record(self) -> Optional[CacheRecord]:
        """Return the stored record; an unreadable store counts as a miss."""
        try:
            raw = await self.store.get(self.key)
            return CacheRecord.from_json(raw) if raw is not None else None
        except Exception as e:
            logger.warning("Install cache unavailable, treating as miss: %s", e)
            return None

    async def needs_install(self, manifest: Manifest) -> bool:
        record = await self.load_record()
        if record is None:
            logger.debug("No install cache record")
            return True
        current = deps_hash(manifest)
        if record.dependency_hash != current:
            logger.debug("Dependency hash changed: %s -> %s", record.dependency_hash, current)
            return True
        try:
            present = await self.sandbox.is_dir(self.artifacts_dir)
        except Exception as e:
            logger.warning("Could not check %s: %s", self.artifacts_dir, e)
            present = False
        if not present:
            logger.debug("%s missing from sandbox", self.artifacts_dir)
            return True
        return False

    async def restore_lockfile(self, on_output: Optional[OutputSink] = None) -> bool:
        """Write the cached lockfile into the sandbox; never raises."""
        record = await self.load_record()
        if record is None or record.lockfile_blob is None:
            return False
        name = record.lockfile_name or self.lockfile_names[0]
        try:
            await self.sandbox.write_file(name, record.lockfile_blob)
        except Exception as e:
            _emit(on_output, f"⚠️ Could not restore cached {name}: {e}", "WARNING", logger)
            return False
        _emit(on_output, f"⚡ Restored cached {name}", "INFO", logger)
        return True

    async def read_lockfile(self) -> tuple[Optional[str], Optional[str]]:
        """Return ``(name, contents)`` of the first lockfile present."""
        for name in self.lockfile_names:
            try:
                return name, await self.sandbox.read_file(name)
            except FileNotFoundError:
                continue
            except Exception as e:
                logger.warning("Could not read %s: %s", name, e)
                continue
        return None, None

    async def save(self, manifest: Manifest, on_output: Optional[OutputSink] = None) -> Optional[CacheRecord]:
        """Persist the new hash and lockfile after a successful install."""
        name, blob = await self.read_lockfile()
        record = CacheRecord(
            dependency_hash=deps_hash(manifest),
            lockfile_blob=blob,
            lockfile_name=name,
        )
        try:
            await self.store.put(self.key, record.to_json())
        except Exception as e:
            _emit(on_output, f"⚠️ Could not save install cache: {e}", "WARNING", logger)
            return None
        _emit(on_output, f"💾 Install cached ({record.dependency_hash})", "INFO", logger)
        return record

    async def invalidate(self) -> None:
        try:
            await self.store.delete(self.key)
        except Exception as e:
            logger.warning("Could not clear install cache: %s", e)

    async def stats(self) -> Dict[str, Any]:
        """Return diagnostic cache information."""
        record = await self.load_record()
        return {
            "key": self.key,
            "dependency_hash": record.dependency_hash if record else None,
            "lockfile_name": record.lockfile_name if record else None,
            "lockfile_bytes": len(record.lockfile_blob.encode()) if record and record.lockfile_blob else 0,
            "age_hours": round((time.time() - record.saved_at) / 3600, 1) if record else None,
        }


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _sorted_deps(deps: Any) -> dict:
    """Return a sorted copy of a deps dict, or empty dict."""
    if not isinstance(deps, dict):
        return {}
    return dict(sorted(deps.items()))
