"""Dependency resolver – diff scanned imports against the project manifest."""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Protocol, Sequence

from .errors import ManifestError
from .nfo_config import logged
from .sandbox_helpers import OutputSink, _emit
from .scanner import scan_files

logger = logging.getLogger("sandpit.resolver")

LATEST = "latest"

# Packages that belong to the UI framework / dev server the workbench ships.
FRAMEWORK_PACKAGES = frozenset({
    "react",
    "react-dom",
    "vite",
    "@vitejs/plugin-react",
})

# Host-platform built-in modules.
PLATFORM_BUILTINS = frozenset({
    "assert", "buffer", "child_process", "cluster", "crypto", "dgram", "dns",
    "events", "fs", "http", "http2", "https", "module", "net", "os", "path",
    "perf_hooks", "process", "querystring", "readline", "stream",
    "string_decoder", "timers", "tls", "tty", "url", "util", "v8", "vm",
    "worker_threads", "zlib",
})

DEFAULT_ALLOWLIST = FRAMEWORK_PACKAGES | PLATFORM_BUILTINS


@dataclass
class Manifest:
    """A parsed ``package.json`` document.

    Only the two dependency groups are interpreted; every other field is kept
    as-is and written back unchanged.
    """
    data: dict[str, Any] = field(default_factory=dict)
    path: str = "package.json"

    @classmethod
    def from_json(cls, text: str, path: str = "package.json") -> "Manifest":
        try:
            data = json.loads(text)
        except (TypeError, ValueError) as e:
            raise ManifestError(path, str(e)) from e
        if not isinstance(data, dict):
            raise ManifestError(path, "top-level value must be an object")
        for group in ("dependencies", "devDependencies"):
            if group in data and not isinstance(data[group], dict):
                raise ManifestError(path, f"'{group}' must be an object")
        return cls(data=data, path=path)

    @property
    def dependencies(self) -> dict[str, str]:
        return self.data.get("dependencies") or {}

    @property
    def dev_dependencies(self) -> dict[str, str]:
        return self.data.get("devDependencies") or {}

    def dependency_set(self) -> frozenset[str]:
        return frozenset(self.dependencies) | frozenset(self.dev_dependencies)

    def merged_dependencies(self) -> dict[str, str]:
        """Both groups in one map; runtime entries win on a name clash."""
        merged = dict(self.dev_dependencies)
        merged.update(self.dependencies)
        return merged

    def add_runtime(self, name: str, version: str = LATEST) -> bool:
        if name in self.dependency_set():
            return False
        self.data.setdefault("dependencies", {})[name] = version
        return True

    def copy(self) -> "Manifest":
        return Manifest(data=copy.deepcopy(self.data), path=self.path)

    def to_json(self) -> str:
        return json.dumps(self.data, indent=2, ensure_ascii=False) + "\n"


@dataclass
class DependencySync:
    """Outcome of one scan: the authoritative manifest and what was added."""
    manifest: Optional[Manifest] = None
    added: list[str] = field(default_factory=list)
    error: Optional[str] = None


class ManifestSink(Protocol):
    """Anything the manifest text can be written to (sandbox, file store)."""

    async def write_file(self, path: str, content: str) -> None: ...


@logged
class DependencyResolver:
    """Finds imported packages the manifest does not declare and adds them.

    Missing packages are added to the runtime group with ``"latest"``; exact
    pinning is left to the package manager.
    """

    def __init__(self, allowlist: Optional[Iterable[str]] = None, extra: Iterable[str] = ()):
        base = DEFAULT_ALLOWLIST if allowlist is None else frozenset(allowlist)
        self.allowlist = base | frozenset(extra)

    def is_allowed(self, name: str) -> bool:
        return name in self.allowlist or name.startswith("node:")

    def find_missing(self, manifest: Manifest, imports: Iterable[str]) -> list[str]:
        existing = manifest.dependency_set()
        return sorted(
            name for name in set(imports)
            if name not in existing and not self.is_allowed(name)
        )

    def add_missing(self, manifest: Manifest, missing: Iterable[str]) -> list[str]:
        added = []
        for name in missing:
            if manifest.add_runtime(name, LATEST):
                added.append(name)
        return added

    def resolve(self, manifest: Manifest, files: Mapping[str, str]) -> list[str]:
        """Scan *files* and add every missing import to *manifest* in place."""
        return self.add_missing(manifest, self.find_missing(manifest, scan_files(files)))


async def sync_dependencies(
    resolver: DependencyResolver,
    files: Mapping[str, str],
    *,
    manifest_path: str = "package.json",
    sinks: Sequence[ManifestSink] = (),
    on_output: Optional[OutputSink] = None,
) -> DependencySync:
    """Add undeclared imports to the manifest and write it to every sink.

    The manifest text is produced once and written to *sinks* in order; a sink
    that fails is reported and the remaining sinks are still written.

    ``added`` lists the newly added package names; it is empty when there is
    no manifest, the manifest is malformed or nothing is missing. ``manifest``
    is ``None`` when there is no usable manifest; ``error`` is set when the
    manifest exists but could not be parsed.
    """
    text = files.get(manifest_path)
    if text is None:
        logger.debug("No %s, skipping dependency scan", manifest_path)
        return DependencySync()

    try:
        manifest = Manifest.from_json(text, path=manifest_path)
    except ManifestError as e:
        _emit(on_output, f"⚠️ {e} – skipping dependency scan", "WARNING", logger)
        return DependencySync(error=str(e))

    added = resolver.resolve(manifest, files)
    if not added:
        return DependencySync(manifest=manifest)

    _emit(on_output, f"📦 Auto-detected missing dependencies: {', '.join(added)}", "INFO", logger)
    content = manifest.to_json()
    for sink in sinks:
        try:
            await sink.write_file(manifest_path, content)
        except Exception as e:
            _emit(
                on_output,
                f"⚠️ Could not write {manifest_path} to {type(sink).__name__}: {e}",
                "WARNING",
                logger,
            )
    return DependencySync(manifest=manifest, added=added)
