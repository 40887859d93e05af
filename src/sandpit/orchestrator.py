"""
Orchestrator – the "prepare and run project" flow.

    IDLE → SCANNING → CACHE_CHECK → SKIP ───────────────────────────→ DONE
                                  └→ RESTORE_LOCKFILE → INSTALLING → CACHING → DONE
    SCANNING ─(malformed manifest)→ INSTALLING → DONE (uncached)
    SCANNING / INSTALLING → ERROR

Everything the flow touches lives on a :class:`WorkbenchContext`; build one
per workbench and pass it around.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .config import WorkbenchConfig
from .file_store import DirectoryFileStore, FileStore
from .install_cache import CacheStore, FileCacheStore, InstallCache
from .resolver import DependencyResolver, Manifest, sync_dependencies
from .sandbox import LocalSandbox, Sandbox
from .sandbox_helpers import OutputSink, _beat_every_s, _emit, _heartbeat
from .shell import ShellSession
from .supervisor import EXIT_FAILURE, EXIT_OK, EXIT_TIMEOUT, ProcessHandle, ProcessSupervisor

logger = logging.getLogger("sandpit.orchestrator")


class InstallPhase(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CACHE_CHECK = "cache_check"
    SKIP = "skip"
    RESTORE_LOCKFILE = "restore_lockfile"
    INSTALLING = "installing"
    CACHING = "caching"
    DONE = "done"
    ERROR = "error"


@dataclass
class PrepareResult:
    phase: InstallPhase
    ok: bool
    added: list[str] = field(default_factory=list)
    exit_code: Optional[int] = None
    skipped: bool = False
    message: str = ""
    phases: list[InstallPhase] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "ok": self.ok,
            "added": list(self.added),
            "exit_code": self.exit_code,
            "skipped": self.skipped,
            "message": self.message,
            "phases": [p.value for p in self.phases],
        }


@dataclass
class WorkbenchContext:
    """Sandbox, stores, configuration and process helpers of one workbench."""
    sandbox: Sandbox
    file_store: FileStore
    cache_store: CacheStore
    config: WorkbenchConfig = field(default_factory=WorkbenchConfig)
    supervisor: Optional[ProcessSupervisor] = None
    shell: Optional[ShellSession] = None

    def __post_init__(self) -> None:
        if self.supervisor is None:
            self.supervisor = ProcessSupervisor(self.sandbox, env=self.config.to_env())
        if self.shell is None:
            self.shell = ShellSession(self.sandbox, self.config)

    @property
    def install_cache(self) -> InstallCache:
        return InstallCache(
            self.cache_store,
            self.sandbox,
            key=self.config.cache_key,
            artifacts_dir=self.config.artifacts_dir,
            lockfile_names=self.config.lockfile_names,
        )

    @classmethod
    def local(
        cls,
        project_dir: str | Path,
        config: Optional[WorkbenchConfig] = None,
        cache_store: Optional[CacheStore] = None,
    ) -> "WorkbenchContext":
        """Context for a project directory on this host."""
        config = config or WorkbenchConfig()
        root = Path(project_dir)
        store = cache_store or FileCacheStore(Path(config.cache_dir).expanduser() / "install-cache.json")
        return cls(
            sandbox=LocalSandbox(root),
            file_store=DirectoryFileStore(root),
            cache_store=store,
            config=config,
        )


class _Flight:
    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.task: Optional[asyncio.Task] = None


# In-flight prepare runs per (cache store, cache key).
_flights: "weakref.WeakKeyDictionary[CacheStore, dict[str, _Flight]]" = weakref.WeakKeyDictionary()


def _flight_for(store: CacheStore, key: str) -> _Flight:
    per_store = _flights.setdefault(store, {})
    flight = per_store.get(key)
    if flight is None:
        flight = per_store[key] = _Flight()
    return flight


class Orchestrator:
    """Prepares a project for running and launches its start command."""

    def __init__(self, context: WorkbenchContext, resolver: Optional[DependencyResolver] = None):
        self.context = context
        self.resolver = resolver or DependencyResolver(extra=context.config.extra_allowlist)
        self.phase = InstallPhase.IDLE
        self.last_result: Optional[PrepareResult] = None
        self.server: Optional[ProcessHandle] = None

    @property
    def config(self) -> WorkbenchConfig:
        return self.context.config

    async def prepare(self, on_output: Optional[OutputSink] = None) -> PrepareResult:
        """Scan, resolve and install as needed; never raises.

        Calls overlapping with a run on the same cache store and key wait for
        that run and receive its result.
        """
        flight = _flight_for(self.context.cache_store, self.config.cache_key)
        running = flight.task
        if running is not None and not running.done():
            _emit(on_output, "⏳ Dependency install already in progress, waiting", "INFO", logger)
            result = await asyncio.shield(running)
        else:
            task = asyncio.ensure_future(self._prepare_locked(flight, on_output))
            flight.task = task
            result = await asyncio.shield(task)
        self.last_result = result
        self.phase = result.phase
        return result

    async def start(self, on_output: Optional[OutputSink] = None) -> ProcessHandle:
        """Launch the start command without a deadline."""
        start = self.config.start
        _emit(on_output, f"🚀 Starting: {start.display()}", "INFO", logger)
        self.server = await self.context.supervisor.start(start.command, start.args, on_output)
        return self.server

    async def prepare_and_start(
        self, on_output: Optional[OutputSink] = None
    ) -> tuple[PrepareResult, Optional[ProcessHandle]]:
        result = await self.prepare(on_output)
        if not result.ok:
            return result, None
        return result, await self.start(on_output)

    async def stop(self) -> Optional[int]:
        """Stop the process launched by :meth:`start`; returns its exit code."""
        if self.server is None:
            return None
        self.server.cancel()
        return await self.server.wait()

    def status(self) -> dict[str, Any]:
        server = self.server
        return {
            "phase": self.phase.value,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "server": None if server is None else {
                "command": server.execution.display,
                "running": not server.done,
                "exit_code": server.exit_code,
            },
            "ready_urls": {str(port): url for port, url in self.context.sandbox.ready_urls.items()},
        }

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _prepare_locked(self, flight: _Flight, on_output: Optional[OutputSink]) -> PrepareResult:
        async with flight.lock:
            try:
                return await self._prepare(on_output)
            except Exception as e:
                logger.exception("prepare failed")
                _emit(on_output, f"❌ Prepare failed: {e}", "ERROR", logger)
                return PrepareResult(
                    phase=InstallPhase.ERROR,
                    ok=False,
                    exit_code=EXIT_FAILURE,
                    message=str(e),
                    phases=[InstallPhase.ERROR],
                )

    async def _prepare(self, on_output: Optional[OutputSink]) -> PrepareResult:
        ctx = self.context
        phases: list[InstallPhase] = [InstallPhase.IDLE]

        def enter(phase: InstallPhase) -> None:
            phases.append(phase)
            self.phase = phase
            logger.debug("phase -> %s", phase.value)

        def finish(phase: InstallPhase, **kwargs: Any) -> PrepareResult:
            if phases[-1] is not phase:
                enter(phase)
            return PrepareResult(phase=phase, ok=phase is InstallPhase.DONE, phases=phases, **kwargs)

        enter(InstallPhase.SCANNING)
        try:
            files = await ctx.file_store.read_all()
            sync = await sync_dependencies(
                self.resolver,
                files,
                manifest_path=self.config.manifest_path,
                sinks=[ctx.sandbox, ctx.file_store],
                on_output=on_output,
            )
        except Exception as e:
            _emit(on_output, f"❌ Dependency scan failed: {e}", "ERROR", logger)
            return finish(InstallPhase.ERROR, exit_code=EXIT_FAILURE, message=str(e))

        if sync.manifest is None and not sync.error:
            msg = f"No {self.config.manifest_path}, nothing to install"
            _emit(on_output, f"ℹ️ {msg}", "INFO", logger)
            return finish(InstallPhase.DONE, skipped=True, exit_code=EXIT_OK, message=msg)
        manifest = sync.manifest

        cache = ctx.install_cache
        if manifest is not None:
            enter(InstallPhase.CACHE_CHECK)
            if not await cache.needs_install(manifest):
                enter(InstallPhase.SKIP)
                msg = "Dependencies unchanged (cached), skipping install"
                _emit(on_output, f"✅ {msg}", "INFO", logger)
                return finish(InstallPhase.DONE, added=sync.added, skipped=True, exit_code=EXIT_OK, message=msg)

            enter(InstallPhase.RESTORE_LOCKFILE)
            await cache.restore_lockfile(on_output)

        # manifest is None when it could not be parsed: install uncached, the package manager reports it.
        enter(InstallPhase.INSTALLING)
        code = await self._install(manifest, on_output)
        if code != EXIT_OK:
            if code == EXIT_TIMEOUT:
                msg = f"Install timed out after {self.config.install_timeout_ms}ms"
            else:
                msg = f"Install failed with exit code {code}"
            _emit(on_output, f"❌ {msg}", "ERROR", logger)
            return finish(InstallPhase.ERROR, added=sync.added, exit_code=code, message=msg)

        if manifest is None:
            return finish(InstallPhase.DONE, exit_code=EXIT_OK, message="Dependencies installed (uncached)")

        enter(InstallPhase.CACHING)
        await cache.save(manifest, on_output)
        return finish(InstallPhase.DONE, added=sync.added, exit_code=EXIT_OK, message="Dependencies installed")

    async def _install(self, manifest: Optional[Manifest], on_output: Optional[OutputSink]) -> int:
        install = self.config.install
        _emit(on_output, f"📦 Installing dependencies: {install.display()}", "INFO", logger)
        count = len(manifest.dependency_set()) if manifest is not None else "?"
        beat = asyncio.ensure_future(_heartbeat(
            on_output=on_output,
            message=f"Installing dependencies ({count} packages)",
            interval_s=float(_beat_every_s()),
        ))
        try:
            return await self.context.supervisor.run(
                install.command,
                install.args,
                on_output,
                timeout_ms=self.config.install_timeout_ms,
            )
        finally:
            beat.cancel()
            await asyncio.gather(beat, return_exceptions=True)
