"""Sandpit – dependency-aware install and process layer for sandboxed project workbenches"""

__version__ = "0.1.0"

from .config import CommandConfig, WorkbenchConfig, load_config
from .errors import CacheStoreError, ConfigError, ManifestError, SandpitError, SpawnError
from .error_context import ErrorCategory, ErrorTracker, ParsedError, TerminalErrorParser
from .file_store import DirectoryFileStore, FileStore, MemoryFileStore
from .install_cache import (
    CacheRecord,
    CacheStore,
    FileCacheStore,
    InstallCache,
    MemoryCacheStore,
    deps_hash,
)
from .orchestrator import InstallPhase, Orchestrator, PrepareResult, WorkbenchContext
from .resolver import DependencyResolver, DependencySync, Manifest, sync_dependencies
from .sandbox import LocalSandbox, Sandbox, SandboxProcess, build_file_tree
from .scanner import extract_package_name, scan_files, scan_source
from .shell import ShellSession
from .supervisor import (
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_TIMEOUT,
    CommandExecution,
    ProcessHandle,
    ProcessSupervisor,
)

__all__ = [
    "CommandConfig",
    "WorkbenchConfig",
    "load_config",
    "SandpitError",
    "ManifestError",
    "CacheStoreError",
    "SpawnError",
    "ConfigError",
    "ErrorCategory",
    "ErrorTracker",
    "ParsedError",
    "TerminalErrorParser",
    "FileStore",
    "MemoryFileStore",
    "DirectoryFileStore",
    "CacheRecord",
    "CacheStore",
    "FileCacheStore",
    "MemoryCacheStore",
    "InstallCache",
    "deps_hash",
    "InstallPhase",
    "Orchestrator",
    "PrepareResult",
    "WorkbenchContext",
    "DependencyResolver",
    "DependencySync",
    "Manifest",
    "sync_dependencies",
    "Sandbox",
    "SandboxProcess",
    "LocalSandbox",
    "build_file_tree",
    "extract_package_name",
    "scan_files",
    "scan_source",
    "ShellSession",
    "EXIT_OK",
    "EXIT_FAILURE",
    "EXIT_TIMEOUT",
    "CommandExecution",
    "ProcessHandle",
    "ProcessSupervisor",
    "__version__",
]
