"""Sandbox runtimes: the filesystem + process collaborator of the workbench."""

from .base import (
    FileSystemTree,
    Sandbox,
    SandboxProcess,
    ServerReadyListener,
    build_file_tree,
    iter_tree,
)
from .local import LocalProcess, LocalSandbox, PtyProcess

__all__ = [
    "FileSystemTree",
    "LocalProcess",
    "LocalSandbox",
    "PtyProcess",
    "Sandbox",
    "SandboxProcess",
    "ServerReadyListener",
    "build_file_tree",
    "iter_tree",
]
