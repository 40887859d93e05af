"""Base classes for sandbox runtimes."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, Iterator, Mapping, Optional, Union

logger = logging.getLogger("sandpit.sandbox")

# {"src": {"directory": {"main.ts": {"file": {"contents": "..."}}}}}
FileSystemTree = dict[str, dict[str, Any]]

ServerReadyListener = Callable[[int, str], None]


class SandboxProcess(ABC):
    """A process running inside a sandbox."""

    pid: Optional[int] = None

    @abstractmethod
    def output(self) -> AsyncIterator[str]:
        """Yield decoded output chunks in production order until EOF."""

    @abstractmethod
    async def write(self, data: str) -> None:
        """Write *data* verbatim to the process input."""

    @abstractmethod
    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""

    @abstractmethod
    def kill(self) -> None:
        """Terminate the process; safe to call after exit."""

    def resize(self, cols: int, rows: int) -> None:
        """Change the terminal size; no-op for processes without a terminal."""

    @property
    def returncode(self) -> Optional[int]:
        return None


class Sandbox(ABC):
    """Filesystem and process primitives of an isolated runtime."""

    def __init__(self) -> None:
        self._ready_listeners: list[ServerReadyListener] = []
        self._ready_ports: dict[int, str] = {}

    async def boot(self) -> "Sandbox":
        return self

    # ------------------------------------------------------------------
    # Filesystem
    # ------------------------------------------------------------------

    @abstractmethod
    async def read_file(self, path: str) -> str:
        """Return file contents; raise ``FileNotFoundError`` if absent."""

    @abstractmethod
    async def write_file(self, path: str, content: str) -> None:
        """Write a file, creating parent directories."""

    @abstractmethod
    async def mkdir(self, path: str) -> None:
        """Create a directory and its parents."""

    @abstractmethod
    async def remove(self, path: str) -> None:
        """Remove a file or a directory tree; missing paths are ignored."""

    @abstractmethod
    async def list_dir(self, path: str = ".") -> list[str]:
        """Return entry names of a directory."""

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """True if *path* exists."""

    async def is_dir(self, path: str) -> bool:
        try:
            await self.list_dir(path)
        except (FileNotFoundError, NotADirectoryError):
            return False
        return True

    async def rename(self, old_path: str, new_path: str) -> None:
        content = await self.read_file(old_path)
        await self.write_file(new_path, content)
        await self.remove(old_path)

    async def mount(self, tree: FileSystemTree, prefix: str = "") -> None:
        """Write every file of *tree* under *prefix*."""
        for path, node in iter_tree(tree, prefix):
            if node is None:
                await self.mkdir(path)
            else:
                await self.write_file(path, node)

    # ------------------------------------------------------------------
    # Processes
    # ------------------------------------------------------------------

    @abstractmethod
    async def spawn(
        self,
        command: str,
        args: Optional[list[str]] = None,
        *,
        terminal: Optional[tuple[int, int]] = None,
        env: Optional[dict[str, str]] = None,
    ) -> SandboxProcess:
        """Start *command*; *terminal* is ``(cols, rows)`` for an interactive pty."""

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def on_server_ready(self, listener: ServerReadyListener) -> Callable[[], None]:
        """Register *listener* for ``(port, url)``; returns an unsubscribe function."""
        self._ready_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._ready_listeners:
                self._ready_listeners.remove(listener)

        return unsubscribe

    @property
    def ready_urls(self) -> dict[int, str]:
        return dict(self._ready_ports)

    def _notify_server_ready(self, port: int, url: str) -> None:
        if self._ready_ports.get(port) == url:
            return
        self._ready_ports[port] = url
        logger.info("Server ready: %s %s", port, url)
        for listener in list(self._ready_listeners):
            try:
                listener(port, url)
            except Exception:
                logger.exception("server-ready listener failed")


FileValue = Union[str, Mapping[str, Any]]


def _contents(value: FileValue) -> str:
    if isinstance(value, str):
        return value
    return str(value["file"]["contents"])


def build_file_tree(files: Mapping[str, FileValue]) -> FileSystemTree:
    """Convert ``{"src/a.ts": "..."}`` into a nested :data:`FileSystemTree`.

    Values may be plain text or ``{"file": {"contents": ...}}``. When a path
    needs a directory where an earlier path placed a file, the directory wins.
    """
    tree: FileSystemTree = {}
    for path, value in files.items():
        parts = [p for p in str(path).split("/") if p]
        if not parts:
            continue
        current = tree
        for part in parts[:-1]:
            node = current.get(part)
            if node is None:
                node = current[part] = {"directory": {}}
            elif "directory" not in node:
                logger.warning(
                    "Path collision: %s. %s is treated as a file but expected as directory.", path, part
                )
                node = current[part] = {"directory": {}}
            current = node["directory"]
        current[parts[-1]] = {"file": {"contents": _contents(value)}}
    return tree


def iter_tree(tree: FileSystemTree, prefix: str = "") -> Iterator[tuple[str, Optional[str]]]:
    """Yield ``(path, contents)`` pairs; ``contents`` is ``None`` for directories."""
    for name, node in tree.items():
        path = f"{prefix}/{name}" if prefix else name
        if "directory" in node:
            yield path, None
            yield from iter_tree(node["directory"], path)
        else:
            yield path, str(node["file"]["contents"])
