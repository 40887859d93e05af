"""File stores – the caller-side ``path -> contents`` view of a project."""

from __future__ import annotations

import asyncio
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Mapping, Optional

from .scanner import VENDOR_DIRS
from .sandbox_helpers import _resolve_in_dir


class FileStore(ABC):
    """Project files as seen by the editor."""

    @abstractmethod
    async def read_all(self) -> dict[str, str]:
        """Return every project file keyed by its relative path."""

    @abstractmethod
    async def write_file(self, path: str, content: str) -> None:
        """Create or replace one file."""

    async def read_file(self, path: str) -> Optional[str]:
        return (await self.read_all()).get(path)


class MemoryFileStore(FileStore):
    """In-memory store, the shape an editor keeps its open project in."""

    def __init__(self, files: Optional[Mapping[str, str]] = None):
        self.files: dict[str, str] = dict(files or {})

    async def read_all(self) -> dict[str, str]:
        return dict(self.files)

    async def read_file(self, path: str) -> Optional[str]:
        return self.files.get(path)

    async def write_file(self, path: str, content: str) -> None:
        self.files[path] = content


class DirectoryFileStore(FileStore):
    """Files of a project directory on disk; vendored directories are skipped."""

    def __init__(self, root: str | Path, max_file_bytes: int = 1_000_000):
        self.root = Path(root)
        self.max_file_bytes = max_file_bytes

    def _collect(self) -> dict[str, str]:
        out: dict[str, str] = {}
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = [d for d in dirnames if d not in VENDOR_DIRS]
            for name in filenames:
                p = Path(dirpath) / name
                try:
                    if p.stat().st_size > self.max_file_bytes:
                        continue
                    text = p.read_text(encoding="utf-8")
                except (OSError, UnicodeDecodeError):
                    continue
                out[p.relative_to(self.root).as_posix()] = text
        return out

    async def read_all(self) -> dict[str, str]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._collect)

    async def read_file(self, path: str) -> Optional[str]:
        target = _resolve_in_dir(self.root, path)

        def read() -> Optional[str]:
            try:
                return target.read_text(encoding="utf-8")
            except FileNotFoundError:
                return None

        return await asyncio.get_running_loop().run_in_executor(None, read)

    async def write_file(self, path: str, content: str) -> None:
        target = _resolve_in_dir(self.root, path)
        loop = asyncio.get_running_loop()

        def write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")

        await loop.run_in_executor(None, write)
