from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path
from typing import Callable, Optional

import pytest
from dotenv import load_dotenv

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
_SRC = (_PROJECT_ROOT / "src").resolve()
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

# Load .env from project root so local SANDPIT_* overrides are active
load_dotenv(_PROJECT_ROOT / ".env", override=False)

from sandpit.sandbox import Sandbox, SandboxProcess  # noqa: E402


class FakeProcess(SandboxProcess):
    """Scripted process: emits *chunks*, then exits with *exit_code* unless *never_exits*."""

    def __init__(self, chunks=(), exit_code: int = 0, never_exits: bool = False):
        self.pid = 4242
        self.kill_count = 0
        self.writes: list[str] = []
        self.sizes: list[tuple[int, int]] = []
        self._queue: asyncio.Queue = asyncio.Queue()
        self._exit: asyncio.Future = asyncio.get_running_loop().create_future()
        for chunk in chunks:
            self._queue.put_nowait(chunk)
        if not never_exits:
            self.finish(exit_code)

    def feed(self, chunk: str) -> None:
        self._queue.put_nowait(chunk)

    def finish(self, code: int) -> None:
        if not self._exit.done():
            self._exit.set_result(code)
            self._queue.put_nowait(None)

    async def output(self):
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk

    async def write(self, data: str) -> None:
        if self._exit.done():
            raise BrokenPipeError("process exited")
        self.writes.append(data)

    async def wait(self) -> int:
        return await asyncio.shield(self._exit)

    def kill(self) -> None:
        self.kill_count += 1
        self.finish(137)

    def resize(self, cols: int, rows: int) -> None:
        self.sizes.append((cols, rows))

    @property
    def returncode(self) -> Optional[int]:
        return self._exit.result() if self._exit.done() else None


ProcessFactory = Callable[[str, list], FakeProcess]


class FakeSandbox(Sandbox):
    """In-memory sandbox; processes come from ``handler(command, args)``."""

    def __init__(self, files: Optional[dict[str, str]] = None, handler: Optional[ProcessFactory] = None):
        super().__init__()
        self.files: dict[str, str] = dict(files or {})
        self.dirs: set[str] = set()
        self.handler = handler or (lambda command, args: FakeProcess())
        self.spawned: list[tuple[str, list, Optional[tuple[int, int]]]] = []
        self.processes: list[FakeProcess] = []
        self.fail_writes = False
        self.spawn_error: Optional[Exception] = None

    async def read_file(self, path: str) -> str:
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    async def write_file(self, path: str, content: str) -> None:
        if self.fail_writes:
            raise OSError("read-only filesystem")
        self.files[path] = content

    async def mkdir(self, path: str) -> None:
        self.dirs.add(path.strip("/"))

    async def remove(self, path: str) -> None:
        path = path.strip("/")
        self.files = {p: c for p, c in self.files.items() if p != path and not p.startswith(path + "/")}
        self.dirs = {d for d in self.dirs if d != path and not d.startswith(path + "/")}

    async def list_dir(self, path: str = ".") -> list[str]:
        path = path.strip("/")
        if path in self.files:
            raise NotADirectoryError(path)
        prefix = "" if path in {"", "."} else path + "/"
        names = {p[len(prefix):].split("/")[0] for p in [*self.files, *self.dirs] if p.startswith(prefix) and p != path}
        if not names and prefix and path not in self.dirs:
            raise FileNotFoundError(path)
        return sorted(names)

    async def exists(self, path: str) -> bool:
        path = path.strip("/")
        return path in self.files or await self.is_dir(path)

    async def spawn(self, command, args=None, *, terminal=None, env=None) -> SandboxProcess:
        self.spawned.append((command, list(args or []), terminal))
        if self.spawn_error is not None:
            raise self.spawn_error
        proc = self.handler(command, list(args or []))
        self.processes.append(proc)
        return proc


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    monkeypatch.setenv("SANDPIT_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("SANDPIT_HEARTBEAT_S", "60")
    monkeypatch.delenv("SANDPIT_UI_LOG_LEVEL", raising=False)


@pytest.fixture
def fake_sandbox() -> FakeSandbox:
    return FakeSandbox()
