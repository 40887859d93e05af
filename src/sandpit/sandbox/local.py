"""Sandbox backed by a host directory and local processes."""

from __future__ import annotations

import asyncio
import codecs
import fcntl
import functools
import logging
import os
import pty
import re
import shutil
import signal
import struct
import termios
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

from ..errors import SpawnError
from ..sandbox_helpers import _resolve_in_dir, _sanitize_inherited_env
from .base import Sandbox, SandboxProcess

logger = logging.getLogger("sandpit.sandbox")

_READ_SIZE = 4096

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]|\x1b\][^\x07]*\x07")
_SERVER_URL_RE = re.compile(
    r"\bhttps?://(?:localhost|127\.0\.0\.1|0\.0\.0\.0|\[::1?\]|[A-Za-z0-9.-]+):(\d{2,5})(?:/[^\s]*)?"
)


def _exit_status(returncode: int) -> int:
    # Killed by signal N -> 128 + N, as a shell reports it.
    return 128 - returncode if returncode < 0 else returncode


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _acquire_controlling_tty() -> None:
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


class _ReadyScanner:
    """Finds dev-server URLs in process output, one complete line at a time."""

    def __init__(self, notify: Callable[[int, str], None]):
        self._notify = notify
        self._pending = ""

    def feed(self, chunk: str) -> None:
        text = self._pending + _ANSI_RE.sub("", chunk)
        lines = text.split("\n")
        self._pending = lines.pop()[-512:]
        for line in lines:
            m = _SERVER_URL_RE.search(line)
            if m:
                self._notify(int(m.group(1)), m.group(0).rstrip("/"))


class LocalProcess(SandboxProcess):
    """Pipe-based process; stderr is merged into the output stream."""

    def __init__(self, proc: asyncio.subprocess.Process, scanner: Optional[_ReadyScanner] = None):
        self._proc = proc
        self._scanner = scanner
        self.pid = proc.pid

    async def output(self) -> AsyncIterator[str]:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stream = self._proc.stdout
        if stream is None:
            return
        while True:
            data = await stream.read(_READ_SIZE)
            text = decoder.decode(data, final=not data)
            if text:
                if self._scanner:
                    self._scanner.feed(text)
                yield text
            if not data:
                return

    async def write(self, data: str) -> None:
        if self._proc.stdin is None:
            return
        self._proc.stdin.write(data.encode("utf-8"))
        await self._proc.stdin.drain()

    async def wait(self) -> int:
        return _exit_status(await self._proc.wait())

    def kill(self) -> None:
        if self._proc.returncode is not None:
            return
        try:
            os.killpg(self._proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            try:
                self._proc.kill()
            except ProcessLookupError:
                pass

    @property
    def returncode(self) -> Optional[int]:
        rc = self._proc.returncode
        return None if rc is None else _exit_status(rc)


class PtyProcess(LocalProcess):
    """Process attached to a pseudo-terminal, for interactive shells."""

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        master_fd: int,
        scanner: Optional[_ReadyScanner] = None,
    ):
        super().__init__(proc, scanner)
        self._master_fd = master_fd
        self._closed = False

    async def output(self) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)
        pipe = os.fdopen(os.dup(self._master_fd), "rb", buffering=0)
        transport, _ = await loop.connect_read_pipe(lambda: protocol, pipe)
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                try:
                    data = await reader.read(_READ_SIZE)
                except OSError:
                    # EIO once every slave descriptor is closed.
                    data = b""
                text = decoder.decode(data, final=not data)
                if text:
                    if self._scanner:
                        self._scanner.feed(text)
                    yield text
                if not data:
                    return
        finally:
            transport.close()
            self._close()

    async def write(self, data: str) -> None:
        if self._closed:
            raise BrokenPipeError("terminal closed")
        os.write(self._master_fd, data.encode("utf-8"))

    def resize(self, cols: int, rows: int) -> None:
        if self._closed:
            return
        _set_winsize(self._master_fd, cols, rows)

    def kill(self) -> None:
        super().kill()
        self._close()

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            os.close(self._master_fd)
        except OSError:
            pass


class LocalSandbox(Sandbox):
    """Runs the project in *root* on the host.

    Paths are confined to *root*. Processes inherit only a sanitised copy of
    the host environment. Not a security boundary.
    """

    def __init__(self, root: str | Path, env: Optional[dict[str, str]] = None):
        super().__init__()
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.env = dict(env or {})

    def resolve(self, path: str) -> Path:
        return _resolve_in_dir(self.root, path)

    async def _io(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    # ------------------------------------------------------------------
    # Filesystem
    # ------------------------------------------------------------------

    async def read_file(self, path: str) -> str:
        target = self.resolve(path)

        def read() -> str:
            with open(target, encoding="utf-8", newline="") as f:
                return f.read()

        return await self._io(read)

    async def write_file(self, path: str, content: str) -> None:
        target = self.resolve(path)

        def write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "w", encoding="utf-8", newline="") as f:
                f.write(content)

        await self._io(write)

    async def mkdir(self, path: str) -> None:
        await self._io(self.resolve(path).mkdir, parents=True, exist_ok=True)

    async def remove(self, path: str) -> None:
        target = self.resolve(path)
        if target == self.root.resolve():
            raise ValueError("refusing to remove sandbox root")

        def rm() -> None:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target, ignore_errors=True)
            else:
                target.unlink(missing_ok=True)

        await self._io(rm)

    async def list_dir(self, path: str = ".") -> list[str]:
        target = self.resolve(path)
        return sorted(await self._io(os.listdir, target))

    async def exists(self, path: str) -> bool:
        return await self._io(self.resolve(path).exists)

    async def rename(self, old_path: str, new_path: str) -> None:
        src = self.resolve(old_path)
        dst = self.resolve(new_path)

        def mv() -> None:
            dst.parent.mkdir(parents=True, exist_ok=True)
            os.replace(src, dst)

        await self._io(mv)

    # ------------------------------------------------------------------
    # Processes
    # ------------------------------------------------------------------

    def _process_env(self, env: Optional[dict[str, str]], terminal: bool) -> dict[str, str]:
        explicit = {**self.env, **(env or {})}
        full_env = _sanitize_inherited_env(os.environ.copy(), explicit)
        full_env.update(explicit)
        if terminal:
            full_env.setdefault("TERM", "xterm-256color")
        return full_env

    async def spawn(
        self,
        command: str,
        args: Optional[list[str]] = None,
        *,
        terminal: Optional[tuple[int, int]] = None,
        env: Optional[dict[str, str]] = None,
    ) -> SandboxProcess:
        argv = [command, *(args or [])]
        full_env = self._process_env(env, terminal is not None)
        scanner = _ReadyScanner(self._notify_server_ready)
        logger.debug("spawn %s (cwd=%s, terminal=%s)", argv, self.root, terminal)

        if terminal is None:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=str(self.root),
                    env=full_env,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                )
            except OSError as e:
                raise SpawnError(command, str(e)) from e
            return LocalProcess(proc, scanner)

        cols, rows = terminal
        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(slave_fd, cols, rows)
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(self.root),
                env=full_env,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except OSError as e:
            os.close(master_fd)
            raise SpawnError(command, str(e)) from e
        finally:
            os.close(slave_fd)
        return PtyProcess(proc, master_fd, scanner)
