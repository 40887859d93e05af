"""Interactive shell session backed by a sandbox terminal."""

import asyncio
import logging
from typing import Optional

from .config import WorkbenchConfig
from .sandbox import Sandbox, SandboxProcess
from .sandbox_helpers import OutputSink, _call_on_output

logger = logging.getLogger("sandpit.shell")


class ShellSession:
    """One long-lived interactive process per workbench context.

    Output is forwarded to the most recently registered sink. Input written
    before ``start`` or after ``dispose`` is dropped.
    """

    def __init__(self, sandbox: Sandbox, config: Optional[WorkbenchConfig] = None):
        self.sandbox = sandbox
        self.config = config or WorkbenchConfig()
        self.cols = self.config.shell_cols
        self.rows = self.config.shell_rows
        self._process: Optional[SandboxProcess] = None
        self._pump: Optional[asyncio.Task] = None
        self._on_output: Optional[OutputSink] = None
        self._lock = asyncio.Lock()
        self._disposed = False

    @property
    def process(self) -> Optional[SandboxProcess]:
        return self._process

    @property
    def is_running(self) -> bool:
        return (
            self._process is not None
            and not self._disposed
            and self._process.returncode is None
            and self._pump is not None
            and not self._pump.done()
        )

    async def start(self, on_output: Optional[OutputSink] = None) -> SandboxProcess:
        """Start the shell, or rebind the output sink of the live one."""
        async with self._lock:
            self._on_output = on_output
            if self._process is not None and not self._disposed and self._process.returncode is None:
                return self._process

            shell = self.config.shell
            self._disposed = False
            self._process = await self.sandbox.spawn(
                shell.command,
                shell.args,
                terminal=(self.cols, self.rows),
            )
            self._pump = asyncio.ensure_future(self._forward(self._process))
            logger.info("Shell started: %s (pid=%s, %sx%s)", shell.display(), self._process.pid, self.cols, self.rows)
            return self._process

    async def write(self, data: str) -> None:
        process = self._process
        if process is None or self._disposed:
            return
        try:
            await process.write(data)
        except (BrokenPipeError, ConnectionResetError, OSError) as e:
            logger.debug("Shell input dropped: %s", e)

    def resize(self, cols: int, rows: int) -> None:
        if cols <= 0 or rows <= 0:
            return
        self.cols, self.rows = cols, rows
        if self._process is None or self._disposed:
            return
        try:
            self._process.resize(cols, rows)
        except OSError as e:
            logger.debug("Shell resize ignored: %s", e)

    def detach(self) -> None:
        """Stop forwarding output while keeping the shell alive."""
        self._on_output = None

    async def dispose(self) -> None:
        """Kill the shell and stop forwarding output."""
        async with self._lock:
            if self._disposed or self._process is None:
                self._disposed = True
                return
            self._disposed = True
            self._on_output = None
            self._process.kill()
            if self._pump is not None:
                self._pump.cancel()
                await asyncio.gather(self._pump, return_exceptions=True)
            logger.info("Shell disposed (pid=%s)", self._process.pid)

    async def restart(self, on_output: Optional[OutputSink] = None) -> SandboxProcess:
        await self.dispose()
        async with self._lock:
            self._process = None
            self._pump = None
        return await self.start(on_output)

    async def _forward(self, process: SandboxProcess) -> None:
        async for chunk in process.output():
            if self._disposed:
                return
            _call_on_output(self._on_output, chunk)
        logger.debug("Shell output closed (pid=%s)", process.pid)
