"""
Process supervisor – run commands inside the sandbox.

Every output chunk is handed to the caller's sink as soon as it is read.
``run`` never raises for process problems: failures become exit codes plus
a diagnostic line on the output sink.

Result codes produced by the supervisor itself:

    EXIT_OK       0    success
    EXIT_FAILURE  1    spawn or stream failure
    EXIT_TIMEOUT  124  killed after the timeout
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from .sandbox import Sandbox, SandboxProcess
from .sandbox_helpers import OutputSink, _call_on_output, _emit

logger = logging.getLogger("sandpit.supervisor")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_TIMEOUT = 124


@dataclass
class CommandExecution:
    """One invocation of a command; resolved exactly once."""
    command: str
    args: list[str] = field(default_factory=list)
    timeout_ms: int = 0
    exit_code: Optional[int] = None
    killed: bool = False
    started_at: float = field(default_factory=time.monotonic)
    finished_at: Optional[float] = None

    @property
    def display(self) -> str:
        return " ".join([self.command, *self.args])

    @property
    def duration_s(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return self.finished_at - self.started_at


def _kill_quietly(process: SandboxProcess) -> None:
    """Best-effort kill; a sandbox that refuses is logged, never raised."""
    try:
        process.kill()
    except Exception as e:
        logger.warning("Kill failed (pid=%s): %s", getattr(process, "pid", None), e)


class ProcessHandle:
    """Handle to a long-running process started with :meth:`ProcessSupervisor.start`."""

    def __init__(self, execution: CommandExecution):
        self.execution = execution
        self._process: Optional[SandboxProcess] = None
        self._task: Optional[asyncio.Task] = None
        self._cancel_requested = False

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def exit_code(self) -> Optional[int]:
        return self.execution.exit_code

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested

    async def wait(self) -> int:
        if self._task is None:
            raise RuntimeError("process handle was never started")
        return await asyncio.shield(self._task)

    def cancel(self) -> None:
        """Stop the process; repeated calls do nothing."""
        if self._cancel_requested:
            return
        self._cancel_requested = True
        if self._process is not None and not self.done:
            self.execution.killed = True
            _kill_quietly(self._process)

    def _attach(self, process: SandboxProcess) -> None:
        self._process = process
        if self._cancel_requested:
            self.execution.killed = True
            _kill_quietly(process)


class ProcessSupervisor:
    """Runs commands in a sandbox with optional timeouts and streamed output."""

    def __init__(
        self,
        sandbox: Sandbox,
        env: Optional[dict[str, str]] = None,
        drain_timeout_s: float = 2.0,
    ):
        self.sandbox = sandbox
        self.env = dict(env or {})
        self.drain_timeout_s = drain_timeout_s

    async def run(
        self,
        command: str,
        args: Optional[list[str]] = None,
        on_output: Optional[OutputSink] = None,
        timeout_ms: int = 0,
    ) -> int:
        """Run *command* to completion and return its exit code.

        With ``timeout_ms > 0`` the process is killed once the deadline passes
        and 124 is returned. With ``timeout_ms <= 0`` there is no deadline.
        """
        execution = CommandExecution(command=command, args=list(args or []), timeout_ms=timeout_ms)
        return await self._execute(execution, on_output)

    async def start(
        self,
        command: str,
        args: Optional[list[str]] = None,
        on_output: Optional[OutputSink] = None,
    ) -> ProcessHandle:
        """Launch a long-running command without a deadline."""
        execution = CommandExecution(command=command, args=list(args or []), timeout_ms=0)
        handle = ProcessHandle(execution)
        handle._task = asyncio.ensure_future(self._execute(execution, on_output, handle))
        return handle

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _execute(
        self,
        execution: CommandExecution,
        on_output: Optional[OutputSink],
        handle: Optional[ProcessHandle] = None,
    ) -> int:
        code = await self._supervise(execution, on_output, handle)
        execution.exit_code = code
        execution.finished_at = time.monotonic()
        logger.debug(
            "%s exited with %s after %.2fs (killed=%s)",
            execution.display, code, execution.duration_s, execution.killed,
        )
        return code

    async def _supervise(
        self,
        execution: CommandExecution,
        on_output: Optional[OutputSink],
        handle: Optional[ProcessHandle],
    ) -> int:
        try:
            process = await self.sandbox.spawn(execution.command, execution.args, env=self.env or None)
        except Exception as e:
            _emit(on_output, f"❌ Failed to run {execution.display}: {e}", "ERROR", logger)
            return EXIT_FAILURE

        if handle is not None:
            handle._attach(process)

        pump = asyncio.ensure_future(self._pump(process, on_output))
        exit_task = asyncio.ensure_future(process.wait())
        try:
            loop = asyncio.get_running_loop()
            deadline = loop.time() + execution.timeout_ms / 1000 if execution.timeout_ms > 0 else None
            while not exit_task.done():
                remaining = None if deadline is None else deadline - loop.time()
                if remaining is not None and remaining <= 0:
                    break
                watched = {exit_task} if pump.done() else {exit_task, pump}
                done, _ = await asyncio.wait(watched, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                if pump in done and pump.exception() is not None:
                    raise pump.exception()
            if not exit_task.done():
                execution.killed = True
                _kill_quietly(process)
                exit_task.cancel()
                pump.cancel()
                await asyncio.gather(exit_task, pump, return_exceptions=True)
                _emit(
                    on_output,
                    f"⏱️ Command timed out after {execution.timeout_ms}ms: {execution.display}",
                    "WARNING",
                    logger,
                )
                return EXIT_TIMEOUT

            code = exit_task.result()
            drained, _ = await asyncio.wait({pump}, timeout=self.drain_timeout_s)
            if not drained:
                pump.cancel()
                await asyncio.gather(pump, return_exceptions=True)
            elif pump.exception() is not None:
                raise pump.exception()
            return code
        except asyncio.CancelledError:
            _kill_quietly(process)
            exit_task.cancel()
            pump.cancel()
            raise
        except Exception as e:
            _kill_quietly(process)
            exit_task.cancel()
            pump.cancel()
            _emit(on_output, f"❌ Error while running {execution.display}: {e}", "ERROR", logger)
            return EXIT_FAILURE

    @staticmethod
    async def _pump(process: SandboxProcess, on_output: Optional[OutputSink]) -> None:
        async for chunk in process.output():
            _call_on_output(on_output, chunk)
