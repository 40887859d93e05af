"""Tests for ProcessSupervisor – exit codes, timeouts and streamed output."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest

from conftest import FakeProcess, FakeSandbox
from sandpit.errors import SpawnError
from sandpit.sandbox import LocalSandbox
from sandpit.supervisor import EXIT_FAILURE, EXIT_TIMEOUT, ProcessSupervisor


@pytest.mark.asyncio
async def test_never_exiting_command_times_out_with_124() -> None:
    sandbox = FakeSandbox(handler=lambda c, a: FakeProcess(["booting\n"], never_exits=True))
    out: list[str] = []

    started = time.monotonic()
    code = await ProcessSupervisor(sandbox).run("sleep", ["999"], out.append, timeout_ms=100)
    elapsed = time.monotonic() - started

    assert code == EXIT_TIMEOUT
    assert 0.09 <= elapsed < 0.5
    assert sandbox.processes[0].kill_count == 1
    assert out[0] == "booting\n"
    assert sum("timed out" in line for line in out) == 1


@pytest.mark.asyncio
async def test_zero_timeout_returns_natural_exit_code() -> None:
    sandbox = FakeSandbox(handler=lambda c, a: FakeProcess(["bye\n"], exit_code=3))
    out: list[str] = []
    code = await ProcessSupervisor(sandbox).run("sh", ["-c", "exit 3"], out.append, timeout_ms=0)
    assert code == 3
    assert sandbox.processes[0].kill_count == 0
    assert out == ["bye\n"]


@pytest.mark.asyncio
async def test_exit_before_deadline_disarms_the_timer() -> None:
    sandbox = FakeSandbox(handler=lambda c, a: FakeProcess(exit_code=0))
    code = await ProcessSupervisor(sandbox).run("true", [], None, timeout_ms=50)
    await asyncio.sleep(0.1)
    assert code == 0
    assert sandbox.processes[0].kill_count == 0


@pytest.mark.asyncio
async def test_output_order_is_preserved() -> None:
    chunks = [f"line {i}\n" for i in range(50)]
    sandbox = FakeSandbox(handler=lambda c, a: FakeProcess(chunks))
    out: list[str] = []
    assert await ProcessSupervisor(sandbox).run("seq", [], out.append, timeout_ms=1000) == 0
    assert out == chunks


@pytest.mark.asyncio
async def test_spawn_failure_becomes_exit_1() -> None:
    sandbox = FakeSandbox()
    sandbox.spawn_error = SpawnError("pnpm", "No such file or directory")
    out: list[str] = []
    code = await ProcessSupervisor(sandbox).run("pnpm", ["install"], out.append, timeout_ms=1000)
    assert code == EXIT_FAILURE
    assert len(out) == 1
    assert "pnpm" in out[0]


@pytest.mark.asyncio
async def test_raising_output_sink_does_not_break_the_run() -> None:
    sandbox = FakeSandbox(handler=lambda c, a: FakeProcess(["a", "b"], exit_code=0))

    def sink(_chunk: str) -> None:
        raise RuntimeError("ui gone")

    assert await ProcessSupervisor(sandbox).run("x", [], sink, timeout_ms=1000) == 0


@pytest.mark.asyncio
async def test_start_handle_cancel_kills_once() -> None:
    sandbox = FakeSandbox(handler=lambda c, a: FakeProcess(["listening\n"], never_exits=True))
    out: list[str] = []
    handle = await ProcessSupervisor(sandbox).start("pnpm", ["run", "dev"], out.append)
    await asyncio.sleep(0.01)
    assert not handle.done

    handle.cancel()
    handle.cancel()
    code = await handle.wait()

    assert code == 137
    assert handle.done
    assert handle.exit_code == 137
    assert handle.execution.killed is True
    assert sandbox.processes[0].kill_count == 1
    assert out == ["listening\n"]


@pytest.mark.asyncio
async def test_start_has_no_deadline() -> None:
    proc_holder: list[FakeProcess] = []

    def handler(c, a):
        proc_holder.append(FakeProcess(never_exits=True))
        return proc_holder[0]

    sandbox = FakeSandbox(handler=handler)
    handle = await ProcessSupervisor(sandbox).start("server", [])
    await asyncio.sleep(0.05)
    assert not handle.done
    proc_holder[0].finish(0)
    assert await handle.wait() == 0
    assert proc_holder[0].kill_count == 0


# ===========================================================================
# Real processes
# ===========================================================================

@pytest.mark.asyncio
async def test_local_exit_code_and_output(tmp_path: Path) -> None:
    out: list[str] = []
    code = await ProcessSupervisor(LocalSandbox(tmp_path)).run(
        "sh", ["-c", "echo hello; echo oops >&2; exit 3"], out.append, timeout_ms=0
    )
    text = "".join(out)
    assert code == 3
    assert "hello" in text
    assert "oops" in text


@pytest.mark.asyncio
async def test_local_timeout_kills_process_group(tmp_path: Path) -> None:
    out: list[str] = []
    started = time.monotonic()
    code = await ProcessSupervisor(LocalSandbox(tmp_path)).run(
        "sh", ["-c", "sleep 30 & sleep 30"], out.append, timeout_ms=200
    )
    assert code == EXIT_TIMEOUT
    assert time.monotonic() - started < 5


@pytest.mark.asyncio
async def test_local_missing_binary(tmp_path: Path) -> None:
    out: list[str] = []
    code = await ProcessSupervisor(LocalSandbox(tmp_path)).run("definitely-not-a-binary-xyz", [], out.append, timeout_ms=1000)
    assert code == EXIT_FAILURE
    assert "definitely-not-a-binary-xyz" in "".join(out)


class _StubbornProcess(FakeProcess):
    """Process whose kill is refused by the sandbox."""

    def kill(self) -> None:
        self.kill_count += 1
        raise RuntimeError("sandbox gone")


class _BrokenStreamProcess(FakeProcess):
    """Emits one chunk, then the output stream fails."""

    async def output(self):
        yield "partial\n"
        raise OSError("stream reset")


@pytest.mark.asyncio
async def test_timeout_with_failing_kill_still_returns_124() -> None:
    sandbox = FakeSandbox(handler=lambda c, a: _StubbornProcess(never_exits=True))
    out: list[str] = []
    code = await ProcessSupervisor(sandbox).run("sleep", ["999"], out.append, timeout_ms=50)
    assert code == EXIT_TIMEOUT
    assert sandbox.processes[0].kill_count == 1
    assert sum("timed out" in line for line in out) == 1


@pytest.mark.asyncio
async def test_failing_kill_on_cancel_is_swallowed() -> None:
    sandbox = FakeSandbox(handler=lambda c, a: _StubbornProcess(never_exits=True))
    handle = await ProcessSupervisor(sandbox).start("vite")
    await asyncio.sleep(0.01)
    handle.cancel()
    assert handle.cancelled
    assert sandbox.processes[0].kill_count == 1
    sandbox.processes[0].finish(137)
    assert await handle.wait() == 137


@pytest.mark.asyncio
async def test_stream_failure_mid_run_becomes_exit_1() -> None:
    sandbox = FakeSandbox(handler=lambda c, a: _BrokenStreamProcess(never_exits=True))
    out: list[str] = []
    code = await ProcessSupervisor(sandbox).run("vite", [], out.append, timeout_ms=5000)
    assert code == EXIT_FAILURE
    assert out[0] == "partial\n"
    errors = [line for line in out if line.startswith("❌")]
    assert len(errors) == 1
    assert "stream reset" in errors[0]
    assert sandbox.processes[0].kill_count == 1


@pytest.mark.asyncio
async def test_stream_failure_after_exit_becomes_exit_1() -> None:
    sandbox = FakeSandbox(handler=lambda c, a: _BrokenStreamProcess(exit_code=0))
    out: list[str] = []
    assert await ProcessSupervisor(sandbox).run("node", ["x.js"], out.append) == EXIT_FAILURE
    assert sum(line.startswith("❌") for line in out) == 1


@pytest.mark.asyncio
async def test_wait_before_start_raises() -> None:
    from sandpit.supervisor import CommandExecution, ProcessHandle

    handle = ProcessHandle(CommandExecution(command="true", args=[], timeout_ms=0))
    with pytest.raises(RuntimeError):
        await handle.wait()
