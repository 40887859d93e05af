from __future__ import annotations

import asyncio
import json
import logging
import os
from collections import deque
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field
from starlette.responses import StreamingResponse

from .config import load_config
from .error_context import ErrorTracker
from .errors import ManifestError, SpawnError
from .orchestrator import Orchestrator, WorkbenchContext
from .resolver import Manifest
from .scanner import scan_files

logger = logging.getLogger("sandpit.runner_api")

_SERVER_LOG_LINES = 500


class ScanRequest(BaseModel):
    files: Optional[Dict[str, str]] = None


class ExecRequest(BaseModel):
    command: str
    args: List[str] = Field(default_factory=list)
    timeout_ms: int = 60_000


class RunnerApiSettings:
    def __init__(self):
        self.project_dir = Path(os.environ.get("SANDPIT_PROJECT_DIR", os.getcwd()))
        self.config_path = os.environ.get("SANDPIT_CONFIG") or None
        self.require_token = os.environ.get("SANDPIT_RUNNER_REQUIRE_TOKEN", "").lower() in {"1", "true", "yes"}
        self.token = os.environ.get("SANDPIT_RUNNER_TOKEN") or ""
        self.host = os.environ.get("SANDPIT_RUNNER_HOST", "127.0.0.1")
        self.port = int(os.environ.get("SANDPIT_RUNNER_PORT", "8802"))


def _token_ok(settings: RunnerApiSettings, token: Optional[str]) -> bool:
    if not settings.require_token:
        return True
    return bool(settings.token) and token == settings.token


def create_runner_api(*, context: WorkbenchContext, settings: RunnerApiSettings) -> FastAPI:
    app = FastAPI(title="sandpit-runner-api")
    orchestrator = Orchestrator(context)
    tracker = ErrorTracker()
    server_log: deque[str] = deque(maxlen=_SERVER_LOG_LINES)

    def require_token(x_runner_token: Optional[str] = Header(default=None)) -> None:
        if not settings.require_token:
            return
        if not settings.token:
            raise HTTPException(status_code=500, detail="runner token not configured")
        if not x_runner_token or x_runner_token != settings.token:
            raise HTTPException(status_code=401, detail="unauthorized")

    def on_server_output(chunk: str) -> None:
        server_log.append(chunk)
        tracker.feed(chunk)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"ok": True}

    @app.post("/scan", dependencies=[Depends(require_token)])
    async def scan(req: ScanRequest) -> Dict[str, Any]:
        files = req.files if req.files is not None else await context.file_store.read_all()
        imports = sorted(scan_files(files))
        text = files.get(context.config.manifest_path)
        if text is None:
            return {"imports": imports, "manifest": False, "missing": []}
        try:
            manifest = Manifest.from_json(text, path=context.config.manifest_path)
        except ManifestError as e:
            return {"imports": imports, "manifest": True, "missing": [], "error": str(e)}
        return {
            "imports": imports,
            "manifest": True,
            "missing": orchestrator.resolver.find_missing(manifest, imports),
        }

    @app.post("/prepare", dependencies=[Depends(require_token)])
    async def prepare() -> Dict[str, Any]:
        logs: List[str] = []
        result = await orchestrator.prepare(logs.append)
        return {**result.to_dict(), "logs": "".join(logs)}

    @app.post("/prepare/stream", dependencies=[Depends(require_token)])
    async def prepare_stream() -> StreamingResponse:
        q: asyncio.Queue[Dict[str, Any]] = asyncio.Queue()

        async def run_job() -> None:
            try:
                result = await orchestrator.prepare(lambda chunk: q.put_nowait({"type": "log", "message": chunk}))
                await q.put({"type": "result", "result": result.to_dict()})
            finally:
                await q.put({"type": "eof"})

        task = asyncio.create_task(run_job())

        async def stream():
            try:
                while True:
                    item = await q.get()
                    if item.get("type") == "eof":
                        break
                    yield (json.dumps(item, ensure_ascii=False) + "\n").encode("utf-8")
            finally:
                if not task.done():
                    task.cancel()

        return StreamingResponse(
            stream(),
            media_type="application/x-ndjson",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.post("/exec", dependencies=[Depends(require_token)])
    async def exec_command(req: ExecRequest) -> Dict[str, Any]:
        output: List[str] = []
        code = await context.supervisor.run(req.command, req.args, output.append, timeout_ms=req.timeout_ms)
        return {"exit_code": code, "output": "".join(output)}

    @app.post("/start", dependencies=[Depends(require_token)])
    async def start() -> Dict[str, Any]:
        server = orchestrator.server
        if server is not None and not server.done:
            raise HTTPException(status_code=409, detail="already running")
        server_log.clear()
        tracker.clear()
        handle = await orchestrator.start(on_server_output)
        return {"started": True, "command": handle.execution.display}

    @app.post("/stop", dependencies=[Depends(require_token)])
    async def stop() -> Dict[str, Any]:
        if orchestrator.server is None:
            return {"stopped": False, "exit_code": None}
        code = await orchestrator.stop()
        return {"stopped": True, "exit_code": code}

    @app.get("/status", dependencies=[Depends(require_token)])
    async def status() -> Dict[str, Any]:
        return {
            **orchestrator.status(),
            "errors": [e.to_dict() for e in tracker.errors],
            "log_tail": "".join(server_log)[-8000:],
        }

    @app.get("/cache/stats", dependencies=[Depends(require_token)])
    async def cache_stats() -> Dict[str, Any]:
        return await context.install_cache.stats()

    @app.websocket("/shell")
    async def shell(websocket: WebSocket) -> None:
        token = websocket.headers.get("x-runner-token") or websocket.query_params.get("token")
        if not _token_ok(settings, token):
            await websocket.close(code=1008)
            return
        await websocket.accept()

        outgoing: asyncio.Queue[str] = asyncio.Queue()
        session = context.shell
        try:
            await session.start(outgoing.put_nowait)
        except SpawnError as e:
            await websocket.send_text(f"{e}\r\n")
            await websocket.close(code=1011)
            return

        async def pump() -> None:
            while True:
                await websocket.send_text(await outgoing.get())

        sender = asyncio.create_task(pump())
        try:
            while True:
                frame = await websocket.receive_text()
                control = _control_frame(frame)
                if control is not None:
                    if control.get("type") == "resize":
                        session.resize(int(control.get("cols", 0)), int(control.get("rows", 0)))
                    continue
                await session.write(frame)
        except WebSocketDisconnect:
            logger.debug("shell websocket closed")
        finally:
            session.detach()
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)

    return app


def _control_frame(frame: str) -> Optional[Dict[str, Any]]:
    if not frame.startswith("{"):
        return None
    try:
        data = json.loads(frame)
    except ValueError:
        return None
    if isinstance(data, dict) and data.get("type") == "resize":
        return data
    return None


def create_app() -> FastAPI:
    settings = RunnerApiSettings()
    config = load_config(settings.config_path or settings.project_dir)
    context = WorkbenchContext.local(settings.project_dir, config)
    return create_runner_api(context=context, settings=settings)


def main() -> None:
    import uvicorn

    from .nfo_config import setup_logging

    setup_logging()
    settings = RunnerApiSettings()
    uvicorn.run(create_app(), host=settings.host, port=settings.port)
