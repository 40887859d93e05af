"""
nfo logging for sandpit entry points.

``setup_logging()`` is called once by the CLI group and by the runner API
``main``. Library code only uses ``logging.getLogger("sandpit.<area>")``;
those loggers are bridged into the nfo sinks chosen here.

Environment:
    SANDPIT_LOG_DIR     directory for sink files (default <tmp>/sandpit-logs)
    SANDPIT_LOG_SINKS   comma list of sqlite, csv, md (default sqlite)
    SANDPIT_LOG_LEVEL   minimum level (default DEBUG)
    SANDPIT_ENV         environment tag attached to every record
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Optional, Sequence

from nfo import auto_log_by_name, configure, log_call, logged  # type: ignore[import-untyped]

__all__ = ["log_call", "logged", "setup_logging", "default_log_dir"]

_initialized = False

_SINK_FILES = {
    "sqlite": "sandpit.db",
    "csv": "sandpit.csv",
    "md": "sandpit.md",
}

# Only modules without coroutines; nfo wraps functions synchronously.
_AUTO_LOG_MODULES = ("sandpit.scanner", "sandpit.error_context")

_BRIDGED_LOGGERS = (
    "sandpit.sandbox",
    "sandpit.install",
    "sandpit.supervisor",
    "sandpit.shell",
    "sandpit.orchestrator",
    "sandpit.resolver",
    "sandpit.runner_api",
)


def default_log_dir() -> Path:
    return Path(os.environ.get("SANDPIT_LOG_DIR") or Path(tempfile.gettempdir()) / "sandpit-logs")


def _sink_kinds(raw: Optional[str]) -> list[str]:
    kinds = [k.strip().lower() for k in (raw or "sqlite").split(",") if k.strip()]
    return [k for k in kinds if k in _SINK_FILES]


def setup_logging(
    *,
    log_dir: Optional[str] = None,
    level: Optional[str] = None,
    sinks: Optional[Sequence[str]] = None,
    auto_instrument: bool = True,
) -> None:
    """Configure nfo once per process; later calls are no-ops.

    Call after the sandpit modules are imported so ``auto_log_by_name``
    finds them loaded. ``sinks=[]`` keeps only the stdlib bridge.
    """
    global _initialized
    if _initialized:
        return

    from . import __version__

    kinds = [k for k in sinks if k in _SINK_FILES] if sinks is not None else _sink_kinds(os.environ.get("SANDPIT_LOG_SINKS"))
    level = (level or os.environ.get("SANDPIT_LOG_LEVEL") or "DEBUG").upper()

    targets: list[str] = []
    if kinds:
        log_path = Path(log_dir) if log_dir else default_log_dir()
        log_path.mkdir(parents=True, exist_ok=True)
        targets = [f"{kind}:{log_path / _SINK_FILES[kind]}" for kind in kinds]

    configure(
        name="sandpit",
        level=level,
        sinks=targets or None,
        modules=list(_BRIDGED_LOGGERS) if targets else None,
        propagate_stdlib=True,
        environment=os.environ.get("SANDPIT_ENV"),
        version=__version__,
    )
    if auto_instrument and targets:
        auto_log_by_name(*_AUTO_LOG_MODULES, level=level)

    _initialized = True
