"""Shared helper utilities for sandbox operations.

Used by the sandbox implementations, the supervisor and the orchestrator
for output-sink logging, environment sanitisation and path containment.
"""

import asyncio
import logging
import os
import re
import time
from pathlib import Path
from typing import Callable, Optional

OutputSink = Callable[[str], None]

_TRUTHY = {"1", "true", "yes", "on"}


# ---------------------------------------------------------------------------
# Logging helpers
# ---------------------------------------------------------------------------

_UI_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _ui_log_level() -> int:
    """Threshold for sink lines, from ``SANDPIT_UI_LOG_LEVEL`` (INFO when unset or unknown)."""
    name = (os.environ.get("SANDPIT_UI_LOG_LEVEL") or "").strip().upper()
    return _UI_LEVELS.get(name, logging.INFO)


def _should_emit_to_ui(level: str) -> bool:
    return _UI_LEVELS.get(str(level).upper(), logging.INFO) >= _ui_log_level()


def _call_on_output(on_output: Optional[Callable[..., None]], data: str) -> None:
    """Deliver *data* to a sink without letting a broken sink escape."""
    if not on_output:
        return
    try:
        on_output(data)
    except Exception:
        logging.getLogger("sandpit.sandbox").exception("Output sink raised")


def _emit(
    on_output: Optional[OutputSink],
    msg: str,
    level: str = "INFO",
    logger: Optional[logging.Logger] = None,
) -> None:
    """Log *msg* and append it as one line to the output sink."""
    (logger or logging.getLogger("sandpit")).log(_UI_LEVELS.get(level.upper(), logging.INFO), msg)
    if on_output and _should_emit_to_ui(level):
        _call_on_output(on_output, msg if msg.endswith("\n") else msg + "\n")


# ---------------------------------------------------------------------------
# Environment sanitisation
# ---------------------------------------------------------------------------

# Host variables a package manager or dev server needs to work at all.
_PASSTHROUGH_ENV = frozenset(
    "PATH HOME USER LOGNAME SHELL LANG LANGUAGE TERM COLORTERM TZ "
    "TMPDIR TEMP TMP SSL_CERT_FILE SSL_CERT_DIR "
    "NODE_EXTRA_CA_CERTS COREPACK_HOME PNPM_HOME".split()
)

_SECRET_NAME_RE = re.compile(r"(?:^|_)(?:API_KEY|SECRET|PASSWORD|TOKEN|PRIVATE_KEY)(?:$|_)", re.IGNORECASE)


def _passes_through(name: str) -> bool:
    return (name in _PASSTHROUGH_ENV or name.startswith("LC_")) and not _SECRET_NAME_RE.search(name)


def _sanitize_inherited_env(
    parent_env: Optional[dict[str, str]],
    explicit_env: Optional[dict[str, str]] = None,
) -> dict[str, str]:
    """Filter *parent_env* down to what child processes may inherit.

    Names present in *explicit_env* are kept as-is, since the caller asked
    for them. ``SANDPIT_INHERIT_SENSITIVE_ENV`` disables filtering.
    """
    parent = {str(k): str(v) for k, v in (parent_env or {}).items()}
    if (os.environ.get("SANDPIT_INHERIT_SENSITIVE_ENV") or "").strip().lower() in _TRUTHY:
        return parent
    wanted = set(explicit_env or ())
    return {k: v for k, v in parent.items() if k in wanted or _passes_through(k)}


# ---------------------------------------------------------------------------
# Path containment
# ---------------------------------------------------------------------------

def _validate_rel_path(path: str) -> Path:
    p = Path(str(path).lstrip("/"))
    if any(part == ".." for part in p.parts):
        raise ValueError(f"invalid path: {path}")
    return p


def _resolve_in_dir(root: Path, path: str) -> Path:
    root_r = root.resolve()
    target = (root_r / _validate_rel_path(path)).resolve()
    if not target.is_relative_to(root_r):
        raise ValueError(f"path escapes sandbox: {path}")
    return target


# ---------------------------------------------------------------------------
# Heartbeat for long operations
# ---------------------------------------------------------------------------

async def _heartbeat(
    *,
    on_output: Optional[OutputSink],
    message: str,
    interval_s: float = 5.0,
) -> None:
    """Emit a progress line every *interval_s* until cancelled."""
    if not on_output:
        return
    started = time.monotonic()
    while True:
        await asyncio.sleep(interval_s)
        elapsed = int(time.monotonic() - started)
        if _should_emit_to_ui("INFO"):
            _call_on_output(on_output, f"⏳ {message} (elapsed={elapsed}s)\n")


def _beat_every_s(*, default: int = 15) -> int:
    try:
        return max(1, int(os.environ.get("SANDPIT_HEARTBEAT_S", str(default))))
    except Exception:
        return default
