import itertools
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set


class ErrorCategory(str, Enum):
    """Kinds of problems recognised in terminal output."""
    TYPESCRIPT = "typescript"
    VITE = "vite"  # dev-server errors
    RUNTIME = "runtime"
    MODULE = "module"  # unresolved imports / missing packages
    SYNTAX = "syntax"
    NPM = "npm"  # package-manager failures


# Errors of these kinds disappear once the dev server compiles again.
_CLEARED_ON_COMPILE = {ErrorCategory.VITE, ErrorCategory.MODULE, ErrorCategory.SYNTAX}

_TS_PAREN_PATTERN = re.compile(r"([^\s(]+)\((\d+),(\d+)\):\s*error\s+(TS\d+):\s*(.+)")
_TS_COLON_PATTERN = re.compile(r"([^\s:]+):(\d+):(\d+)\s*-\s*error\s+(TS\d+):\s*(.+)")
_UNRESOLVED_IMPORT_PATTERN = re.compile(r'Failed to resolve import "([^"]+)" from "([^"]+)"')
_IMPORTED_BY_PATTERN = re.compile(r"^\s*(\S+)\s+\(imported by\s+(.+)\)")
_MISSING_MODULE_PATTERN = re.compile(r"Cannot find module '([^']+)'")
_DEV_SERVER_PATTERN = re.compile(r"\[vite\]\s*(?:Internal server error|Pre-transform error):\s*(.+)")
_SYNTAX_PATTERN = re.compile(r"SyntaxError:\s*(.+)")
_NPM_PATTERN = re.compile(r"npm (?:ERR!|error)\s*(.+)")
_RUNTIME_PATTERN = re.compile(r"^(TypeError|ReferenceError|RangeError):\s*(.+)")

_HMR_UPDATE_PATTERN = re.compile(r"\[vite\]\s*hmr\s+update\s+(.+)", re.IGNORECASE)
_COMPILED_PATTERNS = (
    re.compile(r"ready in \d+\s*ms", re.IGNORECASE),
    re.compile(r"compiled successfully", re.IGNORECASE),
)

_HOME_PREFIX_PATTERN = re.compile(r"/home/[a-z0-9_-]+/")
_ANSI_PATTERN = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")

DEDUPE_WINDOW_S = 30.0


def _clean_file(path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    p = _HOME_PREFIX_PATTERN.sub("", path.strip())
    if p.startswith("./"):
        p = p[2:]
    return p


def _normalize(path: str) -> str:
    p = path.strip()
    if p.startswith("./"):
        p = p[2:]
    return p.lstrip("/")


@dataclass
class ParsedError:
    id: str
    category: ErrorCategory
    message: str
    file: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    timestamp: float = field(default_factory=time.time)
    source: str = "terminal"

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "category": self.category.value,
            "message": self.message,
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "timestamp": self.timestamp,
            "source": self.source,
        }


class TerminalErrorParser:
    """Extracts :class:`ParsedError` entries from raw terminal output.

    The same error seen again within ``DEDUPE_WINDOW_S`` is reported once.
    """

    def __init__(
        self,
        *,
        dedupe_window_s: float = DEDUPE_WINDOW_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.dedupe_window_s = dedupe_window_s
        self._clock = clock
        self._recent: Set[str] = set()
        self._last_cleanup = clock()
        self._ids = itertools.count(1)

    def feed(self, output: str) -> List[ParsedError]:
        now = self._clock()
        if now - self._last_cleanup > self.dedupe_window_s:
            self._recent.clear()
            self._last_cleanup = now

        errors: List[ParsedError] = []
        stamp = time.time()

        def add(category: ErrorCategory, message: str, file: Optional[str] = None,
                line: Optional[int] = None, column: Optional[int] = None) -> None:
            key = f"{category.value}:{file or ''}:{line or ''}:{message[:60]}"
            if key in self._recent:
                return
            self._recent.add(key)
            errors.append(ParsedError(
                id=f"e{next(self._ids)}",
                category=category,
                message=message.strip(),
                file=_clean_file(file),
                line=line,
                column=column,
                timestamp=stamp,
            ))

        for raw in _ANSI_PATTERN.sub("", output or "").split("\n"):
            line = raw.rstrip("\r")

            m = _TS_PAREN_PATTERN.search(line) or _TS_COLON_PATTERN.search(line)
            if m:
                add(ErrorCategory.TYPESCRIPT, f"{m.group(4)}: {m.group(5)}", m.group(1), int(m.group(2)), int(m.group(3)))
                continue

            m = _UNRESOLVED_IMPORT_PATTERN.search(line)
            if m:
                add(ErrorCategory.MODULE, f'Cannot find module "{m.group(1)}"', m.group(2))
                continue

            m = _IMPORTED_BY_PATTERN.search(line)
            if m:
                add(ErrorCategory.MODULE, f"Missing dependency: {m.group(1)}", m.group(2))
                continue

            stripped = line.strip()
            if stripped.startswith("Error:") and "at " not in line:
                msg = re.sub(r"^Error:\s*", "", stripped)
                if len(msg) > 5:
                    add(ErrorCategory.VITE, msg)
                    continue

            m = _MISSING_MODULE_PATTERN.search(line)
            if m and "at " not in line:
                add(ErrorCategory.MODULE, f"Missing module: {m.group(1)}")
                continue

            m = _DEV_SERVER_PATTERN.search(line)
            if m:
                msg = re.sub(r"\[postcss\]\s*", "", m.group(1))
                if "Cannot find module" not in msg and "Failed to resolve" not in msg:
                    add(ErrorCategory.VITE, msg)
                continue

            m = _SYNTAX_PATTERN.search(line)
            if m:
                add(ErrorCategory.SYNTAX, m.group(1))
                continue

            m = _NPM_PATTERN.search(line)
            if m and len(m.group(1).strip()) > 3 and "A complete log" not in m.group(1):
                add(ErrorCategory.NPM, m.group(1).strip())
                continue

            m = _RUNTIME_PATTERN.search(line)
            if m:
                add(ErrorCategory.RUNTIME, f"{m.group(1)}: {m.group(2)}")

        return errors


def hmr_updated_files(output: str) -> List[str]:
    m = _HMR_UPDATE_PATTERN.search(output or "")
    if not m:
        return []
    return [_normalize(f) for f in m.group(1).split(",") if f.strip()]


def is_compile_success(output: str) -> bool:
    return any(p.search(output or "") for p in _COMPILED_PATTERNS)


class ErrorTracker:
    """Keeps the errors currently visible in a terminal stream."""

    def __init__(self, parser: Optional[TerminalErrorParser] = None):
        self.parser = parser or TerminalErrorParser()
        self.errors: List[ParsedError] = []

    def feed(self, output: str) -> List[ParsedError]:
        """Update the tracked errors from one output chunk; returns new errors."""
        updated = hmr_updated_files(output)
        if updated:
            self.errors = [e for e in self.errors if not _touches(e, updated)]

        if is_compile_success(output):
            self.errors = [e for e in self.errors if e.category not in _CLEARED_ON_COMPILE]

        new = self.parser.feed(output)
        self.errors.extend(new)
        return new

    def remove_for_file(self, path: str) -> None:
        target = _normalize(path)
        self.errors = [e for e in self.errors if not e.file or _normalize(e.file) != target]

    def clear(self) -> None:
        self.errors = []

    def summary(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for e in self.errors:
            counts[e.category.value] = counts.get(e.category.value, 0) + 1
        return counts


def _touches(error: ParsedError, files: List[str]) -> bool:
    if not error.file:
        return False
    err_file = _normalize(error.file)
    return any(err_file == f or err_file.endswith(f) or f.endswith(err_file) for f in files)
