"""Import scanner – extract referenced package names from JS/TS sources.

This is a lexical heuristic, not a parser: specifiers inside comments or
string literals that merely look like imports are picked up too, and
computed specifiers (``require(name)``, template literals with
``${...}``) are ignored.
"""

from __future__ import annotations

import re
from pathlib import PurePosixPath
from typing import Mapping, Optional

SOURCE_EXTENSIONS = frozenset({
    ".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs", ".mts", ".cts", ".vue", ".svelte",
})

VENDOR_DIRS = frozenset({"node_modules", ".git", "dist", "build"})

_QUOTED = r"""(['"`])([^'"`\n]+)\1"""

_IMPORT_PATTERNS = (
    # import x from 'y' / import {a, b} from "y" / export * from 'y'
    re.compile(r"\b(?:import|export)\s[^'\"`;]*?\sfrom\s*" + _QUOTED),
    # side-effect import: import 'y'
    re.compile(r"\bimport\s*" + _QUOTED),
    # dynamic import('y')
    re.compile(r"\bimport\s*\(\s*" + _QUOTED + r"\s*\)"),
    # require('y')
    re.compile(r"\brequire\s*\(\s*" + _QUOTED + r"\s*\)"),
)


def extract_package_name(specifier: str) -> Optional[str]:
    """Map an import specifier to the package that provides it.

    >>> extract_package_name("@scope/pkg/sub")
    '@scope/pkg'
    >>> extract_package_name("lodash/fp")
    'lodash'
    >>> extract_package_name("./utils") is None
    True
    """
    spec = (specifier or "").strip()
    if not spec or spec.startswith((".", "/")) or "${" in spec:
        return None
    parts = spec.split("/")
    if spec.startswith("@"):
        if len(parts) < 2 or not parts[0][1:] or not parts[1]:
            return None
        return f"{parts[0]}/{parts[1]}"
    return parts[0] or None


def scan_source(text: str) -> set[str]:
    """Return the package names referenced by one source file."""
    found: set[str] = set()
    for pattern in _IMPORT_PATTERNS:
        for m in pattern.finditer(text or ""):
            name = extract_package_name(m.group(2))
            if name:
                found.add(name)
    return found


def should_scan(path: str) -> bool:
    """True for recognised source files outside vendored directories."""
    p = PurePosixPath(str(path).replace("\\", "/"))
    if any(part in VENDOR_DIRS for part in p.parts[:-1]):
        return False
    return p.suffix.lower() in SOURCE_EXTENSIONS


def scan_files(files: Mapping[str, str]) -> set[str]:
    """Aggregate package names over every scannable file in *files*."""
    found: set[str] = set()
    for path, content in files.items():
        if should_scan(path):
            found |= scan_source(content)
    return found
