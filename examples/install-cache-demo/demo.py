#!/usr/bin/env python3
"""
Install Cache Demo - the second prepare of an unchanged project skips the install.

Needs Node.js with npm on PATH.

Usage:
    python demo.py
"""
import asyncio
import json
import sys
import time
from pathlib import Path

# Add sandpit to path if running from source
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from sandpit import (
    CommandConfig,
    FileCacheStore,
    LocalSandbox,
    MemoryFileStore,
    Orchestrator,
    WorkbenchConfig,
    WorkbenchContext,
    build_file_tree,
)


PROJECT_FILES = {
    "package.json": json.dumps({"name": "demo", "private": True, "dependencies": {}}, indent=2),
    "index.js": "const { v4 } = require('uuid');\nconsole.log('id', v4());\n",
}


async def main():
    print("=" * 50)
    print("⚡ Install Cache Demo")
    print("=" * 50)
    print()

    root = Path("/tmp/sandpit-demo/project")
    sandbox = await LocalSandbox(root).boot()
    await sandbox.mount(build_file_tree(PROJECT_FILES))

    config = WorkbenchConfig(
        install=CommandConfig("npm", ["install", "--no-audit", "--no-fund"]),
        start=CommandConfig("node", ["index.js"]),
    )
    context = WorkbenchContext(
        sandbox=sandbox,
        file_store=MemoryFileStore(PROJECT_FILES),
        cache_store=FileCacheStore("/tmp/sandpit-demo/install-cache.json"),
        config=config,
    )
    orchestrator = Orchestrator(context)

    for run in (1, 2):
        print(f"Run {run}:")
        started = time.time()
        result = await orchestrator.prepare(lambda chunk: print("  " + chunk, end=""))
        print(f"  → {result.phase.value} in {time.time() - started:.2f}s (added={result.added})")
        print()
        if not result.ok:
            return

    handle = await orchestrator.start(lambda chunk: print("  " + chunk, end=""))
    print(f"Start command exited with {await handle.wait()}")


if __name__ == "__main__":
    asyncio.run(main())
