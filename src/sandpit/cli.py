"""CLI for sandpit workbenches."""

import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import WorkbenchConfig, load_config
from .nfo_config import setup_logging
from .orchestrator import Orchestrator, WorkbenchContext
from .resolver import DependencyResolver, Manifest
from .scanner import scan_files
from .supervisor import EXIT_FAILURE


console = Console()


def _write_chunk(chunk: str) -> None:
    sys.stdout.write(chunk)
    sys.stdout.flush()


def _load(project_dir: str, config_path: Optional[str]) -> WorkbenchConfig:
    return load_config(config_path or project_dir)


@click.group()
@click.version_option(version=__version__, prog_name="sandpit")
@click.option("--log-dir", envvar="SANDPIT_LOG_DIR", default=None, help="Directory for structured logs")
def cli(log_dir: Optional[str]):
    """Sandpit – dependency-aware project runner."""
    load_dotenv(override=False)
    setup_logging(log_dir=log_dir)


@cli.command()
@click.argument("project_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--config", "-c", "config_path", type=click.Path(exists=True), help="Config file")
def scan(project_dir: str, config_path: Optional[str]):
    """Show imported packages and which of them are undeclared."""
    try:
        config = _load(project_dir, config_path)
        context = WorkbenchContext.local(project_dir, config)
        files = asyncio.run(context.file_store.read_all())
        imports = sorted(scan_files(files))
        text = files.get(config.manifest_path)

        missing: list[str] = []
        if text is None:
            console.print(f"[yellow]No {config.manifest_path} in {project_dir}[/yellow]")
        else:
            manifest = Manifest.from_json(text, path=config.manifest_path)
            missing = DependencyResolver(extra=config.extra_allowlist).find_missing(manifest, imports)

        table = Table(title=f"Imports in {Path(project_dir).name}")
        table.add_column("Package", style="cyan")
        table.add_column("Status")
        for name in imports:
            table.add_row(name, "[red]missing[/red]" if name in missing else "[green]ok[/green]")
        console.print(table)
        if missing:
            console.print(f"\n[yellow]{len(missing)} undeclared: {', '.join(missing)}[/yellow]")
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.argument("project_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--config", "-c", "config_path", type=click.Path(exists=True), help="Config file")
def prepare(project_dir: str, config_path: Optional[str]):
    """Add undeclared dependencies and install them if needed."""
    try:
        context = WorkbenchContext.local(project_dir, _load(project_dir, config_path))
        result = asyncio.run(Orchestrator(context).prepare(_write_chunk))
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    if result.added:
        console.print(f"[cyan]Added: {', '.join(result.added)}[/cyan]")
    if result.ok:
        console.print(f"[green]✓ {result.message}[/green]")
    else:
        console.print(f"[red]✗ {result.message}[/red]")
        sys.exit(result.exit_code or EXIT_FAILURE)


@cli.command()
@click.argument("project_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--config", "-c", "config_path", type=click.Path(exists=True), help="Config file")
def run(project_dir: str, config_path: Optional[str]):
    """Prepare the project, then run its start command until Ctrl+C."""
    try:
        context = WorkbenchContext.local(project_dir, _load(project_dir, config_path))
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    def on_ready(port: int, url: str) -> None:
        console.print(f"\n[bold green]➜ Ready on {url}[/bold green]")

    async def main() -> int:
        context.sandbox.on_server_ready(on_ready)
        result, handle = await Orchestrator(context).prepare_and_start(_write_chunk)
        if handle is None:
            console.print(f"[red]✗ {result.message}[/red]")
            return result.exit_code or EXIT_FAILURE
        console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, handle.cancel)
        try:
            code = await handle.wait()
        finally:
            loop.remove_signal_handler(signal.SIGINT)
        if handle.cancelled:
            console.print("\n[yellow]Stopped[/yellow]")
            return 0
        return code

    sys.exit(asyncio.run(main()))


@cli.command(name="exec", context_settings={"ignore_unknown_options": True})
@click.argument("project_dir", type=click.Path(exists=True, file_okay=False))
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.option("--timeout-ms", "-t", default=60_000, type=int, help="Kill after this many ms (0 = no limit)")
def exec_command(project_dir: str, command: tuple, timeout_ms: int):
    """Run one command in the project: sandpit exec DIR -- CMD [ARGS]..."""
    context = WorkbenchContext.local(project_dir, load_config(project_dir))
    code = asyncio.run(context.supervisor.run(command[0], list(command[1:]), _write_chunk, timeout_ms=timeout_ms))
    sys.exit(code)


@cli.command()
@click.argument("project_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--config", "-c", "config_path", type=click.Path(exists=True), help="Config file")
@click.option("--clear", is_flag=True, help="Forget the cached install")
def cache(project_dir: str, config_path: Optional[str], clear: bool):
    """Show or clear the install cache."""
    context = WorkbenchContext.local(project_dir, _load(project_dir, config_path))
    install_cache = context.install_cache

    if clear:
        asyncio.run(install_cache.invalidate())
        console.print("[green]Install cache cleared[/green]")
        return

    stats = asyncio.run(install_cache.stats())
    table = Table(title="Install cache")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in stats.items():
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)


@cli.command()
@click.option("--project-dir", "-d", default=".", type=click.Path(exists=True, file_okay=False))
@click.option("--host", default=None, help="Bind address")
@click.option("--port", "-p", default=None, type=int, help="Bind port")
def serve(project_dir: str, host: Optional[str], port: Optional[int]):
    """Serve the runner HTTP API for one project."""
    import uvicorn

    from .runner_api import RunnerApiSettings, create_runner_api

    settings = RunnerApiSettings()
    settings.project_dir = Path(project_dir)
    context = WorkbenchContext.local(project_dir, load_config(settings.config_path or project_dir))
    app = create_runner_api(context=context, settings=settings)
    console.print(f"[bold]Serving {Path(project_dir).resolve()} on {host or settings.host}:{port or settings.port}[/bold]")
    uvicorn.run(app, host=host or settings.host, port=port or settings.port)


def main(argv=None):
    """Main entry point."""
    cli(argv)


if __name__ == "__main__":
    main()
