# === NAVMAP v1 ===
# {
#   "module": "MossFetcher.cli",
#   "purpose": "moss-fetch command line: single and manifest-driven fetch runs",
#   "sections": [
#     {"id": "read-manifest", "name": "read_manifest", "anchor": "function-read-manifest", "kind": "function"},
#     {"id": "get", "name": "get", "anchor": "function-get", "kind": "function"},
#     {"id": "batch", "name": "batch", "anchor": "function-batch", "kind": "function"},
#     {"id": "main", "name": "main", "anchor": "function-main", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""CLI commands for running fetches.

This module provides Typer commands for:
- **get**: Fetch a single URI to a destination path
- **batch**: Fetch every item listed in a JSONL manifest

**Usage:**

    # One file
    moss-fetch get https://example.org/data.bin out/data.bin --size 1048576

    # Many files, 8 workers, progress bar
    moss-fetch batch manifest.jsonl --workers 8 --progress

Manifest lines look like ``{"uri": "...", "dest": "...", "size": 123}``.
Blank lines and lines starting with ``#`` are ignored.

**Exit codes:** 0 when every item succeeded, 1 when any item failed, 2 on a
configuration or manifest error, 130 when interrupted.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError

from . import __version__
from .config import FetcherConfig, load_config
from .controller import FetchController
from .errors import FetcherError, InvalidFetchableError
from .logging_utils import setup_logging
from .models import Fetchable
from .observer import FetchReport, LoggingObserver, ObserverGroup, ProgressBarObserver

__all__ = ["app", "main", "read_manifest", "run_fetch"]

logger = logging.getLogger(__name__)

app = typer.Typer(help="Concurrent downloads over a shared connection pool", no_args_is_help=True)

EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def read_manifest(path: Path) -> list[Fetchable]:
    """Parse a JSONL manifest into Fetchables.

    Raises:
        ValueError: If the file cannot be read or a line is invalid; the
            message names the offending line
    """
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        raise ValueError(f"Cannot read manifest {path}: {e}") from e

    fetchables: list[Fetchable] = []
    for lineno, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as e:
            raise ValueError(f"{path}:{lineno}: invalid JSON: {e}") from e
        if not isinstance(record, dict):
            raise ValueError(f"{path}:{lineno}: expected an object")
        try:
            fetchables.append(Fetchable.from_mapping(record))
        except InvalidFetchableError as e:
            raise ValueError(f"{path}:{lineno}: {e}") from e
    return fetchables


def run_fetch(
    fetchables: list[Fetchable],
    config: FetcherConfig,
    *,
    workers: Optional[int] = None,
    progress: bool = False,
) -> FetchReport:
    """Fetch ``fetchables`` and return the collected results.

    Ctrl-C cancels the run: in-flight transfers finish and the rest are
    abandoned.
    """
    report = FetchReport()
    bar = ProgressBarObserver(
        sum(f.expected_size for f in fetchables), disable=not progress, desc="fetch"
    )
    observer = ObserverGroup(report, LoggingObserver(), bar)
    try:
        with FetchController(workers, config=config, observer=observer) as fc:
            for fetchable in fetchables:
                fc.enqueue(fetchable)
            with ThreadPoolExecutor(max_workers=1, thread_name_prefix="fetch-main") as runner:
                future = runner.submit(fc.fetch)
                while True:
                    try:
                        future.result(timeout=0.5)
                        break
                    except FutureTimeout:
                        continue
                    except KeyboardInterrupt:
                        typer.echo("Interrupted; waiting for in-flight transfers...", err=True)
                        fc.cancel("interrupted")
    finally:
        bar.close()
    return report


def _execute(
    fetchables: list[Fetchable],
    *,
    workers: Optional[int],
    config_path: Optional[Path],
    log_level: str,
    json_logs: bool,
    log_file: Optional[Path],
    progress: bool,
) -> None:
    setup_logging(level=log_level, json_format=json_logs, log_file=log_file)
    try:
        config = load_config(config_path, overrides={"workers": workers})
    except (ValueError, ValidationError) as e:
        typer.echo(f"✗ Invalid configuration: {e}", err=True)
        raise typer.Exit(EXIT_USAGE)

    try:
        report = run_fetch(fetchables, config, workers=workers, progress=progress)
    except FetcherError as e:
        typer.echo(f"✗ Error: {e}", err=True)
        raise typer.Exit(EXIT_FAILED)

    for result in report.failed():
        typer.echo(f"✗ {result.fetchable.source_uri}: {result.reason}", err=True)
    summary = report.summary()
    typer.echo(
        f"✓ {summary['succeeded']} succeeded, {summary['failed']} failed, "
        f"{summary['cancelled']} cancelled, {summary['bytes']} bytes"
    )
    if summary["cancelled"] or summary["total"] < len(fetchables):
        raise typer.Exit(EXIT_INTERRUPTED)
    if summary["failed"]:
        raise typer.Exit(EXIT_FAILED)


@app.command()
def get(
    uri: str = typer.Argument(..., help="Source URI (http://, https://, file://)"),
    dest: Path = typer.Argument(..., help="Destination file path"),
    size: int = typer.Option(0, "--size", help="Expected size in bytes (progress hint)"),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", help="Worker threads"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML/JSON config"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Also log JSON to this file"),
    progress: bool = typer.Option(False, "--progress/--no-progress", help="Show a progress bar"),
) -> None:
    """Fetch a single URI to DEST."""
    try:
        fetchable = Fetchable(uri, str(dest), size)
    except InvalidFetchableError as e:
        typer.echo(f"✗ {e}", err=True)
        raise typer.Exit(EXIT_USAGE)
    _execute(
        [fetchable],
        workers=workers,
        config_path=config_path,
        log_level=log_level,
        json_logs=json_logs,
        log_file=log_file,
        progress=progress,
    )


@app.command()
def batch(
    manifest: Path = typer.Argument(..., help="JSONL manifest (uri, dest, size per line)"),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", help="Worker threads"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML/JSON config"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Also log JSON to this file"),
    progress: bool = typer.Option(False, "--progress/--no-progress", help="Show a progress bar"),
) -> None:
    """Fetch every item listed in MANIFEST."""
    try:
        fetchables = read_manifest(manifest)
    except ValueError as e:
        typer.echo(f"✗ Invalid manifest: {e}", err=True)
        raise typer.Exit(EXIT_USAGE)
    if not fetchables:
        typer.echo("ⓘ Manifest is empty; nothing to fetch")
        return
    _execute(
        fetchables,
        workers=workers,
        config_path=config_path,
        log_level=log_level,
        json_logs=json_logs,
        log_file=log_file,
        progress=progress,
    )


@app.command()
def version() -> None:
    """Print the installed version."""
    typer.echo(__version__)


def main() -> None:
    app()
