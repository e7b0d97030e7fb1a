"""CLI entry point for listing SmugMug albums and uploading files without duplicates."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import time
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeRemainingColumn,
)
from rich.table import Table
from rich.text import Text

from album_sync import __version__
from album_sync.auth import Credentials, authorize, load_credentials, store_credentials
from album_sync.config import SyncConfig
from album_sync.errors import ConfigurationError, CredentialsError, SyncError
from album_sync.pagination import AggregateResult
from album_sync.sync_engine import SyncEngine, expand_file_names, format_size
from album_sync.upload_pool import UploadBatchResult, UploadOutcome

logger = logging.getLogger(__name__)

PROG = "album-sync"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="List SmugMug albums and upload files into them, skipping content already there.",
    )
    parser.add_argument(
        "--retries",
        type=int,
        default=None,
        metavar="N",
        help="Number of retries if an upload fails (default: 2, or ALBUM_SYNC_RETRIES)",
    )
    parser.add_argument(
        "--home",
        default=None,
        metavar="PATH",
        help="Folder for tokens, the image database and logs (default: ~/.album_sync)",
    )
    parser.add_argument(
        "--allow-dupes",
        action="store_true",
        default=None,
        help="Upload files even when the same content is already in the album",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output and progress bars",
    )

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.add_parser("apikey", help="Store your SmugMug API key and secret")
    sub.add_parser("auth", help="Authorize this tool for your SmugMug account")
    sub.add_parser("albums", help="List all albums with their keys")

    images = sub.add_parser("images", help="Refresh the local image records of an album")
    images.add_argument("album", help="Album key")

    search = sub.add_parser("search", help="Search your albums")
    search.add_argument("terms", nargs="+", help="Search terms")

    upload = sub.add_parser("upload", help="Upload one file")
    upload.add_argument("album", help="Album key")
    upload.add_argument("filename")

    multi = sub.add_parser("multiupload", help="Upload many files in parallel")
    multi.add_argument("parallel", type=int, help="Number of parallel uploads")
    multi.add_argument("album", help="Album key")
    multi.add_argument("filenames", nargs="+", help="Files or glob patterns")

    dupes = sub.add_parser("dupes", help="Show files in an album with the same content as a local file")
    dupes.add_argument("album", help="Album key")
    dupes.add_argument("filename")

    sub.add_parser("version", help="Print the version")
    return parser


def _setup_logging(verbose: bool, console: Console, log_filename: Path | None) -> None:
    """Configure dual logging: rich console + plain-text log file."""
    log_level = logging.DEBUG if verbose else logging.INFO
    plain_format = "%(asctime)s  %(levelname)-8s  %(threadName)s  %(message)s"

    root = logging.getLogger()
    root.setLevel(log_level)

    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    rich_handler.setLevel(log_level)
    root.addHandler(rich_handler)

    if log_filename is not None:
        file_handler = logging.FileHandler(log_filename, encoding="utf-8")
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(plain_format, datefmt="%H:%M:%S"))
        root.addHandler(file_handler)


# ── output ──────────────────────────────────────────────────────────


def _print_albums(console: Console, result: AggregateResult) -> None:
    table = Table(show_header=True, box=None, padding=(0, 2))
    table.add_column("Album", style="cyan")
    table.add_column("Key", style="bold")
    for album in result.items:
        table.add_row(album.name, album.key)
    console.print(table)


def _print_upload_summary(console: Console, result: UploadBatchResult, elapsed: float) -> None:
    """Print a rich summary panel at the end of an upload batch."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")

    uploaded_bytes = sum(o.fingerprint.size for o in result.uploaded if o.fingerprint)
    table.add_row("Uploaded", f"[green]{len(result.uploaded)}[/green]")
    table.add_row("Skipped (duplicate)", str(len(result.skipped)))
    failed_style = "red bold" if result.failed else "green"
    table.add_row("Failed", f"[{failed_style}]{len(result.failed)}[/{failed_style}]")
    if result.cancelled:
        table.add_row("Cancelled", f"[yellow]{len(result.cancelled)}[/yellow]")
    if uploaded_bytes:
        table.add_row("Total data", format_size(uploaded_bytes))
    table.add_row("Elapsed", f"{elapsed:.1f}s")

    ok = result.all_ok and not result.unrecorded
    title = "Upload Complete" if ok else "Upload Complete (with errors)"
    console.print()
    console.print(Panel(table, title=title, border_style="green" if ok else "red", padding=(1, 2)))

    for outcome in result.skipped:
        console.print(f"Not uploaded {outcome.path}, duplicate of:", style="yellow")
        for name in sorted(outcome.duplicates):
            console.print(f"  - {name}", style="dim")
    if result.failed:
        console.print(Text("Failed files:", style="red bold"))
        for outcome in result.failed:
            console.print(f"  - {outcome.path}: {outcome.error}", style="red")
    if result.unrecorded:
        console.print(Text("Uploaded but not recorded locally:", style="red bold"))
        for outcome in result.unrecorded:
            console.print(f"  - {outcome.path}: {outcome.storage_error}", style="red")


# ── commands ────────────────────────────────────────────────────────


def _cmd_apikey(config: SyncConfig, console: Console) -> int:
    key = console.input("Enter your SmugMug key: ").strip()
    secret = console.input("Enter your SmugMug secret: ").strip()
    if not key or not secret:
        logger.error("Both the key and the secret are required.")
        return 1
    store_credentials(Credentials(key, secret), config.api_token_path)
    console.print(f"API key saved to {config.api_token_path}")
    return 0


def _cmd_auth(config: SyncConfig, console: Console) -> int:
    api_key = load_credentials(config.api_token_path)

    def prompt(url: str) -> str:
        console.print(f"Authorize access at: {url}")
        return console.input("Enter your verification code: ")

    access = authorize(api_key, prompt)
    store_credentials(access, config.user_token_path)
    console.print(f"Authorized. Access token saved to {config.user_token_path}")
    return 0


def _cmd_albums(engine: SyncEngine, console: Console) -> int:
    result = engine.list_albums(on_complete=lambda r: _print_albums(console, r))
    console.print(f"\nElapsed time: {result.elapsed:.2f}s", style="dim")
    return 1 if result.partial else 0


def _cmd_images(engine: SyncEngine, console: Console, album: str) -> int:
    result = engine.sync_album_images(album)
    console.print(f"Got {len(result.items)} of {result.total_count} image(s) for album {album}.")
    if result.partial:
        console.print("Some pages failed; local records were left unchanged.", style="red")
        return 1
    return 0


def _cmd_search(engine: SyncEngine, console: Console, terms: list[str]) -> int:
    start = 1
    while True:
        page = engine.search_albums(terms, start=start)
        if page.is_empty:
            if start == 1:
                console.print("No search results found.")
            return 0
        for album in page.items:
            console.print(f"{album.name} :: {album.key}")
        if page.start_index + page.returned_count > page.total_count:
            return 0
        try:
            console.input("Press Enter for more results or Ctrl-C to quit.")
        except (KeyboardInterrupt, EOFError):
            return 0
        start = page.start_index + page.returned_count


def _cmd_dupes(engine: SyncEngine, console: Console, album: str, filename: str) -> int:
    fingerprint, names = engine.duplicates_of_file(album, filename)
    if not names:
        console.print(f"No known duplicates of {filename} ({fingerprint}) in album {album}.")
        return 0
    console.print(f"{filename} ({fingerprint}) is already in album {album} as:")
    for name in sorted(names):
        console.print(f"  {name}")
    return 0


def _cmd_upload(
    engine: SyncEngine,
    console: Console,
    config: SyncConfig,
    album: str,
    patterns: list[str],
    parallel: int,
    use_progress: bool,
    expand: bool = True,
) -> int:
    files = expand_file_names(patterns) if expand else list(patterns)
    if not files:
        logger.error("No files match %s", " ".join(patterns))
        return 1
    logger.info("Uploading %d file(s) to album %s (%d tries each).", len(files), album, config.attempts)

    def _handle_interrupt(sig, frame):  # noqa: ANN001
        logger.warning("Interrupt received; finishing current uploads.")
        engine.cancel()

    previous = signal.signal(signal.SIGINT, _handle_interrupt)
    start = time.monotonic()
    try:
        if use_progress:
            progress = Progress(
                SpinnerColumn(),
                TextColumn("[bold blue]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeRemainingColumn(),
                console=console,
            )
            with progress:
                task = progress.add_task(f"Uploading to {album}", total=len(files))

                def report(outcome: UploadOutcome) -> None:
                    progress.advance(task)

                result = engine.upload_batch(album, files, concurrency=parallel, reporter=report)
        else:
            result = engine.upload_batch(album, files, concurrency=parallel)
    finally:
        signal.signal(signal.SIGINT, previous)

    _print_upload_summary(console, result, time.monotonic() - start)
    return 0 if result.all_ok else 1


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    if args.command == "version":
        print(f"{PROG} v{__version__}")
        return 0

    # ── console setup ────────────────────────────────────────────────
    use_color = sys.stdout.isatty() and not args.no_color and not os.getenv("NO_COLOR")
    console = Console(force_terminal=use_color, no_color=not use_color)

    try:
        config = SyncConfig.from_env().with_overrides(
            home=Path(args.home).expanduser() if args.home else None,
            retries=args.retries,
            allow_duplicates=args.allow_dupes,
        )
    except SyncError as exc:
        console.print(f"Configuration error: {exc}", style="red")
        return 2

    # ── logging setup ────────────────────────────────────────────────
    log_filename = None
    try:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        log_filename = config.log_dir / f"album_sync_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    except OSError as exc:
        console.print(f"Cannot create log folder {config.log_dir}: {exc}", style="yellow")
    _setup_logging(args.verbose, console, log_filename)

    try:
        if args.command == "apikey":
            return _cmd_apikey(config, console)
        if args.command == "auth":
            return _cmd_auth(config, console)

        engine = SyncEngine.from_config(config)
        if args.command == "albums":
            return _cmd_albums(engine, console)
        if args.command == "images":
            return _cmd_images(engine, console, args.album)
        if args.command == "search":
            return _cmd_search(engine, console, args.terms)
        if args.command == "dupes":
            return _cmd_dupes(engine, console, args.album, args.filename)
        if args.command == "upload":
            return _cmd_upload(
                engine, console, config, args.album, [args.filename], 1, use_progress=False, expand=False
            )
        if args.command == "multiupload":
            return _cmd_upload(
                engine, console, config, args.album, args.filenames, args.parallel, use_progress=use_color
            )
    except CredentialsError as exc:
        logger.error("%s", exc)
        logger.error('Type "%s apikey" to enter your API key, then "%s auth" to authorize.', PROG, PROG)
        return 1
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        return 2
    except SyncError as exc:
        logger.error("%s", exc)
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
