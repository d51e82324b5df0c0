"""Command-line interface for mailsweep."""

from __future__ import annotations

import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Callable

import click
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from mailsweep import __version__
from mailsweep.config import load_config
from mailsweep.imap_client import IMAPClient
from mailsweep.llm_client import LLMClient
from mailsweep.models import QueueStatus, ScanStats
from mailsweep.prompts import get_profile
from mailsweep.service import ServiceContext
from mailsweep.status import ScanStatus
from mailsweep.storage import Storage, StorageError
from mailsweep.unsubscribe_executor import (
    UnsubscribeExecutor,
    run_pending_unsubscribes,
    run_unsubscribe_task,
)

console = Console(width=200, soft_wrap=False)
logger = logging.getLogger("mailsweep")

KNOWN_ERRORS = (FileNotFoundError, ValidationError, ConnectionError, ValueError, StorageError)


def setup_logging(level: str, log_file: str | None = None) -> None:
    """Configure logging."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [
        RichHandler(
            console=console,
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
            markup=False,
        )
    ]

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True,
    )

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def config_option(func: Callable[..., Any]) -> Callable[..., Any]:
    return click.option(
        "--config",
        "-c",
        required=True,
        type=click.Path(exists=True),
        help="Path to configuration YAML file",
    )(func)


def verbose_option(func: Callable[..., Any]) -> Callable[..., Any]:
    return click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")(func)


def _open_context(config: str, verbose: bool = False) -> ServiceContext:
    cfg = load_config(config)
    setup_logging("DEBUG" if verbose else cfg.logging.level, cfg.logging.log_file)
    ctx = ServiceContext(cfg)
    ctx.audit.log_startup(
        {
            "version": __version__,
            "model": cfg.ollama.model,
            "database": cfg.database_path,
            "mock_imap": cfg.use_mock_imap or cfg.imap is None,
        }
    )
    return ctx


def _fail(e: Exception) -> None:
    console.print(f"[red]Error: {e}[/red]")
    sys.exit(1)


def _print_stats_table(title: str, stats: ScanStats) -> None:
    table = Table(title=title)
    table.add_column("Category", style="cyan")
    table.add_column("Count", justify="right", style="green")
    table.add_row("Processed", str(stats.emails_processed))
    table.add_row("Spam", str(stats.spam_count))
    table.add_row("Newsletter", str(stats.newsletter_count))
    table.add_row("Keep", str(stats.keep_count))
    console.print(table)


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Mailbox cleanup with a local LLM - find spam and newsletters, unsubscribe, trash."""
    pass


@cli.command()
@config_option
@click.option("--limit", "-l", type=int, default=None, help="Maximum messages to fetch (overrides config)")
@verbose_option
def scan(config: str, limit: int | None, verbose: bool) -> None:
    """Scan the inbox: enqueue new mail, or classify it directly when the queue is off."""
    try:
        ctx = _open_context(config, verbose)
        try:
            mode = "queue" if ctx.processor.queue_enabled() else "direct"
            console.print(f"[bold blue]mailsweep v{__version__}[/bold blue]  mode: [bold]{mode}[/bold]")
            stats = ctx.processor.process_emails(limit or ctx.config.scan_limit)
            title = "Messages Queued" if mode == "queue" else "Scan Summary"
            _print_stats_table(title, stats)
        finally:
            ctx.close()
    except KNOWN_ERRORS as e:
        _fail(e)


@cli.command(name="import")
@config_option
@verbose_option
def import_(config: str, verbose: bool) -> None:
    """Import every message from every folder as unclassified records."""
    try:
        ctx = _open_context(config, verbose)
        try:
            status = ctx.processor.import_all()
        finally:
            ctx.close()
    except (KNOWN_ERRORS + (TypeError,)) as e:
        _fail(e)

    console.print(
        f"[green]OK[/green] {status.emails_imported} imported from {status.folders_processed} folder(s), "
        f"{status.duplicates_skipped} duplicate(s) skipped"
    )


@cli.command()
@config_option
@click.option("--email-id", type=int, default=None, help="Classify a single stored email")
@verbose_option
def classify(config: str, email_id: int | None, verbose: bool) -> None:
    """Batch classify stored emails that are still unknown."""
    try:
        ctx = _open_context(config, verbose)
        try:
            if email_id is not None:
                result = ctx.processor.classify_single(email_id)
                if result is None:
                    console.print(f"Email {email_id} is already classified")
                else:
                    console.print(
                        f"Email {email_id}: [bold]{result.classification.value}[/bold] "
                        f"({result.confidence:.0%}) {result.reasoning or ''}"
                    )
                return

            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                console=console,
                transient=True,
            ) as progress:
                task = progress.add_task("Starting classification...", total=None)

                def show(status: ScanStatus) -> None:
                    progress.update(
                        task,
                        description=status.phase,
                        completed=status.current,
                        total=status.total or None,
                    )

                unsubscribe = ctx.scan_status.subscribe(show)
                try:
                    stats = ctx.processor.classify_unclassified()
                finally:
                    unsubscribe()

            _print_stats_table("Classification Summary", stats)
        finally:
            ctx.close()
    except KNOWN_ERRORS as e:
        _fail(e)


@cli.command()
@config_option
@click.option("--count", "-n", type=int, default=None, help="Number of workers (overrides the worker_count setting)")
@verbose_option
def worker(config: str, count: int | None, verbose: bool) -> None:
    """Run the queue worker pool until interrupted."""
    try:
        ctx = _open_context(config, verbose)
    except KNOWN_ERRORS as e:
        _fail(e)

    stop_event = threading.Event()

    def signal_handler(signum: int, frame: Any) -> None:
        logger.info("Received shutdown signal, stopping workers...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    if ctx.storage.get_setting("queue_enabled") != "true":
        console.print("[yellow]queue_enabled is false, workers will idle until it is turned on[/yellow]")

    try:
        ctx.pool.start(count)
        console.print(f"[green]OK[/green] {len(ctx.pool.workers)} worker(s) running. Press Ctrl+C to stop.")
        while not stop_event.wait(5.0):
            if count is None:
                ctx.pool.sync_worker_count()
            stats = ctx.storage.queue_stats()
            logger.debug(f"Queue: {stats}")
    finally:
        ctx.close()
    console.print("Workers stopped")


@cli.group()
def queue() -> None:
    """Inspect and maintain the classification queue."""
    pass


@queue.command(name="stats")
@config_option
def queue_stats(config: str) -> None:
    """Show queue counts by status."""
    try:
        cfg = load_config(config)
        ctx = ServiceContext(cfg)
    except KNOWN_ERRORS as e:
        _fail(e)

    stats = ctx.storage.queue_stats()
    table = Table(title="Queue")
    table.add_column("Status", style="cyan")
    table.add_column("Items", justify="right", style="green")
    for status, count in stats.items():
        table.add_row(status, str(count))
    console.print(table)

    settings = ctx.storage.get_settings()
    console.print(
        f"queue_enabled={settings.get('queue_enabled')}  worker_count={settings.get('worker_count')}"
    )


@queue.command(name="clear")
@config_option
@click.option(
    "--status",
    type=click.Choice([s.value for s in QueueStatus]),
    default=QueueStatus.COMPLETED.value,
    help="Status of the items to delete",
)
def queue_clear(config: str, status: str) -> None:
    """Delete queue items with a given status."""
    try:
        ctx = ServiceContext(load_config(config))
        deleted = ctx.storage.clear_queue(QueueStatus(status))
    except KNOWN_ERRORS as e:
        _fail(e)
    console.print(f"Deleted {deleted} {status} item(s)")


@queue.command(name="recover")
@config_option
@click.option(
    "--older-than",
    type=float,
    default=None,
    help="Seconds since claim after which a processing item is reclaimed (default: queue.stale_after)",
)
def queue_recover(config: str, older_than: float | None) -> None:
    """Return orphaned processing items to pending."""
    try:
        cfg = load_config(config)
        ctx = ServiceContext(cfg)
        recovered = ctx.storage.recover_stale(
            older_than if older_than is not None else cfg.queue.stale_after
        )
    except KNOWN_ERRORS as e:
        _fail(e)
    console.print(f"Recovered {recovered} item(s)")


@cli.command(name="set")
@config_option
@click.argument("key", type=click.Choice(["worker_count", "queue_enabled", "ollama_model"]))
@click.argument("value")
def set_setting(config: str, key: str, value: str) -> None:
    """Change a runtime setting stored in the database."""
    try:
        if key == "worker_count" and (not value.isdigit()):
            raise ValueError("worker_count must be a non-negative integer")
        if key == "queue_enabled" and value not in ("true", "false"):
            raise ValueError("queue_enabled must be 'true' or 'false'")
        ctx = ServiceContext(load_config(config))
        ctx.storage.set_setting(key, value)
    except KNOWN_ERRORS as e:
        _fail(e)
    console.print(f"{key} = {value}")


@cli.command()
@config_option
@click.option("--task-id", type=int, default=None, help="Execute a single task")
@click.option("--execute", "execute_all", is_flag=True, help="Execute all pending tasks")
@verbose_option
def unsubscribe(config: str, task_id: int | None, execute_all: bool, verbose: bool) -> None:
    """List pending unsubscribe tasks, or execute them."""
    try:
        ctx = _open_context(config, verbose)
    except KNOWN_ERRORS as e:
        _fail(e)

    try:
        if task_id is None and not execute_all:
            tasks = ctx.storage.pending_unsubscribe_tasks()
            table = Table(title=f"Pending Unsubscribes ({len(tasks)})")
            table.add_column("ID", justify="right")
            table.add_column("Sender", style="cyan")
            table.add_column("Method")
            table.add_column("URL", style="dim")
            for task in tasks:
                table.add_row(str(task.id), task.sender, task.method.value, task.unsubscribe_url[:80])
            console.print(table)
            return

        with UnsubscribeExecutor(ctx.classifier) as executor:
            if task_id is not None:
                task = ctx.storage.get_unsubscribe_task(task_id)
                if task is None:
                    raise ValueError(f"Unsubscribe task {task_id} not found")
                outcomes = [(task, run_unsubscribe_task(ctx.storage, executor, task, ctx.audit))]
            else:
                outcomes = run_pending_unsubscribes(ctx.storage, executor, ctx.audit)

        for task, result in outcomes:
            mark = "[green][OK][/green]" if result.success else "[red][X][/red]"
            console.print(f"{mark} {task.sender}: {result.explanation}")
            if result.next_action:
                console.print(f"    next: {result.next_action}")
    except KNOWN_ERRORS as e:
        _fail(e)
    finally:
        ctx.close()


@cli.command(name="trash-spam")
@config_option
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@verbose_option
def trash_spam(config: str, yes: bool, verbose: bool) -> None:
    """Move every message classified as spam to the trash folder."""
    try:
        ctx = _open_context(config, verbose)
    except KNOWN_ERRORS as e:
        _fail(e)

    try:
        count = len(ctx.storage.untrashed_spam())
        if count == 0:
            console.print("No spam to trash")
            return
        if not yes:
            click.confirm(f"Move {count} spam message(s) to trash?", abort=True)

        outcome = ctx.processor.trash_spam()
        console.print(f"[green]OK[/green] Trashed {outcome['trashed_count']}/{outcome['total_spam']}")
        for error in outcome["errors"]:
            console.print(f"[red]{error}[/red]")
    except KNOWN_ERRORS as e:
        _fail(e)
    finally:
        ctx.close()


@cli.command()
@config_option
def stats(config: str) -> None:
    """Show classification statistics and recent scans."""
    try:
        ctx = ServiceContext(load_config(config))
    except KNOWN_ERRORS as e:
        _fail(e)

    data = ctx.storage.get_statistics()
    table = Table(title="Statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right", style="green")
    for key, value in data.items():
        table.add_row(key.replace("_", " "), str(value))
    console.print(table)

    scans = ctx.storage.get_scan_logs(limit=10)
    if scans:
        table = Table(title="Recent Scans")
        table.add_column("Started", style="dim")
        table.add_column("Processed", justify="right")
        table.add_column("Spam", justify="right")
        table.add_column("Newsletter", justify="right")
        table.add_column("Keep", justify="right")
        for row in scans:
            table.add_row(
                (row["started_at"] or "")[:19],
                str(row["emails_processed"]),
                str(row["spam_count"]),
                str(row["newsletter_count"]),
                str(row["keep_count"]),
            )
        console.print(table)


@cli.command()
@config_option
def check(config: str) -> None:
    """Check configuration and connectivity."""
    try:
        cfg = load_config(config)
        console.print("[green][OK] Configuration valid[/green]")
        storage = Storage(cfg.database_path)
        storage.seed_settings(cfg.default_settings())
        model = storage.get_setting("ollama_model") or cfg.ollama.model

        if cfg.use_mock_imap or cfg.imap is None:
            console.print("\nIMAP: using mock mailbox")
        else:
            console.print(f"\nChecking IMAP connection to {cfg.imap.host}...")
            try:
                with IMAPClient(cfg.imap) as imap:
                    console.print("[green][OK] IMAP connection successful[/green]")
                    folders = imap.list_folders()
                    console.print(f"  Folders to import: {len(folders)}")
            except (ConnectionError, ValueError, RuntimeError) as e:
                console.print(f"[red][X] IMAP connection failed: {e}[/red]")

        console.print(f"\nChecking Ollama at {cfg.ollama.base_url}...")
        with LLMClient(cfg.ollama) as llm:
            if llm.check_health():
                console.print("[green][OK] Ollama available[/green]")
                models = llm.list_models()
                console.print(f"  Available models: {', '.join(models[:5])}")
                if model not in models:
                    console.print(f"[yellow][WARNING] Model {model} not found[/yellow]")
            else:
                console.print("[red][X] Ollama not available[/red]")

        profile = get_profile(model)
        console.print(
            f"\nProfile for {model}: {profile.description} "
            f"(workers={profile.workers}, batch={profile.batch_size}, concurrency={profile.concurrency})"
        )

    except KNOWN_ERRORS as e:
        _fail(e)


SAMPLE_CONFIG = """# mailsweep configuration

# Leave imap out (or set use_mock_imap: true) to try mailsweep on a canned mailbox
imap:
  host: imap.example.com
  port: 993
  username: user@example.com
  # Read the password from an environment variable (recommended)
  password_env: MAIL_PASSWORD
  inbox_folder: INBOX
  trash_folder: Trash

ollama:
  base_url: http://localhost:11434
  model: qwen2.5:0.5b
  timeout: 60
  batch_timeout: 120

queue:
  # When enabled, scans only enqueue and `mailsweep worker` classifies
  enabled: false
  worker_count: 2
  tick_interval: 1.0
  stale_after: 900

batch:
  emails_per_batch: 8
  initial_concurrency: 12
  min_concurrency: 1
  max_concurrency: 16
  increase_step: 2
  cooldown: 0.5

logging:
  level: INFO
  # log_file: mailsweep.log
  audit_file: audit.jsonl

database_path: mailsweep.db
scan_limit: 50
use_mock_imap: false
"""


@cli.command()
@click.argument("output", type=click.Path())
def init_config(output: str) -> None:
    """Generate a sample configuration file."""
    Path(output).write_text(SAMPLE_CONFIG)
    console.print(f"[green]Sample configuration written to {output}[/green]")
    console.print("\nNext steps:")
    console.print("1. Edit the configuration with your IMAP settings")
    console.print("2. Set the MAIL_PASSWORD environment variable")
    console.print("3. Run: mailsweep check --config " + output)
    console.print("4. Run: mailsweep scan --config " + output)


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
