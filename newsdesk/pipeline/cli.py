"""CLI interface for newsdesk.

Usage:
    newsdesk fetch --category world --page 2
    newsdesk fetch --offline
    newsdesk search "climate" --domain bbc.co.uk
    newsdesk download --pages 5
    newsdesk auto-download
    newsdesk drain
    newsdesk status
    newsdesk purge --days 30
    newsdesk clear-cache --source category:world
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import sys
from pathlib import Path
from typing import List, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from newsdesk.config import DEFAULT_CONFIG_PATH, Settings, load_settings
from newsdesk.connectors.api import CurrentsGateway
from newsdesk.connectors.base import SearchFilters
from newsdesk.errors import AuthInvalid, ConfigError, NoDataAvailable
from newsdesk.pipeline.advisor import SystemAdvisor
from newsdesk.pipeline.download import (
    CancellationToken,
    DownloadController,
    DownloadProgress,
    DownloadStatus,
)
from newsdesk.pipeline.orchestrator import FetchOrchestrator, FetchResult
from newsdesk.pipeline.request import RequestSpec
from newsdesk.pipeline.sync import SyncQueueProcessor
from newsdesk.storage.db import ArticleStore
from newsdesk.storage.migrations import reset_database
from newsdesk.storage.models import Article

console = Console()


def run_async(coro):
    """Run an async function to completion."""
    return asyncio.run(coro)


def _setup_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(console=console, rich_tracebacks=True)],
        )
    else:
        logging.basicConfig(level=logging.WARNING)


async def _open_store(settings: Settings) -> ArticleStore:
    store = ArticleStore.from_settings(settings.storage)
    if not await store.initialize():
        console.print(f"[yellow]Store at {settings.storage.db_path} unavailable, running without cache")
    return store


def _article_table(articles: List[Article], title: Optional[str] = None) -> Table:
    table = Table(title=title, show_header=True)
    table.add_column("#", style="dim", width=4)
    table.add_column("Title", max_width=60)
    table.add_column("Category", style="cyan", width=15)
    table.add_column("Date", width=12)
    table.add_column("Offline", width=7)

    for i, a in enumerate(articles, 1):
        pub_date = a.published_at.strftime("%Y-%m-%d") if a.published_at else "?"
        table.add_row(
            str(i),
            a.title[:60],
            ", ".join(a.category)[:15],
            pub_date,
            "[green]yes" if a.saved_offline else "",
        )
    return table


def _print_result(result: FetchResult, label: str) -> None:
    style = "green" if result.provenance.is_live else "yellow"
    console.print(
        f"\n[bold]{label}[/bold] page {result.page_num}: "
        f"{len(result.records)} articles from [{style}]{result.provenance.value}[/{style}]"
        + (f" ({result.total_results} total)" if result.total_results is not None else "")
    )
    if result.is_cached:
        console.print("[dim]Showing cached data; it may be out of date.[/dim]")
    if result.records:
        console.print(_article_table(result.records))


@click.group()
@click.option("--db", default=None, help="Database path (overrides config)")
@click.option("--config", default=DEFAULT_CONFIG_PATH, help="Config file path")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def cli(ctx, db: Optional[str], config: str, verbose: bool):
    """newsdesk: offline-tolerant news reader CLI."""
    _setup_logging(verbose)
    try:
        settings = load_settings(config)
    except ConfigError as e:
        console.print(f"[red]Config error:[/red] {e}")
        sys.exit(1)
    if db:
        settings.storage.db_path = db
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@click.option("--category", "-c", help="Category (default: latest news)")
@click.option("--page", "-p", "page_num", default=1, type=int, help="Page number")
@click.option("--offline", is_flag=True, help="Pretend the network is down")
@click.pass_context
def fetch(ctx, category: Optional[str], page_num: int, offline: bool):
    """Fetch a page of latest or category news."""
    settings: Settings = ctx.obj["settings"]

    async def _run():
        store = await _open_store(settings)
        try:
            orchestrator = FetchOrchestrator(store, CurrentsGateway.from_settings(settings.api))
            kwargs = dict(
                page_size=settings.api.page_size,
                language=settings.api.language,
                online=not offline,
            )
            spec = (
                RequestSpec.for_category(category, page_num, **kwargs)
                if category
                else RequestSpec.listing(page_num, **kwargs)
            )
            with console.status("[bold green]Fetching..."):
                result = await orchestrator.fetch_articles(spec)
            _print_result(result, spec.source)
        except AuthInvalid as e:
            console.print(f"[red]Authentication failed:[/red] {e}")
            sys.exit(1)
        except NoDataAvailable as e:
            console.print(f"[yellow]{e}[/yellow]")
            sys.exit(1)
        finally:
            await store.close()

    run_async(_run())


@cli.command()
@click.argument("query")
@click.option("--page", "-p", "page_num", default=1, type=int, help="Page number")
@click.option("--category", "-c", help="Filter by category")
@click.option("--domain", help="Filter by source domain")
@click.option("--from", "start_date", help="Start date (YYYY-MM-DD), needs --to")
@click.option("--to", "end_date", help="End date (YYYY-MM-DD), needs --from")
@click.option("--offline", is_flag=True, help="Pretend the network is down")
@click.pass_context
def search(
    ctx,
    query: str,
    page_num: int,
    category: Optional[str],
    domain: Optional[str],
    start_date: Optional[str],
    end_date: Optional[str],
    offline: bool,
):
    """Search news, falling back to saved articles when offline."""
    settings: Settings = ctx.obj["settings"]

    async def _run():
        store = await _open_store(settings)
        try:
            orchestrator = FetchOrchestrator(store, CurrentsGateway.from_settings(settings.api))
            spec = RequestSpec.search(
                query,
                page_num,
                page_size=settings.api.page_size,
                language=settings.api.language,
                online=not offline,
                filters=SearchFilters(
                    start_date=start_date, end_date=end_date, domain=domain, category=category
                ),
            )
            with console.status("[bold green]Searching..."):
                result = await orchestrator.fetch_articles(spec)
            if not result.records:
                console.print(f"[yellow]No results for:[/yellow] {query}")
                return
            _print_result(result, f"Search {query!r}")
        except AuthInvalid as e:
            console.print(f"[red]Authentication failed:[/red] {e}")
            sys.exit(1)
        finally:
            await store.close()

    run_async(_run())


@cli.command()
@click.pass_context
def status(ctx):
    """Show storage status."""
    settings: Settings = ctx.obj["settings"]

    async def _run():
        store = await _open_store(settings)
        try:
            stats = await store.compute_stats()

            console.print("\n[bold]Storage Status[/bold]")
            console.print(f"  Path: {settings.storage.db_path}")
            console.print(
                f"  Usage: {stats.usage_bytes / 1024:.1f} KB of "
                f"{stats.quota_bytes / (1024 * 1024):.0f} MB ({stats.usage_percent:.1f}%)"
            )
            console.print(f"  Integrity: {'ok' if await store.integrity_check() else '[red]failed'}")

            table = Table(title="Contents")
            table.add_column("Collection", style="cyan")
            table.add_column("Count", justify="right")
            table.add_row("Articles", str(stats.total_articles))
            table.add_row("Saved offline", str(stats.offline_articles))
            table.add_row("Read", str(stats.read_articles))
            table.add_row("Bookmarked", str(stats.bookmarked_articles))
            table.add_row("Cached pages", str(stats.cached_pages))
            table.add_row("Pending actions", str(stats.pending_actions))
            console.print(table)

            pages = await store.get_cached_pages("latest")
            if pages:
                console.print("\n[bold]Cached latest pages[/bold]")
                for p in pages:
                    console.print(f"  page {p.page_num}: {len(p.articles)} articles ({p.origin.value})")
        finally:
            await store.close()

    run_async(_run())


@cli.command()
@click.pass_context
def drain(ctx):
    """Submit actions queued while offline."""
    settings: Settings = ctx.obj["settings"]

    async def _run():
        store = await _open_store(settings)
        try:
            processor = SyncQueueProcessor(store, CurrentsGateway.from_settings(settings.api))
            with console.status("[bold green]Syncing..."):
                summary = await processor.drain(online=True)
            if summary.skipped:
                console.print("[yellow]Sync skipped")
                return
            console.print(
                f"Processed {summary.processed}: "
                f"[green]{summary.succeeded} succeeded[/green], [red]{summary.failed} failed[/red]"
            )
        except AuthInvalid as e:
            console.print(f"[red]Authentication failed:[/red] {e}; queued actions left pending")
            sys.exit(1)
        finally:
            await store.close()

    run_async(_run())


@cli.command()
@click.argument("article_id")
@click.option("--offline", is_flag=True, help="Queue the action instead of sending it")
@click.pass_context
def bookmark(ctx, article_id: str, offline: bool):
    """Toggle a bookmark on a stored article and record the action."""
    settings: Settings = ctx.obj["settings"]

    async def _run():
        store = await _open_store(settings)
        try:
            article = await store.get_article(article_id)
            if article is None:
                console.print(f"[red]No stored article with id[/red] {article_id}")
                sys.exit(1)
            bookmarked = await store.toggle_bookmark(article)
            if bookmarked is None:
                console.print("[red]Could not update bookmark")
                sys.exit(1)
            processor = SyncQueueProcessor(store, CurrentsGateway.from_settings(settings.api))
            await processor.record(
                "bookmark", {"article_id": article.id, "bookmarked": bookmarked}, online=not offline
            )
            console.print(f"{'Bookmarked' if bookmarked else 'Removed bookmark'}: {article.title}")
        except AuthInvalid as e:
            console.print(f"[red]Authentication failed:[/red] {e}")
            sys.exit(1)
        finally:
            await store.close()

    run_async(_run())


@cli.command()
@click.option("--pages", "-n", "page_count", default=5, type=int, help="Number of pages")
@click.option("--category", "-c", help="Category (default: latest news)")
@click.option("--yes", "-y", is_flag=True, help="Skip the size confirmation")
@click.pass_context
def download(ctx, page_count: int, category: Optional[str], yes: bool):
    """Download pages for offline reading."""
    settings: Settings = ctx.obj["settings"]
    source = f"category:{category}" if category else "latest"

    async def _run():
        store = await _open_store(settings)
        try:
            orchestrator = FetchOrchestrator(store, CurrentsGateway.from_settings(settings.api))
            controller = DownloadController(
                orchestrator,
                advisor=SystemAdvisor(store, online=True),
                settings=settings.download,
                page_size=settings.api.page_size,
                language=settings.api.language,
            )
            token = CancellationToken()

            def confirm(estimate):
                if yes:
                    return True
                return click.confirm(
                    f"Download {page_count} pages (~{estimate.articles} articles, {estimate.size_text})?",
                    default=True,
                )

            with Progress(
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("{task.completed}/{task.total} pages"),
                console=console,
                transient=True,
            ) as progress:
                task = progress.add_task("Downloading", total=page_count, start=False)

                def on_progress(p: DownloadProgress):
                    progress.start_task(task)
                    progress.update(
                        task,
                        completed=p.downloaded_pages,
                        description=f"Downloading ({p.size_bytes / 1024:.0f} KB)",
                    )

                try:
                    summary = await controller.manual_download(
                        page_count, confirm, on_progress=on_progress, token=token, source=source
                    )
                except KeyboardInterrupt:
                    token.cancel()
                    raise

            colors = {
                DownloadStatus.SUCCESS: "green",
                DownloadStatus.PARTIAL: "yellow",
                DownloadStatus.DECLINED: "dim",
            }
            color = colors.get(summary.status, "red")
            console.print(
                f"[{color}]Download {summary.status.value}[/{color}]: "
                f"{summary.downloaded_pages}/{summary.requested_pages} pages, "
                f"{summary.articles} articles"
            )
            if summary.failed_pages:
                console.print(f"  Failed pages: {', '.join(map(str, summary.failed_pages))}")
        except AuthInvalid as e:
            console.print(f"[red]Authentication failed:[/red] {e}")
            sys.exit(1)
        except ValueError as e:
            console.print(f"[red]Error:[/red] {e}")
            sys.exit(1)
        finally:
            await store.close()

    run_async(_run())


@cli.command("auto-download")
@click.option("--session", "session_id", default=None, help="Session id (default: a fresh one)")
@click.pass_context
def auto_download(ctx, session_id: Optional[str]):
    """Run the background download if conditions allow."""
    settings: Settings = ctx.obj["settings"]

    async def _run():
        store = await _open_store(settings)
        try:
            orchestrator = FetchOrchestrator(store, CurrentsGateway.from_settings(settings.api))
            controller = DownloadController(
                orchestrator,
                advisor=SystemAdvisor(store, online=True),
                settings=settings.download,
                session_id=session_id,
                page_size=settings.api.page_size,
                language=settings.api.language,
            )
            summary = await controller.auto_download()
            if summary.status is DownloadStatus.SKIPPED:
                console.print(f"[yellow]Auto-download skipped:[/yellow] {summary.reason}")
            else:
                console.print(
                    f"Auto-download {summary.status.value}: "
                    f"{summary.downloaded_pages}/{summary.requested_pages} pages"
                )
        finally:
            await store.close()

    run_async(_run())


@cli.command()
@click.option("--days", "-d", type=int, default=None, help="Retention in days (default: from config)")
@click.pass_context
def purge(ctx, days: Optional[int]):
    """Delete old articles that are neither saved offline nor bookmarked."""
    settings: Settings = ctx.obj["settings"]
    retention = days if days is not None else settings.storage.retention_days

    async def _run():
        store = await _open_store(settings)
        try:
            removed = await store.purge_older_than(retention)
            expired = await store.evict_expired_searches()
            console.print(
                f"[green]Purged {removed} articles older than {retention} days, "
                f"{expired} expired searches"
            )
        finally:
            await store.close()

    run_async(_run())


@cli.command("clear-cache")
@click.option("--source", "-s", help="Only this page source (e.g. latest, category:world)")
@click.option("--all", "clear_everything", is_flag=True, help="Wipe every stored collection")
@click.option("--reset-schema", is_flag=True, help="Drop every table and rebuild the schema")
@click.pass_context
def clear_cache(ctx, source: Optional[str], clear_everything: bool, reset_schema: bool):
    """Clear cached pages, everything with --all, or the whole schema with --reset-schema."""
    settings: Settings = ctx.obj["settings"]
    if reset_schema:
        if not click.confirm("Drop every table and rebuild the schema?", default=False):
            return
        Path(settings.storage.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            version = reset_database(settings.storage.db_path)
        except sqlite3.Error as e:
            console.print(f"[red]Reset failed:[/red] {e}")
            sys.exit(1)
        console.print(f"[green]Schema rebuilt at v{version}")
        return
    if clear_everything and not click.confirm("Delete all stored data?", default=False):
        return

    async def _run():
        store = await _open_store(settings)
        try:
            if clear_everything:
                ok = await store.clear_all()
                console.print("[green]All data cleared" if ok else "[red]Clear failed")
            else:
                removed = await store.clear_pages(source)
                console.print(f"[green]Removed {removed} cached pages")
        finally:
            await store.close()

    run_async(_run())


def main():
    cli()


if __name__ == "__main__":
    main()
