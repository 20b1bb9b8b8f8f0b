"""CLI for inspecting, backing up and syncing tracker snapshots."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="tradedesk",
    help="Position tracker: futures, spot and long-term holdings with cloud sync.",
    add_completion=False,
)
console = Console()


def _configure_logging(level: str = "INFO", fmt: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=fmt or "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _check_namespace(namespace: str) -> str:
    from tradedesk.core.registry import NAMESPACES

    if namespace not in NAMESPACES:
        console.print(f"[red]Unknown namespace {namespace!r}.[/] Choose one of: {', '.join(NAMESPACES)}")
        raise typer.Exit(code=1)
    return namespace


async def _open_cache(db_path: str):
    from tradedesk.data.database import Database
    from tradedesk.data.migrations import run_migrations
    from tradedesk.data.repository import LocalCache

    await run_migrations(db_path)
    db = Database(db_path)
    await db.connect()
    return db, LocalCache(db)


# -- migrate -----------------------------------------------------------------

@app.command()
def migrate(
    profile: str = typer.Option("default", help="Config profile"),
) -> None:
    """Create the local snapshot cache schema."""
    from tradedesk.config.settings import load_settings
    from tradedesk.data.migrations import run_migrations

    settings = load_settings(profile)
    console.print(f"[bold]Running migrations[/] → {settings.database.path}")
    asyncio.run(run_migrations(settings.database.path))
    console.print("[green]Migrations complete.[/]")


# -- export / import ---------------------------------------------------------

async def _run_export(settings, namespace: str, output: str) -> bool:
    from tradedesk.data.backup import write_backup

    db, cache = await _open_cache(settings.database.path)
    try:
        document = await cache.load_local(namespace)
    finally:
        await db.disconnect()
    if document is None:
        return False
    write_backup(output, document)
    return True


@app.command()
def export(
    namespace: str = typer.Argument(..., help="futures, spot or positionTrading"),
    output: str = typer.Option(..., "--output", "-o", help="JSON file to write"),
    profile: str = typer.Option("default", help="Config profile"),
    log_level: str = typer.Option("WARNING", help="Log level"),
) -> None:
    """Write the cached snapshot of a book to a JSON file."""
    from tradedesk.config.settings import load_settings

    _configure_logging(log_level)
    _check_namespace(namespace)
    settings = load_settings(profile)
    if not asyncio.run(_run_export(settings, namespace, output)):
        console.print(f"[yellow]No cached {namespace} snapshot to export.[/]")
        raise typer.Exit(code=1)
    console.print(f"[green]Exported {namespace} to {output}[/]")


async def _run_import(settings, namespace: str, document: dict) -> dict:
    from tradedesk.core.book import now_ms
    from tradedesk.core.registry import make_book
    from tradedesk.data.backup import export_snapshot, import_snapshot

    book = make_book(namespace, settings)
    import_snapshot(book, document)
    normalized = export_snapshot(book, now_ms())

    db, cache = await _open_cache(settings.database.path)
    try:
        await cache.save_local(namespace, normalized)
    finally:
        await db.disconnect()
    return normalized


@app.command(name="import")
def import_(
    namespace: str = typer.Argument(..., help="futures, spot or positionTrading"),
    source: str = typer.Option(..., "--input", "-i", help="JSON backup to restore"),
    profile: str = typer.Option("default", help="Config profile"),
    log_level: str = typer.Option("WARNING", help="Log level"),
) -> None:
    """Restore a JSON backup into the local cache (newest version wins on next sync)."""
    from tradedesk.config.settings import load_settings
    from tradedesk.data.backup import read_backup

    _configure_logging(log_level)
    _check_namespace(namespace)
    settings = load_settings(profile)
    try:
        document = read_backup(source)
    except (OSError, ValueError) as exc:
        console.print(f"[red]Cannot read {source}: {exc}[/]")
        raise typer.Exit(code=1)

    asyncio.run(_run_import(settings, namespace, document))
    console.print(f"[green]Imported {namespace} from {source}[/]")


# -- summary -----------------------------------------------------------------

def _futures_table(book) -> Table:
    table = Table(title=f"Futures (wallet ${book.wallet:,.2f})", show_header=True)
    for column in ("ID", "Symbol", "Side", "Avg entry", "Price", "SL", "TP1/TP2/TP3", "Size", "Left", "uPnL"):
        table.add_column(column, justify="right" if column not in ("Symbol", "Side") else "left")
    for p in book.positions:
        tps = "/".join(f"{lvl.price:.4g}{'✓' if not lvl.is_pending else ''}" for lvl in p.tp_levels)
        table.add_row(
            str(p.id),
            p.symbol,
            p.direction.value,
            f"{p.avg_entry:.6g}",
            f"{p.current_price:.6g}",
            f"{p.sl:.6g}",
            tps,
            f"{p.position_size:,.2f}",
            f"{p.remaining_percent:.0f}%",
            f"{p.unrealized_pnl:+,.2f}",
        )
    return table


def _spot_table(book) -> Table:
    table = Table(title=f"Spot (wallet ${book.wallet:,.2f})", show_header=True)
    for column in ("ID", "Symbol", "Entry", "Price", "Qty", "Value", "uPnL"):
        table.add_column(column, justify="left" if column == "Symbol" else "right")
    for p in book.positions:
        table.add_row(
            str(p.id),
            p.symbol,
            f"{p.entry_price:.6g}",
            f"{p.current_price:.6g}",
            f"{p.quantity:.8g}",
            f"{p.value:,.2f}",
            f"{p.unrealized_pnl:+,.2f}",
        )
    return table


def _assets_table(book) -> Table:
    table = Table(title=f"Holdings (cash ${book.available_cash:,.2f})", show_header=True)
    for column in ("Ticker", "Qty", "Avg buy", "Price", "Value", "PnL %", "Weight", "Status"):
        table.add_column(column, justify="left" if column in ("Ticker", "Status") else "right")
    for a in book.assets:
        table.add_row(
            a.ticker,
            f"{a.current_quantity:.8g}",
            f"{a.average_buy_price:.6g}",
            f"{a.current_market_price:.6g}",
            f"{a.current_value:,.2f}",
            f"{a.unrealized_pnl_percent:+.1f}%",
            f"{a.portfolio_weight:.1f}%",
            a.status.value,
        )
    return table


def _stats_table(book) -> Table:
    from tradedesk.core.asset_book import AssetBook
    from tradedesk.core.futures_book import FuturesBook

    table = Table(title="Account", show_header=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    if isinstance(book, FuturesBook):
        stats = book.stats()
        table.add_row("Used margin", f"${stats.total_used_margin:,.2f}")
        table.add_row("Equity", f"${stats.equity:,.2f}")
        table.add_row("Free margin", f"${stats.free_margin:,.2f}")
        table.add_row("Margin level", f"{stats.margin_level:.1f}% ({stats.band.value})")
    elif isinstance(book, AssetBook):
        metrics = book.metrics()
        table.add_row("Initial capital", f"${metrics.total_initial_capital:,.2f}")
        table.add_row("Invested", f"${metrics.total_invested:,.2f}")
        table.add_row("Current value", f"${metrics.total_current_value:,.2f}")
        table.add_row("P&L", f"${metrics.total_pnl:+,.2f} ({metrics.total_pnl_percent:+.1f}%)")
        table.add_row("Active alerts", str(len(book.alerts)))
    else:
        stats = book.stats()
        table.add_row("Available", f"${stats.available_balance:,.2f}")
        table.add_row("Portfolio value", f"${stats.total_portfolio_value:,.2f}")
        table.add_row("P&L", f"${stats.total_pnl:+,.2f}")
    return table


async def _load_book(settings, namespace: str):
    from tradedesk.config.constants import ChangeOrigin
    from tradedesk.core.registry import make_book

    book = make_book(namespace, settings)
    db, cache = await _open_cache(settings.database.path)
    try:
        document = await cache.load_local(namespace)
    finally:
        await db.disconnect()
    if document is not None:
        book.replace_from_document(document, ChangeOrigin.REMOTE)
    return book


@app.command()
def summary(
    namespace: str = typer.Argument("futures", help="futures, spot or positionTrading"),
    profile: str = typer.Option("default", help="Config profile"),
    log_level: str = typer.Option("WARNING", help="Log level"),
) -> None:
    """Show the cached positions and account stats of a book."""
    from tradedesk.config.constants import FUTURES_NAMESPACE, SPOT_NAMESPACE
    from tradedesk.config.settings import load_settings

    _configure_logging(log_level)
    _check_namespace(namespace)
    settings = load_settings(profile)
    book = asyncio.run(_load_book(settings, namespace))

    if namespace == FUTURES_NAMESPACE:
        console.print(_futures_table(book))
    elif namespace == SPOT_NAMESPACE:
        console.print(_spot_table(book))
    else:
        console.print(_assets_table(book))
    console.print(_stats_table(book))


# -- sync / watch ------------------------------------------------------------

def _remote_store(settings):
    from tradedesk.sync.remote import HttpDocumentStore

    if not settings.sync.remote_url:
        console.print("[red]No remote configured.[/] Set TRADEDESK_SYNC_REMOTE_URL or sync.remote_url.")
        raise typer.Exit(code=1)
    return HttpDocumentStore(
        settings.sync.remote_url,
        api_token=settings.sync.api_token,
        poll_interval=settings.sync.poll_interval_seconds,
        timeout=settings.sync.request_timeout_seconds,
    )


async def _run_sync(settings, namespace: str, user_id: str, store) -> str:
    from tradedesk.core.registry import make_book
    from tradedesk.sync.coordinator import SyncCoordinator

    book = make_book(namespace, settings)
    db, cache = await _open_cache(settings.database.path)
    coordinator = SyncCoordinator(book, store, cache, settings.sync)
    try:
        state = await coordinator.start(user_id)
        await coordinator.stop()
    finally:
        await store.close()
        await db.disconnect()
    return state.value


@app.command()
def sync(
    namespace: str = typer.Argument("futures", help="futures, spot or positionTrading"),
    user: Optional[str] = typer.Option(None, help="User id (defaults to sync.user_id)"),
    profile: str = typer.Option("default", help="Config profile"),
    log_level: str = typer.Option("INFO", help="Log level"),
) -> None:
    """Reconcile the local cache with the remote document once."""
    from tradedesk.config.settings import load_settings

    settings = load_settings(profile)
    _configure_logging(log_level, settings.logging.format)
    _check_namespace(namespace)
    user_id = user or settings.sync.user_id
    if not user_id:
        console.print("[red]No user id.[/] Pass --user or set TRADEDESK_SYNC_USER_ID.")
        raise typer.Exit(code=1)

    state = asyncio.run(_run_sync(settings, namespace, user_id, _remote_store(settings)))
    color = "green" if state == "synced" else "red"
    console.print(f"[{color}]{namespace}: {state}[/]")


async def _run_watch(settings, namespace: str, user_id: str | None, store, live_all: bool) -> None:
    from tradedesk.core.registry import make_book
    from tradedesk.data.repository import CacheMirror
    from tradedesk.exchange.client import TickerClient
    from tradedesk.exchange.price_feed import CcxtPriceSource, LivePriceFeed
    from tradedesk.sync.coordinator import SyncCoordinator
    from tradedesk.sync.versioning import document_version

    book = make_book(namespace, settings)
    db, cache = await _open_cache(settings.database.path)
    coordinator = SyncCoordinator(book, store, cache, settings.sync) if store is not None else None
    client = TickerClient(settings.feed)
    source = CcxtPriceSource(client, reconnect_delay=settings.feed.reconnect_delay_seconds)
    feed = LivePriceFeed(book, source)
    mirror = None
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    try:
        if coordinator is not None:
            await coordinator.start(user_id)
        else:
            document = await cache.load_local(namespace)
            if document is not None:
                book.replace_from_document(document)
            mirror = CacheMirror(book, cache, version=document_version(document))
            mirror.attach()
        if live_all:
            for position in book.positions:
                book.toggle_auto_update(position.id, True)
        await client.connect()
        feed.attach()
        console.print(f"[bold green]Watching {len(feed.subscriptions)} {namespace} positions[/] (Ctrl-C to stop)")
        await stop_event.wait()
    finally:
        feed.detach()
        await source.aclose()
        await client.disconnect()
        if coordinator is not None:
            await coordinator.stop()
            await store.close()
        if mirror is not None:
            await mirror.close()
        await db.disconnect()


@app.command()
def watch(
    namespace: str = typer.Argument("futures", help="futures or spot"),
    user: Optional[str] = typer.Option(None, help="User id; enables cloud sync"),
    live_all: bool = typer.Option(False, "--all", help="Turn on live prices for every position"),
    profile: str = typer.Option("default", help="Config profile"),
    log_level: str = typer.Option("INFO", help="Log level"),
) -> None:
    """Stream live prices into auto-update positions until interrupted."""
    from tradedesk.config.constants import FUTURES_NAMESPACE, SPOT_NAMESPACE
    from tradedesk.config.settings import load_settings

    settings = load_settings(profile)
    _configure_logging(log_level, settings.logging.format)
    if namespace not in (FUTURES_NAMESPACE, SPOT_NAMESPACE):
        console.print("[red]Only futures and spot books carry live prices.[/]")
        raise typer.Exit(code=1)
    user_id = user or settings.sync.user_id or None
    store = _remote_store(settings) if user_id else None

    console.print(f"[bold]Price feed[/] {settings.feed.exchange} ({settings.feed.quote})")
    try:
        asyncio.run(_run_watch(settings, namespace, user_id, store, live_all))
    except KeyboardInterrupt:
        pass
    console.print("[green]Stopped.[/]")


if __name__ == "__main__":
    app()
