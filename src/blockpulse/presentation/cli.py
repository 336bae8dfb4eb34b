import asyncio, logging, time
from typing import Any, Awaitable, Callable, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.pretty import Pretty
from rich.progress import (
    Progress, BarColumn, TextColumn, TimeElapsedColumn,
    TimeRemainingColumn, MofNCompleteColumn, SpinnerColumn
)
from rich.table import Table

from ..application.analytics import RANGES
from ..application.export import export_store_to_parquet
from ..application.registry import Runtime, build_runtime
from ..config import Settings, load_settings
from ..domain.errors import BlockpulseError, UnknownNetworkError
from ..domain.models import TickOutcome
from ..domain.results import Found, NotFound

console = Console()
log = logging.getLogger("blockpulse")


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )
    # the HTTP stack is chatty at DEBUG
    for noisy in ("httpx", "httpcore", "hpack"):
        logging.getLogger(noisy).setLevel(max(logging.WARNING, logging.getLogger().level))


def _run(ctx: click.Context, fn: Callable[[Runtime, str], Awaitable[Any]]) -> Any:
    settings: Settings = ctx.obj["settings"]
    network: str = ctx.obj["network"]

    async def main() -> Any:
        rt = build_runtime(settings)
        try:
            return await fn(rt, network)
        finally:
            await rt.aclose()

    try:
        return asyncio.run(main())
    except BlockpulseError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}")


def _show_lookup(res: Any, title: str) -> Any:
    if isinstance(res, Found):
        console.print(Panel(Pretty(res.value), title=title, expand=False))
        return res.value
    if isinstance(res, NotFound):
        console.print(f"[yellow]not found[/]: {res.what}")
        raise click.exceptions.Exit(1)
    console.print(f"[red]temporarily unavailable[/]: {res.reason}")
    raise click.exceptions.Exit(2)


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="YAML config file (default: $BLOCKPULSE_CONFIG or built-in Flow EVM networks)")
@click.option("--network", "-n", default=None, help="Configured network name")
@click.option("-v", "--verbose", count=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], network: Optional[str], verbose: int):
    """blockpulse: EVM block ingestion, account activity and chain analytics."""
    try:
        settings = load_settings(config_path)
        net = settings.network(network).name
    except UnknownNetworkError as e:
        raise click.BadParameter(str(e), param_hint="--network")
    except BlockpulseError as e:
        raise click.ClickException(str(e))
    _setup_logging("DEBUG" if verbose else settings.log_level)
    ctx.obj = {"settings": settings, "network": net}


@cli.command("tail")
@click.option("--from-block", type=int, default=None, help="Start height when no cursor is stored yet")
@click.pass_context
def tail_cmd(ctx: click.Context, from_block: Optional[int]):
    """Follow the chain head and ingest every new block."""
    poll = ctx.obj["settings"].ingest.poll_interval_s

    def on_tick(o: TickOutcome) -> None:
        if o.status == "ingested":
            log.info("block %s: %d txs (%d new)", o.height, o.transactions, o.inserted)
        elif o.status == "skipped":
            log.warning("block %s skipped: %s", o.height, o.error)

    async def go(rt: Runtime, network: str) -> None:
        await rt.ingestor(network, "live", start=from_block).run(poll_interval_s=poll, on_tick=on_tick)

    try:
        _run(ctx, go)
    except KeyboardInterrupt:
        console.print("[bold]stopped[/]")


@cli.command("backfill")
@click.argument("from_block", type=int)
@click.argument("to_block", type=int)
@click.pass_context
def backfill_cmd(ctx: click.Context, from_block: int, to_block: int):
    """Ingest the inclusive height range FROM_BLOCK..TO_BLOCK with a live progress bar."""
    if from_block > to_block:
        raise click.UsageError("FROM_BLOCK must be <= TO_BLOCK")
    poll = ctx.obj["settings"].ingest.poll_interval_s
    counts = {"ingested": 0, "skipped": 0, "retry": 0, "waiting": 0, "txs": 0}
    t0 = time.time()

    progress = Progress(SpinnerColumn(),
                        TextColumn("[bold]backfilling[/]"),
                        BarColumn(),
                        MofNCompleteColumn(),
                        TextColumn("•"),
                        TimeElapsedColumn(),
                        TextColumn("→"),
                        TimeRemainingColumn(),
                        TextColumn(" • {task.description}"),
                        console=console,
                        transient=False,
                        expand=True,
                        )

    async def go(rt: Runtime, network: str) -> None:
        ing = rt.ingestor(network, "backfill", start=from_block, end=to_block)
        with progress:
            task = progress.add_task(description=f"{network} {from_block:,}-{to_block:,}",
                                     total=to_block - from_block + 1)
            resumed = await rt.store(network).get_cursor(ing.cursor_key)
            if resumed is not None:
                progress.advance(task, resumed - from_block + 1)

            def on_tick(o: TickOutcome) -> None:
                if o.status in counts:
                    counts[o.status] += 1
                counts["txs"] += o.inserted
                if o.status in ("ingested", "skipped"):
                    progress.advance(task, 1)

            await ing.run(poll_interval_s=poll, on_tick=on_tick)

    _run(ctx, go)
    console.print(f"[bold]done[/]: {counts['txs']} new txs • {time.time() - t0:.2f}s")
    console.print(
        f"[bold]summary[/]: "
        f"[green]ingested[/]={counts['ingested']}  "
        f"[yellow]skipped[/]={counts['skipped']}  "
        f"[red]retried[/]={counts['retry']}  "
        f"waiting={counts['waiting']}"
    )


@cli.command("block")
@click.argument("block_id")
@click.option("--full/--header", default=False, show_default=True, help="Include transaction bodies")
@click.pass_context
def block_cmd(ctx: click.Context, block_id: str, full: bool):
    """Show a block by height or hash."""
    async def go(rt: Runtime, network: str) -> Any:
        return await rt.facade(network).get_block(block_id, include_tx=full)
    _show_lookup(_run(ctx, go), f"block {block_id}")


@cli.command("tx")
@click.argument("tx_hash")
@click.option("--receipt", is_flag=True, help="Show the receipt as well")
@click.pass_context
def tx_cmd(ctx: click.Context, tx_hash: str, receipt: bool):
    """Show a transaction (and optionally its receipt)."""
    async def go(rt: Runtime, network: str) -> tuple[Any, Any]:
        f = rt.facade(network)
        tx = await f.get_transaction(tx_hash)
        rc = await f.get_transaction_receipt(tx_hash) if receipt else None
        return tx, rc
    tx, rc = _run(ctx, go)
    _show_lookup(tx, "transaction")
    if rc is not None:
        _show_lookup(rc, "receipt")


@cli.command("search")
@click.argument("query")
@click.pass_context
def search_cmd(ctx: click.Context, query: str):
    """Find an address, transaction, block height or block hash."""
    async def go(rt: Runtime, network: str) -> Any:
        return await rt.facade(network).search(query)
    res = _run(ctx, go)
    _show_lookup(res, f"{res.value.kind} {query}" if isinstance(res, Found) else query)


@cli.command("account")
@click.argument("address")
@click.option("--limit", type=int, default=10, show_default=True, help="Transactions to list")
@click.pass_context
def account_cmd(ctx: click.Context, address: str, limit: int):
    """Balance, indexed activity and recent transactions of an address."""
    async def go(rt: Runtime, network: str) -> tuple[Any, Any, Any]:
        f = rt.facade(network)
        return (await f.get_account_overview(address),
                await f.get_account_activity(address),
                await f.get_account_transactions(address, limit))
    overview, activity, txs = _run(ctx, go)

    _show_lookup(overview, "account")
    if isinstance(activity, Found):
        console.print(Panel(Pretty(activity.value), title="indexed activity", expand=False))
    if not isinstance(txs, Found):
        console.print(f"[red]transactions unavailable[/]: {getattr(txs, 'reason', txs)}")
        return
    page = txs.value
    table = Table(title=f"transactions via {page.source}" + (" (partial)" if page.partial else ""))
    for col in ("block", "hash", "from", "to", "value (wei)"):
        table.add_column(col)
    for t in page.transactions:
        table.add_row(str(t.block_number), t.hash, t.from_address, t.to_address or "(create)", str(t.value))
    console.print(table)


@cli.command("analytics")
@click.option("--range", "range_label", type=click.Choice(list(RANGES)), default="24h", show_default=True)
@click.pass_context
def analytics_cmd(ctx: click.Context, range_label: str):
    """Time-bucketed transaction, gas and value statistics."""
    async def go(rt: Runtime, network: str) -> Any:
        return await rt.facade(network).get_analytics(range_label)
    report = _show_lookup(_run(ctx, go), f"analytics {range_label}")
    table = Table(title=f"per {report.meta.bucket_label}")
    for col in ("bucket start", "blocks", "txs", "gas used", "value (wei)"):
        table.add_column(col, justify="right")
    for b in report.series:
        table.add_row(time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(b.bucket_start)), str(b.block_count),
                      str(b.transaction_count), str(b.gas_used_total), str(b.value_total))
    console.print(table)


@cli.command("export")
@click.argument("out_dir", required=False)
@click.option("--step", type=int, default=1_000, show_default=True, help="Blocks per Parquet chunk")
@click.option("--safety-margin", type=int, default=12, show_default=True,
              help="Heights this close to the stored head are not exported")
@click.pass_context
def export_cmd(ctx: click.Context, out_dir: Optional[str], step: int, safety_margin: int):
    """Export ingested blocks and transactions to Parquet (default: the network's index_dir)."""
    settings: Settings = ctx.obj["settings"]
    target = out_dir or settings.network(ctx.obj["network"]).index_dir
    if not target:
        raise click.UsageError("no OUT_DIR given and no index_dir configured for this network")

    async def go(rt: Runtime, network: str) -> dict[str, int]:
        return await export_store_to_parquet(rt.store(network), target, step=step, safety_margin=safety_margin,
                                             on_chunk=lambda rec: log.info("chunk %d-%d %s (%d blocks, %d txs)",
                                                                           rec.from_block, rec.to_block, rec.status,
                                                                           rec.blocks, rec.transactions))
    res = _run(ctx, go)
    console.print(f"[bold]export[/] → {target}: " + "  ".join(f"{k}={v}" for k, v in res.items()))


if __name__ == "__main__":
    cli()
