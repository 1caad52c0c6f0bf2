from __future__ import annotations

import time
from datetime import UTC, datetime

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from coinbase_feed_lake.core.config import Settings
from coinbase_feed_lake.core.logging import configure_logging
from coinbase_feed_lake.core.models import GapRecord, GapStatus, SubscriptionKey
from coinbase_feed_lake.pipeline.orchestrator import FeedIngestionService, ServiceStats
from coinbase_feed_lake.writer.store import SQLiteMessageStore

app = typer.Typer(help="Coinbase market-data feed ingestion CLI")
console = Console()


def _format_ms(value: int | None) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value / 1000, tz=UTC).isoformat(timespec="seconds")


def _parse_gap_status(value: str | None) -> GapStatus | None:
    if value is None:
        return None
    try:
        return GapStatus(value.strip().lower())
    except ValueError as exc:
        known = ", ".join(status.value for status in GapStatus)
        raise typer.BadParameter(f"status must be one of: {known}") from exc


def _load_settings(
    products: list[str] | None = None,
    channels: list[str] | None = None,
    **overrides: object,
) -> Settings:
    updates: dict[str, object] = {key: value for key, value in overrides.items() if value is not None}
    if products:
        updates["products"] = products
    if channels:
        updates["channels"] = channels
    try:
        return Settings(**updates)
    except ValidationError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _offsets_table(offsets: dict[SubscriptionKey, int]) -> Table:
    table = Table(title="Last persisted sequence")
    table.add_column("Product")
    table.add_column("Channel")
    table.add_column("Sequence", justify="right")
    for key in sorted(offsets):
        table.add_row(key.product_id, key.channel, str(offsets[key]))
    return table


def _gaps_table(gaps: list[GapRecord]) -> Table:
    table = Table(title="Sequence gaps")
    table.add_column("Id", justify="right")
    table.add_column("Product")
    table.add_column("Channel")
    table.add_column("Range")
    table.add_column("Status")
    table.add_column("Missing", justify="right")
    table.add_column("Detected")
    table.add_column("Resolved")
    table.add_column("Detail")
    status_style = {GapStatus.PENDING: "yellow", GapStatus.RECOVERED: "green", GapStatus.LOST: "red"}
    for gap in gaps:
        table.add_row(
            str(gap.gap_id),
            gap.product_id,
            gap.channel,
            f"{gap.low}-{gap.high}",
            f"[{status_style[gap.status]}]{gap.status.value}[/{status_style[gap.status]}]",
            str(gap.missing_count),
            _format_ms(gap.detected_at_ms),
            _format_ms(gap.resolved_at_ms),
            gap.detail or "",
        )
    return table


def _summary_line(stats: ServiceStats) -> str:
    return (
        "Feed: "
        f"state={stats.state.value}, "
        f"subscriptions={len(stats.subscriptions)}, "
        f"messages={stats.pipeline.parsed}, "
        f"parse_errors={stats.pipeline.parse_errors}, "
        f"reconnects={stats.connection.reconnects}, "
        f"gaps_detected={stats.recovery.gaps_detected}, "
        f"gaps_recovered={stats.recovery.gaps_recovered}, "
        f"gaps_lost={stats.recovery.gaps_lost}"
    )


@app.command("init-store")
def init_store() -> None:
    settings = Settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    store = SQLiteMessageStore(settings.store_path)
    console.print(f"Store initialized at [bold]{store.path}[/bold]")


@app.command("show-offsets")
def show_offsets() -> None:
    settings = Settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    offsets = SQLiteMessageStore(settings.store_path).last_sequences()
    if not offsets:
        console.print("No sequenced messages stored yet")
        return
    console.print(_offsets_table(offsets))


@app.command("show-gaps")
def show_gaps(
    status: str | None = typer.Option(default=None, help="Filter by status: pending, recovered or lost"),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    gaps = SQLiteMessageStore(settings.store_path).list_gaps(status=_parse_gap_status(status))
    if not gaps:
        console.print("No gaps recorded")
        return
    console.print(_gaps_table(gaps))


@app.command("run")
def run(
    product: list[str] | None = typer.Option(
        None,
        "--product",
        "-p",
        help="Product to subscribe to; repeat for several (default: CFL_PRODUCTS)",
    ),
    channel: list[str] | None = typer.Option(
        None,
        "--channel",
        "-c",
        help="Channel to subscribe to; repeat for several (default: CFL_CHANNELS)",
    ),
    duration: float | None = typer.Option(
        default=None,
        min=1.0,
        help="Stop after this many seconds; runs until interrupted when omitted",
    ),
    discover: bool | None = typer.Option(
        None,
        "--discover/--no-discover",
        help="Follow product listings from the REST API",
    ),
    status_interval: float = typer.Option(default=30.0, min=1.0, help="Seconds between status lines"),
) -> None:
    """
    Stream the configured products until interrupted or until --duration elapses.
    """
    settings = _load_settings(product, channel, discovery_enabled=discover)
    configure_logging(settings.log_level, json_output=settings.log_json)

    service = FeedIngestionService(settings)
    deadline = None if duration is None else time.monotonic() + duration
    service.start()
    try:
        while deadline is None or time.monotonic() < deadline:
            remaining = status_interval if deadline is None else min(status_interval, deadline - time.monotonic())
            time.sleep(max(0.0, remaining))
            console.print(_summary_line(service.stats()))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted; shutting down[/yellow]")
    finally:
        service.stop()

    stats = service.stats()
    console.print(_summary_line(stats))
    if stats.recovery.gaps_lost:
        console.print(f"[red]{stats.recovery.gaps_lost} gap(s) could not be recovered; see show-gaps[/red]")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
