"""
CLI entrypoint for the Auto Trailing Stop-Loss engine.

Provides commands to run the engine and to manage tracked positions.
"""
import asyncio
from pathlib import Path
from typing import Optional

import typer

from trailstop.config.config import DEFAULT_CONFIG_PATH, Config, load_config
from trailstop.domain.models import to_decimal
from trailstop.exceptions import PriceUnavailable, ValidationError
from trailstop.monitoring.logger import get_logger, setup_logging
from trailstop.runtime.bootstrap import build_brokers, build_engine, build_registry

app = typer.Typer(
    name="trailstop",
    help="Auto Trailing Stop-Loss engine",
    add_completion=False,
)

logger = get_logger(__name__)


def _load(config_path: Path, log_file: Optional[Path] = None) -> Config:
    config = load_config(config_path)
    setup_logging(
        config.monitoring.log_level,
        config.monitoring.log_format,
        str(log_file) if log_file else config.monitoring.log_file,
        max_bytes=config.monitoring.log_max_bytes,
        backup_count=config.monitoring.log_backup_count,
    )
    return config


@app.command()
def run(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
    poll_interval: Optional[float] = typer.Option(None, "--interval", help="Seconds between ticks"),
    max_ticks: Optional[int] = typer.Option(None, "--max-ticks", help="Stop after N ticks"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Path to log file"),
):
    """
    Run the trailing stop loop until Ctrl-C.

    Example:
        trailstop run --interval 2
    """
    config = _load(config_path, log_file)
    registry = build_registry(config)

    async def _main():
        brokers = build_brokers(config)
        engine = build_engine(config, registry, brokers)
        try:
            await engine.run(poll_interval=poll_interval, max_ticks=max_ticks)
        finally:
            registry.flush()
            await brokers.close()

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        typer.echo("\nTerminated by user.")


@app.command()
def register(
    symbol: str = typer.Argument(..., help="Instrument symbol, e.g. INFY or BTC/USD"),
    quantity: int = typer.Option(..., "--quantity", "-q", help="Units held"),
    mode: Optional[str] = typer.Option(None, "--mode", help="percentage | fixed (default from config)"),
    value: Optional[str] = typer.Option(None, "--value", help="Trail distance (percent or price offset)"),
    entry_price: Optional[str] = typer.Option(None, "--entry-price", help="Entry price; fetched from broker if omitted"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
):
    """
    Start tracking a holding with a trailing stop.

    Example:
        trailstop register INFY --quantity 10 --mode percentage --value 2
    """
    config = _load(config_path)
    registry = build_registry(config)
    stop_mode = mode or config.trailing.default_stop_mode

    async def _register():
        parameter = to_decimal(value, "value") if value is not None else config.trailing.default_stop_parameter
        entry = to_decimal(entry_price, "entry_price") if entry_price is not None else None
        brokers = build_brokers(config)
        engine = build_engine(config, registry, brokers)
        try:
            return await engine.register(symbol, quantity, stop_mode, parameter, entry_price=entry)
        finally:
            await brokers.close()

    try:
        position = asyncio.run(_register())
    except (ValidationError, PriceUnavailable) as e:
        typer.secho(f"Registration failed: {e}", fg=typer.colors.RED)
        raise typer.Exit(1)

    typer.secho(
        f"Tracking {position.symbol}: qty={position.quantity} entry={position.entry_price} "
        f"stop={position.stop_price} ({position.stop_mode.value} {position.stop_parameter})",
        fg=typer.colors.GREEN,
    )
    if registry.dirty:
        typer.secho("Warning: position not persisted (store write failed)", fg=typer.colors.YELLOW)


@app.command()
def unregister(
    symbol: str = typer.Argument(..., help="Instrument symbol"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
):
    """Stop tracking a holding."""
    config = _load(config_path)
    registry = build_registry(config)
    if registry.unregister(symbol):
        typer.echo(f"Removed {symbol}")
    else:
        typer.echo(f"{symbol} is not tracked")
        raise typer.Exit(1)


@app.command(name="set-token")
def set_token(
    token: Optional[str] = typer.Argument(None, help="Broker access token (omit to clear)"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
):
    """Store the broker access token in the engine snapshot."""
    config = _load(config_path)
    registry = build_registry(config)
    if not registry.set_credential_token(token):
        typer.secho("Failed to persist token", fg=typer.colors.RED)
        raise typer.Exit(1)
    typer.echo("Token cleared" if token is None else "Token stored")


@app.command()
def status(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
    trades: int = typer.Option(10, "--trades", help="Recent trades to show"),
):
    """
    Display tracked positions and recent exits.

    Example:
        trailstop status
    """
    from rich.console import Console
    from rich.table import Table

    from trailstop.execution.trade_recorder import TradeRecorder

    config = _load(config_path)
    registry = build_registry(config)
    console = Console()

    table = Table(title="Tracked positions")
    for column in ("Symbol", "Qty", "Entry", "Mode", "Trail", "High", "Stop"):
        table.add_column(column)
    for symbol, pos in sorted(registry.all(), key=lambda item: item[0]):
        table.add_row(
            symbol,
            str(pos.quantity),
            str(pos.entry_price),
            pos.stop_mode.value,
            str(pos.stop_parameter),
            str(pos.high_water_mark),
            str(pos.stop_price),
        )
    console.print(table)
    console.print(f"Credential token: {'set' if registry.credential_token else 'not set'}")

    recent = TradeRecorder(config.storage.trade_journal_path).read_journal(trades)
    if recent:
        history = Table(title="Recent exits")
        for column in ("Closed", "Symbol", "Qty", "Stop", "Status", "Order"):
            history.add_column(column)
        for rec in recent:
            history.add_row(*(
                str(rec.get(key) or "-")
                for key in ("closed_at", "symbol", "quantity", "stop_price", "status", "order_id")
            ))
        console.print(history)


@app.callback()
def main(
    version: bool = typer.Option(False, "--version", help="Show version and exit"),
):
    """
    Auto Trailing Stop-Loss

    Tracks holdings and sells at market when price falls through a trailing stop.
    """
    if version:
        typer.echo("Auto Trailing Stop-Loss v1.0.0")
        raise typer.Exit()


if __name__ == "__main__":
    app()
