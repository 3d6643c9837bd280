"""
CLI entrypoint for the tierkeeper position engine.

Provides commands to run the engine, open positions and operate on them.
"""
import asyncio
from decimal import Decimal
from pathlib import Path
from typing import Optional, Tuple

import typer
import yaml

from tierkeeper.config.config import Config, load_config
from tierkeeper.config.dotenv_loader import load_dotenv_files
from tierkeeper.data.gate_client import CcxtGatewayFactory
from tierkeeper.domain.models import OpenPositionRequest, Settle
from tierkeeper.exceptions import TierkeeperError, UnprotectedPositionError
from tierkeeper.live.engine import PositionEngine
from tierkeeper.monitoring.logger import get_logger, setup_logging
from tierkeeper.storage.db import Database
from tierkeeper.storage.repository import PositionStore

app = typer.Typer(
    name="tierkeeper",
    help="Tiered take-profit position lifecycle engine",
    add_completion=False,
)

logger = get_logger(__name__)

ConfigOption = typer.Option(None, "--config", help="Path to config file (default: bundled config.yaml)")


@app.callback()
def main():
    """Load .env files (skipped in prod) before any command parses config."""
    load_dotenv_files()


def _load(config_path: Optional[Path]) -> Config:
    config = load_config(str(config_path) if config_path else None)
    setup_logging(config.logging.log_level, config.logging.log_format, config.logging.log_file)
    return config


def _build_engine(config: Config) -> Tuple[PositionEngine, Database]:
    db = Database(config.database.url, echo=config.database.echo)
    db.create_all()
    engine = PositionEngine(config, PositionStore(db), CcxtGatewayFactory(config))
    return engine, db


def _run(engine: PositionEngine, db: Database, coro):
    """Run one async operation, then release gateways and the connection pool."""
    async def _wrapped():
        try:
            return await coro
        finally:
            await engine.gateways.close_all()

    try:
        return asyncio.run(_wrapped())
    finally:
        db.dispose()


@app.command()
def run(config_path: Optional[Path] = ConfigOption):
    """
    Run the reconciliation and expiry timers until interrupted.

    Example:
        tierkeeper run --config tierkeeper/config/config.yaml
    """
    config = _load(config_path)
    engine, db = _build_engine(config)
    logger.info("Starting engine", environment=config.environment, accounts=sorted(config.accounts))

    try:
        asyncio.run(engine.run_forever())
    except KeyboardInterrupt:
        logger.info("Engine stopped by user")
    except Exception as e:
        logger.critical("Engine failed with exception", error=str(e), exc_info=True)
        raise typer.Exit(1)
    finally:
        db.dispose()


@app.command()
def status(config_path: Optional[Path] = ConfigOption):
    """Show engine status and active positions."""
    config = _load(config_path)
    engine, db = _build_engine(config)
    try:
        info = engine.get_status()
        typer.echo("Engine Status")
        typer.echo("=" * 50)
        typer.echo(f"Environment:        {config.environment}")
        typer.echo(f"Active positions:   {info['active_count']}")
        typer.echo(f"Unprocessed fills:  {info['unprocessed_fills']}")

        for pos in engine.store.list_active():
            typer.secho(f"\n{pos.symbol} {pos.direction.value.upper()} [{pos.phase.value}]", bold=True)
            typer.echo(f"  Id:         {pos.id}")
            typer.echo(f"  Account:    {pos.account}/{pos.settle.value}")
            typer.echo(f"  Entry:      {pos.entry_price}")
            typer.echo(f"  Remaining:  {pos.remaining_size} / {pos.size}")
            typer.echo(f"  Stop:       {pos.current_stop_price} ({pos.stop_order_id})")
            typer.echo(f"  Realized:   {pos.realized_pnl}")
    finally:
        db.dispose()


@app.command(name="open")
def open_cmd(
    request_file: Path = typer.Argument(..., help="JSON or YAML file describing the entry request"),
    config_path: Optional[Path] = ConfigOption,
):
    """
    Open a position with tp1/tp2/stop protection.

    Example request file:
        account: main
        settle: usdt
        symbol: BTC/USDT:USDT
        direction: long
        size: 10
        entry_price: 50000
        stop_price: 48500
        tp1_size: 5
        tp1_price: 50750
        tp2_size: 3
        tp2_price: 51250
        runner_size: 2
    """
    config = _load(config_path)
    with open(request_file, "r") as f:
        data = yaml.safe_load(f) or {}

    try:
        request = OpenPositionRequest(**data)
    except (TypeError, ValueError, ArithmeticError, TierkeeperError) as e:
        typer.secho(f"Invalid request: {e}", fg=typer.colors.RED)
        raise typer.Exit(2)

    engine, db = _build_engine(config)
    try:
        position_id = _run(engine, db, engine.open_position(request))
    except UnprotectedPositionError as e:
        typer.secho(f"CRITICAL: {e}", fg=typer.colors.RED, bold=True)
        raise typer.Exit(3)
    except TierkeeperError as e:
        typer.secho(f"Open failed: {e}", fg=typer.colors.RED)
        raise typer.Exit(1)
    typer.secho(f"Opened position {position_id}", fg=typer.colors.GREEN)


@app.command()
def details(
    position_id: str = typer.Argument(..., help="Position id"),
    config_path: Optional[Path] = ConfigOption,
):
    """Show a position with its fills, stop updates, expiry and audit trail."""
    config = _load(config_path)
    engine, db = _build_engine(config)
    try:
        info = engine.get_position_details(position_id)
    except TierkeeperError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(1)
    finally:
        db.dispose()

    position = info["position"]
    typer.echo(yaml.safe_dump(position.to_dict(), sort_keys=False))

    tracking = info["time_tracking"]
    if tracking:
        typer.echo(f"Expires at: {tracking.expires_at.isoformat()} [{tracking.status.value}]")

    typer.echo(f"\nFills ({len(info['fills'])}):")
    for fill in info["fills"]:
        typer.echo(f"  {fill.fill_time.isoformat()} {fill.fill_type.value:<6} {fill.fill_size} @ {fill.fill_price}")

    typer.echo(f"\nStop updates ({len(info['stop_updates'])}):")
    for update in info["stop_updates"]:
        mark = "ok" if update.success else f"FAILED: {update.error}"
        typer.echo(f"  {update.timestamp.isoformat()} {update.reason.value:<10} {update.old_price} -> {update.new_price} {mark}")

    typer.echo(f"\nAudit ({len(info['audit_log'])}):")
    for entry in info["audit_log"]:
        mark = "" if entry.success else f" FAILED: {entry.error}"
        typer.echo(f"  {entry.timestamp.isoformat()} {entry.action}{mark}")


@app.command(name="extend-expiry")
def extend_expiry(
    position_id: str = typer.Argument(..., help="Position id"),
    hours: float = typer.Option(..., "--hours", help="Hours to add to the expiry"),
    config_path: Optional[Path] = ConfigOption,
):
    """Push a position's expiry back."""
    config = _load(config_path)
    engine, db = _build_engine(config)
    if not _run(engine, db, engine.extend_expiry(position_id, hours)):
        typer.secho("Expiry not extended", fg=typer.colors.YELLOW)
        raise typer.Exit(1)
    typer.secho(f"Expiry of {position_id} extended by {hours}h", fg=typer.colors.GREEN)


@app.command(name="force-close")
def force_close(
    position_id: str = typer.Argument(..., help="Position id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    config_path: Optional[Path] = ConfigOption,
):
    """Cancel a position's protective orders and mark it completed."""
    config = _load(config_path)
    if not yes and not typer.confirm(f"Force close {position_id}?"):
        raise typer.Abort()

    engine, db = _build_engine(config)
    try:
        closed = _run(engine, db, engine.force_close(position_id))
    except TierkeeperError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(1)
    if not closed:
        typer.secho("Position not closed", fg=typer.colors.YELLOW)
        raise typer.Exit(1)
    typer.secho(f"Position {position_id} force closed", fg=typer.colors.GREEN)


@app.command(name="manual-fill")
def manual_fill(
    position_id: str = typer.Argument(..., help="Position id"),
    size: str = typer.Option(..., "--size", help="Closed size"),
    price: str = typer.Option(..., "--price", help="Fill price"),
    config_path: Optional[Path] = ConfigOption,
):
    """Record a close made outside the engine."""
    config = _load(config_path)
    engine, db = _build_engine(config)
    try:
        position = _run(engine, db, engine.record_manual_fill(position_id, Decimal(size), Decimal(price)))
    except TierkeeperError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(1)
    typer.echo(f"{position.id}: phase={position.phase.value} remaining={position.remaining_size}")


@app.command(name="cleanup-orphans")
def cleanup_orphans(
    account: str = typer.Option("main", "--account", help="Account name from config"),
    settle: Settle = typer.Option(Settle.USDT, "--settle", help="Settlement market"),
    config_path: Optional[Path] = ConfigOption,
):
    """Cancel trigger orders whose symbol has no open position."""
    config = _load(config_path)
    engine, db = _build_engine(config)
    result = _run(engine, db, engine.cleanup_orphaned_orders(account, settle))
    typer.echo(f"Cancelled: {len(result['cancelled'])}")
    for order in result["cancelled"]:
        typer.echo(f"  {order['symbol']} {order['id']}")
    if result["failures"]:
        typer.secho(f"Failed: {len(result['failures'])}", fg=typer.colors.RED)
        for order in result["failures"]:
            typer.echo(f"  {order['symbol']} {order['id']}: {order['error']}")


@app.command(name="expiry-status")
def expiry_status(config_path: Optional[Path] = ConfigOption):
    """List open expiry trackers, soonest first."""
    config = _load(config_path)
    engine, db = _build_engine(config)
    try:
        rows = engine.get_time_tracking_status()
    finally:
        db.dispose()

    if not rows:
        typer.echo("No tracked positions")
        return
    for row in rows:
        color = typer.colors.RED if row["minutes_to_expiry"] <= config.expiry.warning_minutes else None
        typer.secho(
            f"{row['position_id']}  {row['minutes_to_expiry']:>8.1f} min  [{row['status']}]",
            fg=color,
        )


@app.command(name="init-db")
def init_db(config_path: Optional[Path] = ConfigOption):
    """Create database tables."""
    config = _load(config_path)
    db = Database(config.database.url, echo=config.database.echo)
    db.create_all()
    db.dispose()
    typer.secho("Database initialized", fg=typer.colors.GREEN)


if __name__ == "__main__":
    app()
