"""
CLI entrypoint for the tick engine.

Provides commands for database setup, session control, single ticks, the
scheduler loop and session status.
"""
import asyncio
import json
from decimal import Decimal
from pathlib import Path
from typing import Optional, Tuple

import typer
from rich.console import Console
from rich.table import Table

from tradeloop import __version__
from tradeloop.ai.reasoning_model import model_factory
from tradeloop.config.config import Config, load_config
from tradeloop.config.dotenv_loader import load_dotenv_files
from tradeloop.data.market_data import CcxtMarketData
from tradeloop.domain.protocols import VenueCredentials
from tradeloop.engine.control import start_session, stop_session
from tradeloop.engine.scheduler import TickScheduler
from tradeloop.engine.tick import TickOrchestrator
from tradeloop.exceptions import TickError, TradingSystemError
from tradeloop.execution.broker import BrokerRouter
from tradeloop.execution.exchange_broker import ExchangeBroker, ccxt_submitter_factory, env_credentials
from tradeloop.execution.simulated_broker import SimulatedLedgerBroker
from tradeloop.monitoring.logger import get_logger, setup_logging
from tradeloop.storage.db import init_db
from tradeloop.storage.repository import SqlStorage

app = typer.Typer(
    name="tradeloop",
    help="AI trading session tick engine",
    add_completion=False,
)

logger = get_logger(__name__)
console = Console()

DEFAULT_CONFIG = Path(__file__).parent / "config" / "config.yaml"


def _bootstrap(config_path: Path) -> Tuple[Config, SqlStorage]:
    config = load_config(str(config_path))
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    if not config.data.database_url:
        console.print("[bold red]DATABASE_URL is not configured[/bold red]")
        raise typer.Exit(1)
    db = init_db(config.data.database_url)
    return config, SqlStorage(db)


def _credentials_provider(config: Config):
    """Credentials from the exchange config section, falling back to environment variables."""
    def provider(user_id: Optional[str], venue: str) -> Optional[VenueCredentials]:
        exchange = config.exchange
        if venue == exchange.exchange_id and (exchange.api_secret or exchange.wallet_address):
            return VenueCredentials(
                venue=venue,
                api_key=exchange.api_key,
                api_secret=exchange.api_secret,
                wallet_address=exchange.wallet_address,
            )
        return env_credentials(user_id, venue)

    return provider


def build_orchestrator(config: Config, storage: SqlStorage) -> Tuple[TickOrchestrator, CcxtMarketData]:
    """Wire the production collaborators."""
    market_data = CcxtMarketData(
        config.market_data.exchange_id,
        quote_currency=config.market_data.quote_currency,
        timeout_ms=config.market_data.timeout_ms,
    )
    credentials = _credentials_provider(config)
    submitters = ccxt_submitter_factory(
        config.exchange.exchange_id,
        quote_currency=config.market_data.quote_currency,
        use_testnet=config.exchange.use_testnet,
        timeout_ms=config.exchange.timeout_ms,
    )
    broker = BrokerRouter(
        simulated=SimulatedLedgerBroker(storage, market_data),
        exchange=ExchangeBroker(storage, credentials, submitters, default_venue=config.exchange.exchange_id),
    )
    orchestrator = TickOrchestrator(
        storage,
        market_data,
        broker,
        model_factory(config.reasoning),
        config,
        credentials_provider=credentials,
        submitter_factory=submitters,
    )
    return orchestrator, market_data


def _fail(error: TradingSystemError, config: Config) -> None:
    if isinstance(error, TickError):
        payload = error.to_payload(include_trace=config.include_traces)
    else:
        payload = {"error": str(error), "code": type(error).__name__}
    console.print_json(json.dumps(payload))
    raise typer.Exit(1)


@app.command(name="init-db")
def init_db_cmd(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """Create all tables."""
    config, _ = _bootstrap(config_path)
    console.print(f"[bold green]Database ready[/bold green] ({config.environment})")


@app.command()
def start(
    session_id: str = typer.Argument(..., help="Session id"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """
    Start a session.

    Example:
        tradeloop start 6f1c...
    """
    config, storage = _bootstrap(config_path)
    try:
        response = start_session(storage, session_id, Decimal(str(config.engine.default_starting_equity)))
    except TradingSystemError as e:
        _fail(e, config)
    console.print_json(json.dumps(response))


@app.command()
def stop(
    session_id: str = typer.Argument(..., help="Session id"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """Stop a session. Open positions are left as they are."""
    config, storage = _bootstrap(config_path)
    try:
        response = stop_session(storage, session_id)
    except TradingSystemError as e:
        _fail(e, config)
    console.print_json(json.dumps(response))


@app.command()
def tick(
    session_id: str = typer.Argument(..., help="Session id"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """
    Run one tick for a session and print its decisions.

    Example:
        tradeloop tick 6f1c...
    """
    config, storage = _bootstrap(config_path)
    orchestrator, market_data = build_orchestrator(config, storage)

    async def run_tick():
        try:
            return await orchestrator.run_tick(session_id)
        finally:
            await market_data.close()

    try:
        result = asyncio.run(run_tick())
    except TradingSystemError as e:
        _fail(e, config)

    table = Table(title=f"Tick {result.tick_id}")
    table.add_column("Market")
    table.add_column("Confidence", justify="right")
    table.add_column("Action")
    table.add_column("Executed")
    table.add_column("Error", style="red")
    for decision in result.decisions:
        table.add_row(
            decision["market"],
            f"{decision['confidence'] * 100:.0f}%",
            decision["action_summary"],
            "yes" if decision["executed"] else "no",
            decision["error"] or "",
        )
    console.print(table)
    if result.equity is not None:
        console.print(f"Equity: ${result.equity:,.2f}")


@app.command(name="run-scheduler")
def run_scheduler(
    once: bool = typer.Option(False, "--once", help="Run a single pass and exit"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """
    Tick every running session on its cadence.

    Example:
        tradeloop run-scheduler
    """
    config, storage = _bootstrap(config_path)
    config.validate_config()
    orchestrator, market_data = build_orchestrator(config, storage)
    scheduler = TickScheduler(storage, orchestrator, config.engine)

    async def run():
        try:
            if once:
                summary = await scheduler.run_once()
                console.print_json(json.dumps(summary.to_dict()))
            else:
                await scheduler.run_forever()
        finally:
            await market_data.close()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Scheduler stopped by user")


@app.command()
def status(
    session_id: str = typer.Argument(..., help="Session id"),
    decisions: int = typer.Option(5, "--decisions", help="Recent decisions to show"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """Show a session's account, open positions and latest decisions."""
    config, storage = _bootstrap(config_path)
    session = storage.get_session(session_id)
    if session is None:
        console.print(f"[bold red]Session {session_id} not found[/bold red]")
        raise typer.Exit(1)

    console.print(f"[bold]Session[/bold] {session.id}  mode={session.mode.value}  status={session.status.value}")
    console.print(f"Last tick: {session.last_tick_at.isoformat() if session.last_tick_at else 'never'}")

    account = storage.get_account(session.account_id) if session.account_id else None
    if account is None:
        console.print("No account yet.")
        return
    change = account.equity - account.starting_equity
    color = "green" if change >= 0 else "red"
    console.print(
        f"Equity: ${account.equity:,.2f}  Cash: ${account.cash_balance:,.2f}  "
        f"[{color}]PnL: ${change:,.2f}[/{color}]"
    )

    positions = storage.list_positions(account.id)
    if positions:
        table = Table(title="Open positions")
        table.add_column("Market")
        table.add_column("Side")
        table.add_column("Size", justify="right")
        table.add_column("Avg entry", justify="right")
        table.add_column("Unrealized", justify="right")
        for p in positions:
            table.add_row(
                p.market,
                p.side.value,
                f"{p.size:.6f}",
                f"${p.avg_entry:,.2f}",
                f"${p.unrealized_pnl:,.2f}",
            )
        console.print(table)
    else:
        console.print("No open positions.")

    recent = storage.recent_decisions(session.id, decisions)
    if recent:
        table = Table(title="Recent decisions")
        table.add_column("Time")
        table.add_column("Market")
        table.add_column("Action")
        table.add_column("Executed")
        for d in recent:
            table.add_row(
                d.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                d.market,
                d.action_summary,
                "yes" if d.executed else "no",
            )
        console.print(table)


@app.callback()
def main(
    version: bool = typer.Option(False, "--version", help="Show version and exit"),
):
    """
    tradeloop

    Runs AI trading sessions: exits, model intents, risk gates and broker routing per tick.
    """
    if version:
        typer.echo(f"tradeloop v{__version__}")
        raise typer.Exit()
    load_dotenv_files()


if __name__ == "__main__":
    app()
