"""CLI entrypoint for the treasury settlement engine."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Annotated, Any

import typer

from .logger import setup_logging
from .report import format_status_table
from .settings import CONFIG_ENV_VAR, Network, SettlerSettings
from .settlement import SettlementEngine, SettlementOutcome
from .state import AppState

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    add_help_option=True,
    pretty_exceptions_enable=True,
    pretty_exceptions_short=True,
    pretty_exceptions_show_locals=False,
    rich_markup_mode="rich",
    help="Quorum-checked treasury settlement engine.",
)


def _build_logger() -> logging.Logger:
    """Build a logger instance."""
    return logging.getLogger("treasury_settler")


def _build_engine(state: AppState) -> SettlementEngine:
    return SettlementEngine.from_settings(state.settings)


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _exit_for(outcome: SettlementOutcome) -> None:
    if not outcome.ok:
        raise typer.Exit(code=1)


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Path to a TOML config file (can include [treasury_settler] table).",
        ),
    ] = None,
    network: Annotated[
        Network | None,
        typer.Option(
            "--network",
            "-n",
            help="Network to use (mainnet, sepolia, or holesky).",
        ),
    ] = None,
    trusted_rpc: Annotated[
        str | None,
        typer.Option(
            "--rpc",
            help="Trusted RPC endpoint; prepended to the endpoint pool as the preferred entry.",
        ),
    ] = None,
    quorum: Annotated[
        int | None,
        typer.Option(
            "--quorum",
            "-q",
            help="Minimum number of endpoints that must agree before a read is trusted.",
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            help="Override logging verbosity (TRACE, DEBUG, INFO, WARNING, ERROR, CRITICAL).",
        ),
    ] = None,
):
    """Load configuration and logging shared by every command."""
    if config_path:
        os.environ[CONFIG_ENV_VAR] = str(config_path)

    init_kwargs: dict[str, Network | int | str] = {}
    if network is not None:
        init_kwargs["network"] = network
    if trusted_rpc is not None:
        init_kwargs["trusted_rpc"] = trusted_rpc
    if quorum is not None:
        init_kwargs["quorum"] = quorum
    if log_level is not None:
        init_kwargs["log_level"] = log_level.upper()

    settings = SettlerSettings(**init_kwargs)
    setup_logging(settings.log_level)
    ctx.obj = AppState(settings=settings, logger=_build_logger())


@app.command("show-config")
def show_config(ctx: typer.Context) -> None:
    """Print effective config (with secrets redacted)."""
    state: AppState = ctx.obj
    _echo_json(state.settings.as_safe_dict())


@app.command()
def run(ctx: typer.Context) -> None:
    """Connect and run settlement ticks on the configured interval until interrupted."""
    state: AppState = ctx.obj

    async def _serve() -> None:
        engine = _build_engine(state)
        try:
            if not await engine.connect():
                state.logger.warning(
                    "Starting disconnected; each tick will retry the connection"
                )
            await engine.run_forever()
        finally:
            await engine.close()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        state.logger.info("Interrupted; shutting down")


@app.command()
def tick(ctx: typer.Context) -> None:
    """Run one settlement tick now and print its outcome."""
    state: AppState = ctx.obj

    async def _tick() -> SettlementOutcome:
        engine = _build_engine(state)
        try:
            return await engine.run_tick(trigger="manual")
        finally:
            await engine.close()

    outcome = asyncio.run(_tick())
    _echo_json(outcome.to_dict())
    _exit_for(outcome)


def _parse_amount(value: str) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation as e:
        raise typer.BadParameter(f"Not a decimal ETH amount: {value!r}") from e
    if not amount.is_finite():
        raise typer.BadParameter(f"Not a finite ETH amount: {value!r}")
    return amount


@app.command()
def withdraw(
    ctx: typer.Context,
    amount: Annotated[str, typer.Argument(help="Amount of ETH to withdraw.")],
    to: Annotated[
        str | None,
        typer.Option(
            "--to",
            help="Recipient address (defaults to the configured withdraw_recipient).",
        ),
    ] = None,
) -> None:
    """Withdraw ETH from the treasury, keeping the configured reserve."""
    state: AppState = ctx.obj
    amount_eth = _parse_amount(amount)

    async def _withdraw() -> SettlementOutcome:
        engine = _build_engine(state)
        try:
            return await engine.withdraw(amount_eth, to)
        finally:
            await engine.close()

    outcome = asyncio.run(_withdraw())
    _echo_json(outcome.to_dict())
    _exit_for(outcome)


@app.command()
def status(
    ctx: typer.Context,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print raw JSON instead of the dashboard."),
    ] = False,
) -> None:
    """Connect, refresh the treasury balance and print the status snapshot."""
    state: AppState = ctx.obj

    async def _status() -> dict[str, Any]:
        engine = _build_engine(state)
        try:
            await engine.connect()
            return await engine.status(refresh_balance=True)
        finally:
            await engine.close()

    snapshot = asyncio.run(_status())
    if as_json:
        _echo_json(snapshot)
    else:
        format_status_table(snapshot)


def run_cli() -> None:
    """Entrypoint used by the console script."""
    app()


if __name__ == "__main__":
    run_cli()
