"""Rich console formatter for the status snapshot."""

from __future__ import annotations

from typing import Any

from rich.columns import Columns
from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

_STATUS_STYLES = {
    "connected": "green",
    "connecting": "yellow",
    "initializing": "yellow",
    "disconnected": "red",
}


def _truncate_address(address: str) -> str:
    """Truncate address for display."""
    return f"{address[:10]}...{address[-4:]}"


def _kv_table(value_style: str) -> Table:
    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column("Key", style="dim")
    table.add_column("Value", style=value_style)
    return table


def _or_dash(value: Any) -> str:
    return "-" if value is None else str(value)


def _last_outcome_panel(last: dict[str, Any] | None, at: str | None) -> Panel:
    if not last:
        return Panel(
            Text("No settlement has completed yet", style="dim"),
            title="[bold]Last Execution[/]",
            border_style="dim",
        )

    ok = bool(last.get("ok"))
    table = _kv_table("green" if ok else "red")
    table.add_row("Status", str(last["status"]))
    table.add_row("Trigger", str(last["trigger"]))
    table.add_row("Message", str(last["message"]))
    if last.get("error"):
        table.add_row("Error", str(last["error"]))
    if last.get("signals_checked"):
        table.add_row(
            "Signals",
            f"{last['positive_signals']}/{last['signals_checked']} actionable",
        )
    if last.get("tx_hash"):
        table.add_row("Tx", _truncate_address(str(last["tx_hash"])))
    if last.get("block_number") is not None:
        table.add_row("Block", str(last["block_number"]))
    for key, value in (last.get("details") or {}).items():
        table.add_row(key, str(value))
    table.add_row("At", _or_dash(at))

    return Panel(
        table,
        title="[bold]Last Execution[/]",
        border_style="green" if ok else "red",
    )


def format_status_table(
    snapshot: dict[str, Any], console: Console | None = None
) -> None:
    """Print the status snapshot as a rich dashboard.

    Args:
        snapshot: Output of ``SettlementEngine.status()`` / ``snapshot()``
        console: Console to print to (defaults to stdout)
    """
    console = console or Console()

    status = str(snapshot["status"])
    connection_table = _kv_table("cyan")
    connection_table.add_row(
        "Status", Text(status, style=_STATUS_STYLES.get(status, "white"))
    )
    connection_table.add_row("Network", _or_dash(snapshot.get("network_id")))
    connection_table.add_row("Block", _or_dash(snapshot.get("block_height")))
    connection_table.add_row(
        "Quorum", f"{snapshot['quorum']} of {snapshot['endpoints']} endpoints"
    )
    connection_table.add_row("Phase", str(snapshot["phase"]))
    connection_panel = Panel(
        connection_table, title="[bold]Connection[/]", border_style="blue"
    )

    treasury_table = _kv_table("cyan")
    treasury_table.add_row("Wallet", _truncate_address(snapshot["treasury_wallet"]))
    treasury_table.add_row(
        "Signing", "enabled" if snapshot["signing_available"] else "disabled"
    )
    balance = snapshot.get("treasury_balance_eth")
    treasury_table.add_row(
        "Balance",
        f"{balance} ETH (${snapshot['treasury_balance_usd']})"
        if balance is not None
        else "-",
    )
    if snapshot.get("balance_error"):
        treasury_table.add_row("Balance error", str(snapshot["balance_error"]))
    treasury_table.add_row("Min gas", f"{snapshot['min_gas_required_eth']} ETH")
    treasury_table.add_row("Per tick", f"{snapshot['transfer_amount_eth']} ETH")
    treasury_panel = Panel(
        treasury_table, title="[bold]Treasury[/]", border_style="green"
    )

    counters_table = _kv_table("green")
    counters_table.add_row("Mode", str(snapshot["mode"]))
    counters_table.add_row("Signals checked", f"{snapshot['total_signals_checked']:,}")
    counters_table.add_row(
        "Realized",
        f"{snapshot['total_realized_eth']} ETH (${snapshot['total_realized_usd']})",
    )
    counters_table.add_row("Ticks", str(snapshot["ticks_completed"]))
    counters_table.add_row("Skipped", str(snapshot["ticks_skipped"]))
    counters_panel = Panel(
        counters_table, title="[bold]Counters[/]", border_style="magenta"
    )

    top_row = Columns([connection_panel, treasury_panel, counters_panel], expand=True)
    last_panel = _last_outcome_panel(
        snapshot.get("last_execution_result"), snapshot.get("last_execution_at")
    )

    console.print(
        Panel(
            Group(top_row, last_panel),
            title=f"[bold]{snapshot['name']} v{snapshot['version']}[/]",
            subtitle=str(snapshot["timestamp"]),
        )
    )
