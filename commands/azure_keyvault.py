"""
azure_keyvault.py
=================
Lists the operations exposed by the Key Vault management REST API
({provider}/{resource}/{operation}) with their display metadata and the log
and metric specifications published for each.

Usage:
    python main.py keyvault operations
    python main.py keyvault operations --provider-filter vaults --output json
"""

from dataclasses import dataclass, field
from typing import Any, Optional

import typer
from azure.mgmt.keyvault import KeyVaultManagementClient
from rich import box
from rich.console import Console
from rich.table import Table

from commands.azure_common import emit_json, get_client, subscription_option
from commands.azure_errors import fail

app = typer.Typer(no_args_is_help=True)
console = Console()


# ── Data models ───────────────────────────────────────────────────────────────


@dataclass
class OperationRecord:
    name: Optional[str]
    provider: Optional[str] = None
    resource: Optional[str] = None
    operation: Optional[str] = None
    description: Optional[str] = None
    origin: Optional[str] = None
    is_data_action: Optional[bool] = None
    log_specifications: list[str] = field(default_factory=list)
    metric_specifications: list[str] = field(default_factory=list)

    @classmethod
    def from_operation(cls, op: Any) -> "OperationRecord":
        display = op.display
        spec = op.service_specification
        return cls(
            name=op.name,
            provider=display.provider if display else None,
            resource=display.resource if display else None,
            operation=display.operation if display else None,
            description=display.description if display else None,
            origin=op.origin,
            is_data_action=getattr(op, "is_data_action", None),
            log_specifications=[
                s.name for s in (spec.log_specifications or []) if s.name
            ] if spec else [],
            metric_specifications=[
                s.name for s in (spec.metric_specifications or []) if s.name
            ] if spec else [],
        )


# ── Operations ────────────────────────────────────────────────────────────────


def list_operations(
    client: KeyVaultManagementClient, provider_filter: Optional[str] = None
) -> list[OperationRecord]:
    """All Key Vault REST API operations, optionally restricted to names containing a substring."""
    records = [OperationRecord.from_operation(op) for op in client.operations.list()]
    if provider_filter:
        needle = provider_filter.lower()
        records = [r for r in records if r.name and needle in r.name.lower()]
    return records


def print_operations_table(records: list[OperationRecord]) -> None:
    table = Table(box=box.ROUNDED, show_header=True, header_style="bold blue")
    table.add_column("Name", width=52)
    table.add_column("Operation", width=30)
    table.add_column("Origin", width=14)
    table.add_column("Description", width=50)

    for r in records:
        table.add_row(r.name or "", r.operation or "", r.origin or "", r.description or "")

    console.print(table)
    console.print(f"\n[bold]{len(records)}[/bold] operation(s)")


# ── CLI commands ──────────────────────────────────────────────────────────────


@app.command("operations")
def operations(
    provider_filter: Optional[str] = typer.Option(
        None,
        "--provider-filter",
        "-f",
        help="Only show operations whose name contains this text (e.g. vaults/secrets)",
    ),
    output: str = typer.Option("table", "--output", "-o", help="Output format: table | json"),
    subscription: Optional[str] = subscription_option(),
) -> None:
    """
    List the Key Vault management API operation definitions.

    Examples:\n
        python main.py keyvault operations\n
        python main.py keyvault operations --provider-filter secrets --output json
    """
    try:
        client = get_client(KeyVaultManagementClient, subscription)
        records = list_operations(client, provider_filter)
    except Exception as e:
        fail(e)

    if output == "json":
        emit_json(records)
    else:
        print_operations_table(records)
