#!/usr/bin/env python3
"""
azure-cmdlet-toolkit
====================
Command-line cmdlets for Azure resource management.
Covers Compute, SQL, Insights (Azure Monitor), Key Vault, and StorSimple.

Usage:
    python main.py keyvault operations
    python main.py insights metric-definitions --resource-id /subscriptions/.../sites/web1
    python main.py compute new-vhd-vm --resource-group rg --name vm1 --disk-file ./os.vhd
    python main.py sql threat-detection set --resource-group rg --server sql1 --storage-account-name st1
    python main.py storsimple select-resource --name my-manager
"""

import logging

import typer
from rich.console import Console
from rich.logging import RichHandler

from commands.azure_compute import app as compute_app
from commands.azure_insights import app as insights_app
from commands.azure_keyvault import app as keyvault_app
from commands.azure_sql import app as sql_app
from commands.azure_storsimple import app as storsimple_app

app = typer.Typer(
    name="azure-cmdlet-toolkit",
    help="Command-line cmdlets for Azure resource management.",
    rich_markup_mode="rich",
    no_args_is_help=True,
)

app.add_typer(compute_app,    name="compute",    help="Create virtual machines from local VHD disk files.")
app.add_typer(sql_app,        name="sql",        help="Manage SQL threat detection policies.")
app.add_typer(insights_app,   name="insights",   help="Query Azure Monitor metric definitions.")
app.add_typer(keyvault_app,   name="keyvault",   help="Inspect the Key Vault management API.")
app.add_typer(storsimple_app, name="storsimple", help="Manage StorSimple devices and storage credentials.")


@app.callback()
def main(
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Write verbose messages (client request ids, retries, error codes) to stderr",
    ),
) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    # the SDK's http logging is far too noisy for the verbose stream
    logging.getLogger("azure").setLevel(logging.WARNING)


if __name__ == "__main__":
    app()
