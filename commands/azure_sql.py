"""
azure_sql.py
============
Reads and updates SQL threat detection (security alert) policies on servers
and databases. Audit storage may be an ARM storage account or a classic
(Microsoft.ClassicStorage) one; either way the blob endpoint and access key
are looked up by account name.

Usage:
    python main.py sql threat-detection get --resource-group rg --server sql1
    python main.py sql threat-detection set -g rg -s sql1 --state Enabled --storage-account-name st1
    python main.py sql threat-detection set -g rg -s sql1 -d db1 --excluded-detection-types Sql_Injection,Unsafe_Action
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import typer
from azure.core.rest import HttpRequest
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.sql import SqlManagementClient
from azure.mgmt.sql.models import DatabaseSecurityAlertPolicy, ServerSecurityAlertPolicy
from azure.mgmt.storage import StorageManagementClient
from rich import box
from rich.console import Console
from rich.table import Table

from commands.azure_common import (
    emit_json,
    get_client,
    parse_csv_option,
    resource_group_from_id,
    subscription_option,
)
from commands.azure_errors import fail

app = typer.Typer(no_args_is_help=True)
threat_app = typer.Typer(no_args_is_help=True)
app.add_typer(threat_app, name="threat-detection", help="Server and database threat detection policies.")

console = Console()
logger = logging.getLogger(__name__)

POLICY_NAME = "default"
CLASSIC_STORAGE_TYPE = "Microsoft.ClassicStorage/storageAccounts"
CLASSIC_STORAGE_API_VERSION = "2016-11-01"
DETECTION_TYPES = (
    "Sql_Injection",
    "Sql_Injection_Vulnerability",
    "Access_Anomaly",
    "Data_Exfiltration",
    "Unsafe_Action",
)
POLICY_STATES = ("Enabled", "Disabled")


# ── Data models ───────────────────────────────────────────────────────────────


class StorageAccountNotFoundError(ValueError):
    pass


@dataclass
class StorageAccountInfo:
    name: str
    blob_endpoint: str
    access_key: str
    classic: bool
    resource_id: Optional[str] = None


@dataclass
class ThreatDetectionPolicy:
    resource_group: str
    server: str
    database: Optional[str]
    state: Optional[str]
    email_addresses: list[str] = field(default_factory=list)
    email_admins: Optional[bool] = None
    excluded_detection_types: list[str] = field(default_factory=list)
    storage_account_name: Optional[str] = None
    storage_endpoint: Optional[str] = None
    retention_days: Optional[int] = None

    @classmethod
    def from_sdk(
        cls, policy: Any, resource_group: str, server: str, database: Optional[str]
    ) -> "ThreatDetectionPolicy":
        state = policy.state
        return cls(
            resource_group=resource_group,
            server=server,
            database=database,
            state=getattr(state, "value", state),
            email_addresses=list(policy.email_addresses or []),
            email_admins=policy.email_account_admins,
            excluded_detection_types=list(policy.disabled_alerts or []),
            storage_account_name=storage_account_from_endpoint(policy.storage_endpoint),
            storage_endpoint=policy.storage_endpoint,
            retention_days=policy.retention_days,
        )


def storage_account_from_endpoint(endpoint: Optional[str]) -> Optional[str]:
    """https://<name>.blob.core.windows.net/ -> <name>"""
    if not endpoint:
        return None
    host = endpoint.split("://", 1)[-1]
    return host.split(".", 1)[0] or None


# ── Storage lookup ────────────────────────────────────────────────────────────


def _find_arm_storage_account(
    storage_client: StorageManagementClient, name: str
) -> Optional[StorageAccountInfo]:
    for account in storage_client.storage_accounts.list():
        if account.name and account.name.lower() == name.lower():
            resource_group = resource_group_from_id(account.id)
            keys = storage_client.storage_accounts.list_keys(resource_group, account.name).keys
            return StorageAccountInfo(
                name=account.name,
                blob_endpoint=account.primary_endpoints.blob,
                access_key=keys[0].value,
                classic=False,
                resource_id=account.id,
            )
    return None


def _find_classic_storage_account(
    resource_client: ResourceManagementClient, name: str
) -> Optional[StorageAccountInfo]:
    resources = resource_client.resources.list(filter=f"resourceType eq '{CLASSIC_STORAGE_TYPE}'")
    for resource in resources:
        if not resource.name or resource.name.lower() != name.lower():
            continue

        details = resource_client.resources.get_by_id(resource.id, CLASSIC_STORAGE_API_VERSION)
        endpoints = (details.properties or {}).get("endpoints") or []
        blob_endpoint = next(
            (e for e in endpoints if ".blob." in e),
            f"https://{resource.name}.blob.core.windows.net/",
        )

        # classic accounts have no typed client; listKeys is a plain ARM action
        response = resource_client.send_request(
            HttpRequest(
                "POST",
                f"{resource.id}/listKeys",
                params={"api-version": CLASSIC_STORAGE_API_VERSION},
            )
        )
        response.raise_for_status()
        return StorageAccountInfo(
            name=resource.name,
            blob_endpoint=blob_endpoint,
            access_key=response.json()["primaryKey"],
            classic=True,
            resource_id=resource.id,
        )
    return None


def resolve_storage_account(
    storage_client: StorageManagementClient,
    resource_client: ResourceManagementClient,
    name: str,
) -> StorageAccountInfo:
    """Find a storage account by name among ARM accounts first, then classic ones."""
    info = _find_arm_storage_account(storage_client, name)
    if info is None:
        info = _find_classic_storage_account(resource_client, name)
    if info is None:
        raise StorageAccountNotFoundError(f"Storage account '{name}' was not found")
    logger.info(
        f"Using {'classic' if info.classic else 'ARM'} storage account {info.name} ({info.blob_endpoint})"
    )
    return info


# ── Policies ──────────────────────────────────────────────────────────────────


def validate_detection_types(types: Optional[list[str]]) -> Optional[list[str]]:
    """
    Normalizes the requested excluded detection types. ["None"] clears the
    list; unknown names are rejected.
    """
    if types is None:
        return None
    if [t.lower() for t in types] == ["none"]:
        return []
    lookup = {t.lower(): t for t in DETECTION_TYPES}
    unknown = [t for t in types if t.lower() not in lookup]
    if unknown:
        raise ValueError(
            f"Unknown detection type(s): {', '.join(unknown)}. "
            f"Valid options: {', '.join(DETECTION_TYPES)}, None"
        )
    return [lookup[t.lower()] for t in types]


def _get_raw_policy(
    sql_client: SqlManagementClient, resource_group: str, server: str, database: Optional[str]
) -> Any:
    if database:
        return sql_client.database_security_alert_policies.get(
            resource_group, server, database, POLICY_NAME
        )
    return sql_client.server_security_alert_policies.get(resource_group, server, POLICY_NAME)


def get_threat_detection_policy(
    sql_client: SqlManagementClient,
    resource_group: str,
    server: str,
    database: Optional[str] = None,
) -> ThreatDetectionPolicy:
    policy = _get_raw_policy(sql_client, resource_group, server, database)
    return ThreatDetectionPolicy.from_sdk(policy, resource_group, server, database)


def set_threat_detection_policy(
    sql_client: SqlManagementClient,
    storage_client: StorageManagementClient,
    resource_client: ResourceManagementClient,
    resource_group: str,
    server: str,
    database: Optional[str] = None,
    state: Optional[str] = None,
    storage_account_name: Optional[str] = None,
    email_addresses: Optional[list[str]] = None,
    email_admins: Optional[bool] = None,
    excluded_detection_types: Optional[list[str]] = None,
    retention_days: Optional[int] = None,
) -> ThreatDetectionPolicy:
    """Update the policy; settings left as None keep their current values."""
    if state is not None and state not in POLICY_STATES:
        raise ValueError(f"Unknown policy state: {state}. Valid options: {', '.join(POLICY_STATES)}")
    if retention_days is not None and retention_days < 0:
        raise ValueError(f"Retention days must not be negative: {retention_days}")
    excluded = validate_detection_types(excluded_detection_types)

    current = _get_raw_policy(sql_client, resource_group, server, database)
    current_state = getattr(current.state, "value", current.state)

    storage_endpoint = current.storage_endpoint
    storage_key = None
    if storage_account_name:
        account = resolve_storage_account(storage_client, resource_client, storage_account_name)
        storage_endpoint = account.blob_endpoint
        storage_key = account.access_key

    settings: dict[str, Any] = {
        "state": state or current_state or "Enabled",
        "disabled_alerts": excluded if excluded is not None else list(current.disabled_alerts or []),
        "email_addresses": (
            email_addresses if email_addresses is not None else list(current.email_addresses or [])
        ),
        "email_account_admins": (
            email_admins if email_admins is not None else current.email_account_admins
        ),
        "storage_endpoint": storage_endpoint,
        "retention_days": retention_days if retention_days is not None else current.retention_days,
    }
    if storage_key is not None:
        settings["storage_account_access_key"] = storage_key

    if database:
        logger.info(f"Updating threat detection policy of database {server}/{database}")
        updated = sql_client.database_security_alert_policies.create_or_update(
            resource_group, server, database, POLICY_NAME, DatabaseSecurityAlertPolicy(**settings)
        )
    else:
        logger.info(f"Updating threat detection policy of server {server}")
        updated = sql_client.server_security_alert_policies.begin_create_or_update(
            resource_group, server, POLICY_NAME, ServerSecurityAlertPolicy(**settings)
        ).result()

    return ThreatDetectionPolicy.from_sdk(updated, resource_group, server, database)


# ── Output formatters ─────────────────────────────────────────────────────────


def print_policy(policy: ThreatDetectionPolicy) -> None:
    target = f"{policy.server}/{policy.database}" if policy.database else policy.server
    colour = "green" if policy.state == "Enabled" else "yellow"

    table = Table(box=box.ROUNDED, show_header=False, title=f"Threat detection · {target}")
    table.add_column("Setting", style="bold", width=26)
    table.add_column("Value", width=60)
    table.add_row("State", f"[{colour}]{policy.state}[/{colour}]")
    table.add_row("Storage account", policy.storage_account_name or "")
    table.add_row("Email addresses", ", ".join(policy.email_addresses))
    table.add_row("Email admins", str(policy.email_admins))
    table.add_row("Excluded detection types", ", ".join(policy.excluded_detection_types))
    table.add_row("Retention days", "" if policy.retention_days is None else str(policy.retention_days))
    console.print(table)


# ── CLI commands ──────────────────────────────────────────────────────────────


@threat_app.command("get")
def get(
    resource_group: str = typer.Option(..., "--resource-group", "-g", help="Resource group name"),
    server: str = typer.Option(..., "--server", "-s", help="SQL server name"),
    database: Optional[str] = typer.Option(None, "--database", "-d", help="Database name (server policy if omitted)"),
    output: str = typer.Option("table", "--output", "-o", help="Output format: table | json"),
    subscription: Optional[str] = subscription_option(),
) -> None:
    """Show the threat detection policy of a server or database."""
    try:
        policy = get_threat_detection_policy(
            get_client(SqlManagementClient, subscription), resource_group, server, database
        )
    except Exception as e:
        fail(e, server)

    if output == "json":
        emit_json(policy)
    else:
        print_policy(policy)


@threat_app.command("set")
def set_(
    resource_group: str = typer.Option(..., "--resource-group", "-g", help="Resource group name"),
    server: str = typer.Option(..., "--server", "-s", help="SQL server name"),
    database: Optional[str] = typer.Option(None, "--database", "-d", help="Database name (server policy if omitted)"),
    state: Optional[str] = typer.Option(None, "--state", help="Enabled | Disabled"),
    storage_account_name: Optional[str] = typer.Option(
        None, "--storage-account-name", help="ARM or classic storage account for threat detection logs"
    ),
    email_addresses: Optional[str] = typer.Option(
        None, "--email-addresses", help="Comma-separated alert recipients"
    ),
    email_admins: Optional[bool] = typer.Option(
        None, "--email-admins/--no-email-admins", help="Also send alerts to the subscription admins"
    ),
    excluded_detection_types: Optional[str] = typer.Option(
        None,
        "--excluded-detection-types",
        help=f"Comma-separated list from: {', '.join(DETECTION_TYPES)}; 'None' clears it",
    ),
    retention_days: Optional[int] = typer.Option(None, "--retention-days", help="Days to keep threat detection logs"),
    output: str = typer.Option("table", "--output", "-o", help="Output format: table | json"),
    subscription: Optional[str] = subscription_option(),
) -> None:
    """
    Update the threat detection policy of a server or database.

    Examples:\n
        python main.py sql threat-detection set -g rg -s sql1 --state Enabled --storage-account-name classicst1\n
        python main.py sql threat-detection set -g rg -s sql1 -d db1 --email-addresses a@contoso.com --no-email-admins
    """
    try:
        policy = set_threat_detection_policy(
            get_client(SqlManagementClient, subscription),
            get_client(StorageManagementClient, subscription),
            get_client(ResourceManagementClient, subscription),
            resource_group,
            server,
            database=database,
            state=state,
            storage_account_name=storage_account_name,
            email_addresses=parse_csv_option(email_addresses),
            email_admins=email_admins,
            excluded_detection_types=parse_csv_option(excluded_detection_types),
            retention_days=retention_days,
        )
    except Exception as e:
        fail(e, server)

    if output == "json":
        emit_json(policy)
    else:
        print_policy(policy)
