"""
azure_common.py
===============
Shared plumbing for the cmdlet modules: credentials, subscription resolution,
client construction, persisted CLI state, and JSON output.
"""

import dataclasses
import json
import logging
import os
from datetime import date, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Optional, TypeVar

import typer
from azure.identity import DefaultAzureCredential
from azure.mgmt.resource.subscriptions import SubscriptionClient

logger = logging.getLogger(__name__)

APP_NAME = "azure-cmdlet-toolkit"
SUBSCRIPTION_ENV_VAR = "AZURE_SUBSCRIPTION_ID"

T = TypeVar("T")


# ── Credentials and subscriptions ─────────────────────────────────────────────

_CREDENTIAL: Optional[DefaultAzureCredential] = None
_SUBSCRIPTION_ID: Optional[str] = None


def get_credential() -> DefaultAzureCredential:
    global _CREDENTIAL
    if _CREDENTIAL is None:
        _CREDENTIAL = DefaultAzureCredential()
    return _CREDENTIAL


def get_subscription_id(specified: Optional[str] = None) -> str:
    """
    Uses the explicitly specified subscription, then the AZURE_SUBSCRIPTION_ID
    environment variable. If neither is set, queries the subscriptions visible to
    the credential and uses the only enabled one. 0 or 2+ enabled subscriptions is
    an error. The chosen id is cached for the rest of the process.
    """
    global _SUBSCRIPTION_ID

    if specified:
        return specified
    if _SUBSCRIPTION_ID is not None:
        return _SUBSCRIPTION_ID

    from_env = os.environ.get(SUBSCRIPTION_ENV_VAR)
    if from_env:
        _SUBSCRIPTION_ID = from_env
        return _SUBSCRIPTION_ID

    with SubscriptionClient(get_credential()) as sub_client:
        subscriptions = [
            sub for sub in sub_client.subscriptions.list() if sub.state == "Enabled"
        ]
    if len(subscriptions) > 1:
        raise ValueError(
            f"Please specify a subscription via --subscription or the "
            f"{SUBSCRIPTION_ENV_VAR} environment variable from among the available "
            "subscription ids: " + ", ".join(sub.subscription_id for sub in subscriptions)
        )
    if not subscriptions:
        raise ValueError("There are no subscriptions available")

    _SUBSCRIPTION_ID = subscriptions[0].subscription_id
    logger.info(f"Using subscription {_SUBSCRIPTION_ID}")
    return _SUBSCRIPTION_ID


def get_client(client_cls: type[T], subscription_id: Optional[str] = None) -> T:
    """Construct a management client for the resolved subscription."""
    return client_cls(get_credential(), get_subscription_id(subscription_id))  # type: ignore[call-arg]


def subscription_option() -> Any:
    return typer.Option(
        None,
        "--subscription",
        help=f"Subscription id (defaults to ${SUBSCRIPTION_ENV_VAR} or the only enabled subscription)",
    )


# ── Resource ids ──────────────────────────────────────────────────────────────


def resource_group_from_id(resource_id: str) -> str:
    """/subscriptions/<sub>/resourceGroups/<rg>/providers/... -> <rg>"""
    parts = resource_id.strip("/").split("/")
    lowered = [p.lower() for p in parts]
    try:
        return parts[lowered.index("resourcegroups") + 1]
    except (ValueError, IndexError) as e:
        raise ValueError(f"No resource group in resource id: {resource_id}") from e


def parse_csv_option(value: Optional[str]) -> Optional[list[str]]:
    if value is None:
        return None
    return [v.strip() for v in value.split(",") if v.strip()]


# ── Persisted state ───────────────────────────────────────────────────────────


def app_dir() -> Path:
    return Path(typer.get_app_dir(APP_NAME))


def load_state(name: str) -> Optional[dict[str, Any]]:
    path = app_dir() / f"{name}.json"
    if not path.exists():
        return None
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def save_state(name: str, state: dict[str, Any]) -> Path:
    path = app_dir() / f"{name}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(state, indent=2), encoding="utf-8")
    return path


# ── Output ────────────────────────────────────────────────────────────────────


def _to_jsonable(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: _to_jsonable(getattr(obj, f.name)) for f in dataclasses.fields(obj)}
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, dict):
        return {k: _to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_to_jsonable(v) for v in obj]
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, timedelta):
        return str(obj)
    if hasattr(obj, "as_dict"):
        # generated SDK models
        return obj.as_dict()
    return obj


def to_json(obj: Any) -> str:
    return json.dumps(_to_jsonable(obj), indent=2, default=str)


def emit_json(obj: Any) -> None:
    typer.echo(to_json(obj))
