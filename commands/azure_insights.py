"""
azure_insights.py
=================
Lists Azure Monitor metric definitions for a resource. By default the
definitions are summarized: the localized metric name is unwrapped to its
plain value. Pass --detailed-output to keep the localized name structure.

Usage:
    python main.py insights metric-definitions --resource-id <id>
    python main.py insights metric-definitions --resource-id <id> --metric-names CpuTime,Requests
    python main.py insights metric-definitions --resource-id <id> --detailed-output --output json
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Union

import typer
from azure.mgmt.monitor import MonitorManagementClient
from rich import box
from rich.console import Console
from rich.table import Table

from commands.azure_common import emit_json, get_client, parse_csv_option, subscription_option
from commands.azure_errors import fail

app = typer.Typer(no_args_is_help=True)
console = Console()


# ── Data models ───────────────────────────────────────────────────────────────


@dataclass
class LocalizedName:
    value: Optional[str]
    localized_value: Optional[str] = None

    @classmethod
    def from_sdk(cls, localizable: Any) -> Optional["LocalizedName"]:
        if localizable is None:
            return None
        return cls(value=localizable.value, localized_value=localizable.localized_value)


@dataclass
class MetricAvailability:
    time_grain: Optional[str]
    retention: Optional[str]


@dataclass
class MetricDefinitionDetails:
    """A metric definition with every field of the service response."""

    name: Optional[LocalizedName]
    resource_id: Optional[str] = None
    namespace: Optional[str] = None
    unit: Optional[str] = None
    primary_aggregation_type: Optional[str] = None
    supported_aggregation_types: list[str] = field(default_factory=list)
    metric_availabilities: list[MetricAvailability] = field(default_factory=list)
    dimensions: list[LocalizedName] = field(default_factory=list)
    category: Optional[str] = None
    display_description: Optional[str] = None
    is_dimension_required: Optional[bool] = None
    id: Optional[str] = None

    @classmethod
    def from_sdk(cls, definition: Any) -> "MetricDefinitionDetails":
        return cls(name=LocalizedName.from_sdk(definition.name), **_shared_fields(definition))


@dataclass
class MetricDefinitionNoDetails(MetricDefinitionDetails):
    """
    Summarized metric definition. ``name`` holds the plain metric name instead of
    the localized structure, which is kept in ``localized_name``.
    """

    name: Optional[str]  # type: ignore[assignment]
    localized_name: Optional[LocalizedName] = None

    @classmethod
    def from_sdk(cls, definition: Any) -> "MetricDefinitionNoDetails":
        localized = LocalizedName.from_sdk(definition.name)
        return cls(
            name=localized.value if localized is not None else None,
            localized_name=localized,
            **_shared_fields(definition),
        )


def _duration(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _enum_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "value", value)


def _shared_fields(definition: Any) -> dict[str, Any]:
    return {
        "resource_id": definition.resource_id,
        "namespace": getattr(definition, "namespace", None),
        "unit": _enum_value(definition.unit),
        "primary_aggregation_type": _enum_value(definition.primary_aggregation_type),
        "supported_aggregation_types": [
            _enum_value(a) for a in (getattr(definition, "supported_aggregation_types", None) or [])
        ],
        "metric_availabilities": [
            MetricAvailability(_duration(a.time_grain), _duration(a.retention))
            for a in (definition.metric_availabilities or [])
        ],
        "dimensions": [
            LocalizedName.from_sdk(d) for d in (definition.dimensions or []) if d is not None
        ],
        "category": getattr(definition, "category", None),
        "display_description": getattr(definition, "display_description", None),
        "is_dimension_required": getattr(definition, "is_dimension_required", None),
        "id": definition.id,
    }


MetricDefinitionView = Union[MetricDefinitionDetails, MetricDefinitionNoDetails]


# ── Operations ────────────────────────────────────────────────────────────────


def list_metric_definitions(
    client: MonitorManagementClient,
    resource_id: str,
    metric_names: Optional[list[str]] = None,
    detailed: bool = False,
    namespace: Optional[str] = None,
) -> list[MetricDefinitionView]:
    """
    Get the metric definitions of a resource, optionally only those whose name
    matches one of metric_names (case-insensitive).
    """
    definitions = client.metric_definitions.list(resource_id, metricnamespace=namespace)

    if metric_names:
        wanted = {n.lower() for n in metric_names}
        definitions = [
            d for d in definitions
            if d.name is not None and d.name.value and d.name.value.lower() in wanted
        ]

    if detailed:
        return [MetricDefinitionDetails.from_sdk(d) for d in definitions]
    return [MetricDefinitionNoDetails.from_sdk(d) for d in definitions]


def _display_name(view: MetricDefinitionView) -> str:
    if isinstance(view.name, LocalizedName):
        return view.name.value or ""
    return view.name or ""


def print_definitions_table(views: list[MetricDefinitionView]) -> None:
    table = Table(box=box.ROUNDED, show_header=True, header_style="bold blue")
    table.add_column("Name", width=32)
    table.add_column("Unit", width=14)
    table.add_column("Aggregation", width=12)
    table.add_column("Time grains", width=30)
    table.add_column("Dimensions", width=30)

    for v in views:
        table.add_row(
            _display_name(v),
            v.unit or "",
            v.primary_aggregation_type or "",
            ", ".join(a.time_grain for a in v.metric_availabilities if a.time_grain),
            ", ".join(d.value for d in v.dimensions if d and d.value),
        )

    console.print(table)


# ── CLI commands ──────────────────────────────────────────────────────────────


@app.command("metric-definitions")
def metric_definitions(
    resource_id: str = typer.Option(..., "--resource-id", "-r", help="Full ARM id of the resource"),
    metric_names: Optional[str] = typer.Option(
        None, "--metric-names", "-m", help="Comma-separated metric names to include"
    ),
    detailed_output: bool = typer.Option(
        False, "--detailed-output", help="Keep localized names and all fields"
    ),
    namespace: Optional[str] = typer.Option(None, "--namespace", help="Metric namespace"),
    output: str = typer.Option("table", "--output", "-o", help="Output format: table | json"),
    subscription: Optional[str] = subscription_option(),
) -> None:
    """
    List the metric definitions available for a resource.

    Examples:\n
        python main.py insights metric-definitions --resource-id /subscriptions/.../sites/web1\n
        python main.py insights metric-definitions -r <id> --metric-names CpuTime --output json
    """
    try:
        client = get_client(MonitorManagementClient, subscription)
        views = list_metric_definitions(
            client,
            resource_id,
            metric_names=parse_csv_option(metric_names),
            detailed=detailed_output,
            namespace=namespace,
        )
    except Exception as e:
        fail(e, resource_id)

    if output == "json":
        emit_json(views)
    else:
        print_definitions_table(views)
