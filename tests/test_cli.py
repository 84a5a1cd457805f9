"""
test_cli.py
===========
Integration tests for the CLI entry point using typer CliRunner.
Mocks client construction so the commands run against recorded responses.
"""

import base64
import copy
import json
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from azure.mgmt.keyvault.models import Operation
from azure.mgmt.sql.models import ServerSecurityAlertPolicy
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from typer.testing import CliRunner

from commands.azure_compute import MIB, VhdVmResult
from commands.azure_sql import ThreatDetectionPolicy
from commands.azure_storsimple import (
    ResourceContext,
    StorSimpleClient,
    StorSimpleCmdlet,
    load_resource_context,
    save_resource_context,
)
from conftest import ReplaySession, load_recording, to_namespace, write_vhd
from main import app

runner = CliRunner()

SESSIONS = load_recording("storsimple_sessions")
MANAGER = ResourceContext(SESSIONS["manager_id"], "mgr1", "ss-rg")
RESOURCE_ID = "/subscriptions/sub-1/resourceGroups/web-rg/providers/Microsoft.Web/sites/web1"


def storsimple_cmdlet(scenario, context=MANAGER, storage_client=None, blob_service=None, public_key=None):
    entries = copy.deepcopy(SESSIONS[scenario])
    if public_key is not None:
        entries[0]["response"]["body"]["value"] = public_key
    session = ReplaySession(entries)
    cmdlet = StorSimpleCmdlet(
        StorSimpleClient(session, "sub-1", context),
        storage_client=storage_client,
        blob_service_factory=lambda name, key, endpoint: blob_service or MagicMock(),
        sleep=MagicMock(),
    )
    return session, cmdlet


# ── Root app ──────────────────────────────────────────────────────────────────

def test_help_lists_every_group():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for group in ("compute", "sql", "insights", "keyvault", "storsimple"):
        assert group in result.output


# ── Key Vault ─────────────────────────────────────────────────────────────────

@patch("commands.azure_keyvault.get_client")
def test_keyvault_operations_json(mock_get_client):
    ops = [Operation.deserialize(o) for o in load_recording("keyvault_operations")["value"]]
    mock_get_client.return_value.operations.list.return_value = ops

    result = runner.invoke(app, ["keyvault", "operations", "--provider-filter", "secrets", "-o", "json"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert [r["name"] for r in payload] == ["Microsoft.KeyVault/vaults/secrets/read"]


@patch("commands.azure_keyvault.get_client")
def test_keyvault_operations_table(mock_get_client):
    ops = [Operation.deserialize(o) for o in load_recording("keyvault_operations")["value"]]
    mock_get_client.return_value.operations.list.return_value = ops

    result = runner.invoke(app, ["keyvault", "operations"])

    assert result.exit_code == 0
    assert "4 operation(s)" in result.stdout


@patch("commands.azure_keyvault.get_client")
def test_keyvault_subscription_error_exits_1(mock_get_client):
    mock_get_client.side_effect = ValueError("There are no subscriptions available")

    result = runner.invoke(app, ["keyvault", "operations"])

    assert result.exit_code == 1
    assert "InvalidData: There are no subscriptions available" in result.output


# ── Insights ──────────────────────────────────────────────────────────────────

@patch("commands.azure_insights.get_client")
def test_metric_definitions_json(mock_get_client):
    client = mock_get_client.return_value
    client.metric_definitions.list.return_value = to_namespace(load_recording("metric_definitions")["value"])

    result = runner.invoke(
        app, ["insights", "metric-definitions", "-r", RESOURCE_ID, "-m", "CpuTime", "-o", "json"]
    )

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert len(payload) == 1
    assert payload[0]["name"] == "CpuTime"
    assert payload[0]["localized_name"] == {"value": "CpuTime", "localized_value": "CPU Time"}


@patch("commands.azure_insights.get_client")
def test_metric_definitions_detailed_json(mock_get_client):
    client = mock_get_client.return_value
    client.metric_definitions.list.return_value = to_namespace(load_recording("metric_definitions")["value"])

    result = runner.invoke(
        app, ["insights", "metric-definitions", "-r", RESOURCE_ID, "--detailed-output", "-o", "json"]
    )

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload[0]["name"] == {"value": "CpuTime", "localized_value": "CPU Time"}
    assert "localized_name" not in payload[0]


def test_metric_definitions_requires_resource_id():
    result = runner.invoke(app, ["insights", "metric-definitions"])
    assert result.exit_code != 0


# ── Compute ───────────────────────────────────────────────────────────────────

def test_test_vhd_valid(tmp_path):
    path = write_vhd(tmp_path / "os.vhd", b"\x00" * MIB)
    result = runner.invoke(app, ["compute", "test-vhd", "--disk-file", path])
    assert result.exit_code == 0
    assert "is a valid fixed VHD" in result.stdout


def test_test_vhd_invalid(tmp_path):
    result = runner.invoke(app, ["compute", "test-vhd", "-d", str(tmp_path / "missing.vhd")])
    assert result.exit_code == 1
    assert "InvalidData" in result.output


@patch("commands.azure_compute.get_client")
@patch("commands.azure_compute.new_vhd_vm")
def test_new_vhd_vm_cli(mock_new_vm, _mock_get_client):
    mock_new_vm.return_value = VhdVmResult(
        name="vm1", resource_group="rg", location="eastus", vm_id="vm-id", os_disk_id="disk-id",
        network_interface_id="nic-id", public_ip_address="20.1.2.3", provisioning_state="Succeeded",
        uploaded_bytes=MIB,
    )

    result = runner.invoke(app, ["compute", "new-vhd-vm", "-g", "rg", "-n", "vm1", "-d", "os.vhd"])

    assert result.exit_code == 0
    assert "Creating VM" in result.stdout
    assert "public IP 20.1.2.3" in result.stdout
    assert mock_new_vm.call_args.kwargs == {"vm_size": "Standard_D2s_v3", "os_type": "Windows"}


def test_new_vhd_vm_rejects_unknown_os_type():
    result = runner.invoke(
        app, ["compute", "new-vhd-vm", "-g", "rg", "-n", "vm1", "-d", "os.vhd", "--os-type", "BSD"]
    )
    assert result.exit_code == 1
    assert "Unknown OS type" in result.stdout


# ── SQL ───────────────────────────────────────────────────────────────────────

@patch("commands.azure_sql.get_client")
@patch("commands.azure_sql.set_threat_detection_policy")
def test_sql_threat_detection_set(mock_set, _mock_get_client):
    mock_set.return_value = ThreatDetectionPolicy(
        resource_group="sql-rg", server="sql1", database=None, state="Enabled",
        excluded_detection_types=["Sql_Injection"], storage_account_name="classicst1",
    )

    result = runner.invoke(app, [
        "sql", "threat-detection", "set", "-g", "sql-rg", "-s", "sql1",
        "--state", "Enabled", "--storage-account-name", "classicst1",
        "--excluded-detection-types", "Sql_Injection", "--no-email-admins", "-o", "json",
    ])

    assert result.exit_code == 0
    assert json.loads(result.stdout)["state"] == "Enabled"
    kwargs = mock_set.call_args.kwargs
    assert kwargs["excluded_detection_types"] == ["Sql_Injection"]
    assert kwargs["email_admins"] is False
    assert kwargs["email_addresses"] is None


@patch("commands.azure_sql.get_client")
def test_sql_threat_detection_get_table(mock_get_client):
    recording = load_recording("sql_threat_detection")
    mock_get_client.return_value.server_security_alert_policies.get.return_value = (
        ServerSecurityAlertPolicy.deserialize(recording["updated_server_policy"])
    )

    result = runner.invoke(app, ["sql", "threat-detection", "get", "-g", "sql-rg", "-s", "sql1"])

    assert result.exit_code == 0
    assert "classicst1" in result.stdout
    assert "Sql_Injection, Unsafe_Action" in result.stdout


@patch("commands.azure_sql.get_client")
def test_sql_invalid_detection_type_exits_1(_mock_get_client):
    result = runner.invoke(app, [
        "sql", "threat-detection", "set", "-g", "sql-rg", "-s", "sql1",
        "--excluded-detection-types", "Phishing",
    ])
    assert result.exit_code == 1
    assert "InvalidData" in result.output


# ── StorSimple ────────────────────────────────────────────────────────────────

@patch("commands.azure_storsimple.build_cmdlet")
def test_select_resource_saves_context(mock_build):
    _, cmdlet = storsimple_cmdlet("list_managers", context=None)
    mock_build.return_value = cmdlet

    result = runner.invoke(app, ["storsimple", "select-resource", "--name", "MGR1"])

    assert result.exit_code == 0
    assert "Selected StorSimple manager mgr1" in result.stdout
    assert mock_build.call_args.kwargs == {"verify_resource": False}
    assert load_resource_context() == MANAGER


@patch("commands.azure_storsimple.build_cmdlet")
def test_select_unknown_resource(mock_build):
    mock_build.return_value = storsimple_cmdlet("list_managers", context=None)[1]

    result = runner.invoke(app, ["storsimple", "select-resource", "--name", "mgr9"])

    assert result.exit_code == 1
    assert "'mgr9' was not found" in result.output
    assert load_resource_context() is None


def test_get_resource_without_selection():
    result = runner.invoke(app, ["storsimple", "get-resource"])
    assert result.exit_code == 1
    assert "No StorSimple manager is selected" in result.output


def test_get_resource_json():
    save_resource_context(MANAGER)
    result = runner.invoke(app, ["storsimple", "get-resource", "-o", "json"])
    assert result.exit_code == 0
    assert json.loads(result.stdout)["resource_group"] == "ss-rg"


def test_get_resource_without_resource_group():
    save_resource_context(ResourceContext(SESSIONS["manager_id"], "mgr1"))
    result = runner.invoke(app, ["storsimple", "get-resource"])
    assert result.exit_code == 0
    assert "mgr1" in result.stdout
    assert "resource group" not in result.stdout
    assert "None" not in result.stdout


@patch("commands.azure_storsimple.get_client")
@patch("commands.azure_storsimple.get_subscription_id", return_value="sub-1")
def test_storsimple_commands_require_selected_manager(_mock_sub, _mock_get_client):
    result = runner.invoke(app, ["storsimple", "storage-credential", "list"])
    assert result.exit_code == 1
    assert "NotSpecified" in result.output


@patch("commands.azure_storsimple.build_cmdlet")
def test_add_storage_credential_and_wait(mock_build):
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    public_der = private_key.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    storage_client = MagicMock()
    storage_client.storage_accounts.list.return_value = [SimpleNamespace(name="st1", location="westus")]
    session, cmdlet = storsimple_cmdlet(
        "add_storage_credential",
        storage_client=storage_client,
        public_key=base64.b64encode(public_der).decode("ascii"),
    )
    mock_build.return_value = cmdlet

    result = runner.invoke(app, [
        "storsimple", "storage-credential", "add", "--name", "st1", "--key", "c3RvcmFnZS1rZXk=",
        "--wait", "-o", "json",
    ])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["location"] == "westus"
    assert payload["task_id"] == "6e1f0c52-3b0a-4a8e-9d7c-4f0b2f3d9a11"
    assert payload["report"]["result"] == "Succeeded"
    assert session.exhausted


@patch("commands.azure_storsimple.build_cmdlet")
def test_add_storage_credential_with_bad_key(mock_build):
    blob = MagicMock()
    blob.create_container.side_effect = ValueError("Incorrect padding")
    blob.get_container_client.return_value.exists.return_value = False
    mock_build.return_value = storsimple_cmdlet("add_storage_credential", blob_service=blob)[1]

    result = runner.invoke(app, ["storsimple", "storage-credential", "add", "--name", "st1", "--key", "bad"])

    assert result.exit_code == 1
    assert "InvalidData" in result.output


@patch("commands.azure_storsimple.build_cmdlet")
def test_list_storage_credentials_table(mock_build):
    mock_build.return_value = storsimple_cmdlet("list_storage_credentials")[1]

    result = runner.invoke(app, ["storsimple", "storage-credential", "list"])

    assert result.exit_code == 0
    assert "core.chinacloudapi.cn" in result.stdout


@patch("commands.azure_storsimple.build_cmdlet")
def test_remove_storage_credential_prints_task_id(mock_build):
    mock_build.return_value = storsimple_cmdlet("remove_storage_credential_sync")[1]

    result = runner.invoke(app, ["storsimple", "storage-credential", "remove", "--name", "st2"])

    assert result.exit_code == 0
    assert result.stdout.strip() == "0d4c1b7e-9a2f-4e6b-8c3d-5a7f9e1b2c4d"


@patch("commands.azure_storsimple.build_cmdlet")
def test_remove_storage_credential_waits_on_location_task(mock_build):
    session, cmdlet = storsimple_cmdlet("remove_storage_credential_async")
    mock_build.return_value = cmdlet

    result = runner.invoke(app, ["storsimple", "storage-credential", "remove", "--name", "st1", "--wait"])

    assert result.exit_code == 0
    assert "Task 9b7d2e4a-1c3f-4a5b-8e6d-0f2a4c6e8b13: Succeeded" in result.stdout
    assert session.exhausted


@patch("commands.azure_storsimple.build_cmdlet")
def test_verify_configured_device(mock_build):
    mock_build.return_value = storsimple_cmdlet("device_configured")[1]
    result = runner.invoke(app, ["storsimple", "device", "verify-configured", "--device", "dev1"])
    assert result.exit_code == 0
    assert "Device dev1 is configured" in result.stdout


@patch("commands.azure_storsimple.build_cmdlet")
def test_verify_unconfigured_device(mock_build):
    mock_build.return_value = storsimple_cmdlet("device_not_configured")[1]
    result = runner.invoke(app, ["storsimple", "device", "verify-configured", "-d", "dev2"])
    assert result.exit_code == 1
    assert "not fully configured" in result.output


@patch("commands.azure_storsimple.build_cmdlet")
def test_start_backup_prints_job_id(mock_build):
    mock_build.return_value = storsimple_cmdlet("start_backup")[1]

    result = runner.invoke(app, ["storsimple", "backup", "start", "-d", "dev1", "-p", "daily"])

    assert result.exit_code == 0
    assert result.stdout.strip() == "a3c8e5f1-7b2d-4c9e-8f1a-2b3c4d5e6f70"


def test_start_backup_rejects_unknown_type():
    result = runner.invoke(app, ["storsimple", "backup", "start", "-d", "dev1", "-p", "daily", "-t", "Full"])
    assert result.exit_code == 1
    assert "Unknown backup type" in result.stdout


@patch("commands.azure_storsimple.build_cmdlet")
def test_service_error_is_reported_as_invalid_operation(mock_build):
    mock_build.return_value = storsimple_cmdlet("manager_not_found")[1]

    result = runner.invoke(app, ["storsimple", "storage-credential", "add", "--name", "st1"])

    assert result.exit_code == 1
    assert "InvalidOperation" in result.output
    assert "ResourceNotFound" in result.output
