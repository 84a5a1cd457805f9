"""
azure_storsimple.py
===================
StorSimple device manager cmdlets. There is no generated Python client for
StorSimple, so requests go through the ARM pipeline of a generic
ResourceManagementClient (authentication, retries and request ids come from
azure-core).

Every StorSimple command except select-resource requires a selected manager
(the "resource context"), which is persisted in the toolkit's app directory.

Usage:
    python main.py storsimple select-resource --name my-manager
    python main.py storsimple storage-credential add --name st1 --key <key> --wait
    python main.py storsimple device verify-configured --device 8100-SHG0997877L71FC
    python main.py storsimple backup start --device 8100-SHG0997877L71FC --policy daily
"""

import base64
import logging
import random
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional
from urllib.parse import urlparse

import typer
from azure.core.credentials import AzureNamedKeyCredential
from azure.core.exceptions import AzureError
from azure.core.rest import HttpRequest
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.storage import StorageManagementClient
from azure.storage.blob import BlobServiceClient
from cryptography.hazmat.primitives import serialization as crypto_serialization
from cryptography.hazmat.primitives.asymmetric import padding
from rich import box
from rich.console import Console
from rich.table import Table

from commands.azure_common import (
    emit_json,
    get_client,
    get_subscription_id,
    load_state,
    resource_group_from_id,
    save_state,
    subscription_option,
)
from commands.azure_errors import CmdletError, ErrorRecord, fail, handle_exception

app = typer.Typer(no_args_is_help=True)
credential_app = typer.Typer(no_args_is_help=True)
device_app = typer.Typer(no_args_is_help=True)
backup_app = typer.Typer(no_args_is_help=True)
app.add_typer(credential_app, name="storage-credential", help="Storage account credentials of the manager.")
app.add_typer(device_app, name="device", help="Device checks.")
app.add_typer(backup_app, name="backup", help="Device backups.")

console = Console()
logger = logging.getLogger(__name__)

API_VERSION = "2017-06-01"
PROVIDER = "Microsoft.StorSimple"
CONTEXT_STATE_NAME = "storsimple_context"
DEFAULT_STORAGE_ENDPOINT = "core.windows.net"
VALIDATION_CONTAINER_PREFIX = "storsimplesdkvalidation"
CLEANUP_MAX_RETRIES = 5
CLEANUP_RETRY_DELAY_SECONDS = 1
TASK_POLL_INTERVAL_SECONDS = 5
TASK_MAX_POLLS = 120

CLIENT_REQUEST_ID_MESSAGE = "ClientRequestId: {0}"
FAILURE_MESSAGE_SUBMIT_TASK = "The {0} task could not be submitted."
SUCCESS_MESSAGE_SUBMIT_TASK = "The {0} task was submitted. Track its progress with task id {1}."
SUCCESS_MESSAGE_COMPLETED_SYNC = "The {0} operation completed."
SUCCESS_MESSAGE_SUBMIT_DEVICE_JOB = "The {0} job was started on the device. Track its progress with job id {1}."
SUCCESS_MESSAGE_COMPLETE_JOB = "The {0} task completed successfully."
FAILURE_MESSAGE_COMPLETE_JOB = "The {0} task did not complete successfully."
RESOURCE_CONTEXT_NOT_SET_MESSAGE = (
    "No StorSimple manager is selected. Run 'storsimple select-resource --name <manager>' first."
)
DEVICE_NOT_CONFIGURED_MESSAGE = (
    "The device is not fully configured: interface Data0 must be enabled with a controller 0 IPv4 address."
)
STORAGE_ACCOUNT_CLEANUP_RETRY_MESSAGE = "Validation container still exists, cleanup attempt {0}"
STORAGE_ACCOUNT_FOUND_MESSAGE = "Storage account {0} found in the subscription."
STORAGE_ACCOUNT_NOT_FOUND_MESSAGE = "Storage account {0} not found in the subscription."
STORAGE_CREDENTIAL_VERIFICATION_SUCCESS_MESSAGE = "Storage account credentials verified."
STORAGE_CREDENTIAL_VERIFICATION_FAILURE_MESSAGE = "Storage account credentials could not be verified."
ENCRYPTION_IN_PROGRESS_MESSAGE = "Encrypting the storage account key."


# ── Data models ───────────────────────────────────────────────────────────────


class AsyncTaskAggregatedResult(str, Enum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELED = "Canceled"
    IN_PROGRESS = "InProgress"

    @classmethod
    def parse(cls, status: Optional[str]) -> "AsyncTaskAggregatedResult":
        lookup = {m.value.lower(): m for m in cls}
        lookup["running"] = cls.IN_PROGRESS
        lookup["cancelled"] = cls.CANCELED
        return lookup.get((status or "").lower(), cls.IN_PROGRESS)


@dataclass
class ResourceContext:
    resource_id: str
    resource_name: str
    resource_group: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.resource_id) and bool(self.resource_name)


@dataclass
class OperationResponse:
    status_code: int


@dataclass
class TaskResponse(OperationResponse):
    task_id: str
    status_url: Optional[str] = None
    # Location monitors report progress by status code, not by a body status
    status_from_location: bool = False


@dataclass
class GuidTaskResponse(OperationResponse):
    task_id: str


@dataclass
class JobResponse(OperationResponse):
    job_id: str


@dataclass
class TaskStatusInfo:
    task_id: str
    status: str
    result: AsyncTaskAggregatedResult
    error: Optional[str] = None


@dataclass
class TaskReport:
    task_id: str
    status: str
    result: str
    error: Optional[str] = None

    @classmethod
    def from_status(cls, info: TaskStatusInfo) -> "TaskReport":
        return cls(info.task_id, info.status, info.result.value, info.error)


@dataclass
class NetInterface:
    interface_id: str
    is_enabled: bool
    controller0_ipv4_address: Optional[str] = None
    controller1_ipv4_address: Optional[str] = None

    @classmethod
    def from_json(cls, adapter: dict[str, Any]) -> "NetInterface":
        ipv4 = adapter.get("nicIPv4Settings") or {}
        return cls(
            interface_id=adapter.get("networkAdapterName", ""),
            is_enabled=(adapter.get("nicStatus") or "").lower() == "enabled",
            controller0_ipv4_address=ipv4.get("controller0IPv4Address"),
            controller1_ipv4_address=ipv4.get("controller1IPv4Address"),
        )


@dataclass
class DeviceDetails:
    name: str
    device_id: Optional[str]
    status: Optional[str]
    net_interfaces: Optional[list[NetInterface]] = None


@dataclass
class EncryptionKey:
    value: str
    thumbprint: str
    algorithm: str = "RSAES_PKCS1_v_1_5"


@dataclass
class StorageCredentialResult:
    name: str
    endpoint: str
    ssl_enabled: bool
    location: Optional[str] = None
    task_id: Optional[str] = None
    report: Optional[TaskReport] = None


@dataclass
class StorageCredential:
    name: str
    endpoint: Optional[str]  # suffix, e.g. core.windows.net
    ssl_status: Optional[str]
    cloud_type: Optional[str] = None


# ── Endpoint helpers ──────────────────────────────────────────────────────────


def get_hostname_from_endpoint(endpoint: str) -> str:
    """core.windows.net -> blob.core.windows.net"""
    return f"blob.{endpoint}"


def get_endpoint_from_hostname(hostname: str) -> str:
    """blob.core.windows.net -> core.windows.net"""
    return hostname[hostname.find(".") + 1:]


def _last_segment(url: Optional[str]) -> str:
    if not url:
        return ""
    return urlparse(url).path.rstrip("/").rsplit("/", 1)[-1]


def encrypt_secret(secret: str, public_key_value: str) -> str:
    """RSA PKCS#1 v1.5 encrypt ``secret`` with a PEM or base64 DER public key; base64 result."""
    if "BEGIN" in public_key_value:
        public_key = crypto_serialization.load_pem_public_key(public_key_value.encode("ascii"))
    else:
        public_key = crypto_serialization.load_der_public_key(base64.b64decode(public_key_value))
    encrypted = public_key.encrypt(secret.encode("utf-8"), padding.PKCS1v15())  # type: ignore[union-attr]
    return base64.b64encode(encrypted).decode("ascii")


# ── Resource context persistence ──────────────────────────────────────────────


def load_resource_context() -> Optional[ResourceContext]:
    state = load_state(CONTEXT_STATE_NAME)
    if not state:
        return None
    return ResourceContext(
        resource_id=state.get("resource_id", ""),
        resource_name=state.get("resource_name", ""),
        resource_group=state.get("resource_group"),
    )


def save_resource_context(context: ResourceContext) -> None:
    save_state(
        CONTEXT_STATE_NAME,
        {
            "resource_id": context.resource_id,
            "resource_name": context.resource_name,
            "resource_group": context.resource_group,
        },
    )


# ── REST client ───────────────────────────────────────────────────────────────


class StorSimpleClient:
    """Thin REST client for Microsoft.StorSimple/managers over an ARM pipeline."""

    def __init__(
        self,
        arm_client: Any,
        subscription_id: str,
        context: Optional[ResourceContext] = None,
    ):
        self._arm_client = arm_client
        self.subscription_id = subscription_id
        self._context = context
        self._client_request_id: Optional[str] = None

    @property
    def client_request_id(self) -> str:
        """A fresh id on every access, so each call is traceable on its own."""
        self._client_request_id = f"{uuid.uuid4()}_PS"
        logger.info(CLIENT_REQUEST_ID_MESSAGE.format(self._client_request_id))
        return self._client_request_id

    def get_resource_context(self) -> Optional[ResourceContext]:
        return self._context

    def _manager_id(self) -> str:
        if self._context is None or not self._context.is_complete:
            raise CmdletError(RESOURCE_CONTEXT_NOT_SET_MESSAGE)
        return self._context.resource_id.rstrip("/")

    def _send(
        self,
        method: str,
        url: str,
        body: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, str]] = None,
        api_version: Optional[str] = API_VERSION,
    ) -> Any:
        query = dict(params or {})
        if api_version:
            query["api-version"] = api_version
        request = HttpRequest(
            method,
            url,
            params=query,
            headers={"x-ms-client-request-id": self.client_request_id},
            json=body,
        )
        response = self._arm_client.send_request(request)
        response.raise_for_status()
        return response

    @staticmethod
    def _json(response: Any) -> dict[str, Any]:
        if response.status_code == 204 or not response.text():
            return {}
        return response.json()

    # managers

    def list_managers(self) -> list[ResourceContext]:
        response = self._send(
            "GET", f"/subscriptions/{self.subscription_id}/providers/{PROVIDER}/managers"
        )
        return [
            ResourceContext(
                resource_id=m["id"],
                resource_name=m["name"],
                resource_group=resource_group_from_id(m["id"]),
            )
            for m in self._json(response).get("value", [])
        ]

    def get_public_encryption_key(self) -> EncryptionKey:
        response = self._send("POST", f"{self._manager_id()}/listPublicEncryptionKey")
        payload = self._json(response)
        return EncryptionKey(
            value=payload["value"],
            thumbprint=payload.get("valueCertificateThumbprint", ""),
            algorithm=payload.get("encryptionAlgorithm", "RSAES_PKCS1_v_1_5"),
        )

    # devices

    def get_device_details(self, device_name: str) -> DeviceDetails:
        device_url = f"{self._manager_id()}/devices/{device_name}"
        device = self._json(self._send("GET", device_url))
        settings = self._json(self._send("GET", f"{device_url}/networkSettings/default"))

        adapters = ((settings.get("properties") or {}).get("networkAdapters") or {}).get("value")
        properties = device.get("properties") or {}
        return DeviceDetails(
            name=device.get("name", device_name),
            device_id=properties.get("deviceId") or device.get("id"),
            status=properties.get("status"),
            net_interfaces=[NetInterface.from_json(a) for a in adapters] if adapters is not None else None,
        )

    def start_backup(self, device_name: str, policy_name: str, backup_type: str) -> JobResponse:
        response = self._send(
            "POST",
            f"{self._manager_id()}/devices/{device_name}/backupPolicies/{policy_name}/backup",
            params={"backupType": backup_type},
        )
        payload = self._json(response)
        job_id = payload.get("name") or _last_segment(
            response.headers.get("Location") or response.headers.get("Azure-AsyncOperation")
        )
        return JobResponse(status_code=response.status_code, job_id=job_id)

    # storage account credentials

    def list_storage_credentials(self) -> list[StorageCredential]:
        response = self._send("GET", f"{self._manager_id()}/storageAccountCredentials")
        credentials = []
        for item in self._json(response).get("value", []):
            properties = item.get("properties") or {}
            hostname = properties.get("endPoint")
            credentials.append(
                StorageCredential(
                    name=item.get("name", ""),
                    endpoint=get_endpoint_from_hostname(hostname) if hostname else None,
                    ssl_status=properties.get("sslStatus"),
                    cloud_type=properties.get("cloudType"),
                )
            )
        return credentials

    def create_or_update_storage_credential(
        self,
        name: str,
        endpoint: str,
        ssl_enabled: bool,
        encrypted_key: Optional[str],
        key: EncryptionKey,
    ) -> OperationResponse:
        properties: dict[str, Any] = {
            "endPoint": get_hostname_from_endpoint(endpoint),
            "sslStatus": "Enabled" if ssl_enabled else "Disabled",
        }
        if encrypted_key is not None:
            properties["accessKey"] = {
                "value": encrypted_key,
                "encryptionCertThumbprint": key.thumbprint,
                "encryptionAlgorithm": key.algorithm,
            }
        response = self._send(
            "PUT",
            f"{self._manager_id()}/storageAccountCredentials/{name}",
            body={"properties": properties},
        )
        return self._task_response(response)

    def delete_storage_credential(self, name: str) -> OperationResponse:
        response = self._send("DELETE", f"{self._manager_id()}/storageAccountCredentials/{name}")
        return self._task_response(response)

    # tasks

    def _task_response(self, response: Any) -> OperationResponse:
        """
        Long-running requests answer with an async operation url (the task id is
        its last segment) or, from older endpoints, a task guid in the body.
        Anything else finished synchronously.
        """
        async_url = response.headers.get("Azure-AsyncOperation")
        if async_url:
            return TaskResponse(response.status_code, _last_segment(async_url), async_url)
        location_url = response.headers.get("Location")
        if location_url:
            return TaskResponse(
                response.status_code, _last_segment(location_url), location_url, status_from_location=True
            )
        payload = self._json(response)
        if payload.get("taskId"):
            return GuidTaskResponse(response.status_code, str(uuid.UUID(payload["taskId"])))
        return OperationResponse(response.status_code)

    def get_task_status(self, status_url: str, from_location: bool = False) -> TaskStatusInfo:
        """
        An async operation url always answers with a body status. A Location
        url answers 202 while the task runs and 200, 201 or 204 once it is done,
        usually without a body.
        """
        response = self._send("GET", status_url, api_version=None)
        payload = self._json(response)
        error = payload.get("error") or {}
        status = payload.get("status", "")
        if from_location and not status:
            done = response.status_code in (200, 201, 204)
            status = (AsyncTaskAggregatedResult.SUCCEEDED if done else AsyncTaskAggregatedResult.IN_PROGRESS).value
        return TaskStatusInfo(
            task_id=payload.get("name") or _last_segment(status_url),
            status=status,
            result=AsyncTaskAggregatedResult.parse(status),
            error=error.get("message"),
        )

    def wait_for_task(
        self,
        status_url: str,
        poll_interval: float = TASK_POLL_INTERVAL_SECONDS,
        max_polls: int = TASK_MAX_POLLS,
        sleep: Callable[[float], None] = time.sleep,
        from_location: bool = False,
    ) -> TaskStatusInfo:
        info = self.get_task_status(status_url, from_location)
        polls = 1
        while info.result == AsyncTaskAggregatedResult.IN_PROGRESS and polls < max_polls:
            sleep(poll_interval)
            info = self.get_task_status(status_url, from_location)
            polls += 1
        return info


# ── Cmdlet base ───────────────────────────────────────────────────────────────


def default_blob_service(account_name: str, account_key: str, endpoint: str) -> BlobServiceClient:
    return BlobServiceClient(
        account_url=f"https://{account_name}.{get_hostname_from_endpoint(endpoint)}",
        credential=AzureNamedKeyCredential(account_name, account_key),
    )


class StorSimpleCmdlet:
    """
    Shared behavior of the StorSimple commands: resource context checks,
    response reporting, error classification and storage credential handling.

    Pass verify_resource=False for commands that run before a manager is
    selected.
    """

    def __init__(
        self,
        client: StorSimpleClient,
        verify_resource: bool = True,
        storage_client: Optional[StorageManagementClient] = None,
        blob_service_factory: Callable[[str, str, str], BlobServiceClient] = default_blob_service,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.verify_resource_before_execute = verify_resource
        self.storage_client = storage_client
        self._blob_service_factory = blob_service_factory
        self.sleep = sleep

    def begin_processing(self) -> None:
        if self.verify_resource_before_execute:
            self.verify_resource_context()

    def verify_resource_context(self) -> None:
        if not self.check_resource_context_present():
            raise CmdletError(RESOURCE_CONTEXT_NOT_SET_MESSAGE)

    def check_resource_context_present(self) -> bool:
        context = self.client.get_resource_context()
        return context is not None and context.is_complete

    # response reporting

    def handle_async_task_response(
        self, response: OperationResponse, operation_name: str
    ) -> Optional[str]:
        """Returns the task id to emit, or None when nothing was submitted."""
        task_id = None
        if response.status_code not in (200, 202):
            msg = FAILURE_MESSAGE_SUBMIT_TASK.format(operation_name)
        elif isinstance(response, (TaskResponse, GuidTaskResponse)):
            msg = SUCCESS_MESSAGE_SUBMIT_TASK.format(operation_name, response.task_id)
            task_id = response.task_id
        else:
            msg = SUCCESS_MESSAGE_COMPLETED_SYNC.format(operation_name)
        logger.info(msg)
        return task_id

    def handle_device_job_response(self, job_response: JobResponse, operation_name: str) -> str:
        logger.info(SUCCESS_MESSAGE_SUBMIT_DEVICE_JOB.format(operation_name, job_response.job_id))
        return job_response.job_id

    def handle_sync_task_response(self, task_status: TaskStatusInfo, operation_name: str) -> TaskReport:
        report = TaskReport.from_status(task_status)
        if task_status.result != AsyncTaskAggregatedResult.SUCCEEDED:
            logger.info(FAILURE_MESSAGE_COMPLETE_JOB.format(operation_name))
        else:
            logger.info(SUCCESS_MESSAGE_COMPLETE_JOB.format(operation_name))
        return report

    def handle_exception(self, exc: BaseException) -> ErrorRecord:
        return handle_exception(exc)

    # storage accounts

    def _container_exists(self, service: BlobServiceClient, container: str) -> bool:
        try:
            return service.get_container_client(container).exists()
        except AzureError as e:
            logger.debug(f"Could not check container {container}: {e}")
            return False

    def _delete_container_quietly(self, service: BlobServiceClient, container: str) -> None:
        try:
            service.delete_container(container)
        except AzureError as e:
            logger.info(f"Cleanup of container {container} failed: {e}")

    def valid_storage_account_cred(
        self, storage_account_name: str, storage_account_key: str, endpoint: str
    ) -> bool:
        """
        Check the credentials by creating and deleting a throwaway container.

        If that fails but the container exists, the credentials worked and only
        the delete lagged behind; the delete is retried with a linearly growing
        pause. If the container does not exist, the credentials are invalid.
        """
        container = f"{VALIDATION_CONTAINER_PREFIX}{random.randint(0, 2**31 - 1)}"
        try:
            service = self._blob_service_factory(storage_account_name, storage_account_key, endpoint)
        except (AzureError, ValueError) as e:
            self.handle_exception(e)
            return False

        try:
            service.create_container(container)
            service.delete_container(container)
            return True
        except (AzureError, ValueError) as e:
            error = e

        if not self._container_exists(service, container):
            self.handle_exception(error)
            return False

        retry_count = 1
        while True:
            logger.info(STORAGE_ACCOUNT_CLEANUP_RETRY_MESSAGE.format(retry_count))
            self._delete_container_quietly(service, container)
            self.sleep(retry_count * CLEANUP_RETRY_DELAY_SECONDS)
            if not self._container_exists(service, container):
                break
            retry_count += 1
            if retry_count > CLEANUP_MAX_RETRIES:
                logger.warning(f"Validation container {container} could not be removed")
                break
        return True

    def get_storage_account_location(self, storage_account_name: str) -> tuple[Optional[str], bool]:
        """(location, exists) of a storage account in the current subscription."""
        if self.storage_client is None:
            return None, False
        try:
            for account in self.storage_client.storage_accounts.list():
                if account.name and account.name.lower() == storage_account_name.lower():
                    logger.info(STORAGE_ACCOUNT_FOUND_MESSAGE.format(storage_account_name))
                    return account.location, True
        except AzureError as e:
            self.handle_exception(e)
        logger.info(STORAGE_ACCOUNT_NOT_FOUND_MESSAGE.format(storage_account_name))
        return None, False

    def validate_and_encrypt_storage_cred(
        self, name: str, key: Optional[str], endpoint: str
    ) -> tuple[bool, Optional[str], EncryptionKey]:
        """Returns (valid, encrypted key or None, the manager's encryption key)."""
        encryption_key = self.client.get_public_encryption_key()
        encrypted_key = None
        if key:
            if not self.valid_storage_account_cred(name, key, endpoint):
                logger.info(STORAGE_CREDENTIAL_VERIFICATION_FAILURE_MESSAGE)
                return False, None, encryption_key
            logger.info(STORAGE_CREDENTIAL_VERIFICATION_SUCCESS_MESSAGE)
            logger.info(ENCRYPTION_IN_PROGRESS_MESSAGE)
            encrypted_key = encrypt_secret(key, encryption_key.value)
        return True, encrypted_key, encryption_key

    # devices

    def verify_device_configuration_complete(self, device_name: str) -> None:
        """No operation may run against a device whose Data0 interface is not configured."""
        details = self.client.get_device_details(device_name)
        data0_configured = False
        if details.net_interfaces is not None:
            data0 = next(
                (n for n in details.net_interfaces if n.interface_id.lower() == "data0"), None
            )
            if data0 is not None and data0.is_enabled and data0.controller0_ipv4_address:
                data0_configured = True
        if not data0_configured:
            raise CmdletError(DEVICE_NOT_CONFIGURED_MESSAGE)


# ── Cmdlet construction ───────────────────────────────────────────────────────


def build_cmdlet(subscription: Optional[str], verify_resource: bool = True) -> StorSimpleCmdlet:
    subscription_id = get_subscription_id(subscription)
    client = StorSimpleClient(
        get_client(ResourceManagementClient, subscription_id),
        subscription_id,
        load_resource_context(),
    )
    cmdlet = StorSimpleCmdlet(
        client,
        verify_resource=verify_resource,
        storage_client=get_client(StorageManagementClient, subscription_id),
    )
    cmdlet.begin_processing()
    return cmdlet


def _report_task(
    cmdlet: StorSimpleCmdlet, response: OperationResponse, operation_name: str, wait: bool
) -> tuple[Optional[str], Optional[TaskReport]]:
    if wait and isinstance(response, TaskResponse) and response.status_url:
        status = cmdlet.client.wait_for_task(
            response.status_url, sleep=cmdlet.sleep, from_location=response.status_from_location
        )
        return response.task_id, cmdlet.handle_sync_task_response(status, operation_name)
    return cmdlet.handle_async_task_response(response, operation_name), None


def print_task_report(report: TaskReport) -> None:
    colour = "green" if report.result == AsyncTaskAggregatedResult.SUCCEEDED.value else "red"
    console.print(f"Task [cyan]{report.task_id}[/cyan]: [{colour}]{report.result}[/{colour}]")
    if report.error:
        console.print(f"  [dim]{report.error}[/dim]")


# ── CLI commands ──────────────────────────────────────────────────────────────


@app.command("select-resource")
def select_resource(
    name: str = typer.Option(..., "--name", "-n", help="StorSimple manager name"),
    subscription: Optional[str] = subscription_option(),
) -> None:
    """Select the StorSimple manager that subsequent commands operate on."""
    try:
        cmdlet = build_cmdlet(subscription, verify_resource=False)
        managers = cmdlet.client.list_managers()
    except Exception as e:
        fail(e, name)

    match = next((m for m in managers if m.resource_name.lower() == name.lower()), None)
    if match is None:
        fail(ValueError(f"StorSimple manager '{name}' was not found in the subscription"), name)

    save_resource_context(match)
    console.print(f"[green]✅ Selected StorSimple manager[/green] [cyan]{match.resource_name}[/cyan]")


@app.command("get-resource")
def get_resource(
    output: str = typer.Option("table", "--output", "-o", help="Output format: table | json"),
) -> None:
    """Show the selected StorSimple manager."""
    context = load_resource_context()
    if context is None or not context.is_complete:
        fail(CmdletError(RESOURCE_CONTEXT_NOT_SET_MESSAGE))
    if output == "json":
        emit_json(context)
    else:
        header = f"[bold]{context.resource_name}[/bold]"
        if context.resource_group:
            header += f" · resource group {context.resource_group}"
        console.print(f"{header}\n[dim]{context.resource_id}[/dim]")


@credential_app.command("add")
def add_storage_credential(
    name: str = typer.Option(..., "--name", "-n", help="Storage account name"),
    key: Optional[str] = typer.Option(None, "--key", "-k", help="Storage account access key"),
    endpoint: str = typer.Option(DEFAULT_STORAGE_ENDPOINT, "--endpoint", help="Storage endpoint suffix"),
    use_ssl: bool = typer.Option(True, "--use-ssl/--no-ssl", help="Access the storage account over https"),
    wait: bool = typer.Option(False, "--wait", help="Wait for the task to finish and report its result"),
    output: str = typer.Option("table", "--output", "-o", help="Output format: table | json"),
    subscription: Optional[str] = subscription_option(),
) -> None:
    """
    Add (or update) a storage account credential on the selected manager. The
    key is validated against the storage account and sent encrypted.
    """
    try:
        cmdlet = build_cmdlet(subscription)
        location, _ = cmdlet.get_storage_account_location(name)
        valid, encrypted_key, encryption_key = cmdlet.validate_and_encrypt_storage_cred(name, key, endpoint)
        if not valid:
            raise typer.Exit(1)
        response = cmdlet.client.create_or_update_storage_credential(
            name, endpoint, use_ssl, encrypted_key, encryption_key
        )
        task_id, report = _report_task(cmdlet, response, "add storage account credential", wait)
    except typer.Exit:
        raise
    except Exception as e:
        fail(e, name)

    result = StorageCredentialResult(name, endpoint, use_ssl, location, task_id, report)
    if output == "json":
        emit_json(result)
    elif report is not None:
        print_task_report(report)
    elif task_id:
        typer.echo(task_id)
    if report is not None and report.result != AsyncTaskAggregatedResult.SUCCEEDED.value:
        raise typer.Exit(1)


@credential_app.command("list")
def list_storage_credentials(
    output: str = typer.Option("table", "--output", "-o", help="Output format: table | json"),
    subscription: Optional[str] = subscription_option(),
) -> None:
    """List the storage account credentials of the selected manager."""
    try:
        credentials = build_cmdlet(subscription).client.list_storage_credentials()
    except Exception as e:
        fail(e)

    if output == "json":
        emit_json(credentials)
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold blue")
    table.add_column("Name", width=28)
    table.add_column("Endpoint", width=36)
    table.add_column("SSL", width=10)
    for c in credentials:
        table.add_row(c.name, c.endpoint or "", c.ssl_status or "")
    console.print(table)


@credential_app.command("remove")
def remove_storage_credential(
    name: str = typer.Option(..., "--name", "-n", help="Storage account name"),
    wait: bool = typer.Option(False, "--wait", help="Wait for the task to finish and report its result"),
    subscription: Optional[str] = subscription_option(),
) -> None:
    """Remove a storage account credential from the selected manager."""
    try:
        cmdlet = build_cmdlet(subscription)
        response = cmdlet.client.delete_storage_credential(name)
        task_id, report = _report_task(cmdlet, response, "remove storage account credential", wait)
    except Exception as e:
        fail(e, name)

    if report is not None:
        print_task_report(report)
        if report.result != AsyncTaskAggregatedResult.SUCCEEDED.value:
            raise typer.Exit(1)
    elif task_id:
        typer.echo(task_id)


@device_app.command("verify-configured")
def verify_configured(
    device: str = typer.Option(..., "--device", "-d", help="Device name"),
    subscription: Optional[str] = subscription_option(),
) -> None:
    """Check that a device has completed its network configuration."""
    try:
        build_cmdlet(subscription).verify_device_configuration_complete(device)
    except Exception as e:
        fail(e, device)
    console.print(f"[green]✅ Device {device} is configured[/green]")


@backup_app.command("start")
def start_backup(
    device: str = typer.Option(..., "--device", "-d", help="Device name"),
    policy: str = typer.Option(..., "--policy", "-p", help="Backup policy name"),
    backup_type: str = typer.Option(
        "CloudSnapshot", "--type", "-t", help="CloudSnapshot | LocalSnapshot"
    ),
    subscription: Optional[str] = subscription_option(),
) -> None:
    """Start a backup on a configured device using one of its backup policies."""
    if backup_type not in ("CloudSnapshot", "LocalSnapshot"):
        console.print(f"[red]Unknown backup type: {backup_type}[/red]")
        raise typer.Exit(1)

    try:
        cmdlet = build_cmdlet(subscription)
        cmdlet.verify_device_configuration_complete(device)
        job = cmdlet.client.start_backup(device, policy, backup_type)
        job_id = cmdlet.handle_device_job_response(job, "start backup")
    except Exception as e:
        fail(e, device)
    typer.echo(job_id)
