"""
azure_compute.py
================
Creates a virtual machine from a local VHD disk file. The VHD is validated
locally, uploaded into an empty managed disk, and attached as the OS disk of
a new VM together with a virtual network, public IP and network interface.

Usage:
    python main.py compute test-vhd --disk-file ./os.vhd
    python main.py compute new-vhd-vm --resource-group rg --name vm1 --disk-file ./os.vhd
    python main.py compute new-vhd-vm -g rg -n vm1 -d ./os.vhd --location westeurope --os-type Linux
"""

import logging
import struct
import uuid
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Any, Optional

import typer
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.network import NetworkManagementClient
from azure.storage.blob import BlobClient
from rich.console import Console

from commands.azure_common import emit_json, get_client, subscription_option
from commands.azure_errors import fail

app = typer.Typer(no_args_is_help=True)
console = Console()
logger = logging.getLogger(__name__)

VHD_FOOTER_SIZE = 512
VHD_COOKIE = b"conectix"
VHD_FOOTER_FORMAT = ">8sIIQI4sI4sQQHBBII16sB427x"
MIB = 1024 * 1024
UPLOAD_CHUNK_BYTES = 4 * MIB  # max size of a single Put Page call
DISK_ACCESS_SECONDS = 24 * 60 * 60


# ── Data models ───────────────────────────────────────────────────────────────


class VhdDiskType(IntEnum):
    NONE = 0
    FIXED = 2
    DYNAMIC = 3
    DIFFERENCING = 4


class InvalidVhdError(ValueError):
    pass


@dataclass
class VhdFooter:
    cookie: bytes
    features: int
    format_version: int
    data_offset: int
    timestamp: int
    creator_application: str
    creator_version: int
    creator_host_os: str
    original_size: int
    current_size: int
    cylinders: int
    heads: int
    sectors_per_track: int
    disk_type: int
    checksum: int
    unique_id: str
    saved_state: bool

    @property
    def is_fixed(self) -> bool:
        return self.disk_type == VhdDiskType.FIXED


@dataclass
class VhdVmResult:
    name: str
    resource_group: str
    location: str
    vm_id: Optional[str]
    os_disk_id: Optional[str]
    network_interface_id: Optional[str]
    public_ip_address: Optional[str]
    provisioning_state: Optional[str]
    uploaded_bytes: int


# ── VHD validation ────────────────────────────────────────────────────────────


def vhd_checksum(footer: bytes) -> int:
    """One's complement of the byte sum of the footer, skipping the checksum field."""
    total = sum(footer[:64]) + sum(footer[68:])
    return ~total & 0xFFFFFFFF


def read_vhd_footer(path: str) -> VhdFooter:
    """
    Read and validate the footer of a VHD file. Azure only accepts fixed-size
    VHDs whose virtual size is a whole number of MiB.
    """
    p = Path(path)
    if not p.is_file():
        raise InvalidVhdError(f"VHD file not found: {path}")

    file_size = p.stat().st_size
    if file_size < VHD_FOOTER_SIZE:
        raise InvalidVhdError(f"{path} is too small to be a VHD ({file_size} bytes)")

    with open(p, "rb") as f:
        f.seek(file_size - VHD_FOOTER_SIZE)
        raw = f.read(VHD_FOOTER_SIZE)

    fields = struct.unpack(VHD_FOOTER_FORMAT, raw)
    footer = VhdFooter(
        cookie=fields[0],
        features=fields[1],
        format_version=fields[2],
        data_offset=fields[3],
        timestamp=fields[4],
        creator_application=fields[5].decode("ascii", errors="replace"),
        creator_version=fields[6],
        creator_host_os=fields[7].decode("ascii", errors="replace"),
        original_size=fields[8],
        current_size=fields[9],
        cylinders=fields[10],
        heads=fields[11],
        sectors_per_track=fields[12],
        disk_type=fields[13],
        checksum=fields[14],
        unique_id=str(uuid.UUID(bytes=fields[15])),
        saved_state=bool(fields[16]),
    )

    if footer.cookie != VHD_COOKIE:
        raise InvalidVhdError(f"{path} is not a VHD file: footer cookie {footer.cookie!r}")
    expected = vhd_checksum(raw)
    if footer.checksum != expected:
        raise InvalidVhdError(
            f"{path} has a corrupt VHD footer: checksum {footer.checksum:#010x}, expected {expected:#010x}"
        )
    if not footer.is_fixed:
        try:
            kind = VhdDiskType(footer.disk_type).name.lower()
        except ValueError:
            kind = f"type {footer.disk_type}"
        raise InvalidVhdError(f"{path} is a {kind} VHD; only fixed-size VHDs can be uploaded")
    if footer.current_size != file_size - VHD_FOOTER_SIZE:
        raise InvalidVhdError(
            f"{path} declares a virtual size of {footer.current_size} bytes "
            f"but holds {file_size - VHD_FOOTER_SIZE}"
        )
    if footer.current_size % MIB != 0:
        raise InvalidVhdError(
            f"{path} has a virtual size of {footer.current_size} bytes, which is not a whole number of MiB"
        )

    return footer


# ── Upload ────────────────────────────────────────────────────────────────────


def upload_pages(blob: BlobClient, path: str, file_size: int) -> int:
    """Upload the non-empty 4 MiB ranges of the file as pages. Returns bytes sent."""
    uploaded = 0
    offset = 0
    with open(path, "rb") as f:
        while offset < file_size:
            chunk = f.read(min(UPLOAD_CHUNK_BYTES, file_size - offset))
            if not chunk:
                break
            # unwritten pages of an upload disk read back as zeros
            if chunk.strip(b"\x00"):
                blob.upload_page(chunk, offset=offset, length=len(chunk))
                uploaded += len(chunk)
            offset += len(chunk)
    return uploaded


def upload_vhd(
    compute_client: ComputeManagementClient,
    resource_group: str,
    disk_name: str,
    location: str,
    path: str,
    os_type: str,
) -> tuple[Any, int]:
    """Create an upload-ready managed disk and fill it from the VHD. Returns (disk, bytes uploaded)."""
    file_size = Path(path).stat().st_size

    logger.info(f"Creating managed disk {disk_name} ({file_size} bytes) for upload")
    disk = compute_client.disks.begin_create_or_update(
        resource_group,
        disk_name,
        {
            "location": location,
            "os_type": os_type,
            "creation_data": {"create_option": "Upload", "upload_size_bytes": file_size},
        },
    ).result()

    access = compute_client.disks.begin_grant_access(
        resource_group,
        disk_name,
        {"access": "Write", "duration_in_seconds": DISK_ACCESS_SECONDS},
    ).result()
    try:
        blob = BlobClient.from_blob_url(access.access_sas)
        uploaded = upload_pages(blob, path, file_size)
        logger.info(f"Uploaded {uploaded} of {file_size} bytes to {disk_name}")
    finally:
        compute_client.disks.begin_revoke_access(resource_group, disk_name).result()

    return disk, uploaded


# ── VM creation ───────────────────────────────────────────────────────────────


def new_vhd_vm(
    compute_client: ComputeManagementClient,
    network_client: NetworkManagementClient,
    resource_group: str,
    name: str,
    location: str,
    disk_file: str,
    vm_size: str = "Standard_D2s_v3",
    os_type: str = "Windows",
) -> VhdVmResult:
    read_vhd_footer(disk_file)

    disk, uploaded = upload_vhd(
        compute_client, resource_group, f"{name}-osdisk", location, disk_file, os_type
    )

    logger.info(f"Creating network resources for {name}")
    vnet = network_client.virtual_networks.begin_create_or_update(
        resource_group,
        f"{name}-vnet",
        {
            "location": location,
            "address_space": {"address_prefixes": ["192.168.0.0/16"]},
            "subnets": [{"name": f"{name}-subnet", "address_prefix": "192.168.1.0/24"}],
        },
    ).result()
    public_ip = network_client.public_ip_addresses.begin_create_or_update(
        resource_group,
        f"{name}-ip",
        {
            "location": location,
            "sku": {"name": "Standard"},
            "public_ip_allocation_method": "Static",
        },
    ).result()
    nic = network_client.network_interfaces.begin_create_or_update(
        resource_group,
        f"{name}-nic",
        {
            "location": location,
            "ip_configurations": [
                {
                    "name": f"{name}-ipconfig",
                    "subnet": {"id": vnet.subnets[0].id},
                    "public_ip_address": {"id": public_ip.id},
                }
            ],
        },
    ).result()

    logger.info(f"Creating virtual machine {name} with OS disk {disk.id}")
    vm = compute_client.virtual_machines.begin_create_or_update(
        resource_group,
        name,
        {
            "location": location,
            "hardware_profile": {"vm_size": vm_size},
            "storage_profile": {
                "os_disk": {
                    "create_option": "Attach",
                    "os_type": os_type,
                    "managed_disk": {"id": disk.id},
                }
            },
            "network_profile": {"network_interfaces": [{"id": nic.id}]},
        },
    ).result()

    return VhdVmResult(
        name=name,
        resource_group=resource_group,
        location=location,
        vm_id=vm.id,
        os_disk_id=disk.id,
        network_interface_id=nic.id,
        public_ip_address=public_ip.ip_address,
        provisioning_state=vm.provisioning_state,
        uploaded_bytes=uploaded,
    )


# ── CLI commands ──────────────────────────────────────────────────────────────


@app.command("test-vhd")
def test_vhd_command(
    disk_file: str = typer.Option(..., "--disk-file", "-d", help="Path to the local VHD file"),
) -> None:
    """Validate that a local VHD file can be uploaded to Azure."""
    try:
        footer = read_vhd_footer(disk_file)
    except Exception as e:
        fail(e, disk_file)

    console.print(
        f"[green]✅ {disk_file} is a valid fixed VHD[/green] · "
        f"virtual size {footer.current_size // MIB} MiB · id {footer.unique_id}"
    )


@app.command("new-vhd-vm")
def new_vhd_vm_command(
    resource_group: str = typer.Option(..., "--resource-group", "-g", help="Resource group name"),
    name: str = typer.Option(..., "--name", "-n", help="Virtual machine name"),
    disk_file: str = typer.Option(..., "--disk-file", "-d", help="Path to the local VHD file"),
    location: str = typer.Option("eastus", "--location", "-l", envvar="AZURE_LOCATION", help="Azure region"),
    size: str = typer.Option("Standard_D2s_v3", "--size", help="Virtual machine size"),
    os_type: str = typer.Option("Windows", "--os-type", help="Windows | Linux"),
    output: str = typer.Option("table", "--output", "-o", help="Output format: table | json"),
    subscription: Optional[str] = subscription_option(),
) -> None:
    """
    Create a virtual machine whose OS disk is uploaded from a local VHD file.

    Examples:\n
        python main.py compute new-vhd-vm -g rg -n vm1 -d ./os.vhd\n
        python main.py compute new-vhd-vm -g rg -n vm1 -d ./os.vhd --os-type Linux --output json
    """
    if os_type not in ("Windows", "Linux"):
        console.print(f"[red]Unknown OS type: {os_type}[/red]")
        raise typer.Exit(1)

    console.print(
        f"\n[bold blue]🖥  Creating VM[/bold blue] [cyan]{name}[/cyan] from "
        f"[cyan]{disk_file}[/cyan] in [cyan]{resource_group}[/cyan] · {location}\n"
    )

    try:
        result = new_vhd_vm(
            get_client(ComputeManagementClient, subscription),
            get_client(NetworkManagementClient, subscription),
            resource_group,
            name,
            location,
            disk_file,
            vm_size=size,
            os_type=os_type,
        )
    except Exception as e:
        fail(e, name)

    if output == "json":
        emit_json(result)
    else:
        console.print(
            f"[green]✅ {result.name}[/green] · state {result.provisioning_state} · "
            f"public IP {result.public_ip_address} · uploaded {result.uploaded_bytes} bytes"
        )
