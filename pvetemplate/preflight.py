from __future__ import annotations

import os
import shutil
from typing import Protocol, Sequence

import structlog

from pvetemplate.errors import ValidationError
from pvetemplate.pve import StorageStatus
from pvetemplate.request import ProvisioningRequest

log = structlog.get_logger(__name__)

REQUIRED_TOOLS = ("qm", "pvesm", "pvesh", "ip")
GIB = 1024**3


class HostQueries(Protocol):
    def query_status(self, vmid: int) -> bool: ...

    def bridge_exists(self, bridge: str) -> bool: ...

    def storage_status(self, pool: str) -> StorageStatus | None: ...


class MirrorProbe(Protocol):
    def reachable(self, release: str) -> bool: ...


def missing_tools(tools: Sequence[str] = REQUIRED_TOOLS) -> list[str]:
    return [tool for tool in tools if shutil.which(tool) is None]


def has_privilege() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


def check_ssh_policy(request: ProvisioningRequest, *, require_ssh_key: bool) -> None:
    if require_ssh_key and not request.ssh_public_key.strip():
        raise ValidationError(
            "Error: An SSH public key is required but none was supplied.\n"
            "Pass --ssh-key-file or set ssh_key_file in the config file. "
            "Password-only guest access is not configured."
        )


def required_free_bytes(request: ProvisioningRequest, min_free_gib: int) -> int:
    return (min_free_gib + request.disk_extra_gib) * GIB


def check_storage(
    client: HostQueries, request: ProvisioningRequest, *, min_free_gib: int
) -> StorageStatus:
    status = client.storage_status(request.storage)
    if status is None:
        raise ValidationError(f"Error: Storage '{request.storage}' does not exist.")
    if not status.active:
        raise ValidationError(f"Error: Storage '{request.storage}' is not active.")
    required = required_free_bytes(request, min_free_gib)
    if status.available_bytes is None:
        log.warning("Storage capacity unknown; skipping free-space check", storage=status.name)
    elif status.available_bytes < required:
        raise ValidationError(
            f"Error: Storage '{request.storage}' has insufficient free space.\n"
            f"  available: {status.available_bytes // GIB} GiB\n"
            f"  required:  {required // GIB} GiB"
        )
    return status


def validate_request(request: ProvisioningRequest, *, require_ssh_key: bool) -> None:
    """Checks that need no host access."""
    request.validate()
    check_ssh_policy(request, require_ssh_key=require_ssh_key)


def check_host(
    request: ProvisioningRequest,
    *,
    client: HostQueries,
    mirror: MirrorProbe,
    min_free_gib: int,
) -> StorageStatus:
    missing = missing_tools()
    if missing:
        raise ValidationError(
            f"Error: Required commands not found: {', '.join(missing)}.\n"
            "Run this on a Proxmox VE node."
        )
    if not has_privilege():
        raise ValidationError("Error: This command must be run as root.")
    if request.vmid is not None and client.query_status(request.vmid):
        raise ValidationError(f"Error: VM ID {request.vmid} already exists on this Proxmox node.")
    if not client.bridge_exists(request.bridge):
        raise ValidationError(f"Error: Network bridge '{request.bridge}' does not exist.")
    if not mirror.reachable(request.release):
        raise ValidationError(f"Error: Image mirror is not reachable for release '{request.release}'.")
    return check_storage(client, request, min_free_gib=min_free_gib)
