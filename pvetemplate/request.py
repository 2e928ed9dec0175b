from __future__ import annotations

import re
from dataclasses import dataclass

from pvetemplate.errors import ValidationError
from pvetemplate.image import SUPPORTED_ARCHES, SUPPORTED_RELEASES

VM_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9.-]{0,62}$")
STORAGE_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9._-]*$")
BRIDGE_NAME_RE = re.compile(r"^[A-Za-z0-9._-]{1,15}$")
SUPPORTED_BIOS = ("ovmf", "seabios")
SSH_KEY_PREFIXES = ("ssh-", "ecdsa-", "sk-ssh-", "sk-ecdsa-")
DEFAULT_BALLOON_MIB = 1024


@dataclass(frozen=True)
class ProvisioningRequest:
    name: str
    storage: str
    bridge: str
    memory: int
    cores: int
    disk_extra_gib: int
    release: str
    vmid: int | None = None
    arch: str = "amd64"
    ssh_public_key: str = ""
    guest_user: str = "ubuntu"
    bios: str = "ovmf"
    balloon: int | None = None
    dry_run: bool = False

    @property
    def auto_vmid(self) -> bool:
        return self.vmid is None

    @property
    def balloon_mib(self) -> int:
        """Minimum guaranteed memory; unset means 1024 MiB capped at ``memory``."""
        if self.balloon is None:
            return min(DEFAULT_BALLOON_MIB, self.memory)
        return self.balloon

    def validate(self) -> None:
        if self.vmid is not None and (not isinstance(self.vmid, int) or self.vmid < 100):
            raise ValidationError(f"Error: VM ID must be an integer >= 100, got {self.vmid!r}.")
        if not VM_NAME_RE.match(self.name):
            raise ValidationError(
                f"Error: Invalid VM name '{self.name}'. Use letters, numbers, hyphens, "
                "and periods only (max 63 characters)."
            )
        if not STORAGE_NAME_RE.match(self.storage):
            raise ValidationError(f"Error: Invalid storage name '{self.storage}'.")
        if not BRIDGE_NAME_RE.match(self.bridge):
            raise ValidationError(f"Error: Invalid bridge name '{self.bridge}'.")
        for field_name in ("memory", "cores", "disk_extra_gib", "balloon"):
            value = getattr(self, field_name)
            if value is None and field_name == "balloon":
                continue
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValidationError(
                    f"Error: {field_name} must be a non-negative integer, got {value!r}."
                )
        if self.memory == 0 or self.cores == 0:
            raise ValidationError("Error: memory and cores must be greater than zero.")
        if self.balloon is not None and self.balloon > self.memory:
            raise ValidationError(
                f"Error: balloon ({self.balloon} MiB) cannot exceed memory ({self.memory} MiB)."
            )
        if self.release not in SUPPORTED_RELEASES:
            raise ValidationError(
                f"Error: Unsupported release '{self.release}'.\n"
                f"Supported releases: {', '.join(SUPPORTED_RELEASES)}"
            )
        if self.arch not in SUPPORTED_ARCHES:
            raise ValidationError(
                f"Error: Unsupported architecture '{self.arch}'.\n"
                f"Supported architectures: {', '.join(SUPPORTED_ARCHES)}"
            )
        if self.bios not in SUPPORTED_BIOS:
            raise ValidationError("Error: bios must be 'ovmf' or 'seabios'.")
        if not re.match(r"^[a-z_][a-z0-9_-]{0,31}$", self.guest_user):
            raise ValidationError(f"Error: Invalid guest user name '{self.guest_user}'.")
        for line in self.ssh_public_key.splitlines():
            line = line.strip()
            if line and not line.startswith(SSH_KEY_PREFIXES):
                raise ValidationError("Error: SSH key material does not look like a public key.")
