from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

import structlog

log = structlog.get_logger(__name__)


class ExternalCommandFailed(RuntimeError):
    """Raised when a Proxmox management or storage command fails."""

    stage: str | None = None

    def __init__(self, operation: str, returncode: int, details: str = "", command: str = ""):
        self.operation = operation
        self.returncode = returncode
        self.details = details
        self.command = command
        message = f"Error: {operation} failed (exit {returncode})"
        if command:
            message += f": {command}"
        if details:
            message += f"\n{details}"
        super().__init__(message)


@dataclass(frozen=True)
class StorageStatus:
    name: str
    storage_type: str
    active: bool
    available_bytes: int | None

    @property
    def capacity_known(self) -> bool:
        return self.available_bytes is not None


def _parse_kib(value: str) -> int | None:
    try:
        return int(value) * 1024
    except ValueError:
        return None


def parse_storage_status(stdout: str, pool: str) -> StorageStatus | None:
    for line in stdout.splitlines():
        fields = line.split()
        if len(fields) < 3 or fields[0] != pool:
            continue
        available = _parse_kib(fields[5]) if len(fields) > 5 else None
        return StorageStatus(
            name=fields[0],
            storage_type=fields[1],
            active=fields[2] == "active",
            available_bytes=available,
        )
    return None


class PveClient:
    """Thin synchronous wrapper over qm, pvesm and pvesh. Never retries."""

    def _run(
        self,
        operation: str,
        args: list[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        cmd = " ".join(args)
        log.debug("Running command", operation=operation, command=cmd)
        try:
            proc = subprocess.run(args, check=False, text=True, capture_output=True)
        except FileNotFoundError as exc:
            name = args[0] if args else "command"
            raise ExternalCommandFailed(
                operation, 127, f"Command not found: {name}", command=cmd
            ) from exc
        except OSError as exc:
            raise ExternalCommandFailed(
                operation, 126, f"Could not run command: {exc}", command=cmd
            ) from exc

        if check and proc.returncode != 0:
            stderr = (proc.stderr or "").strip()
            stdout = (proc.stdout or "").strip()
            raise ExternalCommandFailed(operation, proc.returncode, stderr or stdout, command=cmd)
        return proc

    def create(self, vmid: int, name: str, memory: int, cores: int, net0: str) -> None:
        self._run(
            "create",
            [
                "qm",
                "create",
                str(vmid),
                "--name",
                name,
                "--memory",
                str(memory),
                "--cores",
                str(cores),
                "--net0",
                net0,
            ],
        )

    def import_disk(self, vmid: int, image_path: Path, storage: str) -> None:
        self._run("import", ["qm", "importdisk", str(vmid), str(image_path), storage])

    def configure(self, vmid: int, options: list[tuple[str, str]]) -> None:
        args = ["qm", "set", str(vmid)]
        for key, value in options:
            args.extend([f"--{key}", value])
        self._run("configure", args)

    def resize(self, vmid: int, disk: str, delta: str) -> None:
        self._run("resize", ["qm", "resize", str(vmid), disk, delta])

    def convert_to_template(self, vmid: int) -> None:
        self._run("convertToTemplate", ["qm", "template", str(vmid)])

    def destroy(self, vmid: int) -> None:
        self._run(
            "destroy",
            [
                "qm",
                "destroy",
                str(vmid),
                "--destroy-unreferenced-disks",
                "1",
                "--purge",
                "1",
            ],
        )

    def query_status(self, vmid: int) -> bool:
        """Return True when the VM exists; a missing VM is not an error."""
        try:
            proc = self._run("queryStatus", ["qm", "status", str(vmid)], check=False)
        except ExternalCommandFailed:
            return False
        return proc.returncode == 0

    def next_free_id(self) -> int:
        proc = self._run("nextFreeId", ["pvesh", "get", "/cluster/nextid"])
        raw = (proc.stdout or "").strip().strip('"')
        try:
            return int(raw)
        except ValueError as exc:
            raise ExternalCommandFailed(
                "nextFreeId", 0, f"Unexpected next id output: {raw!r}"
            ) from exc

    def storage_status(self, pool: str) -> StorageStatus | None:
        proc = self._run("queryCapacity", ["pvesm", "status", "--storage", pool], check=False)
        if proc.returncode != 0:
            return None
        return parse_storage_status(proc.stdout or "", pool)

    def resolve_volume_path(self, pool: str, volume: str) -> str | None:
        proc = self._run("resolveVolumePath", ["pvesm", "path", f"{pool}:{volume}"], check=False)
        path = (proc.stdout or "").strip()
        if proc.returncode == 0 and path:
            return path
        return None

    def volume_visible(self, device_path: str) -> bool:
        proc = self._run("volumeVisible", ["lvs", "--noheadings", device_path], check=False)
        return proc.returncode == 0

    def bridge_exists(self, bridge: str) -> bool:
        proc = self._run("bridgeExists", ["ip", "-o", "link", "show", "dev", bridge], check=False)
        return proc.returncode == 0
