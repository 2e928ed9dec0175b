from __future__ import annotations

import os
import shutil
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

import structlog

from pvetemplate.errors import VolumeTimeout
from pvetemplate.retry import RetryExhausted, RetryPolicy

log = structlog.get_logger(__name__)

DEFAULT_POLL_ATTEMPTS = 30
DEFAULT_POLL_INTERVAL_SECONDS = 1
BLOCK_SETTLE_SECONDS = 1
FLUSH_SETTLE_SECONDS = 2

# Storage types whose volumes are logical volumes that lvs can report.
LVM_STORAGE_TYPES = frozenset({"lvm", "lvmthin"})


class VolumeBackend(Protocol):
    def resolve_volume_path(self, pool: str, volume: str) -> str | None: ...

    def volume_visible(self, device_path: str) -> bool: ...


class VolumeNotReady(Exception):
    """One poll found the volume missing or not yet visible."""


def candidate_volume_names(vmid: int, disk_index: int = 0) -> tuple[str, ...]:
    """Volume names to probe, in resolution order.

    Template-derived volumes use the ``base-`` prefix, live ones ``vm-``.
    """
    return (f"base-{vmid}-disk-{disk_index}", f"vm-{vmid}-disk-{disk_index}")


@dataclass(frozen=True)
class ResolvedVolume:
    name: str
    path: str

    @property
    def block_backed(self) -> bool:
        return self.path.startswith("/dev/")


def _lvm_available() -> bool:
    return shutil.which("lvs") is not None


@dataclass
class VolumeWaiter:
    backend: VolumeBackend
    poll_attempts: int = DEFAULT_POLL_ATTEMPTS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    flush: Callable[[], None] = field(default=os.sync, repr=False)
    lvm_available: Callable[[], bool] = field(default=_lvm_available, repr=False)

    @property
    def poll_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.poll_attempts,
            delay_seconds=self.poll_interval_seconds,
            retry_on=(VolumeNotReady,),
            sleep=self.sleep,
            log_level="debug",
        )

    def resolve(self, pool: str, vmid: int, names: tuple[str, ...] | None = None) -> ResolvedVolume | None:
        for name in names or candidate_volume_names(vmid):
            path = self.backend.resolve_volume_path(pool, name)
            if path:
                return ResolvedVolume(name=name, path=path)
        return None

    def polls_lvm(self, volume: ResolvedVolume, storage_type: str | None) -> bool:
        return storage_type in LVM_STORAGE_TYPES and volume.block_backed and self.lvm_available()

    def wait_ready(
        self,
        pool: str,
        vmid: int,
        *,
        known_name: str | None = None,
        storage_type: str | None = None,
    ) -> ResolvedVolume:
        """Block until the VM's primary volume is addressable and return it.

        ``known_name`` pins resolution to a name found earlier in the run.
        Only LVM-backed pools are polled with ``lvs``; zvols, RBD devices and
        file-backed images get a flush and a settle pause instead.
        """
        names = (known_name,) if known_name else None

        def _resolve() -> ResolvedVolume:
            volume = self.resolve(pool, vmid, names)
            if volume is None:
                raise VolumeNotReady(f"no volume for VM {vmid} on '{pool}' yet")
            return volume

        try:
            volume = self.poll_policy.run(_resolve, label="resolve volume")
        except RetryExhausted as exc:
            tried = ", ".join(names or candidate_volume_names(vmid))
            raise VolumeTimeout(
                f"Error: No volume for VM {vmid} could be resolved on storage '{pool}'.\n"
                f"  tried: {tried}\n"
                f"  attempts: {self.poll_attempts}"
            ) from exc

        log.info(
            "Resolved volume",
            vmid=vmid,
            volume=volume.name,
            path=volume.path,
            storage_type=storage_type,
        )
        if self.polls_lvm(volume, storage_type):
            self._wait_block_visible(volume)
        else:
            self.flush()
            self.sleep(FLUSH_SETTLE_SECONDS)
        return volume

    def _wait_block_visible(self, volume: ResolvedVolume) -> None:
        def _check() -> None:
            if not self.backend.volume_visible(volume.path):
                raise VolumeNotReady(f"{volume.path} not visible to lvs yet")

        try:
            self.poll_policy.run(_check, label="volume visibility")
        except RetryExhausted as exc:
            raise VolumeTimeout(
                f"Error: Volume '{volume.path}' did not become visible after "
                f"{self.poll_attempts} checks."
            ) from exc
        log.debug("Block volume visible", path=volume.path)
        self.sleep(BLOCK_SETTLE_SECONDS)
