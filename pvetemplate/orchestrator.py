from __future__ import annotations

import signal
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Protocol

import structlog

from pvetemplate import preflight
from pvetemplate.errors import (
    DownloadExhausted,
    ProvisioningInterrupted,
    UserFacingError,
    ValidationError,
)
from pvetemplate.image import ImageError
from pvetemplate.pve import ExternalCommandFailed, StorageStatus
from pvetemplate.request import ProvisioningRequest
from pvetemplate.retry import RetryExhausted, RetryPolicy
from pvetemplate.state import ProvisioningState, Stage
from pvetemplate.volumes import VolumeWaiter

log = structlog.get_logger(__name__)

PRIMARY_DISK = "scsi0"


class ResourceClient(Protocol):
    def create(self, vmid: int, name: str, memory: int, cores: int, net0: str) -> None: ...

    def import_disk(self, vmid: int, image_path: Path, storage: str) -> None: ...

    def configure(self, vmid: int, options: list[tuple[str, str]]) -> None: ...

    def resize(self, vmid: int, disk: str, delta: str) -> None: ...

    def convert_to_template(self, vmid: int) -> None: ...

    def destroy(self, vmid: int) -> None: ...

    def query_status(self, vmid: int) -> bool: ...

    def next_free_id(self) -> int: ...

    def storage_status(self, pool: str) -> StorageStatus | None: ...

    def resolve_volume_path(self, pool: str, volume: str) -> str | None: ...

    def volume_visible(self, device_path: str) -> bool: ...

    def bridge_exists(self, bridge: str) -> bool: ...


class Mirror(Protocol):
    def reachable(self, release: str) -> bool: ...

    def image_url(self, release: str, arch: str = "amd64") -> str: ...

    def download_verified(self, release: str, arch: str, dest_dir: Path) -> Path: ...


@dataclass(frozen=True)
class PipelineStep:
    name: str
    stage: Stage
    retryable: bool = False
    awaits_disk: bool = False
    undo_on_failure: bool = False


PIPELINE = (
    PipelineStep("validate", Stage.VALIDATING),
    PipelineStep("download", Stage.DOWNLOADING, retryable=True),
    PipelineStep("create", Stage.CREATING, undo_on_failure=True),
    PipelineStep("import", Stage.IMPORTING, awaits_disk=True, undo_on_failure=True),
    PipelineStep("configure", Stage.CONFIGURING, undo_on_failure=True),
    PipelineStep("resize", Stage.RESIZING, awaits_disk=True, undo_on_failure=True),
    PipelineStep("guest_defaults", Stage.APPLYING_GUEST_DEFAULTS, undo_on_failure=True),
    # Templates may be cloned as soon as they exist, so this step is never undone.
    PipelineStep("convert", Stage.CONVERTING_TO_TEMPLATE),
)


@dataclass(frozen=True)
class ProvisioningResult:
    vmid: int | None
    name: str
    volume: str | None
    dry_run: bool
    state: ProvisioningState


_HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@contextmanager
def interrupt_on_signals() -> Iterator[Callable[[], None]]:
    """Turn SIGINT/SIGTERM into ProvisioningInterrupted for the enclosed block.

    Yields a callable that switches both signals to ignored for the rest of
    the block; the previous handlers come back on exit either way.
    """

    def _handle_signal(signum: int, _frame: object) -> None:
        name = signal.Signals(signum).name
        raise ProvisioningInterrupted(f"Error: Received {name}; aborting provisioning.")

    def _ignore() -> None:
        for sig in _HANDLED_SIGNALS:
            signal.signal(sig, signal.SIG_IGN)

    previous = {sig: signal.signal(sig, _handle_signal) for sig in _HANDLED_SIGNALS}
    try:
        yield _ignore
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def guest_config_options(request: ProvisioningRequest, volume_name: str) -> list[tuple[str, str]]:
    storage = request.storage
    options = [
        ("scsihw", "virtio-scsi-single"),
        (PRIMARY_DISK, f"{storage}:{volume_name},discard=on,iothread=1"),
        ("ide2", f"{storage}:cloudinit"),
        ("boot", f"order={PRIMARY_DISK}"),
        ("serial0", "socket"),
        ("vga", "serial0"),
        ("ostype", "l26"),
        ("agent", "enabled=1,fstrim_cloned_disks=1"),
        ("balloon", str(request.balloon_mib)),
        ("machine", "q35"),
        ("bios", request.bios),
    ]
    if request.bios == "ovmf":
        options.append(("efidisk0", f"{storage}:0,efitype=4m,pre-enrolled-keys=0"))
    return options


def net0_spec(request: ProvisioningRequest) -> str:
    return f"virtio,bridge={request.bridge},firewall=1"


class ProvisioningOrchestrator:
    """Drives one request through PIPELINE and rolls back on failure.

    Every failure after ``create`` has been issued destroys the half-built VM
    (best effort) and re-raises the original error, tagged with the stage it
    came from. Conversion to template is the last step and is never undone.
    """

    def __init__(
        self,
        request: ProvisioningRequest,
        *,
        client: ResourceClient,
        mirror: Mirror,
        require_ssh_key: bool = False,
        min_free_gib: int = 4,
        retry_policy: RetryPolicy | None = None,
        waiter: VolumeWaiter | None = None,
        scratch_root: Path | None = None,
    ):
        self.request = request
        self.client = client
        self.mirror = mirror
        self.require_ssh_key = require_ssh_key
        self.min_free_gib = min_free_gib
        self.retry_policy = retry_policy or RetryPolicy(retry_on=(ImageError,))
        self.waiter = waiter or VolumeWaiter(client)
        self.scratch_root = scratch_root
        self._handlers: dict[str, Callable[[ProvisioningState], None]] = {
            "validate": self._validate,
            "download": self._download,
            "create": self._create,
            "import": self._import,
            "configure": self._configure,
            "resize": self._resize,
            "guest_defaults": self._apply_guest_defaults,
            "convert": self._convert,
        }

    def run(self) -> ProvisioningResult:
        state = ProvisioningState()
        with interrupt_on_signals() as ignore_signals:
            if self.scratch_root is not None:
                self.scratch_root.mkdir(parents=True, exist_ok=True)
            with tempfile.TemporaryDirectory(prefix="pvetemplate-", dir=self.scratch_root) as scratch:
                state.scratch_dir = Path(scratch)
                try:
                    for step in PIPELINE:
                        if not self._applies(step):
                            log.info("Skipping step", step=step.name)
                            continue
                        if not step.undo_on_failure and state.owns_vmid:
                            # Nothing from here on is undone, so interrupts are ignored.
                            ignore_signals()
                        self._run_step(step, state)
                        if step.stage is Stage.VALIDATING and self.request.dry_run:
                            self._log_plan()
                            break
                except BaseException as exc:
                    ignore_signals()
                    self._fail(state, exc)
                    raise
                state.finish(Stage.DONE)
        if not self.request.dry_run:
            log.info("Template created", vmid=state.vmid, name=self.request.name)
        return ProvisioningResult(
            vmid=state.vmid,
            name=self.request.name,
            volume=state.volume_name,
            dry_run=self.request.dry_run,
            state=state,
        )

    def _applies(self, step: PipelineStep) -> bool:
        if step.name == "resize":
            return self.request.disk_extra_gib > 0
        return True

    def _run_step(self, step: PipelineStep, state: ProvisioningState) -> None:
        state.enter(step.stage)
        state.rollback_armed = step.undo_on_failure
        log.info("Entering stage", stage=step.stage.value, vmid=state.vmid)
        handler = self._handlers[step.name]
        if step.retryable:
            try:
                self.retry_policy.run(lambda: handler(state), label=step.name)
            except RetryExhausted as exc:
                raise DownloadExhausted(
                    f"Error: {step.name} failed after {exc.attempts} attempts.\n{exc.last_error}"
                ) from exc
        else:
            handler(state)
        if step.awaits_disk:
            self._await_disk_ready(state)

    def _fail(self, state: ProvisioningState, exc: BaseException) -> None:
        failed_stage = state.stage
        if isinstance(exc, (UserFacingError, ExternalCommandFailed)) and exc.stage is None:
            exc.stage = failed_stage.value
        log.error(
            "Stage failed",
            stage=failed_stage.value,
            vmid=state.vmid,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        if state.rollback_armed:
            self.rollback(state)
        state.finish(Stage.FAILED)

    def rollback(self, state: ProvisioningState) -> None:
        """Destroy the VM this run created, if it still exists.

        One status query and at most one destroy; any failure here is logged
        and never raised.
        """
        state.enter(Stage.ROLLING_BACK)
        if state.vmid is None or not state.owns_vmid:
            log.info("Nothing to roll back")
            return
        vmid = state.vmid
        try:
            present = self.client.query_status(vmid)
        except Exception as exc:
            log.warning("Rollback status query failed; treating as clean", vmid=vmid, error=str(exc))
            return
        if not present:
            log.info("Rollback found no VM; already clean", vmid=vmid)
            return
        log.warning("Rolling back partially created VM", vmid=vmid)
        try:
            self.client.destroy(vmid)
        except Exception as exc:
            log.error(
                "Rollback destroy failed; manual cleanup required",
                vmid=vmid,
                error=str(exc),
            )
            return
        log.info("Rollback complete", vmid=vmid)

    def _log_plan(self) -> None:
        request = self.request
        log.info("Dry run: validation passed, no changes made")
        log.info("Would download image", url=self.mirror.image_url(request.release, request.arch))
        log.info(
            "Would create VM",
            vmid="next free" if request.auto_vmid else request.vmid,
            name=request.name,
            memory=request.memory,
            cores=request.cores,
            net0=net0_spec(request),
        )
        log.info("Would import disk", storage=request.storage)
        if request.disk_extra_gib > 0:
            log.info("Would resize disk", disk=PRIMARY_DISK, delta=f"+{request.disk_extra_gib}G")
        log.info("Would convert VM to template")

    def _validate(self, state: ProvisioningState) -> None:
        request = self.request
        preflight.validate_request(request, require_ssh_key=self.require_ssh_key)
        storage = preflight.check_host(
            request,
            client=self.client,
            mirror=self.mirror,
            min_free_gib=self.min_free_gib,
        )
        state.storage_type = storage.storage_type
        log.info(
            "Using configuration",
            vmid="auto" if request.auto_vmid else request.vmid,
            name=request.name,
            storage=f"{storage.name} ({storage.storage_type})",
            bridge=request.bridge,
            memory=request.memory,
            cores=request.cores,
            disk_extra_gib=request.disk_extra_gib,
            release=request.release,
            image=self.mirror.image_url(request.release, request.arch),
        )

    def _download(self, state: ProvisioningState) -> None:
        assert state.scratch_dir is not None
        state.image_path = self.mirror.download_verified(
            self.request.release, self.request.arch, state.scratch_dir
        )

    def _create(self, state: ProvisioningState) -> None:
        request = self.request
        vmid = self.client.next_free_id() if request.auto_vmid else request.vmid
        state.vmid = vmid
        if self.client.query_status(vmid):
            raise ValidationError(
                f"Error: VM ID {vmid} was taken by another actor before it could be created."
            )
        state.owns_vmid = True
        log.info("Creating VM", vmid=vmid, name=request.name)
        self.client.create(vmid, request.name, request.memory, request.cores, net0_spec(request))

    def _import(self, state: ProvisioningState) -> None:
        assert state.vmid is not None and state.image_path is not None
        log.info("Importing disk image", vmid=state.vmid, storage=self.request.storage)
        self.client.import_disk(state.vmid, state.image_path, self.request.storage)

    def _await_disk_ready(self, state: ProvisioningState) -> None:
        assert state.vmid is not None
        state.enter(Stage.AWAITING_DISK_READY)
        volume = self.waiter.wait_ready(
            self.request.storage,
            state.vmid,
            known_name=state.volume_name,
            storage_type=state.storage_type,
        )
        state.volume_name = volume.name
        state.volume_path = volume.path

    def _configure(self, state: ProvisioningState) -> None:
        assert state.vmid is not None and state.volume_name is not None
        log.info("Configuring VM", vmid=state.vmid, volume=state.volume_name)
        self.client.configure(state.vmid, guest_config_options(self.request, state.volume_name))

    def _resize(self, state: ProvisioningState) -> None:
        assert state.vmid is not None
        delta = f"+{self.request.disk_extra_gib}G"
        log.info("Resizing disk", vmid=state.vmid, disk=PRIMARY_DISK, delta=delta)
        self.client.resize(state.vmid, PRIMARY_DISK, delta)

    def _apply_guest_defaults(self, state: ProvisioningState) -> None:
        assert state.vmid is not None and state.scratch_dir is not None
        preflight.check_ssh_policy(self.request, require_ssh_key=self.require_ssh_key)
        options = [
            ("ciuser", self.request.guest_user),
            ("ipconfig0", "ip=dhcp"),
        ]
        key = self.request.ssh_public_key.strip()
        if key:
            key_file = state.scratch_dir / "authorized_keys"
            key_file.write_text(key + "\n", encoding="utf-8")
            options.append(("sshkeys", str(key_file)))
        log.info("Applying cloud-init defaults", vmid=state.vmid, user=self.request.guest_user)
        self.client.configure(state.vmid, options)

    def _convert(self, state: ProvisioningState) -> None:
        assert state.vmid is not None
        log.info("Converting VM to template", vmid=state.vmid)
        self.client.convert_to_template(state.vmid)
