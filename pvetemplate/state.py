from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path


class Stage(str, Enum):
    VALIDATING = "validating"
    DOWNLOADING = "downloading"
    CREATING = "creating"
    IMPORTING = "importing"
    AWAITING_DISK_READY = "awaiting-disk-ready"
    CONFIGURING = "configuring"
    RESIZING = "resizing"
    APPLYING_GUEST_DEFAULTS = "applying-guest-defaults"
    CONVERTING_TO_TEMPLATE = "converting-to-template"
    DONE = "done"
    ROLLING_BACK = "rolling-back"
    FAILED = "failed"


@dataclass
class ProvisioningState:
    """Everything one run learns about the resource it is building."""

    stage: Stage = Stage.VALIDATING
    vmid: int | None = None
    volume_name: str | None = None
    volume_path: str | None = None
    storage_type: str | None = None
    image_path: Path | None = None
    scratch_dir: Path | None = None
    owns_vmid: bool = False
    rollback_armed: bool = False
    started_at: str = field(default_factory=lambda: current_utc_timestamp())
    finished_at: str | None = None
    stage_history: list[tuple[Stage, str]] = field(default_factory=list)

    def enter(self, stage: Stage) -> None:
        self.stage = stage
        self.stage_history.append((stage, current_utc_timestamp()))

    def finish(self, stage: Stage) -> None:
        self.enter(stage)
        self.finished_at = current_utc_timestamp()


def current_utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
