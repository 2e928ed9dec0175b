from __future__ import annotations

import argparse
from dataclasses import replace
from pathlib import Path
from typing import Sequence

from pvetemplate.cli import add_guest_args, add_image_args, add_vm_args
from pvetemplate.config import Settings, load_settings, read_ssh_key
from pvetemplate.errors import main_guard
from pvetemplate.image import SUPPORTED_RELEASES, ImageError, ImageMirror
from pvetemplate.locks import SingleInstanceGuard
from pvetemplate.logs import COLOR_MODES, configure_logging
from pvetemplate.orchestrator import ProvisioningOrchestrator
from pvetemplate.paths import (
    default_config_file,
    default_lock_file,
    default_log_file,
    default_state_dir,
)
from pvetemplate.pve import PveClient
from pvetemplate.request import ProvisioningRequest
from pvetemplate.retry import RetryPolicy
from pvetemplate.volumes import VolumeWaiter

CLI_SETTING_KEYS = (
    "vmid",
    "name",
    "storage",
    "bridge",
    "memory",
    "cores",
    "disk_extra_gib",
    "release",
    "arch",
    "ssh_key_file",
    "guest_user",
    "require_ssh_key",
    "bios",
    "balloon",
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pvetemplate",
        description="Create a cloud-init enabled Ubuntu VM template on Proxmox VE",
    )
    add_vm_args(parser)
    add_image_args(parser, SUPPORTED_RELEASES)
    add_guest_args(parser)
    parser.add_argument("--config", type=Path, help="Config file (key: value lines)")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run all checks and print the plan without changing anything",
    )
    parser.add_argument("--color", choices=COLOR_MODES, default="auto")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def resolve_settings(args: argparse.Namespace) -> Settings:
    config_file = args.config or default_config_file()
    settings = load_settings(config_file)
    updates = {key: getattr(args, key) for key in CLI_SETTING_KEYS if getattr(args, key, None) is not None}
    return replace(settings, **updates)


def build_request(settings: Settings, *, dry_run: bool) -> ProvisioningRequest:
    return ProvisioningRequest(
        vmid=settings.vmid,
        name=settings.name,
        storage=settings.storage,
        bridge=settings.bridge,
        memory=settings.memory,
        cores=settings.cores,
        disk_extra_gib=settings.disk_extra_gib,
        release=settings.release,
        arch=settings.arch,
        ssh_public_key=read_ssh_key(settings.ssh_key_file),
        guest_user=settings.guest_user,
        bios=settings.bios,
        balloon=settings.balloon,
        dry_run=dry_run,
    )


def build_orchestrator(
    settings: Settings,
    request: ProvisioningRequest,
    client: PveClient,
    *,
    scratch_root: Path | None = None,
) -> ProvisioningOrchestrator:
    return ProvisioningOrchestrator(
        request,
        client=client,
        mirror=ImageMirror(settings.mirror_url, timeout_seconds=settings.http_timeout_seconds),
        require_ssh_key=settings.require_ssh_key,
        min_free_gib=settings.min_free_gib,
        retry_policy=RetryPolicy(
            max_attempts=settings.download_attempts,
            delay_seconds=settings.download_retry_delay_seconds,
            retry_on=(ImageError,),
        ),
        waiter=VolumeWaiter(
            client,
            poll_attempts=settings.volume_poll_attempts,
            poll_interval_seconds=settings.volume_poll_interval_seconds,
        ),
        scratch_root=scratch_root,
    )


def provision(args: argparse.Namespace, client: PveClient) -> None:
    settings = resolve_settings(args)
    state_dir = default_state_dir()
    configure_logging(
        color=args.color,
        verbose=args.verbose,
        log_file=default_log_file(state_dir),
    )
    with SingleInstanceGuard(default_lock_file(state_dir)):
        request = build_request(settings, dry_run=args.dry_run)
        result = build_orchestrator(settings, request, client).run()

    if result.dry_run:
        print("Dry run complete: all checks passed, nothing was changed.")
        return
    print(f"Template creation completed successfully: {result.name} (VM ID {result.vmid})")


def main() -> None:
    args = parse_args()
    main_guard(lambda client: provision(args, client))


if __name__ == "__main__":
    main()
