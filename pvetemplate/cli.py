from __future__ import annotations

import argparse

from pvetemplate.request import VM_NAME_RE


def non_negative_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid int value: '{value}'") from exc
    if parsed < 0:
        raise argparse.ArgumentTypeError("value must be >= 0")
    return parsed


def positive_int(value: str) -> int:
    parsed = non_negative_int(value)
    if parsed < 1:
        raise argparse.ArgumentTypeError("value must be >= 1")
    return parsed


def vmid_arg(value: str) -> int:
    parsed = non_negative_int(value)
    if parsed < 100:
        raise argparse.ArgumentTypeError("VM ID must be >= 100")
    return parsed


def vm_name_arg(value: str) -> str:
    if not VM_NAME_RE.match(value):
        raise argparse.ArgumentTypeError(
            "use letters, numbers, hyphens, and periods only (max 63 characters)"
        )
    return value


def add_vm_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-i", "--vmid", type=vmid_arg, help="VM ID (default: next free ID)")
    parser.add_argument("-n", "--name", type=vm_name_arg, help="VM name (e.g. ubuntu-2404-template)")
    parser.add_argument("-s", "--storage", help="Target storage pool (e.g. local-lvm)")
    parser.add_argument("-b", "--bridge", help="Network bridge (e.g. vmbr0)")
    parser.add_argument("-m", "--memory", type=positive_int, help="Memory in MiB")
    parser.add_argument("-c", "--cores", type=positive_int, help="CPU cores")
    parser.add_argument(
        "--balloon",
        type=non_negative_int,
        help="Minimum memory in MiB for ballooning (default: min(1024, memory))",
    )
    parser.add_argument(
        "-d",
        "--disk-extra",
        dest="disk_extra_gib",
        type=non_negative_int,
        help="GiB to add to the imported disk (0 keeps the image size)",
    )


def add_image_args(parser: argparse.ArgumentParser, releases: tuple[str, ...]) -> None:
    parser.add_argument("-r", "--release", choices=releases, help="Ubuntu release codename")
    parser.add_argument("--arch", choices=("amd64", "arm64"), help="Image architecture")


def add_guest_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-k", "--ssh-key-file", help="Public key to install for the guest user")
    parser.add_argument("--guest-user", help="Default cloud-init user (default: ubuntu)")
    parser.add_argument(
        "--require-ssh-key",
        action="store_true",
        default=None,
        help="Fail unless SSH key material is supplied",
    )
    parser.add_argument("--bios", choices=("ovmf", "seabios"), help="Firmware (default: ovmf)")
