from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from pvetemplate import pve
from pvetemplate.pve import ExternalCommandFailed, PveClient, parse_storage_status

PVESM_STATUS = """Name             Type     Status           Total            Used       Available        %
local-lvm     lvmthin     active       367001600        10485760       356515840    2.86%
"""


class RecordingRun:
    def __init__(self, results: dict[tuple[str, ...], subprocess.CompletedProcess[str]] | None = None):
        self.results = results or {}
        self.calls: list[list[str]] = []

    def __call__(self, args, **_kwargs):
        self.calls.append(list(args))
        for prefix, result in self.results.items():
            if tuple(args[: len(prefix)]) == prefix:
                return result
        return subprocess.CompletedProcess(args, 0, stdout="", stderr="")


def _proc(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess([], returncode, stdout=stdout, stderr=stderr)


def test_create_builds_qm_create_command(monkeypatch: pytest.MonkeyPatch):
    run = RecordingRun()
    monkeypatch.setattr(pve.subprocess, "run", run)

    PveClient().create(9999, "ubuntu-2404-template", 2048, 1, "virtio,bridge=vmbr0,firewall=1")

    assert run.calls == [
        [
            "qm",
            "create",
            "9999",
            "--name",
            "ubuntu-2404-template",
            "--memory",
            "2048",
            "--cores",
            "1",
            "--net0",
            "virtio,bridge=vmbr0,firewall=1",
        ]
    ]


def test_failed_command_raises_with_operation_and_details(monkeypatch: pytest.MonkeyPatch):
    run = RecordingRun({("qm", "resize"): _proc(255, stderr="disk not found")})
    monkeypatch.setattr(pve.subprocess, "run", run)

    with pytest.raises(ExternalCommandFailed) as exc_info:
        PveClient().resize(9999, "scsi0", "+10G")

    assert exc_info.value.operation == "resize"
    assert exc_info.value.returncode == 255
    assert "disk not found" in str(exc_info.value)


def test_missing_executable_maps_to_exit_127(monkeypatch: pytest.MonkeyPatch):
    def raise_missing(*_args, **_kwargs):
        raise FileNotFoundError("qm")

    monkeypatch.setattr(pve.subprocess, "run", raise_missing)

    with pytest.raises(ExternalCommandFailed) as exc_info:
        PveClient().convert_to_template(9999)
    assert exc_info.value.returncode == 127
    assert "Command not found: qm" in str(exc_info.value)


def test_query_status_reports_absent_instead_of_raising(monkeypatch: pytest.MonkeyPatch):
    run = RecordingRun({("qm", "status"): _proc(2, stderr="Configuration file does not exist")})
    monkeypatch.setattr(pve.subprocess, "run", run)

    assert PveClient().query_status(9999) is False


def test_query_status_absent_when_qm_missing(monkeypatch: pytest.MonkeyPatch):
    def raise_missing(*_args, **_kwargs):
        raise FileNotFoundError("qm")

    monkeypatch.setattr(pve.subprocess, "run", raise_missing)
    assert PveClient().query_status(9999) is False


def test_query_status_present(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(pve.subprocess, "run", RecordingRun({("qm", "status"): _proc(0, "status: stopped\n")}))
    assert PveClient().query_status(100) is True


def test_next_free_id_parses_output(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(pve.subprocess, "run", RecordingRun({("pvesh",): _proc(0, '"9999"\n')}))
    assert PveClient().next_free_id() == 9999


def test_next_free_id_rejects_garbage(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(pve.subprocess, "run", RecordingRun({("pvesh",): _proc(0, "oops\n")}))
    with pytest.raises(ExternalCommandFailed, match="Unexpected next id output"):
        PveClient().next_free_id()


def test_destroy_purges_unreferenced_disks(monkeypatch: pytest.MonkeyPatch):
    run = RecordingRun()
    monkeypatch.setattr(pve.subprocess, "run", run)
    PveClient().destroy(9999)
    assert run.calls == [
        ["qm", "destroy", "9999", "--destroy-unreferenced-disks", "1", "--purge", "1"]
    ]


def test_configure_expands_options(monkeypatch: pytest.MonkeyPatch):
    run = RecordingRun()
    monkeypatch.setattr(pve.subprocess, "run", run)
    PveClient().configure(9999, [("ciuser", "ubuntu"), ("ipconfig0", "ip=dhcp")])
    assert run.calls == [["qm", "set", "9999", "--ciuser", "ubuntu", "--ipconfig0", "ip=dhcp"]]


def test_import_disk_passes_image_path(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    run = RecordingRun()
    monkeypatch.setattr(pve.subprocess, "run", run)
    image = tmp_path / "noble-server-cloudimg-amd64.img"
    PveClient().import_disk(9999, image, "local-lvm")
    assert run.calls == [["qm", "importdisk", "9999", str(image), "local-lvm"]]


def test_parse_storage_status_reads_available_kib():
    status = parse_storage_status(PVESM_STATUS, "local-lvm")
    assert status is not None
    assert status.storage_type == "lvmthin"
    assert status.active is True
    assert status.available_bytes == 356515840 * 1024


def test_parse_storage_status_unknown_capacity():
    status = parse_storage_status("Name Type Status Total Used Available %\nnfs1 nfs inactive 0 0 N/A N/A\n", "nfs1")
    assert status is not None
    assert status.active is False
    assert status.capacity_known is False


def test_parse_storage_status_missing_pool():
    assert parse_storage_status(PVESM_STATUS, "ceph") is None


def test_storage_status_none_on_command_failure(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(pve.subprocess, "run", RecordingRun({("pvesm", "status"): _proc(2, stderr="no such storage")}))
    assert PveClient().storage_status("nope") is None


def test_resolve_volume_path(monkeypatch: pytest.MonkeyPatch):
    run = RecordingRun(
        {
            ("pvesm", "path", "local-lvm:base-9999-disk-0"): _proc(2, stderr="no such volume"),
            ("pvesm", "path", "local-lvm:vm-9999-disk-0"): _proc(0, "/dev/pve/vm-9999-disk-0\n"),
        }
    )
    monkeypatch.setattr(pve.subprocess, "run", run)
    client = PveClient()

    assert client.resolve_volume_path("local-lvm", "base-9999-disk-0") is None
    assert client.resolve_volume_path("local-lvm", "vm-9999-disk-0") == "/dev/pve/vm-9999-disk-0"


def test_bridge_exists_uses_ip_link(monkeypatch: pytest.MonkeyPatch):
    run = RecordingRun({("ip", "-o", "link", "show", "dev", "vmbr9"): _proc(1, stderr="does not exist")})
    monkeypatch.setattr(pve.subprocess, "run", run)
    client = PveClient()

    assert client.bridge_exists("vmbr0") is True
    assert client.bridge_exists("vmbr9") is False
