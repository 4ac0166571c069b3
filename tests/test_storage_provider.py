"""Tests for the command runner and the storage registry."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from pverenum.models import BackendKind
from pverenum.providers.commands import CommandError, CommandRunner, format_command_detail
from pverenum.providers.storage import (
    StorageClassificationError,
    StorageRegistry,
    parse_storage_cfg,
)

if TYPE_CHECKING:
    from conftest import PveLayout


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(
        self,
        args: Sequence[str] = (),
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Initialise the dummy result."""
        self.args = list(args)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def test_runner_raises_with_stderr_on_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    """Non-zero exits surface the command and its stderr."""

    def fake_run(cmd: Sequence[str], **kwargs: object) -> DummyResult:
        return DummyResult(cmd, returncode=2, stderr="pool does not exist\n")

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(CommandError) as excinfo:
        CommandRunner().run(["zfs", "rename", "a", "b"])

    assert str(excinfo.value) == "zfs rename a b failed (exit 2): pool does not exist"
    assert excinfo.value.returncode == 2


def test_runner_reports_missing_binary(monkeypatch: pytest.MonkeyPatch) -> None:
    """A missing executable becomes a CommandError."""

    def fake_run(cmd: Sequence[str], **kwargs: object) -> DummyResult:
        raise FileNotFoundError(2, "No such file or directory", cmd[0])

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(CommandError, match="rbd not found"):
        CommandRunner().run(["rbd", "ls"])


def test_dry_run_skips_only_mutating_commands(monkeypatch: pytest.MonkeyPatch) -> None:
    """Read-only commands execute during a dry run; mutating ones do not."""
    calls: list[list[str]] = []

    def fake_run(cmd: Sequence[str], **kwargs: object) -> DummyResult:
        calls.append(list(cmd))
        return DummyResult(cmd, stdout="ok\n")

    monkeypatch.setattr(subprocess, "run", fake_run)
    runner = CommandRunner(dry_run=True)

    runner.run(["pvesm", "status", "--verbose"], mutating=False)
    skipped = runner.run(["zfs", "rename", "a", "b"])

    assert calls == [["pvesm", "status", "--verbose"]]
    assert skipped.returncode == 0


def test_format_command_detail_includes_output() -> None:
    """Step details carry the command line, exit status and output."""
    result = subprocess.CompletedProcess(["qm", "stop", "300"], 0, stdout="", stderr="warn\n")

    assert format_command_detail(result) == "command=qm stop 300 rc=0 stderr=warn"


def test_classify_maps_pvesm_types(
    monkeypatch: pytest.MonkeyPatch,
    pvesm_status: str,
) -> None:
    """Pool types from ``pvesm status`` map onto backend kinds and are cached."""
    calls: list[list[str]] = []

    def fake_run(cmd: Sequence[str], **kwargs: object) -> DummyResult:
        calls.append(list(cmd))
        return DummyResult(cmd, stdout=pvesm_status)

    monkeypatch.setattr(subprocess, "run", fake_run)
    registry = StorageRegistry(runner=CommandRunner())

    assert registry.classify("ceph-vm") is BackendKind.RBD
    assert registry.classify("local-zfs") is BackendKind.ZFS
    assert registry.classify("local-lvm") is BackendKind.LVMTHIN
    assert calls == [["pvesm", "status", "--verbose"]]
    assert "Name" not in registry.pool_types()


def test_classify_accepts_plain_zfs_type(monkeypatch: pytest.MonkeyPatch) -> None:
    """Both ``zfspool`` and ``zfs`` are treated as ZFS."""

    def fake_run(cmd: Sequence[str], **kwargs: object) -> DummyResult:
        return DummyResult(cmd, stdout="tank zfs active 1 1 1 1%\n")

    monkeypatch.setattr(subprocess, "run", fake_run)

    assert StorageRegistry(runner=CommandRunner()).classify("tank") is BackendKind.ZFS


def test_classify_rejects_unknown_and_unsupported_pools(
    monkeypatch: pytest.MonkeyPatch,
    pvesm_status: str,
) -> None:
    """Missing pools and unsupported types raise distinct messages."""

    def fake_run(cmd: Sequence[str], **kwargs: object) -> DummyResult:
        return DummyResult(cmd, stdout=pvesm_status)

    monkeypatch.setattr(subprocess, "run", fake_run)
    registry = StorageRegistry(runner=CommandRunner())

    with pytest.raises(StorageClassificationError, match="Could not detect storage type"):
        registry.classify("ghost")
    with pytest.raises(
        StorageClassificationError,
        match="Unsupported storage type 'nfs' for nfs-share. Please rename manually.",
    ):
        registry.classify("nfs-share")


def test_classify_wraps_registry_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    """A failing ``pvesm`` is reported as a classification error."""

    def fake_run(cmd: Sequence[str], **kwargs: object) -> DummyResult:
        return DummyResult(cmd, returncode=1, stderr="ipcc_send_rec failed")

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(StorageClassificationError, match="Unable to list storage pools"):
        StorageRegistry(runner=CommandRunner()).classify("local-zfs")


def test_parse_storage_cfg_reads_sections(pve_layout: PveLayout) -> None:
    """Section headers carry type and name; indented lines are properties."""
    definitions = parse_storage_cfg(pve_layout.storage_cfg.read_text(encoding="utf-8"))

    assert definitions["local-zfs"].type == "zfspool"
    assert definitions["local-zfs"].get("pool") == "rpool/data"
    assert definitions["local-lvm"].get("vgname") == "pve"
    assert definitions["ceph-vm"].get("pool") == "vm-pool"
    assert definitions["local"].get("vgname") is None


def test_definition_tolerates_missing_storage_cfg(tmp_path: Path) -> None:
    """An unreadable ``storage.cfg`` yields no definitions instead of failing."""
    registry = StorageRegistry(runner=CommandRunner(), storage_cfg=tmp_path / "absent.cfg")

    assert registry.definition("local-zfs") is None
