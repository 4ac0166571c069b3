"""Tests for renumber backup snapshots."""
from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

import pytest

from pverenum.backups import (
    MANIFEST_FILE,
    MAPPING_FILE,
    ROOTFS_PATH_FILE,
    BackupError,
    BackupSnapshot,
    backup_directory_name,
    compute_checksum,
)
from pverenum.models import RenameRecord, UnitKind


def _snapshot(tmp_path: Path, source_config: Path) -> BackupSnapshot:
    return BackupSnapshot.create(
        tmp_path / "backups",
        old_id=218,
        new_id=9218,
        kind=UnitKind.LXC,
        source_config=source_config,
    )


@pytest.fixture
def source_config(tmp_path: Path) -> Path:
    """Return a guest config with bytes that must survive unchanged."""
    path = tmp_path / "lxc" / "218.conf"
    path.parent.mkdir()
    path.write_bytes(b"# comment \xc3\xa9\nrootfs: local-zfs:vm-218-disk-0,size=8G\n\n")
    return path


def test_backup_directory_name_format() -> None:
    """The directory name encodes both ids and a second-resolution timestamp."""
    when = datetime(2024, 3, 9, 14, 5, 7)

    assert backup_directory_name(218, 9218, when) == "renumber_backup_218_to_9218_20240309_140507"


def test_create_copies_config_byte_for_byte(tmp_path: Path, source_config: Path) -> None:
    """The snapshot holds an identical copy plus a manifest with its checksum."""
    snapshot = BackupSnapshot.create(
        tmp_path / "backups",
        old_id=218,
        new_id=9218,
        kind=UnitKind.LXC,
        source_config=source_config,
    )

    copy = snapshot.config_copy()
    assert copy == snapshot.path / "218.conf"
    assert copy.read_bytes() == source_config.read_bytes()
    assert snapshot.path.name.startswith("renumber_backup_218_to_9218_")

    manifest = json.loads((snapshot.path / MANIFEST_FILE).read_text(encoding="utf-8"))
    assert manifest["kind"] == "lxc"
    assert manifest["source_config"] == str(source_config)
    assert manifest["checksum"] == {
        "algorithm": "sha256",
        "value": compute_checksum(source_config),
    }
    assert manifest["old_id"] == 218 and manifest["new_id"] == 9218


def test_create_never_reuses_a_directory(tmp_path: Path, source_config: Path) -> None:
    """Two runs in the same second get distinct directories."""
    root = tmp_path / "backups"
    first = BackupSnapshot.create(
        root, old_id=218, new_id=9218, kind=UnitKind.LXC, source_config=source_config
    )
    second = BackupSnapshot.create(
        root, old_id=218, new_id=9218, kind=UnitKind.LXC, source_config=source_config
    )

    assert first.path != second.path
    assert first.path.exists() and second.path.exists()


def test_create_reports_missing_source(tmp_path: Path) -> None:
    """A missing source config raises a BackupError."""
    with pytest.raises(BackupError, match="Failed to create backup"):
        BackupSnapshot.create(
            tmp_path / "backups",
            old_id=1,
            new_id=2,
            kind=UnitKind.QEMU,
            source_config=tmp_path / "missing.conf",
        )


def test_mapping_file_is_append_only(tmp_path: Path, source_config: Path) -> None:
    """Each record appends one ``pool:old → pool:new`` line."""
    snapshot = _snapshot(tmp_path, source_config)
    mapping = snapshot.path / MAPPING_FILE
    assert not mapping.exists()

    snapshot.append_mapping(RenameRecord("local-zfs", "vm-218-disk-0", "vm-9218-disk-0"))
    snapshot.append_mapping(RenameRecord("ceph-vm", "vm-218-disk-1", "vm-9218-disk-1"))

    assert mapping.read_text(encoding="utf-8").splitlines() == [
        "local-zfs:vm-218-disk-0 → local-zfs:vm-9218-disk-0",
        "ceph-vm:vm-218-disk-1 → ceph-vm:vm-9218-disk-1",
    ]


def test_capture_local_state_records_original_path(tmp_path: Path, source_config: Path) -> None:
    """Local state is copied and its original location recorded."""
    state = tmp_path / "lxc-state" / "218"
    (state / "rootfs").mkdir(parents=True)
    (state / "rootfs" / "marker").write_text("x", encoding="utf-8")
    (state / "config-link").symlink_to("/nonexistent/target")
    snapshot = _snapshot(tmp_path, source_config)

    copy = snapshot.capture_local_state(state)

    assert (copy / "rootfs" / "marker").read_text(encoding="utf-8") == "x"
    assert (copy / "config-link").is_symlink()
    assert (snapshot.path / ROOTFS_PATH_FILE).read_text(encoding="utf-8") == f"{state}\n"
