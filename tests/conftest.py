"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import pytest

PVESM_STATUS = """\
Name             Type     Status           Total            Used       Available        %
ceph-vm           rbd     active      1048576000       104857600       943718400   10.00%
local             dir     active        98497780        11267012        82181220   11.44%
local-lvm     lvmthin     active       366276608        52428800       313847808   14.31%
local-zfs     zfspool     active       943718400       104857600       838860800   11.11%
nfs-share         nfs     active      2097152000       209715200      1887436800   10.00%
"""

STORAGE_CFG = """\
dir: local
\tpath /var/lib/vz
\tcontent iso,vztmpl,backup

zfspool: local-zfs
\tpool rpool/data
\tsparse 1
\tcontent images,rootdir

rbd: ceph-vm
\tpool vm-pool
\tcontent images,rootdir
\tkrbd 0

lvmthin: local-lvm
\tthinpool data
\tvgname pve
\tcontent rootdir,images

nfs: nfs-share
\tpath /mnt/pve/nfs-share
\tserver 10.0.0.5
\texport /export/pve
\tcontent images
"""


@dataclass
class PveLayout:
    """Temporary stand-in for the Proxmox filesystem layout."""

    root: Path
    lxc_dir: Path
    qemu_dir: Path
    state_dir: Path
    storage_cfg: Path
    backup_root: Path
    logs_dir: Path

    def write_config(self, kind: str, unit_id: int, text: str) -> Path:
        """Write a guest config of *kind* (``lxc`` or ``qemu``) and return its path."""
        directory = self.lxc_dir if kind == "lxc" else self.qemu_dir
        path = directory / f"{unit_id}.conf"
        path.write_text(text, encoding="utf-8")
        return path

    def backups(self) -> list[Path]:
        """Return the backup directories created so far."""
        if not self.backup_root.exists():
            return []
        return sorted(path for path in self.backup_root.iterdir() if path.is_dir())


@pytest.fixture
def pve_layout(tmp_path: Path) -> PveLayout:
    """Return an empty node layout with a populated ``storage.cfg``."""
    root = tmp_path / "pve"
    lxc_dir = root / "lxc"
    qemu_dir = root / "qemu-server"
    lxc_dir.mkdir(parents=True)
    qemu_dir.mkdir(parents=True)
    storage_cfg = root / "storage.cfg"
    storage_cfg.write_text(STORAGE_CFG, encoding="utf-8")
    return PveLayout(
        root=root,
        lxc_dir=lxc_dir,
        qemu_dir=qemu_dir,
        state_dir=tmp_path / "lxc-state",
        storage_cfg=storage_cfg,
        backup_root=tmp_path / "backups",
        logs_dir=tmp_path / "logs",
    )


@pytest.fixture
def pvesm_status() -> str:
    """Return a ``pvesm status --verbose`` listing covering every backend."""
    return PVESM_STATUS


@pytest.fixture
def as_root(monkeypatch: pytest.MonkeyPatch) -> None:
    """Pretend the tests run with an effective uid of 0."""
    monkeypatch.setattr("pverenum.renumber.os.geteuid", lambda: 0)
