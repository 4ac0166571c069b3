"""Backend-specific volume rename primitives."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from typing import Protocol

from ..models import BackendKind
from .commands import CommandError, CommandRunner
from .storage import StorageError, StorageRegistry


class VolumeRenameError(StorageError):
    """Raised when a backend rename primitive fails."""


class VolumeRenamer(Protocol):
    """Rename a single volume within one storage pool."""

    kind: BackendKind

    def rename(self, old: str, new: str) -> subprocess.CompletedProcess[str]:
        """Rename *old* to *new*, raising :class:`VolumeRenameError` on failure."""
        ...


def _run_rename(runner: CommandRunner, args: list[str]) -> subprocess.CompletedProcess[str]:
    try:
        return runner.run(args)
    except CommandError as exc:
        raise VolumeRenameError(str(exc)) from exc


@dataclass(slots=True)
class RbdRenamer:
    """Rename RBD images within their Ceph pool."""

    runner: CommandRunner
    pool: str
    rbd_bin: str = "rbd"
    kind: BackendKind = BackendKind.RBD

    def rename(self, old: str, new: str) -> subprocess.CompletedProcess[str]:
        """Run ``rbd -p <pool> rename <old> <new>``."""
        return _run_rename(self.runner, [self.rbd_bin, "-p", self.pool, "rename", old, new])


@dataclass(slots=True)
class ZfsRenamer:
    """Rename ZFS datasets (zvols and subvols) below the storage's parent dataset."""

    runner: CommandRunner
    dataset: str | None = None
    zfs_bin: str = "zfs"
    kind: BackendKind = BackendKind.ZFS

    def _qualify(self, name: str) -> str:
        if not self.dataset:
            return name
        return f"{self.dataset.rstrip('/')}/{name}"

    def rename(self, old: str, new: str) -> subprocess.CompletedProcess[str]:
        """Run ``zfs rename <old> <new>``."""
        return _run_rename(
            self.runner, [self.zfs_bin, "rename", self._qualify(old), self._qualify(new)]
        )


@dataclass(slots=True)
class LvmThinRenamer:
    """Rename thin logical volumes inside their volume group.

    The volume group comes from the explicit override, then ``storage.cfg``,
    then ``lvs``. When ``lvs`` reports more than one group the choice is
    ambiguous and the rename is refused instead of guessing.
    """

    runner: CommandRunner
    volume_group: str | None = None
    lvs_bin: str = "lvs"
    lvrename_bin: str = "lvrename"
    kind: BackendKind = BackendKind.LVMTHIN

    def resolve_volume_group(self) -> str:
        """Return the volume group holding the thin volumes."""
        if self.volume_group:
            return self.volume_group
        try:
            result = self.runner.run(
                [self.lvs_bin, "--noheadings", "-o", "vg_name"], mutating=False
            )
        except CommandError as exc:
            raise VolumeRenameError(f"Unable to list volume groups: {exc}") from exc
        groups: list[str] = []
        for line in (result.stdout or "").splitlines():
            name = line.strip()
            if name and name not in groups:
                groups.append(name)
        if not groups:
            raise VolumeRenameError("No LVM volume group found on this host.")
        if len(groups) > 1:
            joined = ", ".join(groups)
            raise VolumeRenameError(
                f"Multiple volume groups found ({joined}); set lvm.volume_group "
                "or vgname in storage.cfg."
            )
        self.volume_group = groups[0]
        return groups[0]

    def rename(self, old: str, new: str) -> subprocess.CompletedProcess[str]:
        """Run ``lvrename <vg> <old> <new>``."""
        volume_group = self.resolve_volume_group()
        return _run_rename(self.runner, [self.lvrename_bin, volume_group, old, new])


def renamer_for(
    kind: BackendKind,
    pool: str,
    *,
    registry: StorageRegistry,
    runner: CommandRunner,
    rbd_bin: str = "rbd",
    zfs_bin: str = "zfs",
    lvs_bin: str = "lvs",
    lvrename_bin: str = "lvrename",
    volume_group: str | None = None,
) -> VolumeRenamer:
    """Return the renamer for volumes of *pool*, backed by *kind*."""
    definition = registry.definition(pool)
    if kind is BackendKind.RBD:
        rbd_pool = (definition.get("pool") if definition else None) or pool
        return RbdRenamer(runner=runner, pool=rbd_pool, rbd_bin=rbd_bin)
    if kind is BackendKind.ZFS:
        dataset = definition.get("pool") if definition else None
        return ZfsRenamer(runner=runner, dataset=dataset, zfs_bin=zfs_bin)
    if kind is BackendKind.LVMTHIN:
        group = volume_group or (definition.get("vgname") if definition else None)
        return LvmThinRenamer(
            runner=runner,
            volume_group=group,
            lvs_bin=lvs_bin,
            lvrename_bin=lvrename_bin,
        )
    raise VolumeRenameError(f"No renamer available for backend '{kind}'.")


__all__ = [
    "LvmThinRenamer",
    "RbdRenamer",
    "VolumeRenameError",
    "VolumeRenamer",
    "ZfsRenamer",
    "renamer_for",
]
