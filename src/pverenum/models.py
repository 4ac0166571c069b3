"""Data models shared by the renumber workflow."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class UnitKind(str, Enum):
    """Kind of compute unit, derived from which config directory holds it."""

    LXC = "lxc"
    QEMU = "qemu"

    @property
    def label(self) -> str:
        """Return the operator-facing label for the unit kind."""
        return "container" if self is UnitKind.LXC else "VM"


class BackendKind(str, Enum):
    """Storage technologies that support in-place volume renames."""

    RBD = "rbd"
    ZFS = "zfs"
    LVMTHIN = "lvmthin"


class RenumberState(str, Enum):
    """States of the renumber orchestrator."""

    VALIDATING = "validating"
    BACKING_UP = "backing-up"
    STOPPED = "stopped"
    REWRITING = "rewriting"
    RELOCATING = "relocating"
    FINALIZING = "finalizing"
    STARTED = "started"
    DONE = "done"
    ABORTED = "aborted"


class RestartStatus(str, Enum):
    """Outcome of the optional start after a renumber."""

    NOT_REQUESTED = "not-requested"
    STARTED = "started"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class VolumeName:
    """Structured form of a Proxmox volume name such as ``vm-218-disk-0``.

    ``base`` holds the linked-clone parent (``base-100-disk-0/``) when the
    volume name carries one; only the trailing segment is owned by the unit.
    """

    kind: str
    owner: int
    suffix: str
    base: str = ""

    @property
    def leaf(self) -> str:
        """Return the storage-level object name, without the clone parent."""
        return f"{self.kind}-{self.owner}-{self.suffix}"

    def with_owner(self, owner: int) -> VolumeName:
        """Return a copy of this name owned by *owner*."""
        return VolumeName(kind=self.kind, owner=owner, suffix=self.suffix, base=self.base)

    def __str__(self) -> str:
        return f"{self.base}{self.leaf}"


@dataclass(frozen=True, slots=True)
class StorageReference:
    """A ``pool:volume`` reference embedded in a configuration line."""

    key: str
    pool: str
    volume: str
    line: str
    options: str = ""

    @property
    def spec(self) -> str:
        """Return the ``pool:volume`` form of the reference."""
        return f"{self.pool}:{self.volume}"


@dataclass(frozen=True, slots=True)
class PlannedRename:
    """A single volume rename computed before any backend command runs."""

    reference: StorageReference
    backend: BackendKind
    old_name: VolumeName
    new_name: VolumeName

    @property
    def old_volume(self) -> str:
        """Return the volume string as written in the config."""
        return str(self.old_name)

    @property
    def new_volume(self) -> str:
        """Return the rewritten volume string."""
        return str(self.new_name)


@dataclass(frozen=True, slots=True)
class SkippedReference:
    """A scanned line that was deliberately left untouched."""

    line: str
    reason: str


@dataclass(slots=True)
class RenamePlan:
    """Ordered rename plan plus the lines the rewriter declined to touch."""

    renames: list[PlannedRename] = field(default_factory=list)
    skipped: list[SkippedReference] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class RenameRecord:
    """Append-only audit entry for a successfully renamed volume."""

    pool: str
    old_volume: str
    new_volume: str

    def to_line(self) -> str:
        """Return the mapping-file representation of the record."""
        return f"{self.pool}:{self.old_volume} → {self.pool}:{self.new_volume}"


@dataclass(slots=True)
class RenumberResult:
    """Summary of a renumber run, complete or partial."""

    old_id: int
    new_id: int
    kind: UnitKind
    old_config: Path
    new_config: Path
    backup_dir: Path | None = None
    state: RenumberState = RenumberState.VALIDATING
    records: list[RenameRecord] = field(default_factory=list)
    skipped: list[SkippedReference] = field(default_factory=list)
    relocated_state: tuple[Path, Path] | None = None
    restart: RestartStatus = RestartStatus.NOT_REQUESTED
    restart_detail: str = ""
    rolled_back: list[RenameRecord] = field(default_factory=list)
    dry_run: bool = False
    plan: RenamePlan | None = None

    @property
    def mapping_file(self) -> Path | None:
        """Return the rename-mapping file inside the backup directory."""
        if self.backup_dir is None:
            return None
        return self.backup_dir / "volume_rename_map.txt"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        payload: dict[str, object] = {
            "old_id": self.old_id,
            "new_id": self.new_id,
            "kind": self.kind.value,
            "state": self.state.value,
            "old_config": str(self.old_config),
            "new_config": str(self.new_config),
            "backup_dir": str(self.backup_dir) if self.backup_dir else None,
            "renamed": [record.to_line() for record in self.records],
            "skipped": [{"line": item.line, "reason": item.reason} for item in self.skipped],
            "restart": self.restart.value,
            "dry_run": self.dry_run,
        }
        if self.restart_detail:
            payload["restart_detail"] = self.restart_detail
        if self.relocated_state is not None:
            source, destination = self.relocated_state
            payload["relocated_state"] = {"from": str(source), "to": str(destination)}
        if self.rolled_back:
            payload["rolled_back"] = [record.to_line() for record in self.rolled_back]
        if self.plan is not None:
            payload["plan"] = [
                {
                    "pool": item.reference.pool,
                    "backend": item.backend.value,
                    "old_volume": item.old_volume,
                    "new_volume": item.new_volume,
                }
                for item in self.plan.renames
            ]
        return payload


__all__ = [
    "BackendKind",
    "PlannedRename",
    "RenamePlan",
    "RenameRecord",
    "RenumberResult",
    "RenumberState",
    "RestartStatus",
    "SkippedReference",
    "StorageReference",
    "UnitKind",
    "VolumeName",
]
