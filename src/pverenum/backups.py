"""Backup snapshots and the rename-mapping audit trail.

A snapshot directory is created before anything is mutated. It holds the
original guest config (byte-for-byte), a ``manifest.json`` describing the run,
the append-only ``volume_rename_map.txt`` and, when local state was relocated,
a copy of that tree plus ``rootfs_path.txt`` with its original location.
"""
from __future__ import annotations

import hashlib
import json
import os
import secrets
import shutil
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from . import __version__
from .models import RenameRecord, UnitKind

MAPPING_FILE = "volume_rename_map.txt"
ROLLBACK_FILE = "volume_rollback_map.txt"
ROOTFS_PATH_FILE = "rootfs_path.txt"
MANIFEST_FILE = "manifest.json"
LOCAL_STATE_DIR = "local-state"


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def backup_directory_name(old_id: int, new_id: int, when: datetime | None = None) -> str:
    """Return the timestamped directory name for a renumber backup."""
    moment = when or datetime.now()
    return f"renumber_backup_{old_id}_to_{new_id}_{moment.strftime('%Y%m%d_%H%M%S')}"


@dataclass(slots=True)
class BackupSnapshot:
    """A backup directory for one renumber run."""

    path: Path
    old_id: int
    new_id: int

    @classmethod
    def create(
        cls,
        root: Path,
        *,
        old_id: int,
        new_id: int,
        kind: UnitKind,
        source_config: Path,
    ) -> BackupSnapshot:
        """Create a unique backup directory under *root* holding *source_config*."""
        root = root.expanduser()
        name = backup_directory_name(old_id, new_id)
        try:
            root.mkdir(parents=True, exist_ok=True)
            target = root / name
            if target.exists():
                target = root / f"{name}_{secrets.token_hex(3)}"
            target.mkdir(mode=0o750)
            shutil.copy2(source_config, target / source_config.name)
        except OSError as exc:
            raise BackupError(f"Failed to create backup under {root}: {exc}") from exc

        snapshot = cls(path=target, old_id=old_id, new_id=new_id)
        manifest = {
            "old_id": old_id,
            "new_id": new_id,
            "kind": kind.value,
            "created_at": _now_iso(),
            "source_config": str(source_config),
            "config_copy": str(snapshot.config_copy(source_config.name)),
            "checksum": {
                "algorithm": "sha256",
                "value": compute_checksum(target / source_config.name),
            },
            "pverenum_version": __version__,
        }
        snapshot._write_text(MANIFEST_FILE, json.dumps(manifest, indent=2) + "\n")
        return snapshot

    def config_copy(self, filename: str | None = None) -> Path:
        """Return the path of the backed-up config."""
        return self.path / (filename or f"{self.old_id}.conf")

    def append_mapping(self, record: RenameRecord) -> None:
        """Append *record* to the rename-mapping file."""
        self._append_line(MAPPING_FILE, record.to_line())

    def append_rollback(self, record: RenameRecord) -> None:
        """Append a reversed rename to the rollback file."""
        self._append_line(ROLLBACK_FILE, record.to_line())

    def capture_local_state(self, source: Path) -> Path:
        """Copy the local state tree *source* and record its original path."""
        destination = self.path / LOCAL_STATE_DIR / source.name
        try:
            shutil.copytree(source, destination, symlinks=True)
        except OSError as exc:
            raise BackupError(f"Failed to back up local state {source}: {exc}") from exc
        self._append_line(ROOTFS_PATH_FILE, str(source))
        return destination

    # ------------------------------------------------------------------
    def _append_line(self, filename: str, line: str) -> None:
        try:
            with (self.path / filename).open("a", encoding="utf-8") as handle:
                handle.write(f"{line}\n")
        except OSError as exc:
            raise BackupError(f"Failed to write {filename} in {self.path}: {exc}") from exc

    def _write_text(self, filename: str, text: str) -> None:
        path = self.path / filename
        try:
            path.write_text(text, encoding="utf-8")
            os.chmod(path, 0o640)
        except OSError as exc:
            raise BackupError(f"Failed to write {path}: {exc}") from exc


__all__ = [
    "BackupError",
    "BackupSnapshot",
    "MANIFEST_FILE",
    "MAPPING_FILE",
    "ROLLBACK_FILE",
    "ROOTFS_PATH_FILE",
    "backup_directory_name",
    "compute_checksum",
]
