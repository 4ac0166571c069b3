"""Guest configuration files on the cluster filesystem, keyed by identifier.

``/etc/pve/lxc/<id>.conf`` and ``/etc/pve/qemu-server/<id>.conf`` form a
key-value store where the key is the unit identifier. Moving a config from one
key to another is modelled by :class:`KeyRename`:

``begin`` copies the old config to the new key, ``write`` updates the working
copy as often as needed, and ``commit`` verifies the new key before deleting
the old one. Between ``begin`` and ``commit`` both keys exist on disk; a run
aborted in that window leaves the working copy behind for manual recovery.
"""
from __future__ import annotations

import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

from .models import UnitKind


class GuestConfigError(RuntimeError):
    """Raised when guest configuration files cannot be read or moved."""


@dataclass(slots=True)
class KeyRename:
    """A config move from *old_path* to *new_path* that is not yet committed."""

    old_path: Path
    new_path: Path
    started: bool = False
    committed: bool = False

    def begin(self) -> None:
        """Create the working copy at the new key."""
        if self.new_path.exists():
            raise GuestConfigError(f"Refusing to overwrite existing config {self.new_path}.")
        try:
            shutil.copyfile(self.old_path, self.new_path)
        except OSError as exc:
            raise GuestConfigError(
                f"Failed to copy {self.old_path} to {self.new_path}: {exc}"
            ) from exc
        self.started = True

    def read(self) -> str:
        """Return the current working copy."""
        try:
            return self.new_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise GuestConfigError(f"Failed to read {self.new_path}: {exc}") from exc

    def write(self, text: str) -> None:
        """Replace the working copy with *text*."""
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.new_path.parent),
            prefix=f".{self.new_path.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(text)
            os.replace(tmp_path, self.new_path)
        except OSError as exc:
            raise GuestConfigError(f"Failed to write {self.new_path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def commit(self) -> None:
        """Verify the new key and remove the old one (point of no return)."""
        if not self.started:
            raise GuestConfigError("Config rename was never started.")
        if not self.new_path.is_file():
            raise GuestConfigError(f"New config {self.new_path} is missing; old config kept.")
        try:
            self.old_path.unlink()
        except OSError as exc:
            raise GuestConfigError(f"Failed to remove old config {self.old_path}: {exc}") from exc
        self.committed = True

    def abandon(self) -> None:
        """Drop the working copy; the old key stays authoritative."""
        if self.committed:
            raise GuestConfigError("Config rename already committed.")
        self.new_path.unlink(missing_ok=True)
        self.started = False


@dataclass(frozen=True, slots=True)
class GuestConfigStore:
    """Locate and move guest configs under the LXC and QEMU directories."""

    lxc_dir: Path
    qemu_dir: Path

    def path_for(self, kind: UnitKind, unit_id: int) -> Path:
        """Return the config path for *unit_id* of the given *kind*."""
        root = self.lxc_dir if kind is UnitKind.LXC else self.qemu_dir
        return root / f"{unit_id}.conf"

    def locate(self, unit_id: int) -> UnitKind | None:
        """Return the kind of unit owning *unit_id*, or ``None`` if unknown."""
        for kind in (UnitKind.LXC, UnitKind.QEMU):
            if self.path_for(kind, unit_id).is_file():
                return kind
        return None

    def exists(self, unit_id: int) -> bool:
        """Return ``True`` when any config is present for *unit_id*."""
        return any(self.path_for(kind, unit_id).exists() for kind in UnitKind)

    def read_text(self, kind: UnitKind, unit_id: int) -> str:
        """Return the config text of *unit_id*."""
        path = self.path_for(kind, unit_id)
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise GuestConfigError(f"Failed to read {path}: {exc}") from exc

    def rename_key(self, kind: UnitKind, old_id: int, new_id: int) -> KeyRename:
        """Return an unstarted :class:`KeyRename` from *old_id* to *new_id*."""
        return KeyRename(
            old_path=self.path_for(kind, old_id),
            new_path=self.path_for(kind, new_id),
        )


__all__ = ["GuestConfigError", "GuestConfigStore", "KeyRename"]
