"""Lifecycle control for containers (``pct``) and virtual machines (``qm``)."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass

from ..models import UnitKind
from .commands import CommandError, CommandRunner


class GuestError(RuntimeError):
    """Raised when status, stop or start of a guest fails."""


@dataclass(slots=True)
class GuestProvider:
    """Dispatch lifecycle commands to ``pct`` or ``qm`` by unit kind."""

    runner: CommandRunner
    pct_bin: str = "pct"
    qm_bin: str = "qm"

    def _tool(self, kind: UnitKind) -> str:
        return self.pct_bin if kind is UnitKind.LXC else self.qm_bin

    def status(self, kind: UnitKind, unit_id: int) -> str:
        """Return the state reported by ``status`` (``running``, ``stopped``, ...)."""
        try:
            result = self.runner.run([self._tool(kind), "status", str(unit_id)], mutating=False)
        except CommandError as exc:
            raise GuestError(f"Unable to query status of {kind.label} {unit_id}: {exc}") from exc
        for line in (result.stdout or "").splitlines():
            key, _, value = line.partition(":")
            if key.strip() == "status":
                return value.strip()
        return "unknown"

    def is_running(self, kind: UnitKind, unit_id: int) -> bool:
        """Return ``True`` when the unit reports ``status: running``."""
        return self.status(kind, unit_id) == "running"

    def stop(self, kind: UnitKind, unit_id: int) -> subprocess.CompletedProcess[str]:
        """Stop the unit."""
        try:
            return self.runner.run([self._tool(kind), "stop", str(unit_id)])
        except CommandError as exc:
            raise GuestError(f"Failed to stop {kind.label} {unit_id}: {exc}") from exc

    def start(self, kind: UnitKind, unit_id: int) -> subprocess.CompletedProcess[str]:
        """Start the unit."""
        try:
            return self.runner.run([self._tool(kind), "start", str(unit_id)])
        except CommandError as exc:
            raise GuestError(f"Failed to start {kind.label} {unit_id}: {exc}") from exc


__all__ = ["GuestError", "GuestProvider"]
