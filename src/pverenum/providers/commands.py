"""Subprocess execution shared by the storage and guest providers."""
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass


class CommandError(RuntimeError):
    """Raised when an external command is missing or exits non-zero."""

    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        """Store the exit status alongside the message."""
        super().__init__(message)
        self.returncode = returncode


@dataclass(slots=True)
class CommandRunner:
    """Run platform tools synchronously, without timeouts."""

    dry_run: bool = False

    def available(self, binary: str) -> bool:
        """Return ``True`` when *binary* resolves on ``PATH``."""
        return shutil.which(binary) is not None

    def run(
        self,
        args: Sequence[str],
        *,
        mutating: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run *args*; read-only commands still execute during dry runs."""
        if self.dry_run and mutating:
            return subprocess.CompletedProcess(list(args), returncode=0, stdout="", stderr="")
        try:
            result = subprocess.run(  # noqa: S603 - controlled command execution
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise CommandError(f"{args[0]} not found: {exc}") from exc
        if result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            joined = " ".join(args)
            raise CommandError(
                f"{joined} failed (exit {result.returncode}): {message}",
                returncode=result.returncode,
            )
        return result


def format_command_detail(result: subprocess.CompletedProcess[str]) -> str:
    """Summarise *result* for operation step details."""
    args = result.args if isinstance(result.args, (list, tuple)) else [str(result.args)]
    detail = f"command={' '.join(str(arg) for arg in args)} rc={result.returncode}"
    stdout = (getattr(result, "stdout", "") or "").strip()
    stderr = (getattr(result, "stderr", "") or "").strip()
    if stdout:
        detail += f" stdout={stdout}"
    if stderr:
        detail += f" stderr={stderr}"
    return detail


__all__ = ["CommandError", "CommandRunner", "format_command_detail"]
