"""Provider interfaces wrapping Proxmox VE platform tools."""
from __future__ import annotations

from .commands import CommandError, CommandRunner
from .guests import GuestError, GuestProvider
from .storage import (
    StorageClassificationError,
    StorageDefinition,
    StorageError,
    StorageRegistry,
)
from .volumes import (
    LvmThinRenamer,
    RbdRenamer,
    VolumeRenameError,
    VolumeRenamer,
    ZfsRenamer,
    renamer_for,
)

__all__ = [
    "CommandError",
    "CommandRunner",
    "GuestError",
    "GuestProvider",
    "LvmThinRenamer",
    "RbdRenamer",
    "StorageClassificationError",
    "StorageDefinition",
    "StorageError",
    "StorageRegistry",
    "VolumeRenameError",
    "VolumeRenamer",
    "ZfsRenamer",
    "renamer_for",
]
