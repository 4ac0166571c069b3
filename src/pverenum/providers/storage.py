"""Storage registry lookups backed by ``pvesm`` and ``storage.cfg``."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from ..models import BackendKind
from .commands import CommandError, CommandRunner

BACKEND_TYPES: Mapping[str, BackendKind] = {
    "rbd": BackendKind.RBD,
    "zfspool": BackendKind.ZFS,
    "zfs": BackendKind.ZFS,
    "lvmthin": BackendKind.LVMTHIN,
}


class StorageError(RuntimeError):
    """Base class for storage provider failures."""


class StorageClassificationError(StorageError):
    """Raised when a pool is unknown or backed by an unsupported technology."""


@dataclass(frozen=True, slots=True)
class StorageDefinition:
    """A storage entry from ``/etc/pve/storage.cfg``."""

    name: str
    type: str
    properties: Mapping[str, str] = field(default_factory=dict)

    def get(self, key: str) -> str | None:
        """Return the property *key*, if set."""
        value = self.properties.get(key)
        return value if value else None


def parse_storage_cfg(text: str) -> dict[str, StorageDefinition]:
    """Parse ``storage.cfg`` sections into definitions keyed by storage name."""
    definitions: dict[str, StorageDefinition] = {}
    current_name: str | None = None
    current_type = ""
    properties: dict[str, str] = {}

    def _flush() -> None:
        if current_name is not None:
            definitions[current_name] = StorageDefinition(
                name=current_name, type=current_type, properties=dict(properties)
            )

    for raw in text.splitlines():
        if not raw.strip() or raw.lstrip().startswith("#"):
            continue
        if not raw[0].isspace():
            _flush()
            head, _, name = raw.partition(":")
            current_type = head.strip()
            current_name = name.strip() or None
            properties = {}
            continue
        if current_name is None:
            continue
        key, _, value = raw.strip().partition(" ")
        properties[key] = value.strip()
    _flush()
    return definitions


@dataclass(slots=True)
class StorageRegistry:
    """Classify storage pools by backend technology.

    The ``pvesm status --verbose`` listing is fetched once and cached, so
    repeated lookups are idempotent and free of side effects.
    """

    runner: CommandRunner
    pvesm_bin: str = "pvesm"
    storage_cfg: Path | None = None
    _types: dict[str, str] | None = field(default=None, init=False, repr=False)
    _definitions: dict[str, StorageDefinition] | None = field(
        default=None, init=False, repr=False
    )

    def pool_types(self) -> dict[str, str]:
        """Return ``{pool: type}`` as reported by the storage registry."""
        if self._types is not None:
            return dict(self._types)
        try:
            result = self.runner.run([self.pvesm_bin, "status", "--verbose"], mutating=False)
        except CommandError as exc:
            raise StorageClassificationError(f"Unable to list storage pools: {exc}") from exc
        types: dict[str, str] = {}
        for line in (result.stdout or "").splitlines():
            columns = line.split()
            if len(columns) < 2 or columns[0] == "Name":
                continue
            types[columns[0]] = columns[1]
        self._types = types
        return dict(types)

    def classify(self, pool: str) -> BackendKind:
        """Return the backend kind of *pool*."""
        pool_type = self.pool_types().get(pool)
        if pool_type is None:
            raise StorageClassificationError(
                f"Could not detect storage type for '{pool}'."
            )
        kind = BACKEND_TYPES.get(pool_type)
        if kind is None:
            raise StorageClassificationError(
                f"Unsupported storage type '{pool_type}' for {pool}. Please rename manually."
            )
        return kind

    def definition(self, pool: str) -> StorageDefinition | None:
        """Return the ``storage.cfg`` entry for *pool*, when one can be read."""
        if self._definitions is None:
            self._definitions = {}
            if self.storage_cfg is not None:
                try:
                    text = self.storage_cfg.read_text(encoding="utf-8")
                except OSError:
                    text = ""
                self._definitions = parse_storage_cfg(text)
        return self._definitions.get(pool)


__all__ = [
    "BACKEND_TYPES",
    "StorageClassificationError",
    "StorageDefinition",
    "StorageError",
    "StorageRegistry",
    "parse_storage_cfg",
]
