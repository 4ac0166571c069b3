"""Scan guest configuration text for storage references and plan their renames.

Proxmox guest configs are loosely structured ``key: value`` files. Storage
lives behind a handful of keys (``rootfs``, ``mpN``, the disk buses, EFI/TPM
state, ``unusedN`` and ``vmstate``) and, in the main section as well as in every
``[snapshot]`` section, the value starts with ``pool:volume``. Host bind mounts
use the same keys but carry a path instead and are never renamed.

Scanning is deliberately coarse (a substring test on the old identifier);
planning is strict: a reference is renamed only when its volume name parses as
``<kind>-<owner>-<suffix>`` and ``owner`` is the unit being renumbered.
"""
from __future__ import annotations

import re
from collections.abc import Callable, Iterable

from .models import (
    BackendKind,
    PlannedRename,
    RenamePlan,
    SkippedReference,
    StorageReference,
    VolumeName,
)

STORAGE_KEY_PATTERN = re.compile(
    r"^(?P<key>rootfs|mp\d+|(?:ide|sata|scsi|virtio)\d+|efidisk\d+|tpmstate\d+|unused\d+|vmstate)"
    r":\s*(?P<value>.*)$"
)
GENERIC_VOLUME_PATTERN = re.compile(r"^(?P<key>volume)=(?P<value>.*)$")
POOL_VOLUME_PATTERN = re.compile(r"^(?P<pool>[A-Za-z][A-Za-z0-9_.-]*):(?P<volume>\S+)$")
VOLUME_NAME_PATTERN = re.compile(
    r"^(?P<base>(?:[^/]+/)*)(?P<kind>vm|base|subvol|basevol)"
    r"-(?P<owner>\d+)-(?P<suffix>[A-Za-z0-9_.+-]+)$"
)
BIND_MOUNT_PREFIXES = ("/", "./")


def _split_line(line: str) -> tuple[str, str] | None:
    text = line.strip()
    match = STORAGE_KEY_PATTERN.match(text) or GENERIC_VOLUME_PATTERN.match(text)
    if match is None:
        return None
    return match.group("key"), match.group("value").strip()


def _strip_volume_prefix(value: str) -> str:
    return value[len("volume=") :] if value.startswith("volume=") else value


def scan_references(lines: Iterable[str], old_id: int) -> list[str]:
    """Return storage-bearing lines whose value mentions *old_id*."""
    needle = str(old_id)
    selected: list[str] = []
    for raw in lines:
        parts = _split_line(raw)
        if parts is None:
            continue
        _, value = parts
        if needle in value:
            selected.append(raw.strip())
    return selected


def is_bind_mount(line: str) -> bool:
    """Return ``True`` when *line* mounts a host path rather than a volume."""
    parts = _split_line(line)
    if parts is None:
        return False
    value = _strip_volume_prefix(parts[1])
    return value.startswith(BIND_MOUNT_PREFIXES)


def parse_reference(line: str) -> StorageReference | None:
    """Parse the ``pool:volume[,options]`` value of a storage line."""
    parts = _split_line(line)
    if parts is None:
        return None
    key, value = parts
    value = _strip_volume_prefix(value)
    if value.startswith(BIND_MOUNT_PREFIXES):
        return None
    head, _, options = value.partition(",")
    match = POOL_VOLUME_PATTERN.match(head.strip())
    if match is None:
        return None
    return StorageReference(
        key=key,
        pool=match.group("pool"),
        volume=match.group("volume"),
        line=line.strip(),
        options=options,
    )


def parse_volume_name(volume: str) -> VolumeName | None:
    """Parse *volume* into its structured fields, or ``None`` if it is foreign."""
    match = VOLUME_NAME_PATTERN.match(volume)
    if match is None:
        return None
    return VolumeName(
        kind=match.group("kind"),
        owner=int(match.group("owner")),
        suffix=match.group("suffix"),
        base=match.group("base"),
    )


def replace_volume(text: str, old_volume: str, new_volume: str) -> tuple[str, int]:
    """Replace every whole-token occurrence of *old_volume* in *text*."""
    pattern = re.compile(rf"(?<![\w-]){re.escape(old_volume)}(?![\w-])")
    return pattern.subn(lambda _match: new_volume, text)


def plan_renames(
    lines: Iterable[str],
    old_id: int,
    new_id: int,
    classify: Callable[[str], BackendKind],
) -> RenamePlan:
    """Build the ordered rename plan for a guest config.

    Every reference is parsed and its pool classified before anything is
    renamed, so an unsupported backend aborts the run with no volume touched.
    Volumes repeated across snapshot sections appear once in the plan.
    """
    plan = RenamePlan()
    seen: set[tuple[str, str]] = set()
    for line in scan_references(lines, old_id):
        if is_bind_mount(line):
            plan.skipped.append(SkippedReference(line=line, reason="host bind mount"))
            continue
        reference = parse_reference(line)
        if reference is None:
            plan.skipped.append(SkippedReference(line=line, reason="not a pool:volume reference"))
            continue
        name = parse_volume_name(reference.volume)
        if name is None:
            plan.skipped.append(
                SkippedReference(line=line, reason="volume name does not encode an owner")
            )
            continue
        if name.owner != old_id:
            plan.skipped.append(
                SkippedReference(line=line, reason=f"volume is owned by unit {name.owner}")
            )
            continue
        identity = (reference.pool, reference.volume)
        if identity in seen:
            continue
        seen.add(identity)
        plan.renames.append(
            PlannedRename(
                reference=reference,
                backend=classify(reference.pool),
                old_name=name,
                new_name=name.with_owner(new_id),
            )
        )
    return plan


__all__ = [
    "STORAGE_KEY_PATTERN",
    "is_bind_mount",
    "parse_reference",
    "parse_volume_name",
    "plan_renames",
    "replace_volume",
    "scan_references",
]
