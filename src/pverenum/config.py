"""Configuration loader for pverenum.

Configuration values are merged from multiple sources:

1. Built-in defaults (matching a stock Proxmox VE node).
2. ``/etc/pverenum/config.yml`` (or an override path).
3. Environment variables prefixed with ``PVERENUM_``.
4. Explicit overrides supplied programmatically (used by CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export PVERENUM_BACKUP_ROOT=/srv/renumber-backups
    export PVERENUM_LVM__VOLUME_GROUP=pve

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load pverenum configuration. Install with "
        "`pip install pverenum` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "PVERENUM_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PveConfig:
    """Locations of the Proxmox VE cluster filesystem and local state."""

    lxc_config_dir: Path = Path("/etc/pve/lxc")
    qemu_config_dir: Path = Path("/etc/pve/qemu-server")
    lxc_state_dir: Path = Path("/var/lib/lxc")
    storage_cfg: Path = Path("/etc/pve/storage.cfg")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "lxc_config_dir": str(self.lxc_config_dir),
            "qemu_config_dir": str(self.qemu_config_dir),
            "lxc_state_dir": str(self.lxc_state_dir),
            "storage_cfg": str(self.storage_cfg),
        }


@dataclass(frozen=True)
class ToolsConfig:
    """Binaries invoked for storage and guest lifecycle operations."""

    pvesm: str = "pvesm"
    rbd: str = "rbd"
    zfs: str = "zfs"
    lvs: str = "lvs"
    lvrename: str = "lvrename"
    pct: str = "pct"
    qm: str = "qm"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "pvesm": self.pvesm,
            "rbd": self.rbd,
            "zfs": self.zfs,
            "lvs": self.lvs,
            "lvrename": self.lvrename,
            "pct": self.pct,
            "qm": self.qm,
        }


@dataclass(frozen=True)
class LvmConfig:
    """LVM-thin specific settings."""

    volume_group: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"volume_group": self.volume_group}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for pverenum."""

    config_file: Path
    logs_dir: Path
    backup_root: Path
    rollback_on_failure: bool
    pve: PveConfig
    tools: ToolsConfig
    lvm: LvmConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "backup_root": str(self.backup_root),
            "rollback_on_failure": self.rollback_on_failure,
            "pve": self.pve.to_dict(),
            "tools": self.tools.to_dict(),
            "lvm": self.lvm.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/pverenum/config.yml",
    "logs_dir": "/var/log/pverenum",
    "backup_root": "/root",
    "rollback_on_failure": False,
    "pve": {
        "lxc_config_dir": "/etc/pve/lxc",
        "qemu_config_dir": "/etc/pve/qemu-server",
        "lxc_state_dir": "/var/lib/lxc",
        "storage_cfg": "/etc/pve/storage.cfg",
    },
    "tools": {
        "pvesm": "pvesm",
        "rbd": "rbd",
        "zfs": "zfs",
        "lvs": "lvs",
        "lvrename": "lvrename",
        "pct": "pct",
        "qm": "qm",
    },
    "lvm": {
        "volume_group": None,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "pve": {"lxc_config_dir", "qemu_config_dir", "lxc_state_dir", "storage_cfg"},
    "tools": {"pvesm", "rbd", "zfs", "lvs", "lvrename", "pct", "qm"},
    "lvm": {"volume_group"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    tools_map = _as_dict(raw.get("tools"), "tools")
    for key, value in tools_map.items():
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"tools.{key} must be a non-empty string.")

    rollback = raw.get("rollback_on_failure")
    if rollback is not None and not isinstance(rollback, bool):
        raise ConfigError(
            f"Expected rollback_on_failure to be a boolean. Got {type(rollback).__name__}."
        )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    pve_mapping = _as_dict(raw.get("pve"), "pve")
    pve = PveConfig(
        lxc_config_dir=_to_path(pve_mapping.get("lxc_config_dir", "/etc/pve/lxc")),
        qemu_config_dir=_to_path(pve_mapping.get("qemu_config_dir", "/etc/pve/qemu-server")),
        lxc_state_dir=_to_path(pve_mapping.get("lxc_state_dir", "/var/lib/lxc")),
        storage_cfg=_to_path(pve_mapping.get("storage_cfg", "/etc/pve/storage.cfg")),
    )

    tools_mapping = _as_dict(raw.get("tools"), "tools")
    defaults = ToolsConfig()
    tools = ToolsConfig(
        pvesm=str(tools_mapping.get("pvesm", defaults.pvesm)),
        rbd=str(tools_mapping.get("rbd", defaults.rbd)),
        zfs=str(tools_mapping.get("zfs", defaults.zfs)),
        lvs=str(tools_mapping.get("lvs", defaults.lvs)),
        lvrename=str(tools_mapping.get("lvrename", defaults.lvrename)),
        pct=str(tools_mapping.get("pct", defaults.pct)),
        qm=str(tools_mapping.get("qm", defaults.qm)),
    )

    lvm_mapping = _as_dict(raw.get("lvm"), "lvm")
    volume_group_value = lvm_mapping.get("volume_group")
    volume_group: str | None = None
    if isinstance(volume_group_value, str):
        volume_group = volume_group_value.strip() or None
    elif volume_group_value is not None:
        raise ConfigError("lvm.volume_group must be a string or null.")

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        backup_root=_to_path(raw.get("backup_root")),
        rollback_on_failure=bool(raw.get("rollback_on_failure", False)),
        pve=pve,
        tools=tools,
        lvm=LvmConfig(volume_group=volume_group),
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "LvmConfig",
    "PveConfig",
    "ToolsConfig",
    "load_config",
]
