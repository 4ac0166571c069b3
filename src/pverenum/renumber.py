"""Renumber orchestration: validate, back up, stop, rename, relocate, finalize.

The orchestrator walks :class:`~pverenum.models.RenumberState` strictly in
order. Preflight failures raise :class:`PreflightError` before anything is
written. Once the backup exists, any failure raises :class:`RenumberAborted`
carrying the partial :class:`~pverenum.models.RenumberResult`; the old config
stays in place until the finalizing step, and recovery is manual through the
backup directory and the rename-mapping file unless rollback was requested.
"""
from __future__ import annotations

import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

from .backups import BackupError, BackupSnapshot
from .config import AppConfig, ToolsConfig
from .config_store import GuestConfigError, GuestConfigStore, KeyRename
from .exit_codes import ExitCode
from .logging import OperationScope
from .models import (
    PlannedRename,
    RenamePlan,
    RenameRecord,
    RenumberResult,
    RenumberState,
    RestartStatus,
    UnitKind,
)
from .providers.commands import CommandRunner, format_command_detail
from .providers.guests import GuestError, GuestProvider
from .providers.storage import StorageClassificationError, StorageRegistry
from .providers.volumes import VolumeRenameError, VolumeRenamer, renamer_for
from .references import plan_renames, replace_volume

IDENTIFIER_PATTERN = re.compile(r"^[0-9]+$")


class RenumberError(RuntimeError):
    """Base class for renumber failures."""


class PreflightError(RenumberError):
    """Raised when a precondition fails; nothing has been changed."""

    def __init__(self, message: str, *, exit_code: ExitCode = ExitCode.VALIDATION) -> None:
        """Store the exit code matching the failed precondition."""
        super().__init__(message)
        self.exit_code = exit_code


class RenumberAborted(RenumberError):
    """Raised when a run stops after the backup was taken."""

    def __init__(self, message: str, result: RenumberResult) -> None:
        """Keep the partial result for recovery hints."""
        super().__init__(message)
        self.result = result


def parse_identifier(raw: str, *, label: str) -> int:
    """Return *raw* as a unit identifier, rejecting anything but digits."""
    value = raw.strip()
    if not IDENTIFIER_PATTERN.match(value):
        raise PreflightError(f"{label} must be numeric, got '{raw}'.")
    return int(value)


def parse_start_flag(raw: str | None) -> bool:
    """Return the start-after-rename flag from ``yes``/``no``."""
    if raw is None:
        return False
    value = raw.strip().lower()
    if value not in {"yes", "no"}:
        raise PreflightError(f"Start flag must be 'yes' or 'no', got '{raw}'.")
    return value == "yes"


@dataclass(frozen=True, slots=True)
class RenumberRequest:
    """Parameters of a single renumber run."""

    old_id: int
    new_id: int
    start: bool = False
    dry_run: bool = False
    rollback_on_failure: bool = False


class RenumberOrchestrator:
    """Sequence the renumber of one guest from *old_id* to *new_id*."""

    def __init__(
        self,
        *,
        store: GuestConfigStore,
        storage: StorageRegistry,
        guests: GuestProvider,
        runner: CommandRunner,
        backup_root: Path,
        lxc_state_dir: Path,
        tools: ToolsConfig | None = None,
        volume_group: str | None = None,
    ) -> None:
        """Wire the collaborators used by every state."""
        self.store = store
        self.storage = storage
        self.guests = guests
        self.runner = runner
        self.backup_root = backup_root
        self.lxc_state_dir = lxc_state_dir
        self.tools = tools or ToolsConfig()
        self.volume_group = volume_group
        self.state = RenumberState.VALIDATING

    @classmethod
    def from_config(cls, config: AppConfig, *, dry_run: bool = False) -> RenumberOrchestrator:
        """Build an orchestrator from resolved configuration."""
        runner = CommandRunner(dry_run=dry_run)
        tools = config.tools
        return cls(
            store=GuestConfigStore(
                lxc_dir=config.pve.lxc_config_dir,
                qemu_dir=config.pve.qemu_config_dir,
            ),
            storage=StorageRegistry(
                runner=runner,
                pvesm_bin=tools.pvesm,
                storage_cfg=config.pve.storage_cfg,
            ),
            guests=GuestProvider(runner=runner, pct_bin=tools.pct, qm_bin=tools.qm),
            runner=runner,
            backup_root=config.backup_root,
            lxc_state_dir=config.pve.lxc_state_dir,
            tools=tools,
            volume_group=config.lvm.volume_group,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def preflight(self, old_id: int, new_id: int) -> UnitKind:
        """Validate the request and return the kind of the unit."""
        self.state = RenumberState.VALIDATING
        if old_id < 0 or new_id < 0:
            raise PreflightError("Identifiers must be non-negative integers.")
        if old_id == new_id:
            raise PreflightError("OLD_ID and NEW_ID must differ.")
        kind = self.store.locate(old_id)
        if kind is None:
            raise PreflightError(f"ID {old_id} is neither an LXC nor a VM.")
        if self.store.exists(new_id):
            raise PreflightError(f"Config for new ID {new_id} already exists.")
        if os.geteuid() != 0:
            raise PreflightError(
                "This command must be run as root.", exit_code=ExitCode.ENVIRONMENT
            )
        if not self.runner.available(self.tools.pvesm):
            raise PreflightError(
                f"{self.tools.pvesm} not found. This must be run on a Proxmox node.",
                exit_code=ExitCode.ENVIRONMENT,
            )
        return kind

    def plan(self, kind: UnitKind, old_id: int, new_id: int) -> RenamePlan:
        """Return the rename plan for the current config of *old_id*."""
        lines = self.store.read_text(kind, old_id).splitlines()
        return plan_renames(lines, old_id, new_id, self.storage.classify)

    def run(self, request: RenumberRequest, op: OperationScope | None = None) -> RenumberResult:
        """Execute *request* and return the result of the run."""
        kind = self.preflight(request.old_id, request.new_id)
        result = RenumberResult(
            old_id=request.old_id,
            new_id=request.new_id,
            kind=kind,
            old_config=self.store.path_for(kind, request.old_id),
            new_config=self.store.path_for(kind, request.new_id),
            dry_run=request.dry_run,
        )
        _step(op, "preflight", detail=f"kind={kind.value}")

        if request.dry_run:
            return self._dry_run(request, result, op)

        self.state = RenumberState.BACKING_UP
        result.state = self.state
        try:
            snapshot = BackupSnapshot.create(
                self.backup_root,
                old_id=request.old_id,
                new_id=request.new_id,
                kind=kind,
                source_config=result.old_config,
            )
        except BackupError as exc:
            self._abort(result, str(exc), op, cause=exc, step="backup.create")
        result.backup_dir = snapshot.path
        _step(op, "backup.create", detail=str(snapshot.path))

        self._stop(kind, request.old_id, result, op)

        self.state = RenumberState.REWRITING
        result.state = self.state
        try:
            plan = self.plan(kind, request.old_id, request.new_id)
        except (StorageClassificationError, GuestConfigError) as exc:
            self._abort(result, str(exc), op, cause=exc, step="references.plan")
        result.plan = plan
        result.skipped = list(plan.skipped)
        for skipped in plan.skipped:
            _step(
                op,
                "references.skip",
                status="skipped",
                detail=f"{skipped.line} ({skipped.reason})",
            )
        _step(op, "references.plan", detail=f"renames={len(plan.renames)}")

        transaction = self.store.rename_key(kind, request.old_id, request.new_id)
        try:
            transaction.begin()
        except GuestConfigError as exc:
            self._abort(result, str(exc), op, cause=exc, step="config.copy")
        _step(op, "config.copy", detail=str(transaction.new_path))

        self._apply_renames(plan, transaction, snapshot, result, request, op)
        self._relocate_local_state(kind, request, snapshot, result, op)

        self.state = RenumberState.FINALIZING
        result.state = self.state
        try:
            transaction.commit()
        except GuestConfigError as exc:
            self._abort(result, str(exc), op, cause=exc, step="config.commit")
        _step(op, "config.commit", detail=f"removed {transaction.old_path}")

        if request.start:
            self._start(kind, request.new_id, result, op)

        self.state = RenumberState.DONE
        result.state = self.state
        return result

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------
    def _dry_run(
        self,
        request: RenumberRequest,
        result: RenumberResult,
        op: OperationScope | None,
    ) -> RenumberResult:
        try:
            plan = self.plan(result.kind, request.old_id, request.new_id)
        except (StorageClassificationError, GuestConfigError) as exc:
            self._abort(result, str(exc), op, cause=exc, step="references.plan")
        result.plan = plan
        result.skipped = list(plan.skipped)
        for item in plan.renames:
            _step(
                op,
                "volume.rename",
                status="skipped",
                detail=f"dry-run {item.reference.spec} → {item.reference.pool}:{item.new_volume}",
            )
        self.state = RenumberState.DONE
        result.state = self.state
        return result

    def _stop(
        self,
        kind: UnitKind,
        unit_id: int,
        result: RenumberResult,
        op: OperationScope | None,
    ) -> None:
        self.state = RenumberState.STOPPED
        result.state = self.state
        try:
            if not self.guests.is_running(kind, unit_id):
                _step(op, "guest.stop", status="skipped", detail="already stopped")
                return
            completed = self.guests.stop(kind, unit_id)
        except GuestError as exc:
            self._abort(result, str(exc), op, cause=exc, step="guest.stop")
        _step(op, "guest.stop", detail=format_command_detail(completed))

    def _apply_renames(
        self,
        plan: RenamePlan,
        transaction: KeyRename,
        snapshot: BackupSnapshot,
        result: RenumberResult,
        request: RenumberRequest,
        op: OperationScope | None,
    ) -> None:
        applied: list[tuple[PlannedRename, VolumeRenamer]] = []
        text = transaction.read()
        for item in plan.renames:
            try:
                renamer = self._renamer(item)
                completed = renamer.rename(item.old_name.leaf, item.new_name.leaf)
            except VolumeRenameError as exc:
                _step(op, "volume.rename", status="error", detail=f"{item.reference.spec}: {exc}")
                if request.rollback_on_failure:
                    self._rollback(applied, transaction, snapshot, result, op)
                self._abort(result, str(exc), op, cause=exc)
            record = RenameRecord(
                pool=item.reference.pool,
                old_volume=item.old_volume,
                new_volume=item.new_volume,
            )
            # The volume now carries its new name whatever happens below.
            result.records.append(record)
            applied.append((item, renamer))
            try:
                snapshot.append_mapping(record)
                text, _ = replace_volume(text, item.old_volume, item.new_volume)
                transaction.write(text)
            except (BackupError, GuestConfigError) as exc:
                _step(op, "config.rewrite", status="error", detail=f"{record.to_line()}: {exc}")
                if request.rollback_on_failure:
                    self._rollback(applied, transaction, snapshot, result, op)
                self._abort(result, str(exc), op, cause=exc)
            detail = format_command_detail(completed)
            _step(op, "volume.rename", detail=f"{record.to_line()} ({detail})")

    def _rollback(
        self,
        applied: list[tuple[PlannedRename, VolumeRenamer]],
        transaction: KeyRename,
        snapshot: BackupSnapshot,
        result: RenumberResult,
        op: OperationScope | None,
    ) -> None:
        failed = False
        for item, renamer in reversed(applied):
            try:
                renamer.rename(item.new_name.leaf, item.old_name.leaf)
                reverse = RenameRecord(
                    pool=item.reference.pool,
                    old_volume=item.new_volume,
                    new_volume=item.old_volume,
                )
                snapshot.append_rollback(reverse)
            except (VolumeRenameError, BackupError) as exc:
                failed = True
                _step(op, "volume.rollback", status="error", detail=f"{item.reference.spec}: {exc}")
                continue
            result.rolled_back.append(reverse)
            _step(op, "volume.rollback", detail=reverse.to_line())
        if failed:
            _step(op, "config.abandon", status="skipped", detail="rollback incomplete")
            return
        try:
            transaction.abandon()
        except (GuestConfigError, OSError) as exc:
            _step(op, "config.abandon", status="error", detail=str(exc))
            return
        _step(op, "config.abandon", detail=f"removed {transaction.new_path}")

    def _relocate_local_state(
        self,
        kind: UnitKind,
        request: RenumberRequest,
        snapshot: BackupSnapshot,
        result: RenumberResult,
        op: OperationScope | None,
    ) -> None:
        self.state = RenumberState.RELOCATING
        result.state = self.state
        source = self.lxc_state_dir / str(request.old_id)
        if kind is not UnitKind.LXC or not source.is_dir():
            _step(op, "local-state.move", status="skipped", detail="no local state")
            return
        destination = self.lxc_state_dir / str(request.new_id)
        if destination.exists():
            self._abort(
                result,
                f"Local state {destination} already exists; refusing to overwrite.",
                op,
                step="local-state.move",
            )
        try:
            snapshot.capture_local_state(source)
            shutil.move(str(source), str(destination))
        except (BackupError, OSError) as exc:
            self._abort(result, str(exc), op, cause=exc, step="local-state.move")
        result.relocated_state = (source, destination)
        _step(op, "local-state.move", detail=f"{source} → {destination}")

    def _start(
        self,
        kind: UnitKind,
        unit_id: int,
        result: RenumberResult,
        op: OperationScope | None,
    ) -> None:
        try:
            completed = self.guests.start(kind, unit_id)
        except GuestError as exc:
            result.restart = RestartStatus.FAILED
            result.restart_detail = str(exc)
            _step(op, "guest.start", status="error", detail=str(exc))
            return
        self.state = RenumberState.STARTED
        result.state = self.state
        result.restart = RestartStatus.STARTED
        _step(op, "guest.start", detail=format_command_detail(completed))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _renamer(self, item: PlannedRename) -> VolumeRenamer:
        return renamer_for(
            item.backend,
            item.reference.pool,
            registry=self.storage,
            runner=self.runner,
            rbd_bin=self.tools.rbd,
            zfs_bin=self.tools.zfs,
            lvs_bin=self.tools.lvs,
            lvrename_bin=self.tools.lvrename,
            volume_group=self.volume_group,
        )

    def _abort(
        self,
        result: RenumberResult,
        message: str,
        op: OperationScope | None,
        *,
        step: str | None = None,
        cause: BaseException | None = None,
    ) -> NoReturn:
        if step is not None:
            _step(op, step, status="error", detail=message)
        self.state = RenumberState.ABORTED
        result.state = self.state
        raise RenumberAborted(message, result) from cause


def _step(
    op: OperationScope | None,
    name: str,
    *,
    status: str = "success",
    detail: object | None = None,
) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


__all__ = [
    "PreflightError",
    "RenumberAborted",
    "RenumberError",
    "RenumberOrchestrator",
    "RenumberRequest",
    "parse_identifier",
    "parse_start_flag",
]
