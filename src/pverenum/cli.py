"""Typer-powered command line for ``pverenum``.

``pverenum OLD_ID NEW_ID [yes|no]`` moves a Proxmox VE container or VM to a
new identifier. The command is a thin shell over
:class:`~pverenum.renumber.RenumberOrchestrator`: it resolves configuration,
opens a structured operation record and renders the outcome with Rich.
"""
from __future__ import annotations

import textwrap
from collections.abc import Sequence
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .models import RenumberResult, RestartStatus
from .renumber import (
    PreflightError,
    RenumberAborted,
    RenumberOrchestrator,
    RenumberRequest,
    parse_identifier,
    parse_start_flag,
)

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    add_completion=False,
    context_settings={"help_option_names": []},
    help=textwrap.dedent(
        """
        Renumber a Proxmox VE container or VM.

        Moves the guest config from OLD_ID to NEW_ID, renames every RBD, ZFS
        and LVM-thin volume the guest owns and rewrites the references. Pass
        "yes" as the third argument to start the guest afterwards.
        """
    ).strip(),
)


def _help_callback(ctx: typer.Context, value: bool) -> None:
    if not value or ctx.resilient_parsing:
        return
    console.print(ctx.get_help())
    raise typer.Exit(code=ExitCode.VALIDATION)


def _version_callback(value: bool) -> None:
    if not value:
        return
    console.print(f"pverenum {__version__}")
    raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
    json_output: bool = False,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    _print_error(message, rc=rc, json_output=json_output)
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _print_error(message: str, *, rc: int, json_output: bool) -> None:
    if json_output:
        console.print_json(data={"error": message, "rc": int(rc)})
        err_console.print(f"[red]{message}[/red]")
        return
    console.print(f"[red]{message}[/red]")


def _load_config_or_exit(config_file: Path | None, *, json_output: bool) -> AppConfig:
    try:
        return load_config(config_file)
    except ConfigError as exc:
        _print_error(str(exc), rc=ExitCode.ENVIRONMENT, json_output=json_output)
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc


def _render_plan(result: RenumberResult) -> None:
    plan = result.plan
    console.print(
        f"[yellow]Dry run[/yellow]: {result.kind.label} {result.old_id} would become "
        f"{result.new_id} ({result.old_config} → {result.new_config})."
    )
    if plan is None or not plan.renames:
        console.print("  No volumes to rename.")
    else:
        for item in plan.renames:
            console.print(
                f"  {item.reference.spec} → {item.reference.pool}:{item.new_volume} "
                f"[dim]({item.backend.value})[/dim]"
            )
    for skipped in result.skipped:
        console.print(f"  [dim]skip[/dim] {skipped.line} ({skipped.reason})")


def _render_summary(result: RenumberResult) -> None:
    console.print(
        f"[green]Renumbered {result.kind.label} {result.old_id} to {result.new_id}.[/green]"
    )
    console.print(f"  New config: {result.new_config}")
    console.print(f"  Backup: {result.backup_dir}")
    console.print(f"  Volume rename log: {result.mapping_file}")
    if result.relocated_state is not None:
        source, destination = result.relocated_state
        console.print(f"  Local state: {source} → {destination}")
    for skipped in result.skipped:
        console.print(f"  [dim]skipped[/dim] {skipped.line} ({skipped.reason})")
    if result.restart is RestartStatus.STARTED:
        console.print(f"  Started {result.kind.label} {result.new_id}.")
    console.print(
        f"Check for leftovers with: grep -n '{result.old_id}' {result.new_config}"
    )
    console.print(
        f"To restore the old config: cp {result.backup_dir}/{result.old_id}.conf "
        f"{result.old_config.parent}/"
    )


def _render_recovery(result: RenumberResult) -> None:
    if result.backup_dir is None:
        return
    console.print(f"Backup directory: {result.backup_dir}")
    console.print(f"Renamed so far: {result.mapping_file}")
    for record in result.records:
        console.print(f"  {record.to_line()}")
    for record in result.rolled_back:
        console.print(f"  [yellow]rolled back[/yellow] {record.to_line()}")
    console.print(
        "Restore the original config with: "
        f"cp {result.backup_dir}/{result.old_id}.conf {result.old_config.parent}/"
    )
    if result.records and not result.rolled_back:
        console.print(
            "Volumes listed in the rename log must be renamed back by hand "
            "before the old config is usable again."
        )


@app.command()
def renumber(
    old_id: str = typer.Argument(..., help="Current identifier of the guest."),
    new_id: str = typer.Argument(..., help="Identifier to move the guest to."),
    start: str | None = typer.Argument(
        None,
        help="Start the guest after renumbering ('yes' or 'no', default 'no').",
        show_default=False,
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Plan the renames without changing anything.",
    ),
    rollback_on_failure: bool | None = typer.Option(
        None,
        "--rollback-on-failure/--no-rollback-on-failure",
        help="Reverse completed volume renames when a later rename fails.",
        show_default=False,
    ),
    config_file: Path | None = typer.Option(
        None,
        "--config-file",
        dir_okay=False,
        help="Override the path to pverenum's YAML config file.",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Print the result as JSON.",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Show the pverenum version and exit.",
    ),
    show_help: bool = typer.Option(
        False,
        "--help",
        "-h",
        callback=_help_callback,
        is_eager=True,
        help="Show this message and exit.",
    ),
) -> None:
    """Renumber guest OLD_ID to NEW_ID."""
    config = _load_config_or_exit(config_file, json_output=json_output)
    logger = StructuredLogger(config.logs_dir)
    rollback = (
        config.rollback_on_failure if rollback_on_failure is None else rollback_on_failure
    )

    with logger.operation(
        "renumber",
        args={
            "old_id": old_id,
            "new_id": new_id,
            "start": start,
            "dry_run": dry_run,
            "rollback_on_failure": rollback,
        },
        target={"kind": "unit", "old_id": old_id, "new_id": new_id},
    ) as op:
        try:
            request = RenumberRequest(
                old_id=parse_identifier(old_id, label="OLD_ID"),
                new_id=parse_identifier(new_id, label="NEW_ID"),
                start=parse_start_flag(start),
                dry_run=dry_run,
                rollback_on_failure=rollback,
            )
        except PreflightError as exc:
            _command_error(op, str(exc), rc=exc.exit_code, json_output=json_output)

        orchestrator = RenumberOrchestrator.from_config(config, dry_run=dry_run)
        try:
            result = orchestrator.run(request, op)
        except PreflightError as exc:
            _command_error(op, str(exc), rc=exc.exit_code, json_output=json_output)
        except RenumberAborted as exc:
            partial = exc.result
            if json_output:
                payload = partial.to_dict()
                payload["error"] = str(exc)
                console.print_json(data=payload)
                err_console.print(f"[red]Renumber aborted: {exc}[/red]")
            else:
                _render_recovery(partial)
                console.print(f"[red]Renumber aborted: {exc}[/red]")
            backups = [partial.backup_dir] if partial.backup_dir else None
            op.error(
                f"Renumber aborted: {exc}",
                rc=ExitCode.PROVIDER,
                changed=len(partial.records),
                backups=backups,
                context={"state": partial.state.value},
            )
            raise typer.Exit(code=ExitCode.PROVIDER) from exc

        if json_output:
            console.print_json(data=result.to_dict())
        elif result.dry_run:
            _render_plan(result)
        else:
            _render_summary(result)

        if result.dry_run:
            planned = len(result.plan.renames) if result.plan else 0
            op.success(
                "Dry run complete.",
                changed=0,
                context={"planned_renames": planned},
            )
            return

        backups = [result.backup_dir] if result.backup_dir else None
        if result.restart is RestartStatus.FAILED:
            if not json_output:
                console.print(
                    f"[yellow]Renumbered, but {result.kind.label} {result.new_id} "
                    f"did not start: {result.restart_detail}[/yellow]"
                )
            op.warning(
                "Renumbered; restart failed.",
                warnings=[result.restart_detail],
                changed=len(result.records) + 1,
                backups=backups,
            )
            return

        op.success(
            f"Renumbered {result.old_id} to {result.new_id}.",
            changed=len(result.records) + 1,
            backups=backups,
        )


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
