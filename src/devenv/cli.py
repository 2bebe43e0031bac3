"""Typer-powered command line interface for ``devenv``.

``devenv install`` runs the six provisioning phases, ``devenv doctor`` verifies
the resulting state without changing anything and ``devenv update`` refreshes
configs, plugins, tools and agents. Every command records one structured
operation in ``operations.log`` (dry runs excepted).
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import click
import typer
from rich.console import Console
from rich.table import Table
from typer.core import TyperGroup

from . import __version__
from .catalog import build_phases
from .config import AppConfig, ConfigError, load_config
from .context import (
    ContextError,
    ProvisionContext,
    RunConfiguration,
    create_context,
    resolve_target_user,
)
from .doctor import (
    PROBE_CATEGORY_VALUES,
    DoctorEngine,
    DoctorReport,
    ProbeResult,
    ProbeStatus,
    collect_probes,
    collect_status_identifiers,
    serialize_report,
)
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .provision import Orchestrator, Phase, PhaseOutcome, PhaseStatus, RunReport, StepResult, StepStatus
from .runner import running_as_superuser
from .updater import ItemStatus, UpdateItem, UpdateScope, Updater

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to devenv's YAML config file.",
)

USER_OPTION = typer.Option(
    None,
    "--user",
    help="Provision on behalf of USER (defaults to the invoking user).",
)

DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Print the planned actions without changing anything.",
)

SKIP_PHASE_OPTION = typer.Option(
    None,
    "--skip-phase",
    metavar="N",
    help="Skip phase N (repeatable). See `devenv phases`.",
)

DOCTOR_VERBOSE_OPTION = typer.Option(
    False,
    "--verbose",
    "-v",
    help="Show versions, locations and timings for every check.",
)

DOCTOR_JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit a JSON doctor report.",
)

_UPDATE_SCOPES_KEY = "devenv.update_scopes"
_SCOPE_BY_PARAM = {
    "all_": UpdateScope.ALL,
    "configs": UpdateScope.CONFIGS,
    "tools": UpdateScope.TOOLS,
    "agents": UpdateScope.AGENTS,
    "plugins": UpdateScope.PLUGINS,
}

_PROBE_STATUS_STYLE = {
    ProbeStatus.OK: "[green]OK[/green]",
    ProbeStatus.WARN: "[yellow]WARN[/yellow]",
    ProbeStatus.FAIL: "[red]FAIL[/red]",
}
_UPDATE_STATUS_STYLE = {
    ItemStatus.OK: "[green]OK[/green]",
    ItemStatus.WARN: "[yellow]WARN[/yellow]",
    ItemStatus.SKIP: "[dim]SKIP[/dim]",
}
_CATEGORY_TITLES = {
    "env": "Environment",
    "base": "Base dependencies",
    "tools": "CLI tools",
    "configs": "Configuration",
    "plugins": "Shell plugins",
    "shell": "Shell",
    "agents": "AI agents",
    "dotfiles": "Private dotfiles",
}


class DevenvGroup(TyperGroup):
    """Command group that reports usage errors with exit code 1."""

    def make_context(
        self,
        info_name: str | None,
        args: list[str],
        parent: click.Context | None = None,
        **extra: Any,
    ) -> click.Context:
        """Build the context, remapping usage errors to exit code 1."""
        try:
            return super().make_context(info_name, args, parent=parent, **extra)
        except click.UsageError as exc:
            exc.exit_code = int(ExitCode.FAILURE)
            raise

    def invoke(self, ctx: click.Context) -> Any:
        """Invoke the subcommand, remapping usage errors to exit code 1."""
        try:
            return super().invoke(ctx)
        except click.UsageError as exc:
            exc.exit_code = int(ExitCode.FAILURE)
            raise


app = typer.Typer(
    cls=DevenvGroup,
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
    help=textwrap.dedent(
        """
        Idempotent provisioning for Debian/Ubuntu developer workstations.

        Installs base packages, CLI tools, shell configuration, Oh My Zsh
        plugins and AI agents; verifies them with `doctor`; keeps them fresh
        with `update`.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass(slots=True)
class CliOptions:
    """Global options captured by the root callback."""

    config_file: Path | None = None


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    context: ProvisionContext
    logger: StructuredLogger

    @property
    def target(self) -> dict[str, object]:
        """Return the structured-log target for this invocation."""
        return {
            "kind": "workstation",
            "user": self.context.user,
            "home": str(self.context.home),
            "arch": self.context.arch.machine,
        }


def _get_options(ctx: typer.Context) -> CliOptions:
    root = ctx.find_root()
    options = root.obj
    if isinstance(options, CliOptions):
        return options
    options = CliOptions()
    root.obj = options
    return options


def _fatal(message: str) -> NoReturn:
    """Report a precondition failure before anything is touched."""
    console.print(f"[red]ERROR[/red] {message}")
    raise typer.Exit(code=int(ExitCode.FAILURE))


def _ensure_unprivileged() -> None:
    if running_as_superuser():
        _fatal(
            "Do not run devenv as root. Run it as your normal user; "
            "privileged commands are elevated with sudo as needed."
        )


def _build_runtime(
    ctx: typer.Context,
    user: str | None = None,
    *,
    dry_run: bool = False,
) -> RuntimeContext:
    options = _get_options(ctx)
    try:
        name, home = resolve_target_user(user)
        config = load_config(options.config_file, home=home)
        context = create_context(config, user=name, home=home)
    except (ContextError, ConfigError) as exc:
        _fatal(str(exc))
    logger = StructuredLogger(config.logs_dir, enabled=not dry_run)
    return RuntimeContext(config=config, context=context, logger=logger)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.FAILURE),
    errors: Sequence[str] | None = None,
    context: dict[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]ERROR[/red] {message}")
    op.error(message, errors=list(errors or [message]), rc=rc, context=context)
    raise typer.Exit(code=rc)


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: dict[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    console.print(f"[yellow]Dry run[/yellow]: {summary}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the devenv version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"devenv {__version__}")
        raise typer.Exit(code=0)

    ctx.obj = CliOptions(config_file=config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ---------------------------------------------------------------------------
# install
# ---------------------------------------------------------------------------


def _print_phase_start(outcome: PhaseOutcome) -> None:
    phase = outcome.phase
    console.print()
    console.print(f"[bold blue]Phase {phase.number}[/bold blue] {phase.name}")


def _print_phase_end(outcome: PhaseOutcome) -> None:
    phase = outcome.phase
    if outcome.status is PhaseStatus.SKIPPED:
        console.print(f"[dim]SKIP[/dim] Phase {phase.number} {phase.name} ({outcome.reason})")
    elif outcome.status is PhaseStatus.FAILED:
        console.print(f"[red]ERROR[/red] Phase {phase.number} {phase.name} failed: {outcome.reason}")


def _print_step(phase: Phase, result: StepResult) -> None:
    resource = result.resource
    if result.status is StepStatus.SKIPPED:
        console.print(f"  [green]OK[/green] {resource.description} (already present)")
    elif result.status is StepStatus.INSTALLED:
        console.print(f"  [green]OK[/green] {resource.description} (installed: {result.strategy})")
    elif result.status is StepStatus.PLANNED:
        console.print(f"  [cyan]PLAN[/cyan] {resource.description}")
        for plan in result.attempts:
            console.print(f"       {plan}")
    else:
        label = "[red]ERROR[/red]" if resource.mandatory else "[yellow]WARN[/yellow]"
        console.print(f"  {label} {resource.description}: {result.reason}")


def _render_run_summary(report: RunReport) -> None:
    installed = report.count(StepStatus.INSTALLED)
    skipped = report.count(StepStatus.SKIPPED)
    failed = report.count(StepStatus.FAILED)
    planned = report.count(StepStatus.PLANNED)
    console.print()
    if report.dry_run:
        console.print(f"Summary: {planned} planned, {skipped} already present")
        return
    console.print(f"Summary: {installed} installed, {skipped} already present, {failed} failed")


@app.command()
def install(
    ctx: typer.Context,
    dry_run: bool = DRY_RUN_OPTION,
    skip_phase: list[int] | None = SKIP_PHASE_OPTION,
    user: str | None = USER_OPTION,
) -> None:
    """Provision the workstation phase by phase."""
    _ensure_unprivileged()
    runtime = _build_runtime(ctx, user, dry_run=dry_run)
    skipped = sorted(set(skip_phase or []))
    with runtime.logger.operation(
        "install",
        args={"dry_run": dry_run, "skip_phase": skipped, "user": user},
        target=runtime.target,
    ) as op:
        phases = build_phases(runtime.context)
        valid = [phase.number for phase in phases]
        invalid = [number for number in skipped if number not in valid]
        if invalid:
            _command_error(
                op,
                f"Invalid --skip-phase value(s): {', '.join(map(str, invalid))}. "
                f"Valid phases are {valid[0]}-{valid[-1]}.",
            )

        run_config = RunConfiguration.from_flags(dry_run=dry_run, skip_phases=skipped, user=user)
        console.print(
            f"[bold]devenv {__version__}[/bold] provisioning "
            f"{runtime.context.user} ({runtime.context.home}, {runtime.context.arch.machine})"
        )
        orchestrator = Orchestrator(
            runtime.context,
            phases,
            run_config,
            on_phase_start=_print_phase_start,
            on_step=_print_step,
            on_phase_end=_print_phase_end,
        )
        report = orchestrator.run()
        for outcome in report.phases:
            op.add_step(
                f"phase-{outcome.phase.number}",
                status=outcome.status.value,
                detail=outcome.reason,
            )
        _render_run_summary(report)
        log_context = {"report": report.to_dict()}

        failed_phase = report.failed_phase
        if failed_phase is not None:
            phase = failed_phase.phase
            _command_error(
                op,
                f"Phase {phase.number} ({phase.name}) failed; aborting.",
                errors=[failed_phase.reason or "mandatory step failed"],
                context=log_context,
            )

        if dry_run:
            _dry_run_complete(op, "no changes were made.", context=log_context)
            return

        warnings = [
            f"{step.resource.id}: {step.reason}"
            for step in report.steps()
            if step.status is StepStatus.FAILED
        ]
        backups = runtime.context.backups
        saved = [str(path) for path in backups.saved] if backups is not None else []
        if saved:
            console.print(f"Backed up {len(saved)} file(s) to {backups.directory}")
        changed = report.count(StepStatus.INSTALLED)
        if warnings:
            console.print("[yellow]Setup complete with warnings.[/yellow]")
            op.warning(
                "Install completed with warnings.",
                warnings=warnings,
                changed=changed,
                backups=saved,
                context=log_context,
            )
            return
        console.print("[green]Setup complete![/green] Start zsh with: exec zsh")
        op.success("Install completed.", changed=changed, backups=saved, context=log_context)


# ---------------------------------------------------------------------------
# doctor
# ---------------------------------------------------------------------------


def _render_doctor_report(report: DoctorReport, *, verbose: bool) -> None:
    """Render a doctor report grouped by category."""
    grouped: dict[str, list[ProbeResult]] = {}
    for result in report.results:
        grouped.setdefault(result.category, []).append(result)

    for category in PROBE_CATEGORY_VALUES:
        results = grouped.get(category)
        if not results:
            continue
        console.print()
        console.print(f"[bold]{_CATEGORY_TITLES.get(category, category)}[/bold]")
        for result in results:
            console.print(f"  {_PROBE_STATUS_STYLE[result.status]} {result.message}")
            if result.remediation and result.status is not ProbeStatus.OK:
                console.print(f"       fix: {result.remediation}")
            if result.warnings:
                console.print(f"       notes: {', '.join(result.warnings)}")
            if verbose and result.data:
                for key in ("version", "location", "pin", "state"):
                    if key in result.data:
                        console.print(f"       {key}: {result.data[key]}")
            if verbose and result.duration_ms is not None:
                console.print(f"       duration: {result.duration_ms} ms")

    totals = report.summary.totals
    console.print()
    console.print(
        f"Summary: {totals.get(ProbeStatus.OK, 0)} OK, "
        f"{totals.get(ProbeStatus.WARN, 0)} WARN, "
        f"{totals.get(ProbeStatus.FAIL, 0)} FAIL"
    )


@app.command()
def doctor(
    ctx: typer.Context,
    verbose: bool = DOCTOR_VERBOSE_OPTION,
    json_output: bool = DOCTOR_JSON_OPTION,
    user: str | None = USER_OPTION,
) -> None:
    """Verify the provisioned state without changing anything."""
    runtime = _build_runtime(ctx, user)
    with runtime.logger.operation(
        "doctor",
        args={"verbose": verbose, "json": json_output, "user": user},
        target=runtime.target,
    ) as op:
        probes = collect_probes(runtime.context)
        report = DoctorEngine(runtime.context).run(probes, metadata={"verbose": verbose})
        report_payload = serialize_report(report)

        if json_output:
            typer.echo(json.dumps(report_payload, indent=2))
        else:
            _render_doctor_report(report, verbose=verbose)

        warning_ids = collect_status_identifiers(report.results, ProbeStatus.WARN)
        error_ids = collect_status_identifiers(report.results, ProbeStatus.FAIL)
        log_context = {"report": report_payload}
        summary = report.summary

        if summary.exit_code == 0:
            if summary.status is ProbeStatus.WARN:
                if not json_output:
                    console.print("[yellow]Doctor completed with warnings.[/yellow]")
                op.warning(
                    "Doctor completed with warnings.",
                    warnings=warning_ids or None,
                    context=log_context,
                )
            else:
                if not json_output:
                    console.print("[green]All checks passed.[/green]")
                op.success("Doctor run completed successfully.", context=log_context)
            return

        if not json_output:
            console.print("[red]Doctor found missing mandatory resources.[/red]")
        op.error(
            "Doctor found missing mandatory resources.",
            rc=summary.exit_code,
            errors=error_ids or None,
            warnings=warning_ids or None,
            context=log_context,
        )
        raise typer.Exit(code=summary.exit_code)


# ---------------------------------------------------------------------------
# update
# ---------------------------------------------------------------------------


def _record_scope(ctx: typer.Context, param: typer.CallbackParam, value: bool) -> bool:
    # Callbacks fire in command-line order, which makes "last flag wins" observable.
    if value and param.name:
        ctx.meta.setdefault(_UPDATE_SCOPES_KEY, []).append(param.name)
    return value


def resolve_update_scope(selected: Sequence[str]) -> UpdateScope:
    """Return the effective scope: the last scope flag given, ``all`` by default."""
    scopes = [_SCOPE_BY_PARAM[name] for name in selected if name in _SCOPE_BY_PARAM]
    return scopes[-1] if scopes else UpdateScope.ALL


def _print_update_item(item: UpdateItem) -> None:
    console.print(f"  {_UPDATE_STATUS_STYLE[item.status]} {item.section}/{item.id}: {item.message}")


@app.command()
def update(
    ctx: typer.Context,
    all_: bool = typer.Option(
        False, "--all", callback=_record_scope, help="Update everything (default)."
    ),
    configs: bool = typer.Option(
        False, "--configs", callback=_record_scope, help="Update configs only."
    ),
    tools: bool = typer.Option(
        False, "--tools", callback=_record_scope, help="Update CLI tools only."
    ),
    agents: bool = typer.Option(
        False, "--agents", callback=_record_scope, help="Update AI agents only."
    ),
    plugins: bool = typer.Option(
        False, "--plugins", callback=_record_scope, help="Update shell plugins only."
    ),
    user: str | None = USER_OPTION,
) -> None:
    """Refresh the checkout, configs, plugins, tools and agents."""
    _ensure_unprivileged()
    scope = resolve_update_scope(ctx.meta.get(_UPDATE_SCOPES_KEY, []))
    runtime = _build_runtime(ctx, user)
    with runtime.logger.operation(
        "update",
        args={"scope": scope.value, "user": user},
        target=runtime.target,
    ) as op:
        console.print(f"[bold]devenv update[/bold] (scope: {scope.value})")
        updater = Updater(runtime.context, build_phases(runtime.context), on_item=_print_update_item)
        report = updater.run(scope)
        for item in report.items:
            op.add_step(f"{item.section}:{item.id}", status=item.status.value, detail=item.message)

        backups = runtime.context.backups
        saved = [str(path) for path in backups.saved] if backups is not None else []
        if report.backup_dir is not None:
            console.print(f"Backed up existing configs to {report.backup_dir}")
        changed = sum(1 for item in report.items if item.status is ItemStatus.OK)
        warnings = [f"{item.section}:{item.id}: {item.message}" for item in report.warnings]
        log_context = {"report": report.to_dict()}
        if warnings:
            console.print("[yellow]Update complete with warnings.[/yellow]")
            op.warning(
                "Update completed with warnings.",
                warnings=warnings,
                changed=changed,
                backups=saved,
                context=log_context,
            )
            return
        console.print("[green]Update complete![/green] Restart your shell: exec zsh")
        op.success("Update completed.", changed=changed, backups=saved, context=log_context)


# ---------------------------------------------------------------------------
# phases / config
# ---------------------------------------------------------------------------


@app.command("phases")
def list_phases(ctx: typer.Context) -> None:
    """List provisioning phases (numbers accepted by --skip-phase)."""
    runtime = _build_runtime(ctx)
    with runtime.logger.operation(
        "phases",
        args={},
        target={"kind": "meta", "scope": "phases"},
    ) as op:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Phase", style="bold")
        table.add_column("Name")
        table.add_column("Resources")
        table.add_column("Mandatory")
        for phase in build_phases(runtime.context):
            mandatory = [resource.id for resource in phase.resources if resource.mandatory]
            table.add_row(
                str(phase.number),
                phase.name + (" (interactive)" if phase.confirm else ""),
                ", ".join(resource.id for resource in phase.resources),
                ", ".join(mandatory) or "-",
            )
        console.print(table)
        op.success("Listed phases.", changed=0)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _build_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            typer.echo(json.dumps(data, indent=2))
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main", "resolve_update_scope"]
