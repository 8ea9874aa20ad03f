"""Command-line interface for migrapack.

Commands:
- run: execute a staged migration from a patch manifest
- plan: show the stages a manifest would be split into
- status: show resumable checkpoint and last run summary
- clear: delete the checkpoint to force a clean run

Exit codes: 0 success, 1 failed run or error, 2 another pipeline holds the lock.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Sequence

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .checkpoint import CheckpointStore
from .config import get_state_dir
from .config_loader import load_migration_config
from .context import new_run_id
from .exceptions import MigrapackError, ProjectLockedError, RollbackFailure
from .logging_config import LOG_FORMATS, configure_logging
from .models import Decision, Stage, StageResult
from .project_lock import ProjectLock
from .report import MigrationReport, load_summary
from .runner import STEPS, MigrationRunner, RunOptions, plan_manifest

logger = logging.getLogger(__name__)

EXIT_FAILURE = 1
EXIT_LOCKED = 2

_DECISION_STYLE = {
    Decision.CONTINUE: "green",
    Decision.RETRY: "yellow",
    Decision.SKIP: "yellow",
    Decision.ABORT: "red",
}

project_argument = click.argument(
    "project",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
)


@click.group(name="migrapack")
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
@click.option(
    "--log-format",
    type=click.Choice(list(LOG_FORMATS)),
    default="text",
    show_default=True,
    help="Console and run log format; json emits one record per line with the run id",
)
@click.pass_context
def cli(ctx: click.Context, log_level: Optional[str], log_format: str):
    """Staged migration execution engine."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level
    ctx.obj["log_format"] = log_format


@cli.command(name="run")
@project_argument
@click.option(
    "--manifest",
    "manifest_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Patch manifest JSON",
)
@click.option("--resume", is_flag=True, help="Continue from the saved checkpoint")
@click.option("--retry-failed", is_flag=True, help="Reprocess files already recorded")
@click.option("--from-step", type=click.Choice(list(STEPS)), default=None, help="Step to start at")
@click.option("--clear-checkpoint", is_flag=True, help="Delete the checkpoint before running")
@click.option("--dry-run", is_flag=True, help="No file writes and no git calls")
@click.option("--auto-apply", is_flag=True, help="Commit on success, roll back on failure")
@click.option("--skip-tests", is_flag=True, help="Skip test runs")
@click.option(
    "--only-file",
    "only_files",
    multiple=True,
    help="Only process files containing this fragment (can be specified multiple times)",
)
@click.option("--skip-stage", "skip_stages", multiple=True, type=int, help="Stage id to skip")
@click.option("--resume-from-stage", type=int, default=None, help="First stage id to execute")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Migration config YAML (defaults to <project>/migrapack.yaml)",
)
@click.pass_context
def run_migration(
    ctx: click.Context,
    project: Path,
    manifest_path: Path,
    resume: bool,
    retry_failed: bool,
    from_step: Optional[str],
    clear_checkpoint: bool,
    dry_run: bool,
    auto_apply: bool,
    skip_tests: bool,
    only_files: Sequence[str],
    skip_stages: Sequence[int],
    resume_from_stage: Optional[int],
    config_path: Optional[Path],
):
    """Run a staged migration for PROJECT."""
    console = Console()
    project = project.resolve()
    run_id = new_run_id()
    configure_logging(
        run_id=run_id,
        project_path=project,
        log_level=ctx.obj.get("log_level"),
        log_to_file=not dry_run,
        log_format=ctx.obj.get("log_format", "text"),
    )

    try:
        config = load_migration_config(project, config_path)
    except ValueError as e:
        click.echo(f"Error: invalid migration config: {e}", err=True)
        ctx.exit(EXIT_FAILURE)

    options = RunOptions(
        resume=resume,
        retry_failed=retry_failed,
        from_step=from_step,
        clear_checkpoint=clear_checkpoint,
        dry_run=dry_run,
        auto_apply=auto_apply,
        skip_tests=skip_tests,
        only_files=list(only_files),
        skip_stages=list(skip_stages),
        resume_from_stage=resume_from_stage,
        run_id=run_id,
    )
    runner = MigrationRunner(project, manifest_path, options=options, config=config)

    try:
        if dry_run:
            report = runner.run()
        else:
            with ProjectLock(get_state_dir(project)):
                report = runner.run()
    except ProjectLockedError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_LOCKED)
    except RollbackFailure as e:
        click.echo(f"FATAL: rollback failed, working tree state is unknown: {e}", err=True)
        ctx.exit(EXIT_FAILURE)
    except MigrapackError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_FAILURE)

    _print_report(console, report)
    if not report.success:
        ctx.exit(EXIT_FAILURE)


@cli.command(name="plan")
@project_argument
@click.option(
    "--manifest",
    "manifest_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
)
@click.pass_context
def plan_command(ctx: click.Context, project: Path, manifest_path: Path, config_path: Optional[Path]):
    """Show the stages a manifest would be split into."""
    console = Console()
    try:
        config = load_migration_config(project, config_path)
        stages, warnings = plan_manifest(manifest_path, config)
    except (MigrapackError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_FAILURE)

    console.print(_stage_table(stages))
    for warning in warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")


@cli.command(name="status")
@project_argument
def status_command(project: Path):
    """Show resumable checkpoint and last run summary."""
    console = Console()
    store = CheckpointStore(project.resolve())
    analysis = store.analyze_resumability()

    if analysis.can_resume:
        checkpoint = store.load()
        console.print(Panel(store.render_resume_report(checkpoint), title="Checkpoint"))
        console.print(f"Elapsed since last save: {analysis.time_elapsed}")
        for rec in analysis.recommendations:
            console.print(f"  - {rec}")
    else:
        console.print("[dim]No checkpoint found[/dim]")

    summary = load_summary(get_state_dir(project.resolve()) / "results")
    if summary:
        table = Table(title="Last run")
        table.add_column("Key")
        table.add_column("Value")
        for key, value in summary.items():
            table.add_row(key, str(value))
        console.print(table)


@cli.command(name="clear")
@project_argument
def clear_command(project: Path):
    """Delete the checkpoint to force a clean run."""
    store = CheckpointStore(project.resolve())
    if store.clear():
        click.echo("Checkpoint cleared")
    else:
        click.echo("No checkpoint to clear")


def _stage_table(stages: Sequence[Stage]) -> Table:
    table = Table(title="Migration plan")
    table.add_column("Stage", justify="right")
    table.add_column("Name")
    table.add_column("Priority")
    table.add_column("Rollback")
    table.add_column("Patches", justify="right")
    table.add_column("Depends on")
    for stage in stages:
        table.add_row(
            str(stage.id),
            stage.name,
            stage.priority.value,
            stage.rollback_strategy.value,
            str(len(stage.patches)),
            ", ".join(str(d) for d in stage.depends_on_stage_ids) or "-",
        )
    return table


def _results_table(results: Sequence[StageResult]) -> Table:
    table = Table(title="Stage results")
    table.add_column("Stage", justify="right")
    table.add_column("Name")
    table.add_column("Attempt", justify="right")
    table.add_column("Decision")
    table.add_column("Applied", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Build")
    table.add_column("Tests")
    for result in results:
        style = _DECISION_STYLE.get(result.decision, "white")
        tests = "-"
        if result.test_result is not None:
            tests = "ok" if result.test_result.success else "failed"
        table.add_row(
            str(result.stage.id),
            result.stage.name + (" (restored)" if result.restored else ""),
            str(result.attempt),
            f"[{style}]{result.decision.value}[/{style}]",
            str(len(result.applied_patches)),
            str(len(result.failed_patches)),
            "ok" if result.build_result.success else "failed",
            tests,
        )
    return table


def _print_report(console: Console, report: MigrationReport) -> None:
    if report.stage_results:
        console.print(_results_table(report.stage_results))

    s = report.summary
    status = "[green]SUCCESS[/green]" if report.success else "[red]FAILED[/red]"
    lines = [
        f"Run: {report.run_id}" + (" (dry run)" if report.dry_run else ""),
        f"Stages: {s.successful_stages} continued, {s.skipped_stages} skipped, "
        f"{s.failed_stages} aborted of {s.total_stages}",
        f"Patches: {s.applied_patches} applied, {s.failed_patches} failed of {s.total_patches}",
        f"Final build: {'ok' if s.final_build_success else 'failed'}",
    ]
    if s.final_test_success is not None:
        lines.append(f"Final tests: {'ok' if s.final_test_success else 'failed'}")
    if s.coverage_percent is not None:
        lines.append(f"Coverage: {s.coverage_percent}%")
    if report.rollback.rolled_back:
        lines.append(f"Rolled back to: {report.rollback.snapshot_id}")
    if report.commit:
        lines.append(f"Committed: {report.commit}")
    console.print(Panel("\n".join(lines), title=f"Migration {status}"))

    for rec in report.recommendations:
        console.print(f"  - {rec}")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
