"""
CLI interface for snapcheck.

Provides commands: run, deps, load, tasks.
"""

import sys
from pathlib import Path

import click
from rich.table import Table

from snapcheck import __version__
from snapcheck.config import HarnessConfig, load_config
from snapcheck.errors import ConfigError
from snapcheck.orchestrator import Orchestrator, RunReport, TaskRun
from snapcheck.utils import (
    console,
    format_duration,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
)


def _load(ctx: click.Context) -> HarnessConfig:
    try:
        config = load_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        print_error(f"Configuration invalid: {e}")
        raise SystemExit(1)

    task = ctx.obj.get("task")
    if task:
        config.task_selector = task
    interactive = ctx.obj.get("interactive")
    if interactive is not None:
        config.interactive = interactive

    verbose = ctx.obj.get("verbose", False)
    setup_logging(
        config.get_log_file_path(),
        "DEBUG" if verbose else config.log_level,
        config.log_format,
        config.console,
    )
    return config


def _interactive_pause(run: TaskRun) -> None:
    print_info(
        f"Task {run.task_id} is running. Inspect the daemon, then press any key to verify and clean up."
    )
    click.pause(info="")


def _print_report(report: RunReport) -> None:
    table = Table(title="Task results")
    table.add_column("Task")
    table.add_column("ID")
    table.add_column("State")
    table.add_column("Result")
    table.add_column("Time", justify="right")

    for outcome in report.outcomes:
        result = "[green]pass[/green]" if outcome.success else f"[red]{type(outcome.error).__name__ if outcome.error else 'fail'}[/red]"
        table.add_row(
            outcome.name,
            outcome.task_id or "-",
            outcome.state.value,
            result,
            format_duration(outcome.duration_seconds),
        )
    console.print(table)

    for error in report.preflight_errors:
        print_error(f"preflight: {error}")
    for outcome in report.failed:
        print_error(f"{outcome.name}: {outcome.error}")
        for cleanup_error in outcome.cleanup_errors:
            print_warning(f"{outcome.name} cleanup: {cleanup_error}")


@click.group()
@click.version_option(version=__version__, prog_name="snapcheck")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Harness configuration file (default: $SNAPCHECK_CONFIG)",
)
@click.option("--task", help="Task file name or glob (default: $TASK, else all tasks)")
@click.option("--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, config_path, task, verbose):
    """
    snapcheck - black-box test harness for the Snap telemetry daemon.

    Loads the plugins that example tasks need, runs each task and checks
    that the daemon collects what the task declares.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["task"] = task
    ctx.obj["verbose"] = verbose


@main.command()
@click.option(
    "--interactive/--no-interactive",
    default=None,
    help="Pause before verifying each task (default: $DEMO)",
)
@click.option("--skip-preflight", is_flag=True, help="Skip snaptel/snapteld version checks")
@click.pass_context
def run(ctx, interactive, skip_preflight):
    """
    Run every task through create, verify, stop and remove.

    Examples:

      # Run all example tasks
      snapcheck run

      # Run a single task
      snapcheck --task task-psutil.yaml run
    """
    ctx.obj["interactive"] = interactive
    config = _load(ctx)

    with Orchestrator(config, pause=_interactive_pause if config.interactive else None) as orchestrator:
        task_files = orchestrator.discover()
        if not task_files:
            print_error(f"No task files found in {config.tasks_dir}")
            raise SystemExit(1)

        print_banner(f"snapcheck {__version__}: {len(task_files)} task(s)")
        report = orchestrator.run(task_files, preflight=not skip_preflight)

    _print_report(report)
    if report.success:
        print_success(f"All {len(report.outcomes)} task(s) passed")
        sys.exit(0)
    print_error(f"{len(report.failed)} of {len(report.outcomes)} task(s) failed")
    sys.exit(1)


@main.command()
@click.pass_context
def deps(ctx):
    """Show the plugins the selected tasks need and where each comes from."""
    config = _load(ctx)

    with Orchestrator(config) as orchestrator:
        dependencies = orchestrator.collect_dependencies(orchestrator.discover())

        table = Table(title="Plugin dependencies")
        table.add_column("Kind")
        table.add_column("Name")
        table.add_column("Source")
        for dependency in dependencies:
            source = orchestrator.resolver.resolve(dependency)
            table.add_row(dependency.kind, dependency.name, str(source.local_path or source.url))
        console.print(table)

    if not dependencies:
        print_warning("No plugin dependencies found")


@main.command()
@click.pass_context
def load(ctx):
    """Load every plugin the selected tasks need."""
    config = _load(ctx)

    with Orchestrator(config) as orchestrator:
        dependencies = orchestrator.collect_dependencies(orchestrator.discover())
        results = orchestrator.resolver.load_all(dependencies)

    failed = 0
    for dependency, status in results.items():
        if status == 0:
            print_success(f"{dependency}")
        else:
            failed += 1
            print_error(f"{dependency}: {status if isinstance(status, Exception) else f'exit status {status}'}")

    if failed:
        sys.exit(1)


@main.command()
@click.pass_context
def tasks(ctx):
    """List the task files that would be run."""
    config = _load(ctx)

    with Orchestrator(config) as orchestrator:
        task_files = orchestrator.discover()

    if not task_files:
        print_warning(f"No task files found in {config.tasks_dir}")
        return
    for task_file in task_files:
        click.echo(task_file.name)


if __name__ == "__main__":
    main()
