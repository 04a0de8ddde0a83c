"""
Task orchestrator for snapcheck.

Drives each task definition through
discovered → plugins loaded → created → running → verified → stopped → removed.
A failure aborts only the task it occurs in; the remaining tasks still run.
"""

import logging
import os
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from snapcheck.api import SnapApiClient
from snapcheck.commands import CommandResult, CommandRunner, SnapCli, task_has_state
from snapcheck.config import HarnessConfig
from snapcheck.dependencies import DependencySet, PluginDependency
from snapcheck.errors import (
    CommandError,
    ConfigError,
    PollTimeoutError,
    SnapcheckError,
    VerificationError,
)
from snapcheck.resolver import PluginResolver
from snapcheck.retry import poll
from snapcheck.taskspec import declared_metrics, discover_tasks, load_task

logger = logging.getLogger(__name__)

RELEASE_VERSION = re.compile(r"^\d+\.\d+\.\d+$")


class TaskState(str, Enum):
    DISCOVERED = "discovered"
    PLUGINS_LOADED = "plugins_loaded"
    CREATED = "created"
    RUNNING = "running"
    VERIFIED = "verified"
    STOPPED = "stopped"
    REMOVED = "removed"


@dataclass
class TaskRun:
    """A task submitted to the daemon."""

    task_id: str
    task_file: Path
    definition: Dict[str, Any]


@dataclass
class TaskOutcome:
    """Result of driving one task definition."""

    task_file: Path
    state: TaskState = TaskState.DISCOVERED
    task_id: Optional[str] = None
    dependencies: Set[PluginDependency] = field(default_factory=set)
    error: Optional[SnapcheckError] = None
    cleanup_errors: List[SnapcheckError] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.error is None and self.state == TaskState.REMOVED

    @property
    def name(self) -> str:
        return self.task_file.name

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "task_file": str(self.task_file),
            "state": self.state.value,
            "task_id": self.task_id,
            "success": self.success,
            "dependencies": sorted(str(d) for d in self.dependencies),
            "error": str(self.error) if self.error else None,
            "error_type": type(self.error).__name__ if self.error else None,
            "cleanup_errors": [str(e) for e in self.cleanup_errors],
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class RunReport:
    """Outcome of a whole harness run."""

    dependencies: DependencySet
    outcomes: List[TaskOutcome] = field(default_factory=list)
    preflight_errors: List[SnapcheckError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.preflight_errors and all(o.success for o in self.outcomes)

    @property
    def failed(self) -> List[TaskOutcome]:
        return [o for o in self.outcomes if not o.success]


def verify_metrics(declared: Iterable[str], observed: Iterable[str]) -> None:
    """
    Check that every declared namespace is among the observed ones.

    Raises:
        VerificationError: Naming the declared namespaces that are missing
    """
    observed_set = set(observed)
    missing = [m for m in declared if m not in observed_set]
    if missing:
        raise VerificationError("Task metrics do not match the task definition", missing=missing)


class Orchestrator:
    """Runs the task lifecycle against a live daemon."""

    def __init__(
        self,
        config: HarnessConfig,
        *,
        cli: Optional[SnapCli] = None,
        api: Optional[SnapApiClient] = None,
        resolver: Optional[PluginResolver] = None,
        sleep: Callable[[float], None] = time.sleep,
        pause: Optional[Callable[[TaskRun], None]] = None,
    ):
        self.config = config
        self.policy = config.retry_policy
        self.cli = cli or SnapCli(
            runner=CommandRunner(config.command_prefix, config.command_timeout_seconds),
            snaptel=config.snaptel,
            snapteld=config.snapteld,
        )
        self.api = api or SnapApiClient(config.api_url, policy=self.policy)
        self.resolver = resolver or PluginResolver(
            self.cli,
            build_dir=config.build_dir,
            plugins_dir=config.plugins_dir,
            version=config.plugin_version,
            base_url=config.plugin_base_url,
            platform=config.platform,
        )
        self.sleep = sleep
        self.pause = pause

    def discover(self) -> List[Path]:
        return discover_tasks(self.config.tasks_dir, self.config.task_selector)

    def collect_dependencies(self, task_files: Iterable[Path]) -> DependencySet:
        """Union of the dependencies of every readable task file."""
        dependencies = DependencySet()
        for task_file in task_files:
            try:
                dependencies.add_task(load_task(task_file))
            except SnapcheckError as e:
                logger.error(f"Skipping {task_file.name}: {e}", extra={"event": "task_unreadable", "task": task_file.name})
        return dependencies

    def check_binaries(self) -> List[SnapcheckError]:
        """
        Check that snaptel/snapteld configured as paths are executable files.

        Bare command names are left to the PATH lookup of the version checks.
        With a command prefix the check runs where the daemon runs.
        """
        errors: List[SnapcheckError] = []
        for binary in (self.cli.snaptel, self.cli.snapteld):
            if "/" not in binary:
                continue
            if self.config.command_prefix:
                executable = self.cli.runner.run(["test", "-f", binary, "-a", "-x", binary]).ok
            else:
                executable = os.path.isfile(binary) and os.access(binary, os.X_OK)
            if not executable:
                errors.append(ConfigError(f"{binary} is not an executable file"))
        return errors

    def preflight(self) -> List[SnapcheckError]:
        """Check that the CLI and daemon binaries respond (and match SNAP_VERSION)."""
        errors: List[SnapcheckError] = self.check_binaries()

        ctl = self.cli.version(self.policy)
        if not ctl.ok:
            errors.append(PollTimeoutError("snaptel --version never succeeded", last_result=ctl))

        daemon = self.cli.daemon_version(self.policy)
        if not daemon.ok:
            errors.append(PollTimeoutError("snapteld --version never succeeded", last_result=daemon))
        elif self.config.snap_version and RELEASE_VERSION.match(self.config.snap_version):
            if self.config.snap_version not in daemon.stdout:
                errors.append(CommandError(f"snapteld is not version {self.config.snap_version}", daemon))

        for error in errors:
            logger.error(str(error), extra={"event": "preflight_failed"})
        return errors

    def run(self, task_files: Optional[List[Path]] = None, preflight: bool = True) -> RunReport:
        """
        Drive every task file through its lifecycle.

        Args:
            task_files: Task files to run (defaults to discovery in the tasks dir)
            preflight: Check CLI/daemon versions first

        Returns:
            RunReport with one outcome per task file
        """
        task_files = self.discover() if task_files is None else list(task_files)
        report = RunReport(dependencies=DependencySet())

        logger.info(
            f"Running {len(task_files)} task(s)",
            extra={"event": "run_started", "metadata": {"tasks": [t.name for t in task_files]}},
        )

        if preflight:
            report.preflight_errors.extend(self.preflight())

        for task_file in task_files:
            outcome = self.run_task(task_file, report.dependencies)
            report.outcomes.append(outcome)

        logger.info(
            f"Run finished: {len(report.outcomes) - len(report.failed)} passed, {len(report.failed)} failed",
            extra={"event": "run_completed", "metadata": {"success": report.success}},
        )
        return report

    def run_task(self, task_file: Path, dependencies: DependencySet) -> TaskOutcome:
        """Run one task definition; errors are recorded in the outcome, not raised."""
        outcome = TaskOutcome(task_file=Path(task_file))
        extra = {"task": outcome.name}
        started = time.monotonic()
        run: Optional[TaskRun] = None

        try:
            definition = load_task(outcome.task_file)
            outcome.dependencies = dependencies.add_task(definition)

            self.load_plugins(outcome.dependencies, dependencies)
            outcome.state = TaskState.PLUGINS_LOADED

            run = self.create(outcome.task_file, definition)
            outcome.task_id = run.task_id
            outcome.state = TaskState.CREATED

            self.wait_until_running(run)
            outcome.state = TaskState.RUNNING

            if self.pause is not None:
                self.pause(run)

            self.verify(run)
            outcome.state = TaskState.VERIFIED

        except SnapcheckError as e:
            outcome.error = e
            logger.error(
                f"Task {outcome.name} failed in state {outcome.state.value}: {e}",
                extra={**extra, "event": "task_failed", "metadata": {"error_type": type(e).__name__}},
            )

        if run is not None:
            self.teardown(run, outcome)

        outcome.duration_seconds = time.monotonic() - started
        logger.info(
            f"Task {outcome.name} finished in state {outcome.state.value}",
            extra={**extra, "event": "task_completed", "metadata": outcome.to_dict()},
        )
        return outcome

    def load_plugins(self, task_dependencies: Set[PluginDependency], dependencies: DependencySet) -> None:
        """
        Load the task's dependencies that are not loaded yet.

        Raises:
            ResolutionError: If an artifact cannot be fetched
            CommandError: If the daemon rejects a plugin
            PollTimeoutError: If the plugin list never shows a loaded plugin
        """
        for dependency in sorted(task_dependencies):
            if dependencies.is_loaded(dependency):
                continue
            status = self.resolver.load(dependency, dependencies)
            if status != 0:
                raise CommandError(f"plugin load failed for {dependency} (exit status {status})")

        if not task_dependencies:
            return

        names = sorted({d.name for d in task_dependencies})
        listing = poll(
            lambda: self.cli.runner.run([self.cli.snaptel, "plugin", "list"]),
            lambda r: r.succeeded and all(n in r.stdout for n in names),
            self.policy,
            description="plugin list",
        )
        if not listing.ok:
            raise CommandError("plugin list failed", listing)
        missing = [n for n in names if n not in listing.stdout]
        if missing:
            raise PollTimeoutError(f"plugin list never showed {', '.join(missing)}", last_result=listing)

    def create(self, task_file: Path, definition: Dict[str, Any]) -> TaskRun:
        """Submit a task; raises CommandError when no identifier comes back."""
        task_id = self.cli.create_task(self.config.daemon_task_path(task_file))
        logger.info(
            f"Created task {task_id} from {task_file.name}",
            extra={"task": task_file.name, "event": "task_created", "metadata": {"task_id": task_id}},
        )
        return TaskRun(task_id=task_id, task_file=task_file, definition=definition)

    def wait_until_running(self, run: TaskRun) -> CommandResult:
        # Short pause so a task that fails right after creation is not reported as running
        if self.config.task_start_pause_seconds:
            self.sleep(self.config.task_start_pause_seconds)

        result = self.cli.wait_for_task_state(run.task_id, "Running", self.policy)
        if not result.ok:
            raise CommandError(f"task list failed while waiting for {run.task_id}", result)
        if not task_has_state(result.stdout, run.task_id, "Running"):
            raise PollTimeoutError(f"Task {run.task_id} never reached Running", last_result=result)
        return result

    def verify(self, run: TaskRun) -> List[str]:
        """
        Compare the daemon's view of the task against its definition.

        Returns:
            Observed metric namespaces

        Raises:
            ApiError: If the task cannot be found or its detail is malformed
            VerificationError: If declared metrics are missing
        """
        task = self.api.find_task(run.task_id)
        observed = self.api.task_metrics(task)

        declared = declared_metrics(run.definition)
        verify_metrics(declared, observed)

        logger.info(
            f"Task {run.task_id} collects all {len(declared)} declared metric(s)",
            extra={"task": run.task_file.name, "event": "task_verified", "metadata": {"observed": observed}},
        )
        return observed

    def teardown(self, run: TaskRun, outcome: TaskOutcome) -> None:
        """Stop then remove the task; the first failure is kept in the outcome."""
        steps = (
            (TaskState.STOPPED, self.cli.stop_task),
            (TaskState.REMOVED, self.cli.remove_task),
        )
        for state, step in steps:
            try:
                step(run.task_id)
                if outcome.error is None:
                    outcome.state = state
            except CommandError as e:
                if outcome.error is None:
                    outcome.error = e
                else:
                    outcome.cleanup_errors.append(e)
                logger.error(
                    f"Cleanup of task {run.task_id} failed: {e}",
                    extra={"task": outcome.name, "event": "task_cleanup_failed"},
                )

    def close(self) -> None:
        self.api.close()

    def __enter__(self) -> "Orchestrator":
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
