"""
Daemon CLI adapter.

Runs snaptel/snapteld through subprocess and wraps each invocation in a
CommandResult. The command prefix lets the same calls run inside the
daemon's container (e.g. ["docker", "compose", "exec", "-T", "snap"]).
"""

import logging
import re
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from snapcheck.errors import CommandError
from snapcheck.retry import DEFAULT_POLICY, RetryPolicy, poll

logger = logging.getLogger(__name__)

# Exit status reported when a command exceeds its timeout (same as coreutils timeout)
TIMEOUT_EXIT_STATUS = 124

TASK_ID_PATTERN = re.compile(r"^ID:\s*(.*?)\s*$")


@dataclass
class CommandResult:
    """Captured outcome of one CLI invocation."""

    args: List[str]
    exit_status: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """Exit status zero."""
        return self.exit_status == 0

    @property
    def succeeded(self) -> bool:
        """Exit status zero and non-empty stdout (the polling success condition)."""
        return self.exit_status == 0 and self.stdout != ""

    def __str__(self) -> str:
        return f"{shlex.join(self.args)} -> {self.exit_status}"


class CommandRunner:
    """Executes commands with subprocess, optionally behind a prefix."""

    def __init__(
        self,
        prefix: Optional[Sequence[str]] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.prefix = list(prefix or [])
        self.timeout_seconds = timeout_seconds

    def run(self, args: Sequence[str]) -> CommandResult:
        """Run a command to completion and capture its output."""
        command = self.prefix + [str(a) for a in args]
        logger.debug(f"Executing: {shlex.join(command)}")

        try:
            proc = subprocess.run(
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning(f"Command timed out after {self.timeout_seconds}s: {shlex.join(command)}")
            return CommandResult(
                args=list(args),
                exit_status=TIMEOUT_EXIT_STATUS,
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr),
            )
        except FileNotFoundError as e:
            # Missing executable behaves like a failing command so polling can continue
            return CommandResult(args=list(args), exit_status=127, stderr=str(e))

        result = CommandResult(
            args=list(args),
            exit_status=proc.returncode,
            stdout=proc.stdout,
            stderr=proc.stderr,
        )
        if result.stderr:
            logger.debug(f"stderr: {result.stderr.strip()}")
        if result.stdout:
            logger.debug(f"stdout: {result.stdout.strip()}")
        return result

    def run_with_retry(self, args: Sequence[str], policy: RetryPolicy = DEFAULT_POLICY) -> CommandResult:
        """Poll a command until it exits 0 with non-empty output, or time runs out."""
        return poll(
            lambda: self.run(args),
            lambda r: r.succeeded,
            policy,
            description=shlex.join(str(a) for a in args),
        )


def _decode(output) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode(errors="replace")
    return output


def parse_task_id(stdout: str) -> Optional[str]:
    """Return the identifier from the first line starting with 'ID:', if any."""
    for line in stdout.splitlines():
        match = TASK_ID_PATTERN.match(line)
        if match:
            return match.group(1) or None
    return None


@dataclass
class SnapCli:
    """Typed wrapper around the snaptel and snapteld binaries."""

    runner: CommandRunner = field(default_factory=CommandRunner)
    snaptel: str = "snaptel"
    snapteld: str = "snapteld"

    def _ctl(self, *args: str) -> List[str]:
        return [self.snaptel, *args]

    def version(self, policy: RetryPolicy = DEFAULT_POLICY) -> CommandResult:
        return self.runner.run_with_retry(self._ctl("--version"), policy)

    def daemon_version(self, policy: RetryPolicy = DEFAULT_POLICY) -> CommandResult:
        return self.runner.run_with_retry([self.snapteld, "--version"], policy)

    def load_plugin(self, path: Path) -> CommandResult:
        return self.runner.run(self._ctl("plugin", "load", str(path)))

    def list_plugins(self, policy: RetryPolicy = DEFAULT_POLICY) -> CommandResult:
        return self.runner.run_with_retry(self._ctl("plugin", "list"), policy)

    def create_task(self, task_file: str) -> str:
        """
        Submit a task file and return the new task's identifier.

        Raises:
            CommandError: On non-zero exit, missing confirmation, or missing ID line
        """
        result = self.runner.run(self._ctl("task", "create", "-t", task_file))
        if not result.ok:
            raise CommandError(f"task create failed for {task_file}", result)
        if "Task created" not in result.stdout:
            raise CommandError(f"task create did not confirm creation for {task_file}", result)

        task_id = parse_task_id(result.stdout)
        if not task_id:
            raise CommandError(f"task create output has no 'ID:' line for {task_file}", result)
        return task_id

    def list_tasks(self, policy: RetryPolicy = DEFAULT_POLICY) -> CommandResult:
        return self.runner.run_with_retry(self._ctl("task", "list"), policy)

    def wait_for_task_state(
        self,
        task_id: str,
        state: str = "Running",
        policy: RetryPolicy = DEFAULT_POLICY,
    ) -> CommandResult:
        """Poll 'task list' until the line for task_id mentions state."""

        def in_state(result: CommandResult) -> bool:
            return result.succeeded and task_has_state(result.stdout, task_id, state)

        return poll(
            lambda: self.runner.run(self._ctl("task", "list")),
            in_state,
            policy,
            description=f"task {task_id} {state}",
        )

    def stop_task(self, task_id: str) -> CommandResult:
        return self._expect(self._ctl("task", "stop", task_id), "Task stopped")

    def remove_task(self, task_id: str) -> CommandResult:
        return self._expect(self._ctl("task", "remove", task_id), "Task removed")

    def _expect(self, args: List[str], confirmation: str) -> CommandResult:
        result = self.runner.run(args)
        if not result.ok or confirmation not in result.stdout:
            raise CommandError(f"expected '{confirmation}' from {shlex.join(args)}", result)
        return result


def task_has_state(stdout: str, task_id: str, state: str) -> bool:
    """Whether the task list line for task_id mentions state."""
    lines = [line for line in stdout.splitlines() if task_id in line]
    if not lines:
        # Listing does not show the id; accept the state anywhere in the output
        lines = stdout.splitlines()
    return any(state in line for line in lines)

