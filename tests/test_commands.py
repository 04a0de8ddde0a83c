"""Tests for the daemon CLI adapter."""

import subprocess
import sys
from unittest.mock import MagicMock, patch

import pytest

from snapcheck.commands import (
    TIMEOUT_EXIT_STATUS,
    CommandResult,
    CommandRunner,
    SnapCli,
    parse_task_id,
)
from snapcheck.errors import CommandError
from snapcheck.retry import RetryPolicy


class TestCommandResult:
    def test_succeeded_needs_output(self):
        assert CommandResult(["x"], 0, "out").succeeded
        assert not CommandResult(["x"], 0, "").succeeded
        assert not CommandResult(["x"], 1, "out").succeeded

    def test_ok_only_checks_status(self):
        assert CommandResult(["x"], 0, "").ok
        assert not CommandResult(["x"], 2, "out").ok


class TestCommandRunner:
    def test_runs_real_process(self):
        runner = CommandRunner()
        result = runner.run([sys.executable, "-c", "print('hello')"])

        assert result.exit_status == 0
        assert result.stdout.strip() == "hello"

    def test_captures_failure(self):
        runner = CommandRunner()
        result = runner.run([sys.executable, "-c", "import sys; sys.stderr.write('bad'); sys.exit(3)"])

        assert result.exit_status == 3
        assert result.stderr == "bad"

    def test_missing_executable(self):
        result = CommandRunner().run(["snapcheck-no-such-binary"])

        assert result.exit_status == 127
        assert not result.succeeded

    def test_prefix_is_prepended(self):
        runner = CommandRunner(prefix=["docker", "exec", "snap"])
        completed = subprocess.CompletedProcess(args=[], returncode=0, stdout="v1", stderr="")

        with patch("snapcheck.commands.subprocess.run", return_value=completed) as mock_run:
            result = runner.run(["snaptel", "--version"])

        assert mock_run.call_args.args[0] == ["docker", "exec", "snap", "snaptel", "--version"]
        assert result.args == ["snaptel", "--version"]

    def test_timeout_maps_to_exit_status(self):
        runner = CommandRunner(timeout_seconds=1)
        expired = subprocess.TimeoutExpired(cmd=["snaptel"], timeout=1, output=b"partial")

        with patch("snapcheck.commands.subprocess.run", side_effect=expired):
            result = runner.run(["snaptel", "task", "list"])

        assert result.exit_status == TIMEOUT_EXIT_STATUS
        assert result.stdout == "partial"

    def test_run_with_retry_stops_on_success(self):
        runner = CommandRunner()
        outputs = [
            CommandResult(["snaptel"], 1, ""),
            CommandResult(["snaptel"], 0, ""),
            CommandResult(["snaptel"], 0, "ready"),
        ]
        runner.run = MagicMock(side_effect=outputs)

        with patch("snapcheck.retry.time.sleep"):
            result = runner.run_with_retry(["snaptel", "plugin", "list"], RetryPolicy(60, 5))

        assert result.stdout == "ready"
        assert runner.run.call_count == 3


class TestParseTaskId:
    def test_extracts_id(self):
        stdout = "Using task manifest to create task\nTask created\nID: abc123\nName: Task-abc123\nState: Running\n"
        assert parse_task_id(stdout) == "abc123"

    def test_missing_id_line(self):
        assert parse_task_id("Task created\nName: x\n") is None

    def test_empty_id(self):
        assert parse_task_id("Task created\nID:   \n") is None

    def test_first_id_line_wins(self):
        assert parse_task_id("ID: first\nID: second\n") == "first"


class TestSnapCli:
    def test_create_task(self, cli, runner):
        runner.on("snaptel task create", (0, "Task created\nID: 7f1e\nState: Running\n"))

        assert cli.create_task("/etc/snap/tasks/task.yaml") == "7f1e"
        assert runner.calls == ["snaptel task create -t /etc/snap/tasks/task.yaml"]

    def test_create_without_id_line_fails(self, cli, runner):
        """Successful exit with no ID line is a creation failure."""
        runner.on("snaptel task create", (0, "Task created\nName: x\n"))

        with pytest.raises(CommandError, match="no 'ID:' line"):
            cli.create_task("task.yaml")

    def test_create_without_confirmation_fails(self, cli, runner):
        runner.on("snaptel task create", (0, "ID: 1\n"))

        with pytest.raises(CommandError, match="did not confirm"):
            cli.create_task("task.yaml")

    def test_create_non_zero_exit(self, cli, runner):
        runner.on("snaptel task create", (1, "Error creating task"))

        with pytest.raises(CommandError) as exc_info:
            cli.create_task("task.yaml")

        assert exc_info.value.result.exit_status == 1
        assert "Error creating task" in str(exc_info.value)

    def test_stop_and_remove(self, cli, runner):
        runner.on("snaptel task stop", (0, "Task stopped:\nID: 7f1e\n"))
        runner.on("snaptel task remove", (0, "Task removed:\nID: 7f1e\n"))

        assert cli.stop_task("7f1e").ok
        assert cli.remove_task("7f1e").ok
        assert runner.calls == ["snaptel task stop 7f1e", "snaptel task remove 7f1e"]

    def test_stop_without_confirmation(self, cli, runner):
        runner.on("snaptel task stop", (0, "Error: task not running"))

        with pytest.raises(CommandError, match="Task stopped"):
            cli.stop_task("7f1e")

    def test_custom_binaries(self, runner):
        cli = SnapCli(runner=runner, snaptel="/usr/local/bin/snaptel", snapteld="/usr/local/bin/snapteld")
        runner.on("/usr/local/bin/snapteld --version", (0, "snapteld version 2.0.0"))

        result = cli.daemon_version(RetryPolicy(0, 1))

        assert result.succeeded

    def test_version_polled_once_with_zero_timeout(self, cli, runner, fast_policy):
        runner.on("snaptel --version", (0, ""))

        result = cli.version(fast_policy)

        assert not result.succeeded
        assert len(runner.calls) == 1


class TestWaitForTaskState:
    def test_running_on_task_line(self, cli, runner):
        runner.on(
            "snaptel task list",
            (0, "ID  NAME  STATE\nother  Task-other  Stopped\n"),
            (0, "ID  NAME  STATE\n7f1e  Task-7f1e  Running\n"),
        )

        with patch("snapcheck.retry.time.sleep"):
            result = cli.wait_for_task_state("7f1e", "Running", RetryPolicy(30, 5))

        assert "Running" in result.stdout
        assert len(runner.calls) == 2

    def test_other_task_running_does_not_count(self, cli, runner):
        runner.on("snaptel task list", (0, "7f1e  Task-7f1e  Stopped\nother  Task-other  Running\n"))
        sleeps = []

        with patch("snapcheck.retry.time.sleep", side_effect=sleeps.append):
            cli.wait_for_task_state("7f1e", "Running", RetryPolicy(10, 5))

        assert len(runner.calls) == 3
        assert sleeps == [5, 5]
