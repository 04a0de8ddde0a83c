import json
from pathlib import Path

import httpx
import pytest
import yaml

from snapcheck.api import SnapApiClient
from snapcheck.commands import CommandResult, CommandRunner, SnapCli
from snapcheck.config import HarnessConfig
from snapcheck.retry import RetryPolicy


class ScriptedRunner(CommandRunner):
    """CommandRunner that answers from a script instead of running processes.

    Responses are keyed by command prefix (longest match wins). Each key holds
    a list of (exit_status, stdout) pairs consumed in order; the last pair
    repeats once the list is down to one entry.
    """

    def __init__(self, script=None):
        super().__init__()
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.calls = []

    def on(self, command, *responses):
        self.script[command] = list(responses)
        return self

    def run(self, args):
        args = [str(a) for a in args]
        self.calls.append(" ".join(args))
        line = " ".join(args)
        for prefix in sorted(self.script, key=len, reverse=True):
            if line.startswith(prefix):
                responses = self.script[prefix]
                exit_status, stdout = responses.pop(0) if len(responses) > 1 else responses[0]
                return CommandResult(args, exit_status, stdout, "")
        return CommandResult(args, 127, "", f"unscripted command: {line}")

    def called(self, prefix):
        return [c for c in self.calls if c.startswith(prefix)]


class FakeDaemonApi:
    """httpx handler serving /v1/tasks and per-task detail documents."""

    def __init__(self, base_url="http://snap.test:8181"):
        self.base_url = base_url
        self.tasks = {}
        self.requests = []

    def add_task(self, task_id, metrics):
        self.tasks[task_id] = list(metrics)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        path = request.url.path
        if path == "/v1/tasks":
            scheduled = [
                {"id": tid, "href": f"{self.base_url}/v1/tasks/{tid}"} for tid in self.tasks
            ]
            return httpx.Response(200, json={"body": {"ScheduledTasks": scheduled}})
        task_id = path.rsplit("/", 1)[-1]
        if task_id in self.tasks:
            metrics = {m: {} for m in self.tasks[task_id]}
            return httpx.Response(200, json={"body": {"id": task_id, "workflow": {"collect": {"metrics": metrics}}}})
        return httpx.Response(404, text="")


@pytest.fixture
def runner():
    return ScriptedRunner()


@pytest.fixture
def cli(runner):
    return SnapCli(runner=runner)


@pytest.fixture
def fast_policy():
    return RetryPolicy(timeout_seconds=0, interval_seconds=1)


@pytest.fixture
def fake_api():
    return FakeDaemonApi()


@pytest.fixture
def api_client(fake_api, fast_policy):
    client = httpx.Client(transport=httpx.MockTransport(fake_api))
    api = SnapApiClient(fake_api.base_url, policy=fast_policy, client=client)
    yield api
    api.close()


@pytest.fixture
def harness_config(tmp_path):
    (tmp_path / "examples" / "tasks").mkdir(parents=True)
    (tmp_path / "build").mkdir()
    return HarnessConfig(
        examples_dir=tmp_path / "examples",
        build_dir=tmp_path / "build",
        plugins_dir=tmp_path / "plugins",
        api_url="http://snap.test:8181",
        timeout_seconds=0,
        poll_interval_seconds=1,
        task_start_pause_seconds=0,
        log_file=str(tmp_path / "logs" / "snapcheck.log"),
    )


@pytest.fixture
def write_task(tmp_path):
    """Write a task definition into examples/tasks and return its path."""

    def _write(name, document, raw=None):
        tasks_dir = tmp_path / "examples" / "tasks"
        tasks_dir.mkdir(parents=True, exist_ok=True)
        path = tasks_dir / name
        if raw is not None:
            path.write_text(raw)
        elif name.endswith(".json"):
            path.write_text(json.dumps(document))
        else:
            path.write_text(yaml.safe_dump(document, sort_keys=False))
        return path

    return _write


def make_task(metrics, process=None, publish=None):
    """Task definition in the daemon's workflow format."""
    collect = {"metrics": {m: {} for m in metrics}}
    if process is not None:
        collect["process"] = process
    if publish is not None:
        collect["publish"] = publish
    return {
        "version": 1,
        "schedule": {"type": "simple", "interval": "1s"},
        "workflow": {"collect": collect},
    }


@pytest.fixture
def task_factory():
    return make_task


@pytest.fixture
def local_artifact(harness_config):
    """Create a built plugin artifact in the build directory."""

    def _create(kind, name):
        path = Path(harness_config.build_dir) / f"snap-plugin-{kind}-{name}"
        path.write_text("#!/bin/sh\n")
        return path

    return _create
