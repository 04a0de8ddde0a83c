"""Tests for task definition loading and discovery."""

from pathlib import Path
from unittest.mock import patch

import pytest

from snapcheck.errors import ConfigError, TaskFileNotFoundError, TaskParseError
from snapcheck.taskspec import declared_metrics, discover_tasks, load_task, substitute_env


class TestSubstituteEnv:
    def test_plain_reference(self):
        assert substitute_env("host: $SNAP_HOST", {"SNAP_HOST": "snap"}) == "host: snap"

    def test_braced_reference(self):
        assert substitute_env("url: ${API}/v1", {"API": "http://x"}) == "url: http://x/v1"

    def test_unset_variable_becomes_empty(self):
        assert substitute_env("a-$MISSING-b ${ALSO_MISSING}", {}) == "a--b "

    def test_braced_references_do_not_swallow_text_between(self):
        """Two braced references on a line are substituted independently."""
        result = substitute_env("${A}/middle/${B}", {"A": "1", "B": "2"})
        assert result == "1/middle/2"

    def test_reference_stops_at_non_name_character(self):
        assert substitute_env("$NAME.yaml", {"NAME": "task"}) == "task.yaml"

    def test_uses_process_environment_by_default(self, monkeypatch):
        monkeypatch.setenv("SNAPCHECK_TEST_VAR", "from-env")
        assert substitute_env("$SNAPCHECK_TEST_VAR") == "from-env"


class TestLoadTask:
    def test_load_yaml_with_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PUBLISHER", "file")
        path = tmp_path / "task.yaml"
        path.write_text(
            "workflow:\n"
            "  collect:\n"
            "    metrics:\n"
            "      /intel/psutil/cpu/user: {}\n"
            "    publish:\n"
            "      - plugin_name: $PUBLISHER\n"
        )

        task = load_task(path)

        assert task["workflow"]["collect"]["publish"][0]["plugin_name"] == "file"

    def test_load_json_selected_by_suffix(self, tmp_path):
        path = tmp_path / "task.json"
        path.write_text('{"workflow": {"collect": {"metrics": {"/intel/mock/foo": {}}}}}')

        task = load_task(path)

        assert declared_metrics(task) == ["/intel/mock/foo"]

    def test_explicit_format_overrides_suffix(self, tmp_path):
        path = tmp_path / "task.txt"
        path.write_text('{"version": 1}')

        assert load_task(path, fmt="json") == {"version": 1}

    def test_preserves_key_order(self, tmp_path):
        path = tmp_path / "task.yaml"
        path.write_text("workflow:\n  collect:\n    metrics:\n      /intel/b: {}\n      /intel/a: {}\n")

        assert declared_metrics(load_task(path)) == ["/intel/b", "/intel/a"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(TaskFileNotFoundError, match="Task file not found"):
            load_task(tmp_path / "nope.yaml")

    def test_missing_file_is_config_and_file_not_found_error(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_task(tmp_path / "nope.yaml")
        with pytest.raises(ConfigError):
            load_task(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("workflow: [unclosed\n")

        with pytest.raises(TaskParseError, match="Invalid YAML"):
            load_task(path)

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{ invalid json }")

        with pytest.raises(TaskParseError, match="Invalid JSON"):
            load_task(path)

    def test_substitution_can_break_document(self, tmp_path):
        """Parse errors are reported for the substituted content."""
        path = tmp_path / "task.json"
        path.write_text('{"name": $VALUE}')

        with pytest.raises(TaskParseError):
            load_task(path, environ={})

    def test_invalid_utf8(self, tmp_path):
        path = tmp_path / "task.yaml"
        path.write_bytes(b"workflow:\n  name: \xff\xfe\n")

        with pytest.raises(TaskParseError, match="Cannot read task file"):
            load_task(path)

    def test_permission_denied(self, tmp_path):
        path = tmp_path / "task.yaml"
        path.write_text("a: 1")

        with patch.object(Path, "read_text", side_effect=PermissionError("denied")):
            with pytest.raises(TaskParseError, match="denied"):
                load_task(path)

    def test_non_mapping_document(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(TaskParseError, match="must contain a mapping"):
            load_task(path)

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert load_task(path) == {}

    def test_unsupported_format(self, tmp_path):
        path = tmp_path / "task.yaml"
        path.write_text("a: 1")

        with pytest.raises(ValueError, match="Unsupported task format"):
            load_task(path, fmt="toml")


class TestDiscoverTasks:
    @pytest.fixture
    def tasks_dir(self, tmp_path):
        for name in ("task-psutil.yaml", "task-mock.yml", "task-file.json", "README.md"):
            (tmp_path / name).write_text("{}")
        return tmp_path

    def test_all_yaml_tasks_by_default(self, tasks_dir):
        names = [p.name for p in discover_tasks(tasks_dir)]
        assert names == ["task-mock.yml", "task-psutil.yaml"]

    def test_empty_selector_means_all(self, tasks_dir):
        assert discover_tasks(tasks_dir, "") == discover_tasks(tasks_dir)

    def test_selector_narrows(self, tasks_dir):
        names = [p.name for p in discover_tasks(tasks_dir, "task-psutil.yaml")]
        assert names == ["task-psutil.yaml"]

    def test_selector_glob(self, tasks_dir):
        names = [p.name for p in discover_tasks(tasks_dir, "*.json")]
        assert names == ["task-file.json"]

    def test_missing_directory(self, tmp_path):
        assert discover_tasks(tmp_path / "missing") == []


class TestDeclaredMetrics:
    def test_no_collect_section(self):
        assert declared_metrics({"workflow": {}}) == []

    def test_metrics_not_a_mapping(self):
        assert declared_metrics({"workflow": {"collect": {"metrics": ["/intel/a"]}}}) == []
