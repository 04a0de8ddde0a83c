"""
Task definition loading.

Task files are YAML or JSON documents that may reference environment
variables as $NAME or ${NAME}. References are substituted before parsing,
so plugin names and metric namespaces can themselves be templated.
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from snapcheck.errors import TaskFileNotFoundError, TaskParseError

logger = logging.getLogger(__name__)

ENV_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")

FORMATS = ("yaml", "json")

DEFAULT_TASK_PATTERNS = ("*.yaml", "*.yml")


def substitute_env(content: str, environ: Optional[Mapping[str, str]] = None) -> str:
    """
    Replace $NAME and ${NAME} with environment values.

    Unset variables are replaced with an empty string.
    """
    env = os.environ if environ is None else environ

    def replace(match: re.Match) -> str:
        name = match.group(1) or match.group(2)
        return env.get(name, "")

    return ENV_REFERENCE.sub(replace, content)


def _format_for(path: Path) -> str:
    return "json" if path.suffix.lower() == ".json" else "yaml"


def load_task(path: Path, fmt: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Load a task definition from disk.

    Args:
        path: Task file path
        fmt: "yaml" or "json" (defaults to the file suffix, YAML unless .json)
        environ: Environment used for substitution (defaults to os.environ)

    Returns:
        Parsed task definition

    Raises:
        TaskFileNotFoundError: If the file does not exist
        TaskParseError: If the file cannot be read as UTF-8 or the
            substituted content is not a valid document
    """
    path = Path(path).expanduser()
    if not path.is_file():
        raise TaskFileNotFoundError(f"Task file not found: {path}")

    fmt = (fmt or _format_for(path)).lower()
    if fmt not in FORMATS:
        raise ValueError(f"Unsupported task format: {fmt} (expected one of {', '.join(FORMATS)})")

    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise TaskParseError(f"Cannot read task file {path}: {e}") from e

    content = substitute_env(raw, environ)

    try:
        if fmt == "json":
            document = json.loads(content) if content.strip() else {}
        else:
            document = yaml.safe_load(content)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise TaskParseError(f"Invalid {fmt.upper()} in {path}: {e}") from e

    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise TaskParseError(
            f"Task file {path} must contain a mapping, got {type(document).__name__}"
        )

    logger.debug(f"Loaded task definition {path}", extra={"event": "task_loaded", "task": path.name})
    return document


def discover_tasks(tasks_dir: Path, selector: Optional[str] = None) -> List[Path]:
    """
    Find task files in tasks_dir.

    Args:
        tasks_dir: Directory holding task definitions
        selector: Glob (or file name) narrowing the set; empty means all YAML tasks

    Returns:
        Sorted list of matching task files
    """
    tasks_dir = Path(tasks_dir)
    patterns = [selector] if selector else list(DEFAULT_TASK_PATTERNS)

    found = set()
    for pattern in patterns:
        found.update(p for p in tasks_dir.glob(pattern) if p.is_file())

    if not found:
        logger.warning(
            f"No task files match {', '.join(patterns)} in {tasks_dir}",
            extra={"event": "no_tasks_matched", "metadata": {"patterns": patterns}},
        )
    return sorted(found)


def declared_metrics(definition: Mapping[str, Any]) -> List[str]:
    """Metric namespaces declared under workflow.collect.metrics."""
    metrics = dig(definition, "workflow", "collect", "metrics")
    if not isinstance(metrics, Mapping):
        return []
    return [str(namespace) for namespace in metrics]


def dig(document: Any, *keys: str) -> Any:
    """Follow nested mapping keys, returning None when any level is missing."""
    for key in keys:
        if not isinstance(document, Mapping):
            return None
        document = document.get(key)
    return document
