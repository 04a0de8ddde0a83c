"""
Plugin dependency extraction.

Task definitions are free-form nested documents. Collectors are derived
from metric namespaces under workflow.collect.metrics; processors and
publishers from the plugin_name of entries in any "process" / "publish"
sequence, at any depth.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set

from snapcheck.taskspec import dig

logger = logging.getLogger(__name__)

COLLECTOR = "collector"
PROCESSOR = "processor"
PUBLISHER = "publisher"

PLUGIN_KINDS = (COLLECTOR, PROCESSOR, PUBLISHER)

NAMESPACE_ROOT = "intel"

# Roots whose plugin is named by the second namespace segment
SECOND_SEGMENT_ROOTS = {"procfs", "disk"}

# Second segments under those roots whose plugin has a different name
SECOND_SEGMENT_RENAMES = {
    "iface": "interface",
    "filesystem": "df",
}


@dataclass(frozen=True, order=True)
class PluginDependency:
    """A plugin required by a task: (kind, name)."""

    kind: str
    name: str

    def __post_init__(self):
        if self.kind not in PLUGIN_KINDS:
            raise ValueError(f"Unknown plugin kind: {self.kind}")

    def __str__(self) -> str:
        return f"{self.kind}:{self.name}"


def find_all(document: Any, key: str) -> Iterator[Any]:
    """
    Yield the value of every mapping entry named key, at any depth.

    Mappings and sequences are descended into (including matched values);
    scalars end the walk.
    """
    if isinstance(document, Mapping):
        for k, value in document.items():
            if k == key:
                yield value
            yield from find_all(value, key)
    elif isinstance(document, (list, tuple)):
        for item in document:
            yield from find_all(item, key)


def collector_name(namespace: str) -> Optional[str]:
    """
    Collector plugin name for a metric namespace.

    /intel/psutil/cpu/user     -> psutil
    /intel/procfs/iface/eth0   -> interface
    /intel/disk/filesystem/x   -> df
    /intel/procfs/meminfo/free -> meminfo

    Returns None for namespaces outside /intel/.
    """
    segments = str(namespace).split("/")
    # Leading "/" gives an empty first segment
    if len(segments) < 3 or segments[0] != "" or segments[1] != NAMESPACE_ROOT:
        return None

    root = segments[2]
    if root in SECOND_SEGMENT_ROOTS:
        second = segments[3] if len(segments) > 3 else ""
        return SECOND_SEGMENT_RENAMES.get(second, second) or None
    return root or None


def collector_names(definition: Mapping[str, Any]) -> List[Optional[str]]:
    metrics = dig(definition, "workflow", "collect", "metrics")
    if not isinstance(metrics, Mapping):
        return []

    names = []
    for namespace in metrics:
        name = collector_name(namespace)
        if name is None:
            logger.warning(
                f"Skipping metric namespace with no collector: {namespace}",
                extra={"event": "namespace_skipped", "metadata": {"namespace": namespace}},
            )
        names.append(name)
    return names


def stage_plugin_names(definition: Mapping[str, Any], stage: str) -> List[Optional[str]]:
    """plugin_name of every element of every sequence found under key stage."""
    names = []
    for value in find_all(definition, stage):
        if not isinstance(value, (list, tuple)):
            continue
        for node in value:
            if isinstance(node, Mapping) and "plugin_name" in node:
                names.append(node["plugin_name"])
    return names


def _unique(names: Iterable[Any]) -> List[str]:
    seen: Dict[str, None] = {}
    for name in names:
        if name is None:
            continue
        name = str(name).strip()
        if name:
            seen.setdefault(name)
    return list(seen)


def extract_dependencies(definition: Mapping[str, Any]) -> Set[PluginDependency]:
    """Set of plugin dependencies implied by one task definition."""
    found = set()
    for name in _unique(collector_names(definition)):
        found.add(PluginDependency(COLLECTOR, name))
    for name in _unique(stage_plugin_names(definition, "process")):
        found.add(PluginDependency(PROCESSOR, name))
    for name in _unique(stage_plugin_names(definition, "publish")):
        found.add(PluginDependency(PUBLISHER, name))
    return found


class DependencySet:
    """
    Dependencies accumulated over one orchestration run.

    Only grows. Also tracks which dependencies have been loaded so each
    plugin is loaded at most once per run.
    """

    def __init__(self, dependencies: Iterable[PluginDependency] = ()):
        self._deps: Dict[PluginDependency, None] = {}
        self._loaded: Set[PluginDependency] = set()
        self.update(dependencies)

    def add(self, dependency: PluginDependency) -> None:
        self._deps.setdefault(dependency)

    def update(self, dependencies: Iterable[PluginDependency]) -> None:
        for dependency in sorted(dependencies):
            self.add(dependency)

    def add_task(self, definition: Mapping[str, Any]) -> Set[PluginDependency]:
        """Union a task's dependencies into the set and return them."""
        task_deps = extract_dependencies(definition)
        self.update(task_deps)
        return task_deps

    def mark_loaded(self, dependency: PluginDependency) -> None:
        self.add(dependency)
        self._loaded.add(dependency)

    def is_loaded(self, dependency: PluginDependency) -> bool:
        return dependency in self._loaded

    def pending(self) -> List[PluginDependency]:
        """Dependencies not yet loaded, in insertion order."""
        return [d for d in self._deps if d not in self._loaded]

    def names(self) -> List[str]:
        return [d.name for d in self._deps]

    def of_kind(self, kind: str) -> List[PluginDependency]:
        return [d for d in self._deps if d.kind == kind]

    def __contains__(self, dependency: object) -> bool:
        return dependency in self._deps

    def __iter__(self) -> Iterator[PluginDependency]:
        return iter(list(self._deps))

    def __len__(self) -> int:
        return len(self._deps)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, DependencySet):
            return set(self._deps) == set(other._deps)
        if isinstance(other, (set, frozenset)):
            return set(self._deps) == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"DependencySet({', '.join(str(d) for d in self._deps)})"
