"""
Plugin resolution and loading.

A dependency is loaded from the local build directory when an artifact
named snap-plugin-<kind>-<name> exists there. Otherwise its download URL is
derived from the naming convention, the artifact is fetched into the
plugins directory, and loaded from there.
"""

import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional, Union

import httpx

from snapcheck.commands import SnapCli
from snapcheck.dependencies import DependencySet, PluginDependency
from snapcheck.errors import ResolutionError

logger = logging.getLogger(__name__)

ARTIFACT_PREFIX = "snap"

DEFAULT_BASE_URL = "https://s3-us-west-2.amazonaws.com/snap.ci.snap-telemetry.io"
DEFAULT_VERSION = "latest"
DEFAULT_PLATFORM = "linux/x86_64"
DEFAULT_BUILD_DIR = Path("build/linux/x86_64")
DEFAULT_PLUGINS_DIR = Path("/opt/snap/plugins")

# Plugins published alongside the daemon release rather than under plugins/
RELEASE_PLUGINS = frozenset({
    "mock1",
    "mock2",
    "mock2-grpc",
    "passthru",
    "passthru-grpc",
    "mock-file",
    "mock-file-grpc",
})


def artifact_name(dependency: PluginDependency) -> str:
    return f"{ARTIFACT_PREFIX}-plugin-{dependency.kind}-{dependency.name}"


@dataclass(frozen=True)
class UrlRule:
    """One naming-convention rule; the first matching rule wins."""

    name: str
    matches: Callable[[PluginDependency], bool]
    template: str

    def render(self, dependency: PluginDependency, base_url: str, version: str, platform: str) -> str:
        return self.template.format(
            base=base_url.rstrip("/"),
            version=version,
            platform=platform.strip("/"),
            artifact=artifact_name(dependency),
        )


URL_RULES: List[UrlRule] = [
    # The bare mock collector is deprecated; mock2 replaces it
    UrlRule(
        "mock",
        lambda d: d.name == "mock",
        "{base}/snap/{version}/{platform}/{artifact}2",
    ),
    UrlRule(
        "release",
        lambda d: d.name in RELEASE_PLUGINS,
        "{base}/snap/{version}/{platform}/{artifact}",
    ),
    UrlRule(
        "plugin",
        lambda d: True,
        "{base}/plugins/{artifact}/{version}/{platform}/{artifact}",
    ),
]


def remote_url(
    dependency: PluginDependency,
    version: str = DEFAULT_VERSION,
    base_url: str = DEFAULT_BASE_URL,
    platform: str = DEFAULT_PLATFORM,
    rules: Optional[List[UrlRule]] = None,
) -> str:
    """Download URL for a dependency under the first matching rule."""
    for rule in rules if rules is not None else URL_RULES:
        if rule.matches(dependency):
            return rule.render(dependency, base_url, version, platform)
    raise ResolutionError(f"No URL rule matches {dependency}", dependency=dependency)


@dataclass(frozen=True)
class PluginSource:
    """Where a dependency is loaded from: a local artifact or a remote URL."""

    dependency: PluginDependency
    local_path: Optional[Path] = None
    url: Optional[str] = None

    @property
    def is_local(self) -> bool:
        return self.local_path is not None

    @property
    def artifact_name(self) -> str:
        return artifact_name(self.dependency)


class PluginResolver:
    """Resolves dependencies to sources and loads them into the daemon."""

    def __init__(
        self,
        cli: SnapCli,
        *,
        build_dir: Path = DEFAULT_BUILD_DIR,
        plugins_dir: Path = DEFAULT_PLUGINS_DIR,
        version: str = DEFAULT_VERSION,
        base_url: str = DEFAULT_BASE_URL,
        platform: str = DEFAULT_PLATFORM,
        client: Optional[httpx.Client] = None,
    ):
        self.cli = cli
        self.build_dir = Path(build_dir)
        self.plugins_dir = Path(plugins_dir)
        self.version = version or DEFAULT_VERSION
        self.base_url = base_url
        self.platform = platform
        self._client = client
        self._local: Optional[FrozenSet[str]] = None

    @property
    def local_artifacts(self) -> FrozenSet[str]:
        """Artifact names present in the build directory (listed once)."""
        if self._local is None:
            if self.build_dir.is_dir():
                self._local = frozenset(p.name for p in self.build_dir.glob(f"{ARTIFACT_PREFIX}-plugin-*"))
            else:
                logger.debug(f"Build directory not found: {self.build_dir}")
                self._local = frozenset()
        return self._local

    def resolve(self, dependency: PluginDependency) -> PluginSource:
        name = artifact_name(dependency)
        if name in self.local_artifacts:
            return PluginSource(dependency, local_path=self.build_dir / name)
        return PluginSource(
            dependency,
            url=remote_url(dependency, self.version, self.base_url, self.platform),
        )

    def download(self, source: PluginSource) -> Path:
        """
        Fetch a remote artifact into the plugins directory.

        Raises:
            ResolutionError: If the artifact cannot be downloaded
        """
        target = self.plugins_dir / source.artifact_name
        logger.info(
            f"Downloading {source.dependency} from {source.url}",
            extra={"event": "plugin_download", "metadata": {"url": source.url, "path": str(target)}},
        )

        client = self._client or httpx.Client(follow_redirects=True, timeout=httpx.Timeout(60.0, connect=10.0))
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with client.stream("GET", source.url) as response:
                response.raise_for_status()
                with open(target, "wb") as f:
                    for chunk in response.iter_bytes():
                        f.write(chunk)
        except (httpx.HTTPError, OSError) as e:
            # Never leave a truncated artifact where the daemon could load it
            target.unlink(missing_ok=True)
            raise ResolutionError(
                f"Could not fetch {source.artifact_name} from {source.url}: {e}",
                dependency=source.dependency,
                url=source.url,
            ) from e
        finally:
            if self._client is None:
                client.close()

        mode = os.stat(target).st_mode
        os.chmod(target, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return target

    def load(self, dependency: PluginDependency, dependencies: Optional[DependencySet] = None) -> int:
        """
        Resolve and load one dependency.

        Args:
            dependency: Plugin to load
            dependencies: Run context; already-loaded plugins are skipped

        Returns:
            Exit status of the load command (0 if already loaded)

        Raises:
            ResolutionError: If a remote artifact cannot be fetched
        """
        if dependencies is not None and dependencies.is_loaded(dependency):
            logger.debug(f"Plugin {dependency} already loaded")
            return 0

        source = self.resolve(dependency)
        path = source.local_path if source.is_local else self.download(source)

        result = self.cli.load_plugin(path)
        if result.ok:
            logger.info(
                f"Loaded plugin {dependency} from {path}",
                extra={"event": "plugin_loaded", "metadata": {"path": str(path), "local": source.is_local}},
            )
            if dependencies is not None:
                dependencies.mark_loaded(dependency)
        else:
            logger.error(
                f"Loading plugin {dependency} failed with exit status {result.exit_status}: "
                f"{(result.stderr or result.stdout).strip()}",
                extra={"event": "plugin_load_failed", "metadata": {"path": str(path)}},
            )
        return result.exit_status

    def load_all(self, dependencies: DependencySet) -> Dict[PluginDependency, Union[int, ResolutionError]]:
        """
        Load every pending dependency, sequentially.

        A failure is recorded for that dependency and does not stop the rest.
        """
        results: Dict[PluginDependency, Union[int, ResolutionError]] = {}
        for dependency in dependencies.pending():
            try:
                results[dependency] = self.load(dependency, dependencies)
            except ResolutionError as e:
                logger.error(str(e), extra={"event": "plugin_resolution_failed"})
                results[dependency] = e
        return results
