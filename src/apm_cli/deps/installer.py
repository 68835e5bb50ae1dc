"""Install APM dependencies: resolve, materialize and write apm.lock."""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..config import ResolverConfig
from ..errors import CorruptLockfileError
from .apm_resolver import APMDependencyResolver
from .dependency_graph import ConflictInfo, DependencyGraph, DependencyNode, FailedNode
from .downloader import PackageDownloader
from .lockfile import LockFile, get_lockfile_path

logger = logging.getLogger(__name__)

APM_MODULES_GITIGNORE_PATTERN = 'apm_modules/'


@dataclass
class InstallReport:
    """What an install run did."""
    graph: DependencyGraph
    lockfile_path: Path
    lockfile_written: bool = False
    ignored_corrupt_lockfile: bool = False
    gitignore_updated: bool = False

    @property
    def installed(self) -> List[DependencyNode]:
        return self.graph.resolved_nodes()

    @property
    def downloaded(self) -> List[DependencyNode]:
        """Nodes that were fetched rather than reused from apm.lock."""
        return [node for node in self.installed if not node.from_lockfile]

    @property
    def failures(self) -> List[FailedNode]:
        return self.graph.failed_nodes

    @property
    def conflicts(self) -> List[ConflictInfo]:
        return self.graph.conflicts

    @property
    def parse_errors(self) -> List[str]:
        return self.graph.parse_errors

    @property
    def cancelled(self) -> bool:
        return self.graph.cancelled

    @property
    def success(self) -> bool:
        return self.graph.is_valid()


def install_apm_dependencies(project_root: Path, downloader: PackageDownloader,
                             config: Optional[ResolverConfig] = None,
                             cancel_event: Optional[threading.Event] = None) -> InstallReport:
    """Resolve and install every APM dependency of the project at project_root.

    The previous apm.lock (if readable) pins commits for dependencies whose
    declared ref is unchanged. After resolution a fresh lock file describing
    exactly the installed set replaces it. Nothing is written when the run
    was cancelled.

    Args:
        project_root: Directory containing apm.yml
        downloader: Materializes packages into apm_modules
        config: Resolution settings; update_refs ignores the existing lock
        cancel_event: Set from another thread to stop between downloads

    Returns:
        InstallReport: Graph, failures and lockfile outcome

    Raises:
        ManifestError: If the root apm.yml cannot be loaded
    """
    project_root = Path(project_root)
    config = config or ResolverConfig()
    lockfile_path = get_lockfile_path(project_root)

    ignored_corrupt = False
    locked = None
    if not config.update_refs:
        try:
            locked = LockFile.load(lockfile_path)
        except CorruptLockfileError as e:
            logger.warning("Ignoring corrupt lockfile %s: %s", lockfile_path, e)
            ignored_corrupt = True

    resolver = APMDependencyResolver(downloader, config=config, locked=locked, cancel_event=cancel_event)
    graph = resolver.resolve_dependencies(project_root)
    report = InstallReport(graph=graph, lockfile_path=lockfile_path,
                           ignored_corrupt_lockfile=ignored_corrupt)

    if graph.cancelled:
        logger.info("Install cancelled; leaving %s untouched", lockfile_path)
        return report

    nodes = graph.resolved_nodes()
    if nodes or lockfile_path.exists():
        lock_file = LockFile.from_installed_packages(nodes, graph)
        lock_file.write(lockfile_path)
        report.lockfile_written = True
        logger.debug("Wrote %s with %d dependencies", lockfile_path, len(lock_file.dependencies))

    if nodes:
        report.gitignore_updated = update_gitignore_for_apm_modules(project_root, config.apm_modules_dirname)

    return report


def update_gitignore_for_apm_modules(project_root: Path, apm_modules_dirname: str = "apm_modules") -> bool:
    """Add apm_modules/ to .gitignore if not already present.

    Returns:
        bool: True if .gitignore was changed
    """
    gitignore_path = Path(project_root) / '.gitignore'
    pattern = f'{apm_modules_dirname}/'

    current_content = []
    if gitignore_path.exists():
        try:
            with open(gitignore_path, 'r', encoding='utf-8') as f:
                current_content = [line.rstrip('\n\r') for line in f.readlines()]
        except OSError as e:
            logger.warning("Could not read .gitignore: %s", e)
            return False

    if any(line.strip() in (pattern, pattern.rstrip('/'), f'/{pattern}') for line in current_content):
        return False

    try:
        with open(gitignore_path, 'a', encoding='utf-8') as f:
            if current_content and current_content[-1].strip():
                f.write('\n')
            f.write(f'# APM dependencies\n{pattern}\n')
    except OSError as e:
        logger.warning("Could not update .gitignore: %s", e)
        return False
    return True
