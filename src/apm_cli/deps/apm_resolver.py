"""APM dependency resolution engine with breadth-first resolution and conflict detection."""

import logging
import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple, Union

from ..config import ResolverConfig
from ..errors import DownloadError
from ..models.apm_package import (
    APMPackage,
    DependencyKey,
    DependencyReference,
    has_package_marker,
    load_installed_package,
)
from .dependency_graph import (
    DependencyGraph, DependencyTree, DependencyNode, FlatDependencyMap,
    CircularRef, FailedNode
)
from .downloader import PackageDownloader, DownloadResult, read_commit_stamp

logger = logging.getLogger(__name__)

# (dependency reference, node that declared it; None for the root manifest)
_QueueEntry = Tuple[DependencyReference, Optional[DependencyNode]]


@dataclass
class _Materialized:
    result: DownloadResult
    package: APMPackage
    from_lockfile: bool


class APMDependencyResolver:
    """Resolves APM dependencies transitively, similar to NPM.

    Resolution is breadth-first and level-synchronous: all new identities at
    one depth are downloaded concurrently, then merged in declaration order
    by the calling thread, which is the only writer of the visited set. The
    first reference seen for a canonical identity wins; later references
    with a different ref are recorded as conflicts, never as failures.
    """

    def __init__(self, downloader: PackageDownloader, config: Optional[ResolverConfig] = None,
                 locked=None, cancel_event: Optional[threading.Event] = None):
        """Initialize the resolver.

        Args:
            downloader: Materializes each dependency into apm_modules
            config: Resolution settings (max depth, worker count, default host)
            locked: Optional LockFile whose pinned commits short-circuit downloads
            cancel_event: Set from another thread to stop resolution between downloads
        """
        self.downloader = downloader
        self.config = config or ResolverConfig()
        self.max_depth = self.config.max_depth
        self.locked = locked
        self.cancel_event = cancel_event or threading.Event()

    def resolve_dependencies(self, project_root: Path) -> DependencyGraph:
        """
        Resolve all APM dependencies of the project at project_root.

        Args:
            project_root: Path to the project root containing apm.yml

        Returns:
            DependencyGraph: Complete resolved dependency graph

        Raises:
            ManifestError: If the root apm.yml exists but cannot be loaded
        """
        apm_yml_path = project_root / "apm.yml"
        if not apm_yml_path.exists():
            # Projects without apm.yml have nothing to resolve
            empty_package = APMPackage(name="unknown", version="0.0.0", package_path=project_root)
            return DependencyGraph(
                root_package=empty_package,
                dependency_tree=DependencyTree(root_package=empty_package),
                flattened_dependencies=FlatDependencyMap()
            )

        root_package = APMPackage.from_apm_yml(apm_yml_path, default_host=self.config.default_host)
        return self.resolve(root_package, self.config.apm_modules_dir(project_root))

    def resolve(self, root_package: APMPackage, apm_modules_dir: Path) -> DependencyGraph:
        """
        Build the resolved graph for root_package.

        Args:
            root_package: The root manifest
            apm_modules_dir: Directory packages are installed into

        Returns:
            DependencyGraph: Resolved nodes, conflicts, failures and cycles
        """
        tree = DependencyTree(root_package=root_package)
        graph = DependencyGraph(
            root_package=root_package,
            dependency_tree=tree,
            flattened_dependencies=FlatDependencyMap()
        )
        self._record_parse_errors(graph, root_package, None)

        first_seen: Dict[DependencyKey, DependencyReference] = {}
        frontier: List[_QueueEntry] = [(dep, None) for dep in root_package.get_apm_dependencies()]
        depth = 1

        executor = ThreadPoolExecutor(max_workers=self.config.max_workers,
                                      thread_name_prefix="apm-download")
        try:
            while frontier:
                if self.cancel_event.is_set():
                    graph.cancelled = True
                    break

                if depth > self.max_depth:
                    for dep_ref, parent in frontier:
                        logger.debug("Not expanding %s at depth %d (max depth %d, required by %s)",
                                     dep_ref, depth, self.max_depth,
                                     parent.get_id() if parent else "apm.yml")
                    break

                pending, late_edges = self._select_new_identities(frontier, first_seen, graph)
                outcomes = self._materialize_level(executor, pending, apm_modules_dir)

                frontier = []
                for (dep_ref, parent), outcome in zip(pending, outcomes):
                    if outcome is None:
                        # Cancelled before it started
                        graph.cancelled = True
                        continue
                    if isinstance(outcome, Exception):
                        graph.failed_nodes.append(FailedNode(
                            dependency_ref=dep_ref,
                            depth=depth,
                            error=outcome,
                            resolved_by=parent.dependency_ref.get_canonical_dependency_string() if parent else None,
                        ))
                        logger.debug("Failed to resolve %s: %s", dep_ref, outcome)
                        continue

                    node = DependencyNode(
                        dependency_ref=dep_ref,
                        depth=depth,
                        resolved_commit=outcome.result.resolved_commit,
                        install_path=outcome.result.install_path,
                        package=outcome.package,
                        parent=parent,
                        from_lockfile=outcome.from_lockfile,
                    )
                    tree.add_node(node)
                    graph.flattened_dependencies.add_dependency(dep_ref)
                    if parent is not None:
                        parent.children.append(node)

                    self._record_parse_errors(graph, outcome.package, node)
                    frontier.extend((sub_dep, node) for sub_dep in outcome.package.get_apm_dependencies())

                for key, parent in late_edges:
                    self._link(tree, key, parent)

                depth += 1
        except KeyboardInterrupt:
            # Let in-flight downloads finish; queued ones never start
            self.cancel_event.set()
            executor.shutdown(wait=True, cancel_futures=True)
            raise
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        graph.circular_dependencies = self.detect_circular_dependencies(tree)
        return graph

    def _select_new_identities(self, frontier: List[_QueueEntry],
                               first_seen: Dict[DependencyKey, DependencyReference],
                               graph: DependencyGraph) -> Tuple[List[_QueueEntry], List[Tuple[DependencyKey, DependencyNode]]]:
        """Split one level into identities to download and edges to already-known ones."""
        pending: List[_QueueEntry] = []
        late_edges: List[Tuple[DependencyKey, DependencyNode]] = []

        for dep_ref, parent in frontier:
            key = dep_ref.get_unique_key()
            winner = first_seen.get(key)
            if winner is None:
                first_seen[key] = dep_ref
                pending.append((dep_ref, parent))
                continue

            if winner.reference != dep_ref.reference:
                logger.warning("Conflict for %s: keeping %s over %s", key, winner, dep_ref)
                graph.flattened_dependencies.add_conflict(winner, dep_ref)
            else:
                logger.debug("Skipping already resolved %s", key)

            if parent is not None:
                if graph.dependency_tree.has_dependency(key):
                    self._link(graph.dependency_tree, key, parent)
                else:
                    # First occurrence is in this same level; link once it resolves
                    late_edges.append((key, parent))

        return pending, late_edges

    @staticmethod
    def _link(tree: DependencyTree, key: DependencyKey, parent: DependencyNode) -> None:
        existing_node = tree.get_node(key)
        if existing_node is not None and existing_node not in parent.children:
            parent.children.append(existing_node)

    def _materialize_level(self, executor: ThreadPoolExecutor, pending: List[_QueueEntry],
                           apm_modules_dir: Path) -> List[Union[_Materialized, Exception, None]]:
        """Download every pending dependency of one level concurrently.

        Returns one outcome per pending entry, in the same order: the
        materialized package, the exception it failed with, or None if it
        was cancelled before starting.
        """
        futures: List[Optional[Future]] = []
        for dep_ref, _ in pending:
            if self.cancel_event.is_set():
                futures.append(None)
                continue
            futures.append(executor.submit(self._materialize, dep_ref, apm_modules_dir))

        outcomes: List[Union[_Materialized, Exception, None]] = []
        for future in futures:
            if future is None:
                outcomes.append(None)
                continue
            try:
                outcomes.append(future.result())
            except CancelledError:
                outcomes.append(None)
            except Exception as e:
                outcomes.append(e)
        return outcomes

    def _materialize(self, dep_ref: DependencyReference, apm_modules_dir: Path) -> _Materialized:
        """Install one dependency (or reuse its locked install) and load its manifest.

        Runs on a worker thread: must not touch resolver state.
        """
        install_path = dep_ref.get_install_path(apm_modules_dir, self.config.default_host)
        locked_dep = self._get_locked(dep_ref)
        from_lockfile = False

        if (locked_dep is not None and has_package_marker(install_path)
                and read_commit_stamp(install_path) in (None, locked_dep.resolved_commit)):
            logger.debug("Using locked %s at %s", dep_ref, locked_dep.resolved_commit)
            result = DownloadResult(resolved_commit=locked_dep.resolved_commit, install_path=install_path)
            from_lockfile = True
        else:
            pinned_commit = locked_dep.resolved_commit if locked_dep else None
            result = self.downloader.download_package(dep_ref, install_path, pinned_commit=pinned_commit)
            if not result.resolved_commit:
                raise DownloadError(f"Downloader reported no commit for {dep_ref}")

        package = load_installed_package(result.install_path, dep_ref, default_host=self.config.default_host)
        if package is None:
            raise DownloadError(
                f"{dep_ref.get_canonical_dependency_string()} has no apm.yml or SKILL.md at {result.install_path}")
        package.resolved_commit = result.resolved_commit
        return _Materialized(result=result, package=package, from_lockfile=from_lockfile)

    def _get_locked(self, dep_ref: DependencyReference):
        """Return the usable lockfile entry for dep_ref, if any.

        An entry is only reused while the manifest still asks for the ref it
        was resolved from.
        """
        if self.locked is None or self.config.update_refs:
            return None
        locked_dep = self.locked.get_dependency(dep_ref.get_unique_key())
        if locked_dep is None or not locked_dep.resolved_commit:
            return None
        if locked_dep.resolved_ref != dep_ref.reference:
            return None
        return locked_dep

    @staticmethod
    def _record_parse_errors(graph: DependencyGraph, package: APMPackage,
                             node: Optional[DependencyNode]) -> None:
        owner = node.dependency_ref.get_canonical_dependency_string() if node else "apm.yml"
        for raw, message in package.invalid_dependencies:
            graph.parse_errors.append(f"{owner}: invalid dependency '{raw}': {message}")

    def detect_circular_dependencies(self, tree: DependencyTree) -> List[CircularRef]:
        """
        Detect and report circular dependency chains.

        Uses depth-first search over the resolved nodes. A cycle is detected
        when a canonical identity reappears in the current traversal path.

        Args:
            tree: The dependency tree to analyze

        Returns:
            List[CircularRef]: List of detected circular dependencies
        """
        circular_deps = []
        visited: Set[DependencyKey] = set()
        current_path: List[DependencyKey] = []

        def dfs_detect_cycles(node: DependencyNode) -> None:
            key = node.get_id()

            if key in current_path:
                cycle_start_index = current_path.index(key)
                cycle_path = [str(k) for k in current_path[cycle_start_index:]] + [str(key)]
                circular_deps.append(CircularRef(cycle_path=cycle_path, detected_at_depth=node.depth))
                return

            visited.add(key)
            current_path.append(key)

            for child in node.children:
                child_key = child.get_id()
                if child_key not in visited or child_key in current_path:
                    dfs_detect_cycles(child)

            current_path.pop()

        for root_dep in tree.get_nodes_at_depth(1):
            if root_dep.get_id() not in visited:
                current_path = []
                dfs_detect_cycles(root_dep)

        return circular_deps

    @staticmethod
    def create_resolution_summary(graph: DependencyGraph) -> str:
        """
        Create a human-readable summary of the resolution results.

        Args:
            graph: The resolved dependency graph

        Returns:
            str: Summary string
        """
        summary = graph.get_summary()
        lines = [
            "Dependency Resolution Summary:",
            f"  Root package: {summary['root_package']}",
            f"  Total dependencies: {summary['total_dependencies']}",
            f"  Maximum depth: {summary['max_depth']}",
        ]

        if summary['has_conflicts']:
            lines.append(f"  Conflicts detected: {summary['conflict_count']}")

        if summary['has_circular_dependencies']:
            lines.append(f"  Circular dependencies: {summary['circular_count']}")

        if summary['failed_count']:
            lines.append(f"  Failed dependencies: {summary['failed_count']}")

        if summary['parse_error_count']:
            lines.append(f"  Invalid declarations: {summary['parse_error_count']}")

        if summary['cancelled']:
            lines.append("  Resolution cancelled before completion")

        lines.append(f"  Status: {'✅ Valid' if summary['is_valid'] else '❌ Invalid'}")

        return "\n".join(lines)
