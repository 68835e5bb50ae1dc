"""Data structures for dependency graph representation and resolution."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Any
from ..errors import NotFoundError
from ..models.apm_package import APMPackage, DependencyKey, DependencyReference


@dataclass
class DependencyNode:
    """Represents a single resolved dependency in the graph."""
    dependency_ref: DependencyReference
    depth: int
    resolved_commit: str
    install_path: Path
    package: Optional[APMPackage] = None
    parent: Optional['DependencyNode'] = None
    children: List['DependencyNode'] = field(default_factory=list)
    from_lockfile: bool = False  # True when the download was skipped thanks to apm.lock

    def get_id(self) -> DependencyKey:
        """Get unique identifier for this node."""
        return self.dependency_ref.get_unique_key()

    @property
    def resolved_by(self) -> Optional[str]:
        """Canonical identity of the parent that first required this node."""
        if self.parent is None:
            return None
        return self.parent.dependency_ref.get_canonical_dependency_string()

    def get_display_name(self) -> str:
        """Get display name for this dependency."""
        return self.dependency_ref.get_display_name()

    def __repr__(self) -> str:
        # Avoid recursing through parent/children
        return f"DependencyNode({self.get_id()!s}, depth={self.depth}, commit={self.resolved_commit[:8]})"


@dataclass
class FailedNode:
    """A dependency that could not be materialized."""
    dependency_ref: DependencyReference
    depth: int
    error: Exception
    resolved_by: Optional[str] = None

    @property
    def is_not_found(self) -> bool:
        return isinstance(self.error, NotFoundError)

    def __str__(self) -> str:
        return f"{self.dependency_ref.get_canonical_dependency_string()}: {self.error}"


@dataclass
class CircularRef:
    """Represents a circular dependency reference."""
    cycle_path: List[str]  # Canonical identities forming the cycle
    detected_at_depth: int

    def _format_complete_cycle(self) -> str:
        """
        Return a string representation of the cycle, ensuring it is visually complete.
        If the cycle path does not end at the starting node, append the start to the end.
        """
        if not self.cycle_path:
            return "(empty path)"
        cycle_display = " -> ".join(self.cycle_path)
        if len(self.cycle_path) > 1 and self.cycle_path[0] != self.cycle_path[-1]:
            cycle_display += f" -> {self.cycle_path[0]}"
        return cycle_display

    def __str__(self) -> str:
        """String representation of the circular dependency."""
        return f"Circular dependency detected: {self._format_complete_cycle()}"


@dataclass
class ConflictInfo:
    """Two or more distinct references requested for the same canonical identity."""
    key: DependencyKey
    winner: DependencyReference  # The dependency that "wins"
    conflicts: List[DependencyReference]  # All losing references
    reason: str  # Explanation of why winner was chosen

    def __str__(self) -> str:
        """String representation of the conflict."""
        conflict_refs = [str(ref) for ref in self.conflicts]
        return f"Conflict for {self.key}: {self.winner} wins over {', '.join(conflict_refs)} ({self.reason})"


@dataclass
class DependencyTree:
    """Hierarchical representation of resolved dependencies."""
    root_package: APMPackage
    nodes: Dict[DependencyKey, DependencyNode] = field(default_factory=dict)
    max_depth: int = 0

    def add_node(self, node: DependencyNode) -> None:
        """Add a node to the tree."""
        self.nodes[node.get_id()] = node
        self.max_depth = max(self.max_depth, node.depth)

    def get_node(self, key: DependencyKey) -> Optional[DependencyNode]:
        """Get a node by its canonical identity."""
        return self.nodes.get(key)

    def get_nodes_at_depth(self, depth: int) -> List[DependencyNode]:
        """Get all nodes at a specific depth level, in resolution order."""
        return [node for node in self.nodes.values() if node.depth == depth]

    def has_dependency(self, key: DependencyKey) -> bool:
        """Check if a dependency exists in the tree."""
        return key in self.nodes


@dataclass
class FlatDependencyMap:
    """Final flattened dependency mapping, in installation order."""
    dependencies: Dict[DependencyKey, DependencyReference] = field(default_factory=dict)
    conflicts: List[ConflictInfo] = field(default_factory=list)
    install_order: List[DependencyKey] = field(default_factory=list)

    def add_dependency(self, dep_ref: DependencyReference) -> None:
        """Add the winning reference for an identity."""
        key = dep_ref.get_unique_key()
        if key not in self.dependencies:
            self.dependencies[key] = dep_ref
            self.install_order.append(key)

    def add_conflict(self, winner: DependencyReference, loser: DependencyReference) -> None:
        """Record a losing reference; one ConflictInfo per identity (first wins)."""
        key = winner.get_unique_key()
        existing_conflict = next((c for c in self.conflicts if c.key == key), None)
        if existing_conflict:
            if loser not in existing_conflict.conflicts:
                existing_conflict.conflicts.append(loser)
            return
        self.conflicts.append(ConflictInfo(
            key=key,
            winner=winner,
            conflicts=[loser],
            reason="first declared dependency wins",
        ))

    def get_dependency(self, key: DependencyKey) -> Optional[DependencyReference]:
        """Get a dependency by canonical identity."""
        return self.dependencies.get(key)

    def has_conflicts(self) -> bool:
        """Check if there are any conflicts in the flattened map."""
        return bool(self.conflicts)

    def total_dependencies(self) -> int:
        """Get total number of unique dependencies."""
        return len(self.dependencies)

    def get_installation_list(self) -> List[DependencyReference]:
        """Get dependencies in installation order."""
        return [self.dependencies[key] for key in self.install_order if key in self.dependencies]


@dataclass
class DependencyGraph:
    """Complete resolved dependency information."""
    root_package: APMPackage
    dependency_tree: DependencyTree
    flattened_dependencies: FlatDependencyMap
    circular_dependencies: List[CircularRef] = field(default_factory=list)
    failed_nodes: List[FailedNode] = field(default_factory=list)
    parse_errors: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def conflicts(self) -> List[ConflictInfo]:
        return self.flattened_dependencies.conflicts

    def get_node(self, key: DependencyKey) -> Optional[DependencyNode]:
        return self.dependency_tree.get_node(key)

    def resolved_nodes(self) -> List[DependencyNode]:
        """All successfully resolved nodes, in installation order."""
        return [self.dependency_tree.nodes[key] for key in self.flattened_dependencies.install_order
                if key in self.dependency_tree.nodes]

    def has_circular_dependencies(self) -> bool:
        """Check if there are any circular dependencies."""
        return bool(self.circular_dependencies)

    def has_conflicts(self) -> bool:
        """Check if there are any dependency conflicts."""
        return self.flattened_dependencies.has_conflicts()

    def has_errors(self) -> bool:
        """Check if any node failed, any declaration was invalid, or resolution stopped early."""
        return bool(self.failed_nodes or self.parse_errors) or self.cancelled

    def is_valid(self) -> bool:
        """Check if every declared dependency resolved. Conflicts and cycles are warnings."""
        return not self.has_errors()

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of the dependency resolution."""
        return {
            "root_package": self.root_package.name,
            "total_dependencies": self.flattened_dependencies.total_dependencies(),
            "max_depth": self.dependency_tree.max_depth,
            "has_circular_dependencies": self.has_circular_dependencies(),
            "circular_count": len(self.circular_dependencies),
            "has_conflicts": self.has_conflicts(),
            "conflict_count": len(self.flattened_dependencies.conflicts),
            "has_errors": self.has_errors(),
            "failed_count": len(self.failed_nodes),
            "parse_error_count": len(self.parse_errors),
            "error_count": len(self.failed_nodes) + len(self.parse_errors),
            "cancelled": self.cancelled,
            "is_valid": self.is_valid()
        }

