"""APM lock file (apm.lock) for reproducible dependency installs."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from ..errors import CorruptLockfileError
from ..models.apm_package import DependencyKey, DependencyReference
from ..utils.helpers import atomic_write_text
from ..version import get_version

logger = logging.getLogger(__name__)

LOCKFILE_NAME = "apm.lock"
LOCKFILE_VERSION = "1"


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class LockedDependency:
    """A resolved dependency with exact commit information."""
    repo_url: str
    host: Optional[str] = None
    resolved_commit: Optional[str] = None
    resolved_ref: Optional[str] = None
    version: Optional[str] = None
    virtual_path: Optional[str] = None
    is_virtual: bool = False
    depth: int = 1
    resolved_by: Optional[str] = None

    def get_unique_key(self) -> DependencyKey:
        """Return the canonical identity of this entry."""
        if self.is_virtual and self.virtual_path:
            return DependencyKey(self.repo_url, self.virtual_path)
        return DependencyKey(self.repo_url)

    def to_dependency_ref(self) -> DependencyReference:
        """Rebuild the reference this entry was resolved from."""
        return DependencyReference(
            repo_url=self.repo_url,
            host=self.host,
            reference=self.resolved_ref,
            virtual_path=self.virtual_path if self.is_virtual else None,
        )

    @classmethod
    def from_dependency_ref(cls, dep_ref: DependencyReference, resolved_commit: Optional[str],
                            depth: int, resolved_by: Optional[str],
                            version: Optional[str] = None) -> "LockedDependency":
        """Create an entry from a DependencyReference plus resolution info."""
        return cls(
            repo_url=dep_ref.repo_url,
            host=dep_ref.host,
            resolved_commit=resolved_commit,
            resolved_ref=dep_ref.reference,
            version=version,
            virtual_path=dep_ref.virtual_path,
            is_virtual=dep_ref.is_virtual,
            depth=depth,
            resolved_by=resolved_by,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize, omitting fields that hold their default or empty value."""
        data: Dict[str, Any] = {"repo_url": self.repo_url}
        for name in ("host", "resolved_commit", "resolved_ref", "version", "virtual_path"):
            value = getattr(self, name)
            if value:
                data[name] = value
        if self.is_virtual:
            data["is_virtual"] = True
        if self.depth != 1:
            data["depth"] = self.depth
        if self.resolved_by:
            data["resolved_by"] = self.resolved_by
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "LockedDependency":
        """Deserialize one entry.

        Raises:
            CorruptLockfileError: If the entry has the wrong shape
        """
        if not isinstance(data, dict):
            raise CorruptLockfileError(f"Lockfile dependency must be a mapping, got {type(data).__name__}")
        repo_url = data.get("repo_url")
        if not isinstance(repo_url, str) or not repo_url:
            raise CorruptLockfileError("Lockfile dependency is missing 'repo_url'")

        depth = data.get("depth", 1)
        if isinstance(depth, bool) or not isinstance(depth, int) or depth < 1:
            raise CorruptLockfileError(f"Invalid depth {depth!r} for {repo_url}")

        is_virtual = data.get("is_virtual", False)
        if not isinstance(is_virtual, bool):
            raise CorruptLockfileError(f"Invalid is_virtual {is_virtual!r} for {repo_url}")

        def _optional_str(name: str) -> Optional[str]:
            value = data.get(name)
            if value is None:
                return None
            if isinstance(value, (dict, list)):
                raise CorruptLockfileError(f"Invalid {name} for {repo_url}")
            return str(value)

        return cls(
            repo_url=repo_url,
            host=_optional_str("host"),
            resolved_commit=_optional_str("resolved_commit"),
            resolved_ref=_optional_str("resolved_ref"),
            version=_optional_str("version"),
            virtual_path=_optional_str("virtual_path"),
            is_virtual=is_virtual,
            depth=depth,
            resolved_by=_optional_str("resolved_by"),
        )


@dataclass
class LockFile:
    """APM lock file for reproducible dependency resolution."""
    lockfile_version: str = LOCKFILE_VERSION
    generated_at: str = field(default_factory=_utc_timestamp)
    apm_version: Optional[str] = None
    dependencies: Dict[DependencyKey, LockedDependency] = field(default_factory=dict)

    def add_dependency(self, dep: LockedDependency) -> None:
        """Add or replace the entry for dep's canonical identity."""
        self.dependencies[dep.get_unique_key()] = dep

    def remove_dependency(self, key: DependencyKey) -> Optional[LockedDependency]:
        return self.dependencies.pop(key, None)

    def get_dependency(self, key: DependencyKey) -> Optional[LockedDependency]:
        return self.dependencies.get(key)

    def has_dependency(self, key: DependencyKey) -> bool:
        return key in self.dependencies

    def get_all_dependencies(self) -> List[LockedDependency]:
        """Get all dependencies sorted by depth, then repo_url."""
        return sorted(self.dependencies.values(),
                      key=lambda d: (d.depth, d.repo_url, d.virtual_path or ""))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "lockfile_version": self.lockfile_version,
            "generated_at": self.generated_at,
        }
        if self.apm_version:
            data["apm_version"] = self.apm_version
        data["dependencies"] = [dep.to_dict() for dep in self.get_all_dependencies()]
        return data

    def to_yaml(self) -> str:
        """Serialize to YAML; entry order is deterministic for stable diffs."""
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False, allow_unicode=True)

    @classmethod
    def from_yaml(cls, yaml_str: str) -> "LockFile":
        """Deserialize from a YAML string.

        Raises:
            CorruptLockfileError: If the content is not a valid lockfile
        """
        try:
            data = yaml.safe_load(yaml_str)
        except yaml.YAMLError as e:
            raise CorruptLockfileError(f"Invalid YAML in lockfile: {e}")

        if not isinstance(data, dict):
            raise CorruptLockfileError(f"Lockfile must contain a YAML mapping, got {type(data).__name__}")

        generated_at = data.get("generated_at")
        if isinstance(generated_at, datetime):
            # YAML timestamps load as datetime objects
            generated_at = generated_at.isoformat()

        lock_file = cls(
            lockfile_version=str(data.get("lockfile_version", LOCKFILE_VERSION)),
            generated_at=str(generated_at) if generated_at else "",
            apm_version=str(data["apm_version"]) if data.get("apm_version") else None,
        )

        raw_deps = data.get("dependencies") or []
        if not isinstance(raw_deps, list):
            raise CorruptLockfileError("Lockfile 'dependencies' must be a list")
        for raw in raw_deps:
            dep = LockedDependency.from_dict(raw)
            if lock_file.has_dependency(dep.get_unique_key()):
                raise CorruptLockfileError(f"Duplicate lockfile entry for {dep.get_unique_key()}")
            lock_file.add_dependency(dep)

        return lock_file

    def write(self, path: Path) -> None:
        """Atomically write the lock file to disk."""
        atomic_write_text(path, self.to_yaml(), prefix=".apm-lock-")

    @classmethod
    def load(cls, path: Path) -> Optional["LockFile"]:
        """Load a lock file, returning None if it does not exist.

        Raises:
            CorruptLockfileError: If the file exists but cannot be parsed
        """
        path = Path(path)
        if not path.is_file():
            return None
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise CorruptLockfileError(f"Cannot read {path}: {e}")
        return cls.from_yaml(content)

    @classmethod
    def read(cls, path: Path) -> Optional["LockFile"]:
        """Read a lock file; None when it is missing or corrupt."""
        try:
            return cls.load(path)
        except CorruptLockfileError as e:
            logger.warning("Ignoring corrupt lockfile %s: %s", path, e)
            return None

    @classmethod
    def load_or_create(cls, path: Path) -> "LockFile":
        """Load an existing lock file or create an empty one."""
        return cls.read(path) or cls()

    @classmethod
    def from_installed_packages(cls, installed_packages: Iterable, dependency_graph=None,
                                apm_version: Optional[str] = None) -> "LockFile":
        """Build a fresh lock file from the nodes of the latest resolution.

        Args:
            installed_packages: Resolved DependencyNode objects that were installed
            dependency_graph: The graph they came from, used to look up nodes by identity
            apm_version: Tool version recorded in the file (defaults to this APM's version)

        Returns:
            LockFile: A complete lock file, never merged with an earlier one
        """
        lock_file = cls(apm_version=apm_version or get_version())
        for item in installed_packages:
            node = item
            if isinstance(item, DependencyReference):
                if dependency_graph is None:
                    raise ValueError("A dependency graph is required to lock plain references")
                node = dependency_graph.get_node(item.get_unique_key())
                if node is None:
                    continue
            package_version = node.package.version if node.package else None
            lock_file.add_dependency(LockedDependency.from_dependency_ref(
                node.dependency_ref,
                resolved_commit=node.resolved_commit,
                depth=node.depth,
                resolved_by=node.resolved_by,
                version=package_version,
            ))
        return lock_file


def get_lockfile_path(project_root: Path) -> Path:
    """Get the path to the lock file for a project."""
    return Path(project_root) / LOCKFILE_NAME
