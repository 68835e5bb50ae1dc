"""Package downloader interface used by the dependency resolver."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Callable

from ..errors import NotFoundError
from ..models.apm_package import DependencyReference, DependencyKey, has_package_marker

# Name of the file recording which commit a directory was materialized from
COMMIT_STAMP_FILE = ".apm-commit"


@dataclass(frozen=True)
class DownloadResult:
    """Outcome of materializing one package."""
    resolved_commit: str
    install_path: Path


class PackageDownloader(ABC):
    """Base interface for anything that can materialize an APM package.

    Implementations must be idempotent for an exactly pinned reference,
    must always report a concrete commit on success, and must raise
    NotFoundError for missing repos/refs/sub-paths and TransientError for
    network failures.
    """

    @abstractmethod
    def download_package(self, dep_ref: DependencyReference, target_path: Path,
                         pinned_commit: Optional[str] = None) -> DownloadResult:
        """Materialize dep_ref at target_path and return the resolved commit."""
        pass


def read_commit_stamp(install_path: Path) -> Optional[str]:
    """Return the commit recorded for an installed package, if any."""
    stamp = install_path / COMMIT_STAMP_FILE
    if not stamp.is_file():
        return None
    commit = stamp.read_text(encoding="utf-8").strip()
    return commit or None


def write_commit_stamp(install_path: Path, commit: str) -> None:
    """Record the commit a package directory was materialized from."""
    (install_path / COMMIT_STAMP_FILE).write_text(commit + "\n", encoding="utf-8")


class InstalledPackageLoader(PackageDownloader):
    """Offline downloader that only accepts packages already in apm_modules.

    Used to rebuild the dependency graph (``apm deps tree``) without touching
    the network.
    """

    def __init__(self, locked_commits: Optional[Callable[[DependencyKey], Optional[str]]] = None):
        """Initialize the loader.

        Args:
            locked_commits: Optional lookup returning the locked commit for a key
        """
        self._locked_commits = locked_commits

    def download_package(self, dep_ref: DependencyReference, target_path: Path,
                         pinned_commit: Optional[str] = None) -> DownloadResult:
        if not has_package_marker(target_path):
            raise NotFoundError(f"{dep_ref.get_canonical_dependency_string()} is not installed at {target_path}")

        commit = pinned_commit or read_commit_stamp(target_path)
        if not commit and self._locked_commits:
            commit = self._locked_commits(dep_ref.get_unique_key())
        return DownloadResult(resolved_commit=commit or "local", install_path=target_path)
