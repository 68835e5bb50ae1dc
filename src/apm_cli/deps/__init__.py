"""Dependencies management package for APM-CLI."""

from .apm_resolver import APMDependencyResolver
from .collection_parser import CollectionItem, CollectionManifest, parse_collection_yml
from .dependency_graph import (
    DependencyGraph, DependencyTree, DependencyNode, FlatDependencyMap,
    CircularRef, ConflictInfo, FailedNode
)
from .downloader import PackageDownloader, DownloadResult, InstalledPackageLoader
from .github_downloader import GitHubPackageDownloader
from .installer import InstallReport, install_apm_dependencies
from .lockfile import LockFile, LockedDependency, get_lockfile_path
from .verifier import (
    DependencyVerification, LockfileVerification, find_orphaned_packages, verify_dependencies,
    verify_lockfile
)

__all__ = [
    'APMDependencyResolver',
    'CollectionItem',
    'CollectionManifest',
    'parse_collection_yml',
    'DependencyGraph',
    'DependencyTree',
    'DependencyNode',
    'FlatDependencyMap',
    'CircularRef',
    'ConflictInfo',
    'FailedNode',
    'PackageDownloader',
    'DownloadResult',
    'InstalledPackageLoader',
    'GitHubPackageDownloader',
    'InstallReport',
    'install_apm_dependencies',
    'LockFile',
    'LockedDependency',
    'get_lockfile_path',
    'DependencyVerification',
    'LockfileVerification',
    'verify_dependencies',
    'verify_lockfile',
    'find_orphaned_packages',
]
