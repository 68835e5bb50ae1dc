"""Dependency verification for APM-CLI."""

import logging
from pathlib import Path
from typing import List, NamedTuple, Optional

from ..config import ResolverConfig
from ..errors import ManifestError
from ..models.apm_package import APMPackage, has_package_marker
from .lockfile import LockFile, get_lockfile_path

logger = logging.getLogger(__name__)

NO_LOCKFILE_MESSAGE = "No lockfile found"


class DependencyVerification(NamedTuple):
    all_installed: bool
    installed: List[str]
    missing: List[str]


class LockfileVerification(NamedTuple):
    all_match: bool
    matched: List[str]
    mismatched: List[str]


def load_apm_package(project_root: Path, config_file: str = "apm.yml",
                     config: Optional[ResolverConfig] = None) -> Optional[APMPackage]:
    """Load the project's manifest.

    Args:
        project_root: Directory containing the manifest
        config_file: Manifest file name relative to project_root
        config: Settings providing the default host

    Returns:
        APMPackage, or None if the manifest is missing or invalid
    """
    config = config or ResolverConfig()
    apm_yml_path = Path(project_root) / config_file
    if not apm_yml_path.exists():
        return None
    try:
        return APMPackage.from_apm_yml(apm_yml_path, default_host=config.default_host)
    except ManifestError as e:
        logger.warning("Error reading %s: %s", config_file, e)
        return None


def verify_dependencies(project_root: Path, config_file: str = "apm.yml",
                        config: Optional[ResolverConfig] = None) -> DependencyVerification:
    """Check that every APM dependency declared in the manifest is installed.

    A dependency counts as installed when its install directory holds an
    apm.yml or SKILL.md. A directory without either is an incomplete
    install and is reported as missing. Declarations that cannot be parsed
    are reported as missing too.

    Args:
        project_root: Directory containing apm.yml and apm_modules/
        config_file: Manifest file name. Defaults to "apm.yml".
        config: Settings providing the apm_modules location and default host

    Returns:
        DependencyVerification: (all_installed, installed, missing)
    """
    config = config or ResolverConfig()
    package = load_apm_package(project_root, config_file, config)
    if package is None:
        return DependencyVerification(False, [], [])

    apm_modules_dir = config.apm_modules_dir(project_root)
    installed: List[str] = []
    missing: List[str] = []

    for dep in package.get_apm_dependencies():
        install_path = dep.get_install_path(apm_modules_dir, config.default_host)
        dep_key = dep.get_canonical_dependency_string()
        if has_package_marker(install_path):
            installed.append(dep_key)
        else:
            missing.append(dep_key)

    missing.extend(raw for raw, _ in package.invalid_dependencies)

    return DependencyVerification(not missing, installed, missing)


def verify_lockfile(project_root: Path, config: Optional[ResolverConfig] = None) -> LockfileVerification:
    """Check that every apm.lock entry has an install directory.

    Only presence is checked, not which commit is installed.

    Args:
        project_root: Directory containing apm.lock and apm_modules/
        config: Settings providing the apm_modules location and default host

    Returns:
        LockfileVerification: (all_match, matched, mismatched)
    """
    config = config or ResolverConfig()
    lock_file = LockFile.read(get_lockfile_path(project_root))
    if lock_file is None:
        return LockfileVerification(False, [], [NO_LOCKFILE_MESSAGE])

    apm_modules_dir = config.apm_modules_dir(project_root)
    matched: List[str] = []
    mismatched: List[str] = []

    for dep in lock_file.get_all_dependencies():
        install_path = dep.to_dependency_ref().get_install_path(apm_modules_dir, config.default_host)
        if install_path.is_dir():
            matched.append(str(dep.get_unique_key()))
        else:
            mismatched.append(str(dep.get_unique_key()))

    return LockfileVerification(not mismatched, matched, mismatched)


def _installed_package_dirs(apm_modules_dir: Path) -> List[Path]:
    """Package directories under apm_modules/, at least <host>/<owner>/<repo> deep."""
    found: List[Path] = []

    def _walk(directory: Path, depth: int) -> None:
        for child in sorted(directory.iterdir()):
            # Hidden entries are in-progress downloads or tool state
            if not child.is_dir() or child.name.startswith("."):
                continue
            if depth >= 3 and has_package_marker(child):
                found.append(child)
            else:
                _walk(child, depth + 1)

    if apm_modules_dir.is_dir():
        _walk(apm_modules_dir, 1)
    return found


def find_orphaned_packages(project_root: Path, config: Optional[ResolverConfig] = None) -> List[str]:
    """List installed packages that neither apm.yml nor apm.lock accounts for.

    Args:
        project_root: Directory containing apm.yml, apm.lock and apm_modules/
        config: Settings providing the apm_modules location and default host

    Returns:
        Install paths relative to apm_modules/, in POSIX form
    """
    config = config or ResolverConfig()
    apm_modules_dir = config.apm_modules_dir(project_root)
    expected = set()

    package = load_apm_package(project_root, config=config)
    if package is not None:
        for dep in package.get_apm_dependencies():
            expected.add(dep.get_install_path(apm_modules_dir, config.default_host).resolve())

    lock_file = LockFile.read(get_lockfile_path(project_root))
    if lock_file is not None:
        for dep in lock_file.get_all_dependencies():
            install_path = dep.to_dependency_ref().get_install_path(apm_modules_dir, config.default_host)
            expected.add(install_path.resolve())

    return [path.relative_to(apm_modules_dir).as_posix()
            for path in _installed_package_dirs(apm_modules_dir)
            if path.resolve() not in expected]
