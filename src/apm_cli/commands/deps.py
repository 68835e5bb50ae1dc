"""APM dependency management commands."""

import logging
import shutil
import sys
from pathlib import Path
from typing import Dict, List, Optional, Set

import click
import yaml
from rich.markup import escape

from ..config import ResolverConfig
from ..errors import APMError, ParseError
from ..deps.apm_resolver import APMDependencyResolver
from ..deps.dependency_graph import DependencyNode
from ..deps.downloader import InstalledPackageLoader
from ..deps.lockfile import LockFile, get_lockfile_path
from ..deps.verifier import NO_LOCKFILE_MESSAGE, find_orphaned_packages, verify_dependencies, verify_lockfile
from ..models.apm_package import DependencyKey, DependencyReference
from ..utils.console import (
    _rich_success, _rich_error, _rich_info, _rich_warning, _rich_echo,
    _create_table, _create_tree, _print_renderable, STATUS_SYMBOLS
)
from ..utils.helpers import atomic_write_text, remove_dir_and_empty_parents

logger = logging.getLogger(__name__)


@click.group(help="🔗 Manage APM package dependencies")
def deps():
    """APM dependency management commands."""
    pass


@deps.command(name="list", help="📋 List locked APM dependencies")
def list_packages():
    """Show every dependency recorded in apm.lock with its install state."""
    project_root = Path.cwd()
    try:
        config = ResolverConfig.load()
        lockfile_path = get_lockfile_path(project_root)
        lock_file = LockFile.load(lockfile_path)
        dependencies = lock_file.get_all_dependencies() if lock_file else []
        if lock_file is None:
            _rich_info("No APM dependencies installed yet", symbol="info")
            _rich_info("Run 'apm install' to install dependencies from apm.yml")
        elif not dependencies:
            _rich_info("apm.lock contains no dependencies", symbol="info")
        else:
            _show_locked_dependencies(dependencies, config, project_root)

        orphaned = find_orphaned_packages(project_root, config=config)
        if orphaned:
            _rich_warning(f"{len(orphaned)} orphaned package(s) found (not in apm.yml or apm.lock):")
            for path in orphaned:
                _rich_echo(f"  - {path}", color="dim")
            _rich_info("Run 'apm deps clean' then 'apm install' to remove them")

    except (APMError, ValueError) as e:
        _rich_error(f"Error listing dependencies: {e}")
        sys.exit(1)


def _show_locked_dependencies(dependencies, config: ResolverConfig, project_root: Path) -> None:
    apm_modules_dir = config.apm_modules_dir(project_root)
    rows = []
    for dep in dependencies:
        install_path = dep.to_dependency_ref().get_install_path(apm_modules_dir, config.default_host)
        rows.append((
            str(dep.get_unique_key()),
            dep.resolved_ref or "default",
            (dep.resolved_commit or "")[:8],
            dep.depth,
            dep.resolved_by or "apm.yml",
            "yes" if install_path.is_dir() else "no",
        ))

    table = _create_table(
        f"{STATUS_SYMBOLS['list']} APM Dependencies",
        ["Package", "Ref", "Commit", "Depth", "Required by", "Installed"],
        rows,
    )
    _print_renderable(table, [" ".join(str(cell) for cell in row) for row in rows])


def _node_label(node: DependencyNode) -> str:
    ref = node.dependency_ref.reference
    details = f"#{ref} " if ref else ""
    details += node.resolved_commit[:8]
    return f"[green]{escape(node.get_display_name())}[/green] [dim]{escape(details)}[/dim]"


def _add_children(branch, node: DependencyNode, path: Set) -> None:
    for child in node.children:
        if child.get_id() in path:
            branch.add(f"[yellow]{escape(str(child.get_id()))}[/yellow] [dim](circular)[/dim]")
            continue
        child_branch = branch.add(_node_label(child))
        _add_children(child_branch, child, path | {child.get_id()})


@deps.command(help="🌳 Show dependency tree structure")
def tree():
    """Display installed dependencies as a tree, without network access."""
    project_root = Path.cwd()
    try:
        config = ResolverConfig.load()
        if not (project_root / "apm.yml").exists():
            _rich_error("No apm.yml found in the current directory")
            sys.exit(1)

        lock_file = LockFile.read(get_lockfile_path(project_root))

        def _locked_commit(key):
            locked = lock_file.get_dependency(key) if lock_file else None
            return locked.resolved_commit if locked else None

        resolver = APMDependencyResolver(InstalledPackageLoader(_locked_commit), config=config)
        graph = resolver.resolve_dependencies(project_root)

        root_tree = _create_tree(f"[bold cyan]{escape(graph.root_package.name)}[/bold cyan] (local)")
        top_level = graph.dependency_tree.get_nodes_at_depth(1)
        for node in top_level:
            branch = root_tree.add(_node_label(node))
            _add_children(branch, node, {node.get_id()})

        for failed in graph.failed_nodes:
            owner = failed.resolved_by or "apm.yml"
            root_tree.add(f"[red]{escape(failed.dependency_ref.get_canonical_dependency_string())}[/red] "
                          f"[dim](not installed, required by {escape(owner)})[/dim]")

        if not top_level and not graph.failed_nodes:
            root_tree.add("[dim]No dependencies installed[/dim]")

        _print_renderable(root_tree)

        for error in graph.parse_errors:
            _rich_warning(error)

    except (APMError, ValueError) as e:
        _rich_error(f"Error showing dependency tree: {e}")
        sys.exit(1)


@deps.command(help="🔍 Verify installed dependencies against apm.yml and apm.lock")
def verify():
    """Report declared or locked dependencies missing from apm_modules/."""
    project_root = Path.cwd()
    try:
        config = ResolverConfig.load()
    except ValueError as e:
        _rich_error(f"Invalid configuration: {e}")
        sys.exit(1)

    if not (project_root / "apm.yml").exists():
        _rich_error("No apm.yml found in the current directory")
        sys.exit(1)

    declared = verify_dependencies(project_root, config=config)
    locked = verify_lockfile(project_root, config=config)

    if not declared.installed and not declared.missing and locked.mismatched == [NO_LOCKFILE_MESSAGE]:
        _rich_info("No APM dependencies declared in apm.yml", symbol="info")
        return

    rows = []
    rows.extend((name, "apm.yml", "installed") for name in declared.installed)
    rows.extend((name, "apm.yml", "missing") for name in declared.missing)
    rows.extend((name, "apm.lock", "present") for name in locked.matched)
    rows.extend((name, "apm.lock", "missing") for name in locked.mismatched)

    if rows:
        table = _create_table("🔍 Dependency verification", ["Dependency", "Source", "Status"], rows)
        _print_renderable(table, [" ".join(row) for row in rows])

    if declared.all_installed and locked.all_match:
        _rich_success("All dependencies are installed and match apm.lock", symbol="check")
        return

    if declared.missing:
        _rich_error(f"{len(declared.missing)} declared dependencies are not installed")
    if not locked.all_match:
        _rich_error(f"{len(locked.mismatched)} apm.lock entries do not match apm_modules/")
    _rich_info("Run 'apm install' to restore them")
    sys.exit(1)


def _declaration_key(entry, default_host: str) -> Optional[DependencyKey]:
    try:
        return DependencyReference.parse(str(entry), default_host).get_unique_key()
    except ParseError:
        return None


@deps.command(help="🗑️  Remove APM packages from apm.yml, apm_modules/ and apm.lock")
@click.argument('packages', nargs=-1, required=True)
@click.option('--dry-run', is_flag=True, help="Show what would be removed without changing anything")
def uninstall(packages, dry_run):
    """Remove declared packages and their installed copies."""
    project_root = Path.cwd()
    apm_yml_path = project_root / "apm.yml"
    try:
        config = ResolverConfig.load()
    except ValueError as e:
        _rich_error(f"Invalid configuration: {e}")
        sys.exit(1)

    if not apm_yml_path.exists():
        _rich_error("No apm.yml found in the current directory")
        sys.exit(1)

    try:
        with open(apm_yml_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        _rich_error(f"Failed to read apm.yml: {e}")
        sys.exit(1)

    deps_section = data.get('dependencies') if isinstance(data, dict) else None
    current_deps = (deps_section.get('apm') if isinstance(deps_section, dict) else None) or []
    declared: Dict[DependencyKey, DependencyReference] = {}
    for entry in current_deps:
        key = _declaration_key(entry, config.default_host)
        if key is not None and key not in declared:
            declared[key] = DependencyReference.parse(str(entry), config.default_host)

    to_remove: Dict[DependencyKey, DependencyReference] = {}
    not_found: List[str] = []
    for package in packages:
        try:
            key = DependencyReference.parse(package, config.default_host).get_unique_key()
        except ParseError as e:
            _rich_error(f"Invalid package '{package}': {e}")
            not_found.append(package)
            continue
        if key in declared:
            to_remove[key] = declared[key]
            _rich_info(f"✓ {package} - found in apm.yml")
        else:
            not_found.append(package)
            _rich_warning(f"✗ {package} - not found in apm.yml")

    if not to_remove:
        _rich_warning("No packages found in apm.yml to remove")
        return

    apm_modules_dir = config.apm_modules_dir(project_root)
    if dry_run:
        _rich_info(f"Dry run: Would remove {len(to_remove)} package(s):")
        for key, dep_ref in to_remove.items():
            install_path = dep_ref.get_install_path(apm_modules_dir, config.default_host)
            suffix = f" ({install_path.relative_to(project_root).as_posix()})" if install_path.exists() else ""
            _rich_info(f"  - {key}{suffix}")
        _rich_success("Dry run complete - no changes made")
        return

    deps_section['apm'] = [entry for entry in current_deps
                           if _declaration_key(entry, config.default_host) not in to_remove]
    try:
        atomic_write_text(apm_yml_path, yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
    except OSError as e:
        _rich_error(f"Failed to write apm.yml: {e}")
        sys.exit(1)
    _rich_success(f"Updated apm.yml (removed {len(to_remove)} package(s))")

    try:
        for key, dep_ref in to_remove.items():
            install_path = dep_ref.get_install_path(apm_modules_dir, config.default_host)
            if install_path.exists():
                remove_dir_and_empty_parents(install_path, apm_modules_dir)
                _rich_info(f"Removed {install_path.relative_to(project_root).as_posix()}")

        lockfile_path = get_lockfile_path(project_root)
        lock_file = LockFile.read(lockfile_path)
        if lock_file is not None:
            removed = [key for key in to_remove if lock_file.remove_dependency(key) is not None]
            if removed:
                lock_file.write(lockfile_path)
                _rich_info(f"Removed {len(removed)} entr{'y' if len(removed) == 1 else 'ies'} from apm.lock")
    except OSError as e:
        _rich_error(f"Error removing packages: {e}")
        sys.exit(1)

    _rich_success(f"Uninstall complete: removed {len(to_remove)} package(s)", symbol="check")
    if not_found:
        _rich_warning(f"{len(not_found)} package(s) were not found in apm.yml")


@deps.command(help="🧹 Remove all APM dependencies")
@click.option('--yes', '-y', is_flag=True, help="Remove without asking for confirmation")
def clean(yes):
    """Remove entire apm_modules/ directory."""
    project_root = Path.cwd()
    try:
        config = ResolverConfig.load()
    except ValueError as e:
        _rich_error(f"Invalid configuration: {e}")
        sys.exit(1)
    apm_modules_path = config.apm_modules_dir(project_root)

    if not apm_modules_path.exists():
        _rich_info("No apm_modules/ directory found - already clean")
        return

    host_count = len([d for d in apm_modules_path.iterdir() if d.is_dir()])
    _rich_warning(f"This will remove the entire apm_modules/ directory ({host_count} hosts)")

    if not yes and not click.confirm("Continue?"):
        _rich_info("Operation cancelled")
        return

    try:
        shutil.rmtree(apm_modules_path)
        _rich_success("Successfully removed apm_modules/ directory")
    except OSError as e:
        _rich_error(f"Error removing apm_modules/: {e}")
        sys.exit(1)
