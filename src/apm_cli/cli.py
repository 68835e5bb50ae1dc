"""Command-line interface for Agent Package Manager (APM)."""

import logging
import sys
import threading
from pathlib import Path
from typing import List

import click
import yaml
from colorama import init, Fore, Style

# APM imports - use absolute imports everywhere for consistency
from apm_cli.version import get_version
from apm_cli.config import ResolverConfig
from apm_cli.errors import APMError, ParseError
from apm_cli.models.apm_package import APMPackage, DependencyReference
from apm_cli.deps.apm_resolver import APMDependencyResolver
from apm_cli.deps.github_downloader import GitHubPackageDownloader
from apm_cli.deps.installer import InstallReport, install_apm_dependencies
from apm_cli.deps.lockfile import LockFile, get_lockfile_path
from apm_cli.utils.helpers import atomic_write_text
from apm_cli.utils.console import (
    _rich_success, _rich_error, _rich_info, _rich_warning, _rich_echo,
    _rich_panel, _get_console
)
from apm_cli.commands.deps import deps

# Initialize colorama for fallback
init(autoreset=True)

TITLE = f"{Fore.CYAN}{Style.BRIGHT}"
ERROR = f"{Fore.RED}{Style.BRIGHT}"
RESET = Style.RESET_ALL

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"


def print_version(ctx, param, value):
    """Print version and exit."""
    if not value or ctx.resilient_parsing:
        return

    try:
        from rich.text import Text
        from rich.panel import Panel
        version_text = Text()
        version_text.append("Agent Package Manager (APM) CLI", style="bold cyan")
        version_text.append(f" version {get_version()}", style="white")
        _get_console().print(Panel(version_text, border_style="cyan", padding=(0, 1)))
    except Exception:
        # Plain output when the terminal cannot render panels
        click.echo(f"{TITLE}Agent Package Manager (APM) CLI{RESET} version {get_version()}")

    ctx.exit()


@click.group(help="Agent Package Manager (APM): The package manager for AI-Native Development")
@click.option('--version', is_flag=True, callback=print_version,
              expose_value=False, is_eager=True, help="Show version and exit.")
@click.option('--verbose', '-v', is_flag=True, help="Show debug logging")
@click.pass_context
def cli(ctx, verbose):
    """Main entry point for the APM CLI."""
    ctx.ensure_object(dict)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
    )
    # Noisy at DEBUG and not about dependency resolution
    logging.getLogger("git").setLevel(logging.INFO)


# Register command groups
cli.add_command(deps)


def _validate_and_add_packages_to_apm_yml(apm_yml_path: Path, packages, config: ResolverConfig,
                                          dry_run=False) -> List[str]:
    """Validate package specifiers, then add new ones to the dependencies.apm section."""
    try:
        with open(apm_yml_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        _rich_error(f"Failed to read apm.yml: {e}")
        sys.exit(1)

    if not isinstance(data.get('dependencies'), dict):
        data['dependencies'] = {}
    current_deps = data['dependencies'].get('apm') or []

    current_keys = set()
    for existing in current_deps:
        try:
            current_keys.add(DependencyReference.parse(str(existing), config.default_host).get_unique_key())
        except ParseError:
            continue

    validated_packages = []
    _rich_info(f"Validating {len(packages)} package(s)...")

    for package in packages:
        try:
            dep_ref = DependencyReference.parse(package, config.default_host)
        except ParseError as e:
            _rich_error(f"Invalid package '{package}': {e}")
            continue

        key = dep_ref.get_unique_key()
        if key in current_keys:
            _rich_warning(f"Package {key} already exists in apm.yml")
            continue

        current_keys.add(key)
        validated_packages.append(package)
        _rich_info(f"✓ {package}")

    if not validated_packages:
        if dry_run:
            _rich_warning("No new valid packages to add")
        return []

    if dry_run:
        _rich_info(f"Dry run: Would add {len(validated_packages)} package(s) to apm.yml:")
        for pkg in validated_packages:
            _rich_info(f"  + {pkg}")
        return validated_packages

    data['dependencies']['apm'] = list(current_deps) + validated_packages
    try:
        atomic_write_text(apm_yml_path, yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
    except OSError as e:
        _rich_error(f"Failed to write apm.yml: {e}")
        sys.exit(1)
    _rich_success(f"Updated apm.yml with {len(validated_packages)} new package(s)")

    return validated_packages


def _show_dry_run(apm_package: APMPackage, lockfile_path: Path, update: bool) -> None:
    """Print what an install would do without touching the filesystem."""
    _rich_info("Dry run mode - showing what would be installed:")
    apm_deps = apm_package.get_apm_dependencies()
    lock_file = None if update else LockFile.read(lockfile_path)

    if apm_deps:
        _rich_info(f"APM dependencies ({len(apm_deps)}):")
        for dep in apm_deps:
            locked = lock_file.get_dependency(dep.get_unique_key()) if lock_file else None
            if locked and locked.resolved_ref == dep.reference and locked.resolved_commit:
                action = f"locked at {locked.resolved_commit[:8]}"
            else:
                action = "update" if update else "install"
            _rich_info(f"  - {dep} → {action}")
    else:
        _rich_warning("No APM dependencies found in apm.yml")

    for raw, message in apm_package.invalid_dependencies:
        _rich_warning(f"  ! {raw}: {message}")

    _rich_success("Dry run complete - no changes made")


def _report_install(report: InstallReport) -> None:
    """Print per-dependency status, warnings and errors of an install run."""
    for node in report.installed:
        source = "locked" if node.from_lockfile else "downloaded"
        ref = f"#{node.dependency_ref.reference}" if node.dependency_ref.reference else ""
        _rich_echo(f"  ✓ {node.get_id()}{ref} @ {node.resolved_commit[:8]} ({source})", color="green")

    for conflict in report.conflicts:
        _rich_warning(str(conflict), symbol="warning")

    for circular in report.graph.circular_dependencies:
        _rich_info(str(circular))

    for failed in report.failures:
        owner = f" (required by {failed.resolved_by})" if failed.resolved_by else ""
        _rich_error(f"  ✗ {failed}{owner}")

    for error in report.parse_errors:
        _rich_error(f"  ✗ {error}")

    if report.ignored_corrupt_lockfile:
        _rich_warning(f"Ignored corrupt {report.lockfile_path.name}; dependencies were resolved from scratch")

    _rich_panel(APMDependencyResolver.create_resolution_summary(report.graph), title="APM dependencies")

    if report.lockfile_written:
        _rich_info(f"Wrote {report.lockfile_path.name}", symbol="lock")
    if report.gitignore_updated:
        _rich_info("Added apm_modules/ to .gitignore")


@cli.command(help="Install APM dependencies from apm.yml")
@click.argument('packages', nargs=-1)
@click.option('--update', is_flag=True, help="Ignore apm.lock and resolve every ref again")
@click.option('--dry-run', is_flag=True, help="Show what would be installed without installing")
@click.pass_context
def install(ctx, packages, update, dry_run):
    """Install APM dependencies from apm.yml (like npm install).

    Examples:
        apm install                             # Install existing deps from apm.yml
        apm install org/pkg1                    # Add package to apm.yml and install
        apm install org/pkg1 org/pkg2#v2        # Add multiple packages and install
        apm install --update                    # Re-resolve refs, ignoring apm.lock
        apm install --dry-run                   # Show what would be installed
    """
    project_root = Path.cwd()
    apm_yml_path = project_root / "apm.yml"
    if not apm_yml_path.exists():
        _rich_error("No apm.yml found in the current directory")
        sys.exit(1)

    try:
        config = ResolverConfig.load(update_refs=update)
    except ValueError as e:
        _rich_error(f"Invalid configuration: {e}")
        sys.exit(1)

    if packages:
        validated_packages = _validate_and_add_packages_to_apm_yml(apm_yml_path, packages, config, dry_run)
        if not validated_packages and not dry_run:
            _rich_error("No valid packages to install")
            sys.exit(1)

    if dry_run:
        try:
            apm_package = APMPackage.from_apm_yml(apm_yml_path, default_host=config.default_host)
        except APMError as e:
            _rich_error(f"Failed to parse apm.yml: {e}")
            sys.exit(1)
        _show_dry_run(apm_package, get_lockfile_path(project_root), update)
        return

    _rich_info("Installing dependencies from apm.yml...", symbol="running")
    downloader = ctx.obj.get('downloader') or GitHubPackageDownloader()
    cancel_event = threading.Event()

    try:
        report = install_apm_dependencies(project_root, downloader, config, cancel_event=cancel_event)
    except KeyboardInterrupt:
        _rich_warning("Install interrupted; apm.lock was not updated")
        sys.exit(130)
    except APMError as e:
        _rich_error(f"Failed to install APM dependencies: {e}")
        sys.exit(1)

    _report_install(report)

    if report.cancelled:
        _rich_warning("Install cancelled; apm.lock was not updated")
        sys.exit(1)
    if not report.success:
        _rich_error("Some dependencies could not be installed")
        sys.exit(1)

    mcp_deps = report.graph.root_package.get_mcp_dependencies()
    if mcp_deps:
        _rich_info(f"Skipped {len(mcp_deps)} MCP dependencies; MCP servers are configured separately")

    _rich_success("Dependencies installation complete")


def main():
    """Main entry point for the CLI."""
    try:
        cli(obj={})
    except Exception as e:
        click.echo(f"{ERROR}Error: {e}{RESET}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
