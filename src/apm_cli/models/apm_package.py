"""APM Package data models and dependency reference parsing."""

import re
import urllib.parse
import yaml
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Tuple, Union

from ..errors import ParseError, ManifestError
from ..utils.github_host import (
    DEFAULT_HOST,
    is_azure_devops_hostname,
    is_supported_git_host,
    unsupported_host_error,
    build_ado_https_clone_url,
)


# Files whose presence marks a directory as an installed package
PACKAGE_MARKER_FILES = ("apm.yml", "SKILL.md")

# Individual files that can be installed as virtual packages
VIRTUAL_FILE_EXTENSIONS = (".prompt.md", ".instructions.md", ".chatmode.md", ".agent.md")

_COMPONENT_RE = re.compile(r'^[a-zA-Z0-9._-]+$')
_SSH_RE = re.compile(r'^git@([^:]+):(.+)$')
_SLUG_RE = re.compile(r'[^a-zA-Z0-9._-]+')


class GitReferenceType(Enum):
    """Types of Git references supported."""
    BRANCH = "branch"
    TAG = "tag"
    COMMIT = "commit"


class HostType(Enum):
    """Git hosting platforms a dependency can live on."""
    GITHUB = "github"
    AZURE_DEVOPS = "azure-devops"
    UNSPECIFIED = "unspecified"


@dataclass(frozen=True, order=True)
class DependencyKey:
    """Canonical identity of one installable unit, independent of the requested ref."""
    repo_url: str
    virtual_path: Optional[str] = None

    def __str__(self) -> str:
        if self.virtual_path:
            return f"{self.repo_url}/{self.virtual_path}"
        return self.repo_url


@dataclass(frozen=True)
class DependencyReference:
    """Represents a reference to an APM dependency."""
    repo_url: str  # e.g., "user/repo" or "org/project/repo" for Azure DevOps
    host: Optional[str] = None  # e.g., "github.com", "dev.azure.com"
    reference: Optional[str] = None  # e.g., "main", "v1.0.0", "abc123"
    alias: Optional[str] = None
    virtual_path: Optional[str] = None  # e.g., "prompts/review.prompt.md"

    @property
    def is_virtual(self) -> bool:
        return bool(self.virtual_path)

    @property
    def host_type(self) -> HostType:
        if not self.host:
            return HostType.UNSPECIFIED
        if is_azure_devops_hostname(self.host):
            return HostType.AZURE_DEVOPS
        return HostType.GITHUB

    def is_azure_devops(self) -> bool:
        """Check if this reference points to Azure DevOps."""
        return self.host_type == HostType.AZURE_DEVOPS

    def is_virtual_file(self) -> bool:
        """Check if this is a single-file virtual package."""
        return self.is_virtual and self.virtual_path.endswith(VIRTUAL_FILE_EXTENSIONS)

    def is_virtual_collection(self) -> bool:
        """Check if this is a virtual collection package."""
        return self.is_virtual and _is_collection_path(self.virtual_path)

    @classmethod
    def parse(cls, dependency_str: str, default_host: str = DEFAULT_HOST) -> "DependencyReference":
        """Parse a dependency string into a DependencyReference.

        Supports formats:
        - user/repo
        - user/repo#branch, user/repo#v1.0.0, user/repo#commit_sha
        - user/repo/path/to/sub-package#ref (virtual package)
        - github.com/user/repo#ref, acme.ghe.com/user/repo
        - https://github.com/user/repo.git
        - git@github.com:user/repo.git
        - dev.azure.com/org/project/repo (optionally with _git)
        - any of the above followed by @alias

        Args:
            dependency_str: The dependency string to parse
            default_host: Host used when the string does not name one

        Returns:
            DependencyReference: Parsed dependency reference

        Raises:
            ParseError: If the dependency string format is invalid
        """
        if not isinstance(dependency_str, str) or not dependency_str.strip():
            raise ParseError("Empty dependency string")

        text = dependency_str.strip()
        if any(ord(ch) < 32 for ch in text):
            raise ParseError("Dependency string contains invalid control characters")
        if text.startswith("//"):
            raise ParseError(unsupported_host_error(
                "//...", context="Protocol-relative URLs are not supported"))

        host = None
        is_url = False
        ssh_match = _SSH_RE.match(text)
        if ssh_match:
            host = ssh_match.group(1)
            body = ssh_match.group(2)
            is_url = True
        else:
            body = text

        # Alias and reference are split off from the right
        alias = None
        if "@" in body:
            body, alias = body.rsplit("@", 1)
            alias = alias.strip()
            if not alias or not _COMPONENT_RE.match(alias):
                raise ParseError(
                    f"Invalid alias: '{alias}'. Aliases can only contain letters, numbers, "
                    "dots, underscores, and hyphens")

        reference = None
        if "#" in body:
            body, reference = body.rsplit("#", 1)
            reference = reference.strip()
            if not reference:
                raise ParseError(f"Empty reference in '{dependency_str}'")

        body = body.strip()

        if not ssh_match:
            if body.startswith(("https://", "http://")):
                # SECURITY: use urllib.parse, never substring checks, to find the host
                parsed_url = urllib.parse.urlparse(body)
                if not parsed_url.hostname:
                    raise ParseError(f"Invalid repository URL: {body}")
                host = parsed_url.hostname
                body = parsed_url.path
                is_url = True
            else:
                first_segment = body.split("/", 1)[0]
                if "." in first_segment:
                    host = first_segment
                    body = body[len(first_segment):]

        if host is not None:
            host = host.lower()
            if not is_supported_git_host(host, default_host):
                raise ParseError(unsupported_host_error(host))
        else:
            host = default_host.lower()

        body = body.strip("/")
        if not body:
            raise ParseError("Repository path cannot be empty")
        segments = body.split("/")
        if "" in segments:
            raise ParseError(f"Invalid repository path: '{body}' contains an empty segment")

        is_ado = is_azure_devops_hostname(host)
        if is_ado and "_git" in segments:
            segments.remove("_git")

        base_count = 3 if is_ado else 2
        expected = "'org/project/repo'" if is_ado else "'user/repo'"
        if len(segments) < base_count:
            raise ParseError(f"Invalid repository format: '{body}'. Expected {expected}")
        if is_url and len(segments) != base_count:
            raise ParseError(f"Invalid repository path: expected {expected}, got '{body}'")

        repo_parts = segments[:base_count]
        if repo_parts[-1].endswith(".git"):
            repo_parts[-1] = repo_parts[-1][:-4]
        for part in repo_parts:
            if part in (".", "..") or not _COMPONENT_RE.match(part):
                raise ParseError(f"Invalid repository path component: '{part}'")

        virtual_path = None
        virtual_segments = segments[base_count:]
        if virtual_segments:
            for part in virtual_segments:
                if part in (".", "..") or not _COMPONENT_RE.match(part):
                    raise ParseError(f"Invalid virtual package path component: '{part}'")
            virtual_path = "/".join(virtual_segments)
            _validate_virtual_path(virtual_path)

        return cls(
            repo_url="/".join(repo_parts),
            host=host,
            reference=reference,
            alias=alias,
            virtual_path=virtual_path,
        )

    def get_unique_key(self) -> DependencyKey:
        """Get the canonical identity used for deduplication."""
        return DependencyKey(self.repo_url, self.virtual_path or None)

    def get_canonical_dependency_string(self) -> str:
        """Get the canonical identity as a string (ignores ref and alias)."""
        return str(self.get_unique_key())

    def get_virtual_slug(self) -> str:
        """Filesystem-safe form of the virtual path."""
        if not self.virtual_path:
            return ""
        return _SLUG_RE.sub("-", self.virtual_path.replace("/", "-")).strip("-")

    def get_install_path(self, apm_modules_dir: Path, default_host: str = DEFAULT_HOST) -> Path:
        """Get the directory this package is installed into.

        Full repositories land at ``<apm_modules>/<host>/<owner>/<repo>``;
        virtual packages at ``<apm_modules>/<host>/<owner>/<repo>-<slug>``.
        For Azure DevOps the owner is ``org/project``.

        Args:
            apm_modules_dir: Root of the apm_modules directory
            default_host: Host directory used when this reference has none

        Returns:
            Path: Install directory for this dependency
        """
        *owner_parts, repo_name = self.repo_url.split("/")
        if self.is_virtual:
            repo_name = f"{repo_name}-{self.get_virtual_slug()}"
        return Path(apm_modules_dir, self.host or default_host, *owner_parts, repo_name)

    def to_clone_url(self) -> str:
        """Convert to a repository URL suitable for display or anonymous cloning."""
        host = self.host or DEFAULT_HOST
        if self.is_azure_devops():
            org, project, repo = self.repo_url.split("/")
            return build_ado_https_clone_url(org, project, repo, host=host)
        return f"https://{host}/{self.repo_url}"

    def get_display_name(self) -> str:
        """Get display name for this dependency (alias or canonical identity)."""
        if self.alias:
            return self.alias
        return self.get_canonical_dependency_string()

    def to_dependency_string(self) -> str:
        """Build the declaration form of this reference, as written in apm.yml."""
        result = self.repo_url
        if self.host and self.host != DEFAULT_HOST:
            result = f"{self.host}/{result}"
        if self.virtual_path:
            result += f"/{self.virtual_path}"
        if self.reference:
            result += f"#{self.reference}"
        if self.alias:
            result += f"@{self.alias}"
        return result

    def __str__(self) -> str:
        return self.to_dependency_string()


def _is_collection_path(virtual_path: str) -> bool:
    return virtual_path.startswith("collections/") or "/collections/" in virtual_path


def _validate_virtual_path(virtual_path: str) -> None:
    """Reject virtual file paths with an extension APM cannot install."""
    if _is_collection_path(virtual_path):
        return
    last_segment = virtual_path.rsplit("/", 1)[-1]
    if "." in last_segment and not virtual_path.endswith(VIRTUAL_FILE_EXTENSIONS):
        raise ParseError(
            f"Invalid virtual package path '{virtual_path}'. "
            f"Individual files must end with one of: {', '.join(VIRTUAL_FILE_EXTENSIONS)}. "
            "For subdirectory packages, the path should not have a file extension.")


@dataclass
class APMPackage:
    """Represents an APM package with metadata."""
    name: str
    version: str
    description: Optional[str] = None
    author: Optional[str] = None
    license: Optional[str] = None
    source: Optional[str] = None  # Source location (for dependencies)
    resolved_commit: Optional[str] = None  # Resolved commit SHA (for dependencies)
    dependencies: Optional[Dict[str, List[Union[DependencyReference, str]]]] = None  # Mixed types for APM/MCP
    scripts: Optional[Dict[str, str]] = None
    package_path: Optional[Path] = None  # Local path to package
    invalid_dependencies: List[Tuple[str, str]] = field(default_factory=list)  # (declaration, error)

    @classmethod
    def from_apm_yml(cls, apm_yml_path: Path, default_host: str = DEFAULT_HOST) -> "APMPackage":
        """Load APM package from apm.yml file.

        Malformed entries under ``dependencies.apm`` do not fail the load;
        they are collected in ``invalid_dependencies`` so callers can report
        them per entry.

        Args:
            apm_yml_path: Path to the apm.yml file
            default_host: Host assumed for dependencies that do not name one

        Returns:
            APMPackage: Loaded package instance

        Raises:
            ManifestError: If the file is not valid YAML or misses required fields
            FileNotFoundError: If the file doesn't exist
        """
        if not apm_yml_path.exists():
            raise FileNotFoundError(f"apm.yml not found: {apm_yml_path}")

        try:
            with open(apm_yml_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except (yaml.YAMLError, OSError, UnicodeDecodeError) as e:
            raise ManifestError(f"Invalid YAML format in {apm_yml_path}: {e}")

        if not isinstance(data, dict):
            raise ManifestError(f"apm.yml must contain a YAML object, got {type(data).__name__}")

        # Required fields
        if not data.get('name'):
            raise ManifestError("Missing required field 'name' in apm.yml")
        if data.get('version') in (None, ''):
            raise ManifestError("Missing required field 'version' in apm.yml")

        dependencies = None
        invalid = []
        raw_deps = data.get('dependencies')
        if isinstance(raw_deps, dict):
            dependencies = {}
            for dep_type, dep_list in raw_deps.items():
                if not isinstance(dep_list, list):
                    continue
                if dep_type == 'apm':
                    parsed_deps = []
                    for dep_str in dep_list:
                        if not isinstance(dep_str, str):
                            invalid.append((repr(dep_str), "APM dependencies must be strings"))
                            continue
                        try:
                            parsed_deps.append(DependencyReference.parse(dep_str, default_host=default_host))
                        except ParseError as e:
                            invalid.append((dep_str, str(e)))
                    dependencies[dep_type] = parsed_deps
                else:
                    # Other dependencies (like MCP) remain as strings
                    dependencies[dep_type] = [str(dep) for dep in dep_list if isinstance(dep, str)]

        return cls(
            name=str(data['name']),
            version=str(data['version']),
            description=data.get('description'),
            author=data.get('author'),
            license=data.get('license'),
            dependencies=dependencies,
            scripts=data.get('scripts'),
            package_path=apm_yml_path.parent,
            invalid_dependencies=invalid,
        )

    def get_apm_dependencies(self) -> List[DependencyReference]:
        """Get list of APM dependencies."""
        if not self.dependencies or 'apm' not in self.dependencies:
            return []
        return [dep for dep in self.dependencies['apm'] if isinstance(dep, DependencyReference)]

    def get_mcp_dependencies(self) -> List[str]:
        """Get list of MCP dependencies."""
        if not self.dependencies or 'mcp' not in self.dependencies:
            return []
        return [str(dep) for dep in self.dependencies.get('mcp', [])]

    def has_apm_dependencies(self) -> bool:
        """Check if this package has APM dependencies."""
        return bool(self.get_apm_dependencies())


def has_package_marker(package_path: Path) -> bool:
    """Check whether a directory holds a recognizable installed package."""
    return package_path.is_dir() and any((package_path / name).is_file() for name in PACKAGE_MARKER_FILES)


def load_installed_package(install_path: Path, dep_ref: DependencyReference,
                           default_host: str = DEFAULT_HOST) -> Optional[APMPackage]:
    """Load the package installed at install_path.

    Packages carrying only a SKILL.md get a synthesized manifest without
    dependencies.

    Returns:
        APMPackage or None if no package marker is present

    Raises:
        ManifestError: If the package's apm.yml is invalid
    """
    apm_yml_path = install_path / "apm.yml"
    if apm_yml_path.is_file():
        package = APMPackage.from_apm_yml(apm_yml_path, default_host=default_host)
        if not package.source:
            package.source = dep_ref.to_clone_url()
        return package
    if (install_path / "SKILL.md").is_file():
        return APMPackage(
            name=dep_ref.get_display_name(),
            version="1.0.0",
            source=dep_ref.to_clone_url(),
            package_path=install_path,
        )
    return None


def parse_git_reference(ref_string: Optional[str]) -> Tuple[GitReferenceType, str]:
    """Parse a git reference string to determine its type.

    Args:
        ref_string: Git reference (branch, tag, or commit)

    Returns:
        tuple: (GitReferenceType, cleaned_reference)
    """
    if not ref_string or not ref_string.strip():
        return GitReferenceType.BRANCH, "main"  # Default to main branch

    ref = ref_string.strip()

    # Check if it looks like a commit SHA (40 hex chars or 7+ hex chars)
    if re.match(r'^[a-f0-9]{7,40}$', ref.lower()):
        return GitReferenceType.COMMIT, ref

    # Check if it looks like a semantic version tag
    if re.match(r'^v?\d+\.\d+\.\d+', ref):
        return GitReferenceType.TAG, ref

    # Otherwise assume it's a branch
    return GitReferenceType.BRANCH, ref
