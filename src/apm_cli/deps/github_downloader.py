"""GitHub package downloader for APM dependencies."""

import logging
import os
import re
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Optional, Dict, Any, List

import yaml
from git import Repo
from git.exc import GitCommandError

from ..errors import DownloadError, ManifestError, NotFoundError, TransientError
from ..models.apm_package import (
    DependencyReference,
    GitReferenceType,
    has_package_marker,
    parse_git_reference,
)
from ..utils.github_host import (
    DEFAULT_HOST,
    build_ado_https_clone_url,
    build_https_clone_url,
    build_ssh_url,
    sanitize_token_url_in_message,
)
from .collection_parser import find_collection_manifest, normalize_collection_path, parse_collection_yml
from .downloader import PackageDownloader, DownloadResult, read_commit_stamp, write_commit_stamp

logger = logging.getLogger(__name__)

# Token precedence for APM module access
GITHUB_TOKEN_VARS = ('GITHUB_APM_PAT', 'GITHUB_TOKEN', 'GH_TOKEN')
ADO_TOKEN_VARS = ('ADO_APM_PAT',)

_NOT_FOUND_PATTERNS = (
    "repository not found",
    "not found",
    "couldn't find remote ref",
    "did not match any file(s) known to git",
    "unknown revision",
    "reference is not a tree",
    "does not appear to be a git repository",
)
_TRANSIENT_PATTERNS = (
    "could not resolve host",
    "timed out",
    "connection reset",
    "connection refused",
    "failed to connect",
    "early eof",
    "the remote end hung up unexpectedly",
    "temporary failure",
)

# .apm sub-directory each single-file primitive is installed into
_PRIMITIVE_DIRS = {
    ".prompt.md": "prompts",
    ".instructions.md": "instructions",
    ".chatmode.md": "chatmodes",
    ".agent.md": "agents",
}


def classify_git_error(message: str) -> type:
    """Map a git failure message to the matching DownloadError subclass."""
    lowered = message.lower()
    if any(pattern in lowered for pattern in _TRANSIENT_PATTERNS):
        return TransientError
    if any(pattern in lowered for pattern in _NOT_FOUND_PATTERNS):
        return NotFoundError
    return DownloadError


class GitHubPackageDownloader(PackageDownloader):
    """Downloads APM packages from GitHub, GitHub Enterprise and Azure DevOps."""

    def __init__(self, env: Optional[Dict[str, str]] = None):
        """Initialize the GitHub package downloader.

        Args:
            env: Environment to read tokens from (defaults to os.environ)
        """
        source_env = dict(os.environ if env is None else env)
        self.github_token = self._first_token(source_env, GITHUB_TOKEN_VARS)
        self.ado_token = self._first_token(source_env, ADO_TOKEN_VARS)
        self.has_github_token = self.github_token is not None
        self.git_env = self._setup_git_environment(source_env)
        # Serializes writers of the same install directory across worker threads
        self._path_locks: Dict[Path, threading.Lock] = {}
        self._path_locks_guard = threading.Lock()

    @staticmethod
    def _first_token(env: Dict[str, str], names) -> Optional[str]:
        for name in names:
            token = env.get(name)
            if token:
                return token
        return None

    @staticmethod
    def _setup_git_environment(env: Dict[str, str]) -> Dict[str, Any]:
        """Set up the Git environment so git never prompts for credentials."""
        git_env = dict(env)
        git_env['GIT_TERMINAL_PROMPT'] = '0'
        git_env['GIT_ASKPASS'] = 'echo'
        git_env['GIT_CONFIG_NOSYSTEM'] = '1'
        return git_env

    def _sanitize_git_error(self, error_message: str, host: str = DEFAULT_HOST) -> str:
        """Remove credentials from Git error messages.

        Args:
            error_message: Raw error message from Git operations
            host: Host the operation targeted

        Returns:
            str: Sanitized error message
        """
        sanitized = sanitize_token_url_in_message(error_message, host)
        sanitized = re.sub(r'https://[^@\s/]+@', 'https://***@', sanitized)
        sanitized = re.sub(r'(ghp_|gho_|ghu_|ghs_|ghr_|github_pat_)[a-zA-Z0-9_]+', '***', sanitized)
        sanitized = re.sub(r'(GITHUB_TOKEN|GITHUB_APM_PAT|GH_TOKEN|ADO_APM_PAT)=[^\s]+', r'\1=***', sanitized)
        for token in (self.github_token, self.ado_token):
            if token:
                sanitized = sanitized.replace(token, '***')
        return sanitized

    def _candidate_urls(self, dep_ref: DependencyReference) -> List[str]:
        """Clone URLs to try, most privileged first.

        1. Token-authenticated HTTPS (x-access-token form on GitHub)
        2. SSH for key-based authentication
        3. Anonymous HTTPS for public repositories
        """
        host = dep_ref.host or DEFAULT_HOST
        urls = []
        if dep_ref.is_azure_devops():
            org, project, repo = dep_ref.repo_url.split("/")
            if self.ado_token:
                urls.append(build_ado_https_clone_url(org, project, repo, token=self.ado_token, host=host))
            urls.append(f"git@ssh.{host}:v3/{org}/{project}/{repo}")
            urls.append(build_ado_https_clone_url(org, project, repo, host=host))
            return urls

        if self.github_token:
            urls.append(build_https_clone_url(host, dep_ref.repo_url, token=self.github_token))
        urls.append(build_ssh_url(host, dep_ref.repo_url))
        urls.append(build_https_clone_url(host, dep_ref.repo_url))
        return urls

    def _clone_with_fallback(self, dep_ref: DependencyReference, target_path: Path, **clone_kwargs) -> Repo:
        """Clone a repository, trying each authentication method in turn.

        Raises:
            NotFoundError: If no method can see the repository or ref
            TransientError: If the last failure was a network problem
            DownloadError: For any other git failure
        """
        last_error = None
        for url in self._candidate_urls(dep_ref):
            try:
                return Repo.clone_from(url, str(target_path), env=self.git_env, **clone_kwargs)
            except GitCommandError as e:
                last_error = e
                logger.debug("Clone of %s failed via one method: %s", dep_ref.repo_url,
                             self._sanitize_git_error(str(e), dep_ref.host or DEFAULT_HOST))
                # A failed attempt may leave a partial checkout behind
                if target_path.exists():
                    shutil.rmtree(target_path, ignore_errors=True)

        sanitized_error = self._sanitize_git_error(str(last_error), dep_ref.host or DEFAULT_HOST)
        error_msg = f"Failed to clone repository {dep_ref.repo_url} using all available methods. "
        if not self.has_github_token and not dep_ref.is_azure_devops():
            error_msg += "For private repositories, set GITHUB_APM_PAT or GITHUB_TOKEN environment variable, " \
                         "or ensure SSH keys are configured. "
        error_msg += f"Last error: {sanitized_error}"
        raise classify_git_error(sanitized_error)(error_msg)

    def _checkout(self, dep_ref: DependencyReference, work_dir: Path,
                  pinned_commit: Optional[str]) -> str:
        """Clone dep_ref into work_dir at the requested revision and return its commit."""
        ref_type, ref = parse_git_reference(dep_ref.reference)
        target_rev = pinned_commit or (ref if ref_type == GitReferenceType.COMMIT else None)

        if target_rev is None:
            try:
                clone_kwargs = {'depth': 1}
                if dep_ref.reference:
                    clone_kwargs['branch'] = dep_ref.reference
                repo = self._clone_with_fallback(dep_ref, work_dir, **clone_kwargs)
                return repo.head.commit.hexsha
            except NotFoundError:
                if not dep_ref.reference:
                    raise
                # Not a branch or tag name git can shallow-clone; resolve it from a full clone
                target_rev = dep_ref.reference

        repo = self._clone_with_fallback(dep_ref, work_dir)
        try:
            repo.git.checkout(target_rev)
        except GitCommandError as e:
            sanitized_error = self._sanitize_git_error(str(e), dep_ref.host or DEFAULT_HOST)
            raise NotFoundError(
                f"Reference '{target_rev}' not found in repository {dep_ref.repo_url}: {sanitized_error}")
        return repo.head.commit.hexsha

    def _stage_package(self, dep_ref: DependencyReference, clone_dir: Path, staging_dir: Path) -> None:
        """Copy the installable part of a clone into staging_dir."""
        if not dep_ref.is_virtual:
            shutil.copytree(clone_dir, staging_dir, ignore=shutil.ignore_patterns('.git'))
            return
        if dep_ref.is_virtual_collection():
            self._stage_collection(dep_ref, clone_dir, staging_dir)
            return

        source = clone_dir.joinpath(*dep_ref.virtual_path.split("/"))
        if source.is_dir():
            shutil.copytree(source, staging_dir, ignore=shutil.ignore_patterns('.git'))
        elif source.is_file() and dep_ref.is_virtual_file():
            suffix = next(ext for ext in _PRIMITIVE_DIRS if source.name.endswith(ext))
            primitive_dir = staging_dir / ".apm" / _PRIMITIVE_DIRS[suffix]
            primitive_dir.mkdir(parents=True)
            shutil.copy2(source, primitive_dir / source.name)
        else:
            raise NotFoundError(f"Path '{dep_ref.virtual_path}' not found in repository {dep_ref.repo_url}")

        if not has_package_marker(staging_dir):
            self._write_virtual_manifest(dep_ref, staging_dir)

    def _stage_collection(self, dep_ref: DependencyReference, clone_dir: Path, staging_dir: Path) -> None:
        """Install every item a .collection.yml lists into staging_dir/.apm/<kind dir>.

        Raises:
            NotFoundError: If the manifest or one of its items is missing
            DownloadError: If the manifest is invalid
        """
        manifest_path = find_collection_manifest(clone_dir, dep_ref.virtual_path)
        if manifest_path is None:
            raise NotFoundError(
                f"Collection manifest '{normalize_collection_path(dep_ref.virtual_path)}.collection.yml' "
                f"not found in repository {dep_ref.repo_url}")
        try:
            collection = parse_collection_yml(manifest_path.read_text(encoding="utf-8"))
        except ManifestError as e:
            raise DownloadError(f"Invalid collection manifest in {dep_ref.repo_url}: {e}")

        for item in collection.items:
            source = clone_dir.joinpath(*item.path.strip("/").split("/"))
            if clone_dir.resolve() not in source.resolve().parents:
                raise DownloadError(f"Collection item '{item.path}' points outside repository {dep_ref.repo_url}")
            if not source.is_file():
                raise NotFoundError(
                    f"Collection item '{item.path}' not found in repository {dep_ref.repo_url}")
            item_dir = staging_dir / ".apm" / item.subdirectory
            item_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, item_dir / source.name)
        logger.debug("Staged %d collection item(s) from %s", collection.item_count, dep_ref)

        manifest = {
            'name': dep_ref.alias or collection.id,
            'version': '1.0.0',
            'description': collection.description,
        }
        if collection.tags:
            manifest['tags'] = collection.tags
        with open(staging_dir / "apm.yml", "w", encoding="utf-8") as f:
            yaml.safe_dump(manifest, f, default_flow_style=False, sort_keys=False)

    @staticmethod
    def _write_virtual_manifest(dep_ref: DependencyReference, staging_dir: Path) -> None:
        """Give a sub-path package without its own manifest a minimal apm.yml."""
        name = dep_ref.alias or dep_ref.get_virtual_slug()
        manifest = {
            'name': name,
            'version': '1.0.0',
            'description': f"Virtual package {dep_ref.virtual_path} from {dep_ref.repo_url}",
        }
        with open(staging_dir / "apm.yml", "w", encoding="utf-8") as f:
            yaml.safe_dump(manifest, f, default_flow_style=False, sort_keys=False)

    def _lock_for(self, target_path: Path) -> threading.Lock:
        key = target_path.resolve()
        with self._path_locks_guard:
            lock = self._path_locks.get(key)
            if lock is None:
                lock = self._path_locks[key] = threading.Lock()
            return lock

    def download_package(self, dep_ref: DependencyReference, target_path: Path,
                         pinned_commit: Optional[str] = None) -> DownloadResult:
        """Download a repository (or a sub-path of it) into target_path.

        The package is assembled in a temporary directory next to
        target_path and moved into place only once complete, so an
        interrupted download never leaves a half-written package behind.

        Args:
            dep_ref: Dependency to download
            target_path: Final install directory
            pinned_commit: Exact commit to install, e.g. from apm.lock

        Returns:
            DownloadResult: The commit that was installed and where

        Raises:
            NotFoundError: If the repository, ref or sub-path does not exist
            TransientError: On network failures
            DownloadError: On any other failure
        """
        target_path = Path(target_path)
        target_path.parent.mkdir(parents=True, exist_ok=True)

        with self._lock_for(target_path):
            if (pinned_commit and has_package_marker(target_path)
                    and read_commit_stamp(target_path) == pinned_commit):
                logger.debug("%s already installed at %s", dep_ref, pinned_commit)
                return DownloadResult(resolved_commit=pinned_commit, install_path=target_path)

            work_root = Path(tempfile.mkdtemp(prefix=".apm-download-", dir=str(target_path.parent)))
            try:
                clone_dir = work_root / "clone"
                staging_dir = work_root / "package"
                resolved_commit = self._checkout(dep_ref, clone_dir, pinned_commit)
                self._stage_package(dep_ref, clone_dir, staging_dir)

                if not has_package_marker(staging_dir):
                    raise DownloadError(
                        f"{dep_ref.get_canonical_dependency_string()} is not an APM package "
                        "(no apm.yml or SKILL.md found)")
                write_commit_stamp(staging_dir, resolved_commit)

                if target_path.exists():
                    shutil.rmtree(target_path)
                os.replace(staging_dir, target_path)
            finally:
                shutil.rmtree(work_root, ignore_errors=True)

        logger.debug("Installed %s at %s", dep_ref, resolved_commit)
        return DownloadResult(resolved_commit=resolved_commit, install_path=target_path)
