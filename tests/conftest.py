"""Shared test fixtures."""

import hashlib
import threading
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import yaml

from apm_cli.config import ResolverConfig
from apm_cli.deps.downloader import DownloadResult, PackageDownloader, write_commit_stamp
from apm_cli.errors import NotFoundError, TransientError
from apm_cli.models.apm_package import DependencyReference


def fake_commit(key: str, ref: Optional[str]) -> str:
    """Deterministic 40-hex commit for a package at a ref."""
    return hashlib.sha1(f"{key}#{ref or 'main'}".encode()).hexdigest()


def write_apm_yml(directory: Path, name: str = "my-project", apm: Optional[List] = None,
                  mcp: Optional[List[str]] = None, version: str = "1.0.0") -> Path:
    """Write an apm.yml declaring the given dependencies."""
    directory.mkdir(parents=True, exist_ok=True)
    data = {"name": name, "version": version}
    dependencies = {}
    if apm is not None:
        dependencies["apm"] = apm
    if mcp is not None:
        dependencies["mcp"] = mcp
    if dependencies:
        data["dependencies"] = dependencies
    path = directory / "apm.yml"
    path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    return path


class FakeDownloader(PackageDownloader):
    """Materializes packages from an in-memory catalogue.

    ``catalogue`` maps a canonical identity (``owner/repo`` or
    ``owner/repo/virtual/path``) to the dependency strings its apm.yml
    declares. Identities not in the catalogue raise NotFoundError; those in
    ``transient`` raise TransientError.
    """

    def __init__(self, catalogue: Optional[Dict[str, List[str]]] = None, transient=(), skill_only=()):
        self.catalogue = catalogue or {}
        self.transient = set(transient)
        self.skill_only = set(skill_only)
        self.calls = []
        self._lock = threading.Lock()

    def called_keys(self) -> List[str]:
        return [key for key, _, _ in self.calls]

    def download_package(self, dep_ref: DependencyReference, target_path: Path,
                         pinned_commit: Optional[str] = None) -> DownloadResult:
        key = dep_ref.get_canonical_dependency_string()
        with self._lock:
            self.calls.append((key, dep_ref.reference, pinned_commit))

        if key in self.transient:
            raise TransientError(f"Connection timed out fetching {key}")
        if key not in self.catalogue:
            raise NotFoundError(f"Repository not found: {key}")

        commit = pinned_commit or fake_commit(key, dep_ref.reference)
        target_path.mkdir(parents=True, exist_ok=True)
        if key in self.skill_only:
            (target_path / "SKILL.md").write_text(f"# {key}\n", encoding="utf-8")
        else:
            write_apm_yml(target_path, name=key.replace("/", "-"), apm=self.catalogue[key])
        write_commit_stamp(target_path, commit)
        return DownloadResult(resolved_commit=commit, install_path=target_path)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """An empty project directory."""
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def config() -> ResolverConfig:
    """Resolver settings independent of the caller's environment."""
    return ResolverConfig(max_depth=50, max_workers=4)


@pytest.fixture
def clean_env(monkeypatch, tmp_path: Path):
    """Isolate CLI runs from user configuration and environment overrides."""
    for name in ("GITHUB_HOST", "APM_MAX_DEPTH", "APM_MAX_WORKERS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("apm_cli.config.CONFIG_FILE", str(tmp_path / "no-config.json"))
    monkeypatch.setenv("COLUMNS", "200")
