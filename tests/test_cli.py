"""CLI tests driven through click's CliRunner with an in-memory downloader."""

from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from apm_cli.cli import cli
from apm_cli.deps.lockfile import LockFile

from conftest import FakeDownloader, fake_commit, write_apm_yml


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def workdir(project: Path, monkeypatch, clean_env) -> Path:
    monkeypatch.chdir(project)
    return project


def _invoke(runner, args, downloader=None, **kwargs):
    return runner.invoke(cli, args, obj={"downloader": downloader or FakeDownloader()}, **kwargs)


def test_version(runner, clean_env) -> None:
    result = runner.invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert "Agent Package Manager (APM) CLI" in result.output


def test_install_without_manifest_fails(runner, workdir: Path) -> None:
    result = _invoke(runner, ["install"])

    assert result.exit_code == 1
    assert "No apm.yml found" in result.output


def test_install_reports_each_dependency(runner, workdir: Path) -> None:
    write_apm_yml(workdir, apm=["acme/pack-a", "acme/pack-b#v2"])
    downloader = FakeDownloader({"acme/pack-a": [], "acme/pack-b": []})

    result = _invoke(runner, ["install"], downloader)

    assert result.exit_code == 0, result.output
    assert f"acme/pack-a @ {fake_commit('acme/pack-a', None)[:8]} (downloaded)" in result.output
    assert f"acme/pack-b#v2 @ {fake_commit('acme/pack-b', 'v2')[:8]} (downloaded)" in result.output
    assert "Wrote apm.lock" in result.output
    assert "Dependencies installation complete" in result.output
    assert len(LockFile.load(workdir / "apm.lock").dependencies) == 2


def test_second_install_uses_lockfile(runner, workdir: Path) -> None:
    write_apm_yml(workdir, apm=["acme/pack-a"])
    _invoke(runner, ["install"], FakeDownloader({"acme/pack-a": []}))

    downloader = FakeDownloader({"acme/pack-a": []})
    result = _invoke(runner, ["install"], downloader)

    assert result.exit_code == 0, result.output
    assert "(locked)" in result.output
    assert downloader.calls == []


def test_install_with_failures_exits_non_zero(runner, workdir: Path) -> None:
    write_apm_yml(workdir, apm=["acme/pack-a", "acme/missing"])

    result = _invoke(runner, ["install"], FakeDownloader({"acme/pack-a": []}))

    assert result.exit_code == 1
    assert "acme/missing" in result.output
    assert "Some dependencies could not be installed" in result.output
    assert (workdir / "apm.lock").exists()


def test_install_reports_conflicts_without_failing(runner, workdir: Path) -> None:
    write_apm_yml(workdir, apm=["acme/a", "acme/b"])
    downloader = FakeDownloader({"acme/a": ["acme/c#v1"], "acme/b": ["acme/c#v2"], "acme/c": []})

    result = _invoke(runner, ["install"], downloader)

    assert result.exit_code == 0, result.output
    assert "acme/c" in result.output
    assert "Conflicts detected: 1" in result.output


def test_install_package_adds_it_to_manifest(runner, workdir: Path) -> None:
    write_apm_yml(workdir, apm=["acme/pack-a"])
    downloader = FakeDownloader({"acme/pack-a": [], "acme/pack-b": []})

    result = _invoke(runner, ["install", "acme/pack-b#v2", "acme/pack-a"], downloader)

    assert result.exit_code == 0, result.output
    data = yaml.safe_load((workdir / "apm.yml").read_text(encoding="utf-8"))
    assert data["dependencies"]["apm"] == ["acme/pack-a", "acme/pack-b#v2"]
    assert "already exists" in result.output


def test_install_invalid_package_fails(runner, workdir: Path) -> None:
    write_apm_yml(workdir)
    before = (workdir / "apm.yml").read_text(encoding="utf-8")

    result = _invoke(runner, ["install", "not-a-package"])

    assert result.exit_code == 1
    assert "Invalid package 'not-a-package'" in result.output
    assert (workdir / "apm.yml").read_text(encoding="utf-8") == before


def test_dry_run_changes_nothing(runner, workdir: Path) -> None:
    write_apm_yml(workdir, apm=["acme/pack-a"])
    before = (workdir / "apm.yml").read_text(encoding="utf-8")
    downloader = FakeDownloader({"acme/pack-a": [], "acme/pack-b": []})

    result = _invoke(runner, ["install", "--dry-run", "acme/pack-b"], downloader)

    assert result.exit_code == 0, result.output
    assert "Would add 1 package(s)" in result.output
    assert "Dry run complete" in result.output
    assert downloader.calls == []
    assert not (workdir / "apm.lock").exists()
    assert (workdir / "apm.yml").read_text(encoding="utf-8") == before


def test_update_flag_redownloads(runner, workdir: Path) -> None:
    write_apm_yml(workdir, apm=["acme/pack-a"])
    _invoke(runner, ["install"], FakeDownloader({"acme/pack-a": []}))

    downloader = FakeDownloader({"acme/pack-a": []})
    result = _invoke(runner, ["install", "--update"], downloader)

    assert result.exit_code == 0, result.output
    assert downloader.called_keys() == ["acme/pack-a"]


def test_invalid_environment_setting_fails(runner, workdir: Path, monkeypatch) -> None:
    write_apm_yml(workdir, apm=["acme/pack-a"])
    monkeypatch.setenv("APM_MAX_DEPTH", "deep")

    result = _invoke(runner, ["install"])

    assert result.exit_code == 1
    assert "Invalid configuration" in result.output


def test_deps_verify(runner, workdir: Path) -> None:
    write_apm_yml(workdir, apm=["acme/pack-a"])
    _invoke(runner, ["install"], FakeDownloader({"acme/pack-a": []}))

    ok = _invoke(runner, ["deps", "verify"])
    (workdir / "apm_modules" / "github.com" / "acme" / "pack-a" / "apm.yml").unlink()
    broken = _invoke(runner, ["deps", "verify"])

    assert ok.exit_code == 0, ok.output
    assert "All dependencies are installed" in ok.output
    assert broken.exit_code == 1
    assert "1 declared dependencies are not installed" in broken.output


def test_deps_verify_without_dependencies(runner, workdir: Path) -> None:
    write_apm_yml(workdir)

    result = _invoke(runner, ["deps", "verify"])

    assert result.exit_code == 0
    assert "No APM dependencies declared" in result.output


def test_deps_verify_without_manifest(runner, workdir: Path) -> None:
    result = _invoke(runner, ["deps", "verify"])

    assert result.exit_code == 1


def test_deps_list(runner, workdir: Path) -> None:
    empty = _invoke(runner, ["deps", "list"])
    write_apm_yml(workdir, apm=["acme/a"])
    _invoke(runner, ["install"], FakeDownloader({"acme/a": ["acme/b"], "acme/b": []}))

    result = _invoke(runner, ["deps", "list"])

    assert "No APM dependencies installed yet" in empty.output
    assert result.exit_code == 0, result.output
    assert "acme/a" in result.output
    assert "acme/b" in result.output
    assert fake_commit("acme/b", None)[:8] in result.output


def test_deps_tree(runner, workdir: Path) -> None:
    write_apm_yml(workdir, apm=["acme/a", "acme/gone"])
    _invoke(runner, ["install"], FakeDownloader({"acme/a": ["acme/b"], "acme/b": []}))

    result = _invoke(runner, ["deps", "tree"])

    assert result.exit_code == 0, result.output
    assert "my-project" in result.output
    assert "acme/b" in result.output
    assert "acme/gone" in result.output
    assert "not installed" in result.output


def test_deps_clean(runner, workdir: Path) -> None:
    write_apm_yml(workdir, apm=["acme/a"])
    _invoke(runner, ["install"], FakeDownloader({"acme/a": []}))

    declined = _invoke(runner, ["deps", "clean"], input="n\n")
    assert (workdir / "apm_modules").exists()
    assert "Operation cancelled" in declined.output

    result = _invoke(runner, ["deps", "clean", "--yes"])

    assert result.exit_code == 0
    assert not (workdir / "apm_modules").exists()
    assert "already clean" in _invoke(runner, ["deps", "clean", "--yes"]).output


def test_deps_uninstall_removes_declaration_install_and_lock_entry(runner, workdir: Path) -> None:
    write_apm_yml(workdir, apm=["acme/a#v1", "acme/keep"])
    _invoke(runner, ["install"], FakeDownloader({"acme/a": [], "acme/keep": []}))

    result = _invoke(runner, ["deps", "uninstall", "acme/a"])

    assert result.exit_code == 0, result.output
    assert "acme/a - found in apm.yml" in result.output
    assert "Uninstall complete: removed 1 package(s)" in result.output
    data = yaml.safe_load((workdir / "apm.yml").read_text(encoding="utf-8"))
    assert data["dependencies"]["apm"] == ["acme/keep"]
    assert not (workdir / "apm_modules" / "github.com" / "acme" / "a").exists()
    assert (workdir / "apm_modules" / "github.com" / "acme" / "keep" / "apm.yml").is_file()
    assert [str(key) for key in LockFile.load(workdir / "apm.lock").dependencies] == ["acme/keep"]


def test_deps_uninstall_cleans_empty_parent_directories(runner, workdir: Path) -> None:
    write_apm_yml(workdir, apm=["acme/a"])
    _invoke(runner, ["install"], FakeDownloader({"acme/a": []}))

    result = _invoke(runner, ["deps", "uninstall", "acme/a"])

    assert result.exit_code == 0, result.output
    assert (workdir / "apm_modules").is_dir()
    assert list((workdir / "apm_modules").iterdir()) == []
    assert LockFile.load(workdir / "apm.lock").dependencies == {}


def test_deps_uninstall_dry_run_changes_nothing(runner, workdir: Path) -> None:
    write_apm_yml(workdir, apm=["acme/a"])
    _invoke(runner, ["install"], FakeDownloader({"acme/a": []}))
    manifest_before = (workdir / "apm.yml").read_text(encoding="utf-8")
    lock_before = (workdir / "apm.lock").read_text(encoding="utf-8")

    result = _invoke(runner, ["deps", "uninstall", "acme/a", "--dry-run"])

    assert result.exit_code == 0, result.output
    assert "Would remove 1 package(s)" in result.output
    assert "Dry run complete - no changes made" in result.output
    assert (workdir / "apm.yml").read_text(encoding="utf-8") == manifest_before
    assert (workdir / "apm.lock").read_text(encoding="utf-8") == lock_before
    assert (workdir / "apm_modules" / "github.com" / "acme" / "a" / "apm.yml").is_file()


def test_deps_uninstall_unknown_package(runner, workdir: Path) -> None:
    write_apm_yml(workdir, apm=["acme/a"])

    result = _invoke(runner, ["deps", "uninstall", "acme/unknown"])

    assert result.exit_code == 0, result.output
    assert "acme/unknown - not found in apm.yml" in result.output
    assert "No packages found in apm.yml to remove" in result.output
    assert yaml.safe_load((workdir / "apm.yml").read_text(encoding="utf-8"))["dependencies"]["apm"] == ["acme/a"]


def test_deps_uninstall_without_manifest_fails(runner, workdir: Path) -> None:
    result = _invoke(runner, ["deps", "uninstall", "acme/a"])

    assert result.exit_code == 1
    assert "No apm.yml found" in result.output


def test_deps_list_reports_orphaned_packages(runner, workdir: Path) -> None:
    write_apm_yml(workdir, apm=["acme/a"])
    _invoke(runner, ["install"], FakeDownloader({"acme/a": []}))
    write_apm_yml(workdir / "apm_modules" / "github.com" / "stray" / "pkg", name="pkg")
    write_apm_yml(workdir / "apm_modules" / "dev.azure.com" / "org" / "proj" / "repo", name="repo")

    result = _invoke(runner, ["deps", "list"])

    assert result.exit_code == 0, result.output
    assert "2 orphaned package(s) found" in result.output
    assert "github.com/stray/pkg" in result.output
    assert "dev.azure.com/org/proj/repo" in result.output
    assert "github.com/acme/a" not in result.output


def test_deps_list_reports_orphans_without_lockfile(runner, workdir: Path) -> None:
    write_apm_yml(workdir)
    write_apm_yml(workdir / "apm_modules" / "github.com" / "stray" / "pkg", name="pkg")

    result = _invoke(runner, ["deps", "list"])

    assert result.exit_code == 0, result.output
    assert "No APM dependencies installed yet" in result.output
    assert "1 orphaned package(s) found" in result.output
