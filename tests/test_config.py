import json
from pathlib import Path

import pytest

from apm_cli import config as config_module
from apm_cli.config import ResolverConfig, get_config, update_config
from apm_cli.models.apm_package import APMPackage

from conftest import write_apm_yml


@pytest.fixture
def config_file(tmp_path: Path, monkeypatch) -> Path:
    config_dir = tmp_path / "apm-config"
    monkeypatch.setattr(config_module, "CONFIG_DIR", str(config_dir))
    monkeypatch.setattr(config_module, "CONFIG_FILE", str(config_dir / "config.json"))
    return config_dir / "config.json"


def test_defaults() -> None:
    config = ResolverConfig()

    assert config.max_depth == 50
    assert config.max_workers == 4
    assert config.default_host == "github.com"
    assert config.apm_modules_dir(Path("/work")) == Path("/work/apm_modules")


@pytest.mark.parametrize("kwargs", [{"max_depth": 0}, {"max_workers": 0}])
def test_rejects_non_positive_limits(kwargs) -> None:
    with pytest.raises(ValueError):
        ResolverConfig(**kwargs)


def test_update_config_persists_values(config_file: Path) -> None:
    assert get_config() == {}

    update_config({"max_depth": 7})
    update_config({"default_host": "git.corp.example"})

    assert json.loads(config_file.read_text()) == {"max_depth": 7, "default_host": "git.corp.example"}


def test_environment_overrides_config_file(config_file: Path) -> None:
    update_config({"max_depth": 7, "max_workers": 2, "default_host": "git.corp.example"})

    from_file = ResolverConfig.load(env={})
    from_env = ResolverConfig.load(update_refs=True, env={"APM_MAX_DEPTH": "3", "GITHUB_HOST": "acme.ghe.com"})

    assert (from_file.max_depth, from_file.max_workers, from_file.default_host) == (7, 2, "git.corp.example")
    assert (from_env.max_depth, from_env.max_workers, from_env.default_host) == (3, 2, "acme.ghe.com")
    assert from_env.update_refs


def test_invalid_integer_setting(config_file: Path) -> None:
    with pytest.raises(ValueError, match="APM_MAX_WORKERS"):
        ResolverConfig.load(env={"APM_MAX_WORKERS": "many"})


def test_configured_host_is_accepted_in_manifests(tmp_path: Path) -> None:
    path = write_apm_yml(tmp_path, apm=["git.corp.example/team/pack", "team/other"])

    package = APMPackage.from_apm_yml(path, default_host="git.corp.example")

    assert package.has_apm_dependencies()
    assert [dep.host for dep in package.get_apm_dependencies()] == ["git.corp.example", "git.corp.example"]
