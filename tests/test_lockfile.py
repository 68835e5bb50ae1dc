from pathlib import Path

import pytest
import yaml

from apm_cli.deps.apm_resolver import APMDependencyResolver
from apm_cli.deps.lockfile import LockFile, LockedDependency, get_lockfile_path
from apm_cli.errors import CorruptLockfileError
from apm_cli.models.apm_package import DependencyKey, DependencyReference

from conftest import FakeDownloader, fake_commit, write_apm_yml


def _entries():
    return [
        LockedDependency(repo_url="acme/zeta", host="github.com", resolved_commit="a" * 40,
                         resolved_ref="main"),
        LockedDependency(repo_url="acme/mono", host="github.com", resolved_commit="b" * 40,
                         virtual_path="prompts/review.prompt.md", is_virtual=True, depth=2,
                         resolved_by="acme/zeta"),
        LockedDependency(repo_url="acme/alpha", host="github.com", resolved_commit="c" * 40,
                         resolved_ref="v2", version="2.1.0"),
        LockedDependency(repo_url="acme/mono", host="github.com", resolved_commit="d" * 40,
                         depth=3, resolved_by="acme/mono/prompts/review.prompt.md"),
    ]


def test_to_dict_omits_default_and_empty_fields() -> None:
    plain = LockedDependency(repo_url="acme/pack", resolved_commit="a" * 40)
    deep = LockedDependency(repo_url="acme/pack", resolved_commit="a" * 40, virtual_path="skills/x",
                            is_virtual=True, depth=3, resolved_by="acme/root")

    assert plain.to_dict() == {"repo_url": "acme/pack", "resolved_commit": "a" * 40}
    assert deep.to_dict()["depth"] == 3
    assert deep.to_dict()["is_virtual"] is True
    assert deep.to_dict()["resolved_by"] == "acme/root"


def test_unique_key_matches_dependency_reference() -> None:
    dep_ref = DependencyReference.parse("acme/mono/prompts/review.prompt.md#v1")
    locked = LockedDependency.from_dependency_ref(dep_ref, "f" * 40, depth=1, resolved_by=None)

    assert locked.get_unique_key() == dep_ref.get_unique_key()
    assert locked.resolved_ref == "v1"
    assert locked.to_dependency_ref().get_unique_key() == dep_ref.get_unique_key()


def test_yaml_round_trip_preserves_every_entry() -> None:
    lock = LockFile(apm_version="0.1.0")
    for entry in _entries():
        lock.add_dependency(entry)

    decoded = LockFile.from_yaml(lock.to_yaml())

    assert decoded.dependencies == lock.dependencies
    assert decoded.lockfile_version == "1"
    assert decoded.apm_version == "0.1.0"
    assert decoded.generated_at == lock.generated_at


def test_sorted_output_is_independent_of_insertion_order() -> None:
    forward = LockFile(generated_at="2026-01-01T00:00:00+00:00")
    backward = LockFile(generated_at="2026-01-01T00:00:00+00:00")
    for entry in _entries():
        forward.add_dependency(entry)
    for entry in reversed(_entries()):
        backward.add_dependency(entry)

    ordered = forward.get_all_dependencies()

    assert ordered == backward.get_all_dependencies()
    assert forward.to_yaml() == backward.to_yaml()
    assert [(d.depth, d.repo_url) for d in ordered] == sorted((d.depth, d.repo_url) for d in ordered)
    assert [d.repo_url for d in ordered] == ["acme/alpha", "acme/zeta", "acme/mono", "acme/mono"]


def test_yaml_layout() -> None:
    lock = LockFile(generated_at="2026-01-01T00:00:00+00:00", apm_version="0.1.0")
    lock.add_dependency(LockedDependency(repo_url="acme/pack", host="github.com",
                                         resolved_commit="a" * 40, resolved_ref="v2"))

    data = yaml.safe_load(lock.to_yaml())

    assert list(data) == ["lockfile_version", "generated_at", "apm_version", "dependencies"]
    assert data["dependencies"] == [{
        "repo_url": "acme/pack",
        "host": "github.com",
        "resolved_commit": "a" * 40,
        "resolved_ref": "v2",
    }]


@pytest.mark.parametrize("content", [
    "",
    "# comments only\n",
    "lockfile_version: '1'\ndependencies: [unclosed\n",
    "- just\n- a list\n",
    "dependencies: {repo_url: acme/pack}\n",
    "dependencies:\n  - resolved_commit: abc\n",
    "dependencies:\n  - repo_url: acme/pack\n    depth: zero\n",
    "dependencies:\n  - repo_url: acme/pack\n    depth: 0\n",
    "dependencies:\n  - repo_url: acme/pack\n    is_virtual: 'yes'\n",
    "dependencies:\n  - repo_url: acme/pack\n  - repo_url: acme/pack\n    resolved_ref: v2\n",
])
def test_from_yaml_rejects_corrupt_content(content: str) -> None:
    with pytest.raises(CorruptLockfileError):
        LockFile.from_yaml(content)


def test_load_and_read_distinguish_missing_from_corrupt(tmp_path: Path) -> None:
    path = get_lockfile_path(tmp_path)

    assert LockFile.load(path) is None
    assert LockFile.read(path) is None

    path.write_text("dependencies: [unclosed\n", encoding="utf-8")

    with pytest.raises(CorruptLockfileError):
        LockFile.load(path)
    assert LockFile.read(path) is None
    assert LockFile.load_or_create(path).dependencies == {}


def test_write_is_atomic_and_readable(tmp_path: Path) -> None:
    lock = LockFile(apm_version="0.1.0")
    for entry in _entries():
        lock.add_dependency(entry)
    path = get_lockfile_path(tmp_path)

    lock.write(path)
    lock.write(path)

    assert sorted(p.name for p in tmp_path.iterdir()) == ["apm.lock"]
    assert LockFile.read(path).dependencies == lock.dependencies


def test_lockfile_path() -> None:
    assert get_lockfile_path(Path("/work/project")) == Path("/work/project/apm.lock")


def test_from_installed_packages_uses_graph_provenance(project: Path) -> None:
    write_apm_yml(project, apm=["acme/a#v1", "acme/b"])
    downloader = FakeDownloader({"acme/a": ["acme/c#v3"], "acme/b": [], "acme/c": []})
    graph = APMDependencyResolver(downloader).resolve_dependencies(project)

    lock = LockFile.from_installed_packages(graph.resolved_nodes(), graph, apm_version="9.9.9")

    assert lock.apm_version == "9.9.9"
    entry_c = lock.get_dependency(DependencyKey("acme/c"))
    assert entry_c.depth == 2
    assert entry_c.resolved_by == "acme/a"
    assert entry_c.resolved_ref == "v3"
    assert entry_c.resolved_commit == fake_commit("acme/c", "v3")
    assert entry_c.version == "1.0.0"
    assert lock.get_dependency(DependencyKey("acme/a")).resolved_by is None


def test_from_installed_packages_accepts_references(project: Path) -> None:
    write_apm_yml(project, apm=["acme/a"])
    graph = APMDependencyResolver(FakeDownloader({"acme/a": []})).resolve_dependencies(project)

    lock = LockFile.from_installed_packages(graph.flattened_dependencies.get_installation_list(), graph)

    assert lock.has_dependency(DependencyKey("acme/a"))
    assert lock.apm_version


def test_remove_dependency(tmp_path: Path) -> None:
    lock_file = LockFile()
    lock_file.add_dependency(LockedDependency(repo_url="acme/a", host="github.com", resolved_commit="a" * 40))
    lock_file.add_dependency(LockedDependency(repo_url="acme/b", host="github.com", resolved_commit="b" * 40))

    removed = lock_file.remove_dependency(DependencyKey("acme/a"))

    assert removed.repo_url == "acme/a"
    assert lock_file.remove_dependency(DependencyKey("acme/a")) is None
    path = get_lockfile_path(tmp_path)
    lock_file.write(path)
    assert [str(key) for key in LockFile.load(path).dependencies] == ["acme/b"]
