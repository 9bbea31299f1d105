"""Tests for manifest and lock file handling."""

import json

import pytest

from common.errors import BoxError, MalformedConstraint, PersistenceFailure
from constants import DependencyKind
from installer import Planner
from persistence import LockState, Manifest
from resolution import Resolver


class TestManifest:
    """box.json reading and writing."""

    def test_load(self, write_manifest, recording_fs):
        path = write_manifest({"a": "^1.0.0"}, {"t": "~2.0.0"}, engines={"box": ">=1.0.0"})

        manifest = Manifest.load(path, recording_fs)

        assert manifest.name == "app"
        assert manifest.dependencies == {"a": "^1.0.0"}
        assert manifest.dev_dependencies == {"t": "~2.0.0"}
        assert manifest.engines == {"box": ">=1.0.0"}
        assert manifest.has("t")
        assert not manifest.has("zzz")

    def test_missing_file(self, project, recording_fs):
        with pytest.raises(PersistenceFailure, match="not found"):
            Manifest.load(project / "box.json", recording_fs)

    @pytest.mark.parametrize("text", ["{not json", "[1, 2]"])
    def test_unreadable(self, project, recording_fs, text):
        path = project / "box.json"
        path.write_text(text)
        with pytest.raises(PersistenceFailure):
            Manifest.load(path, recording_fs)

    def test_malformed_section(self, write_manifest, recording_fs):
        path = write_manifest({"a": 1})
        with pytest.raises(MalformedConstraint):
            Manifest.load(path, recording_fs)

    def test_save_entry_moves_between_sections(self, write_manifest, recording_fs):
        manifest = Manifest.load(write_manifest({"a": "^1.0.0"}), recording_fs)

        manifest.save_entry("a", "^1.1.0", dev=True)

        assert manifest.dependencies == {}
        assert manifest.dev_dependencies == {"a": "^1.1.0"}

    def test_remove_entries(self, write_manifest, recording_fs):
        manifest = Manifest.load(write_manifest({"a": "*", "b": "*"}, {"a": "*"}), recording_fs)

        assert manifest.remove_entries(["a", "nope"]) == ["a"]
        assert manifest.dependencies == {"b": "*"}
        assert manifest.dev_dependencies == {}

    def test_digest(self, write_manifest, recording_fs):
        manifest = Manifest.load(write_manifest({"a": "^1.0.0"}), recording_fs)
        before = manifest.digest({"dev": True})

        assert manifest.digest({"dev": True}) == before
        assert manifest.digest({"dev": False}) != before
        manifest.save_entry("b", "*")
        assert manifest.digest({"dev": True}) != before

    def test_digest_ignores_unrelated_keys(self, write_manifest, recording_fs):
        first = Manifest.load(write_manifest({"a": "*"}), recording_fs).digest()
        second = Manifest.load(write_manifest({"a": "*"}, description="changed"), recording_fs).digest()
        assert first == second

    def test_write_skipped_when_unchanged(self, write_manifest, recording_fs):
        manifest = Manifest.load(write_manifest({"a": "*"}), recording_fs)

        assert manifest.write(recording_fs) is False
        assert recording_fs.writes == []

    def test_write_preserves_unknown_keys(self, write_manifest, recording_fs):
        path = write_manifest({"a": "*"}, license="MIT", scripts={"test": "run"})
        manifest = Manifest.load(path, recording_fs)
        manifest.save_entry("b", "^2.0.0")

        assert manifest.write(recording_fs) is True
        data = json.loads(path.read_text())
        assert list(data) == ["name", "version", "license", "scripts", "dependencies"]
        assert data["dependencies"] == {"a": "*", "b": "^2.0.0"}


class TestLockState:
    """box.lock round trips."""

    @pytest.fixture
    def graph(self, ctx, registry):
        registry.publish("a", "1.0.0")
        registry.publish("a", "2.0.0")
        registry.publish("b", "1.0.0", {"a": "^2.0.0"}, scripts={"postinstall": "make"})
        graph = Resolver(ctx).resolve({"a": "^1.0.0", "b": "^1.0.0"})
        Planner(ctx.endpoints, "modules").plan(graph, {})
        return graph

    def test_from_graph(self, graph, endpoints):
        lock = LockState.from_graph(graph, "sha256-abc", endpoints)

        assert [(e.name, e.resolved_version, e.path) for e in lock.packages] == [
            ("a", "1.0.0", "modules/a"),
            ("b", "1.0.0", "modules/b"),
            ("a", "2.0.0", "modules/b/modules/a"),
        ]
        b = lock.packages[1]
        assert b.source == "registry:b"
        assert b.requires == {"a": "^2.0.0"}
        assert b.scripts == {"postinstall": "make"}
        assert b.kind == DependencyKind.DIRECT.value
        assert lock.preferred_versions() == {"a": ["1.0.0", "2.0.0"], "b": ["1.0.0"]}

    def test_write_and_load(self, graph, endpoints, project, recording_fs):
        path = project / "box.lock"
        lock = LockState.from_graph(graph, "sha256-abc", endpoints)

        assert lock.write(path, recording_fs) is True
        assert lock.write(path, recording_fs) is False
        loaded = LockState.load(path, recording_fs)

        assert loaded.manifest_digest == "sha256-abc"
        assert [e.to_dict() for e in loaded.packages] == [e.to_dict() for e in lock.packages]
        assert json.loads(path.read_text())["lockfileVersion"] == 1

    def test_to_graph_rebuilds_tree(self, graph, endpoints):
        lock = LockState.from_graph(graph, "sha256-abc", endpoints)

        rebuilt = lock.to_graph({"a": "^1.0.0", "b": "^1.0.0"}, "modules")

        assert [(n.name, n.version_str, n.install_path) for n in rebuilt] == [
            (n.name, n.version_str, n.install_path) for n in graph
        ]
        b = rebuilt.direct()["b"]
        assert b.requires["a"][1] is b.nested["a"]
        assert b.metadata.scripts == {"postinstall": "make"}
        rebuilt.validate(endpoints)

    def test_to_graph_missing_package(self, graph, endpoints):
        lock = LockState.from_graph(graph, "sha256-abc", endpoints)
        with pytest.raises(BoxError):
            lock.to_graph({"zzz": "*"}, "modules")

    def test_to_graph_orphan_path(self, graph, endpoints):
        lock = LockState.from_graph(graph, "sha256-abc", endpoints)
        lock.packages = [e for e in lock.packages if e.path != "modules/b"]
        with pytest.raises(BoxError, match="no parent"):
            lock.to_graph({}, "modules")

    def test_load_missing(self, project, recording_fs):
        assert LockState.load(project / "box.lock", recording_fs) is None

    @pytest.mark.parametrize("text", [
        "{broken",
        json.dumps({"lockfileVersion": 99, "packages": []}),
        json.dumps({"lockfileVersion": 1, "packages": [{"name": "a"}]}),
    ])
    def test_load_unusable(self, project, recording_fs, text):
        path = project / "box.lock"
        path.write_text(text)
        assert LockState.load(path, recording_fs) is None
