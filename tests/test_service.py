"""End-to-end tests of the command surface against the in-memory registry."""

import json
from collections import Counter

from context import InstallOptions
from installer import OperationKind
from service import ResultCode


def _lock(project):
    return json.loads((project / "box.lock").read_text())


def _manifest(project):
    return json.loads((project / "box.json").read_text())


class TestInstall:
    """install"""

    def test_install_writes_tree_and_lock(self, service, registry, project, write_manifest, recording_fs):
        registry.publish("foo", "1.2.0")
        path = write_manifest({"foo": "^1.0.0"})

        result = service.install(path)

        assert result.ok
        assert (project / "modules" / "foo" / "index.js").exists()
        lock = _lock(project)
        assert [(p["name"], p["resolvedVersion"], p["path"]) for p in lock["packages"]] == [
            ("foo", "1.2.0", "modules/foo")
        ]
        assert lock["packages"][0]["integrityDigest"].startswith("sha512-")
        assert ("write_text", str(path)) not in recording_fs.writes

    def test_second_install_is_noop(self, service, registry, project, write_manifest, recording_fs):
        registry.publish("foo", "1.2.0")
        registry.publish("bar", "1.0.0", {"foo": "^1.0.0"})
        path = write_manifest({"bar": "^1.0.0"})
        assert service.install(path).ok
        recording_fs.writes.clear()
        registry.loads = Counter()

        result = service.install(path)

        assert result.ok
        assert result.plan.is_noop
        assert recording_fs.writes == []
        # The lock was current, so nothing was fetched from the registry.
        assert sum(registry.loads.values()) == 0

    def test_lock_keeps_versions(self, service, registry, project, write_manifest):
        registry.publish("foo", "1.0.0")
        path = write_manifest({"foo": "^1.0.0"})
        assert service.install(path).ok
        registry.publish("foo", "1.1.0")

        write_manifest({"foo": "^1.0.0"}, description="edited")
        assert service.install(path).ok
        write_manifest({"foo": "^1.0.0"}, {"other": "file:../missing"})
        assert service.install(path, InstallOptions(dev=False)).ok

        assert _lock(project)["packages"][0]["resolvedVersion"] == "1.0.0"

    def test_add_package_pins_caret(self, service, registry, project, write_manifest):
        registry.publish("foo", "1.0.0")
        registry.publish("foo", "1.2.0")
        path = write_manifest({})

        result = service.install(path, packages=["foo"])

        assert result.ok
        assert _manifest(project)["dependencies"] == {"foo": "^1.2.0"}
        assert (project / "modules" / "foo").exists()

    def test_add_creates_manifest(self, service, registry, project):
        registry.publish("foo", "2.0.0")

        result = service.install(project / "box.json", InstallOptions(save_dev=True), packages=["foo@~2.0"])

        assert result.ok
        assert _manifest(project) == {"devDependencies": {"foo": "~2.0"}}

    def test_production_skips_dev_dependencies(self, service, registry, project, write_manifest):
        registry.publish("lib", "1.0.0")
        registry.publish("tool", "1.0.0")
        path = write_manifest({"lib": "*"}, {"tool": "*"})

        assert service.install(path, InstallOptions(dev=False)).ok

        assert (project / "modules" / "lib").exists()
        assert not (project / "modules" / "tool").exists()

    def test_missing_manifest(self, service, project):
        result = service.install(project / "box.json")
        assert result.code == ResultCode.PERSISTENCE_FAILED
        assert "not found" in result.diagnostics[0]["message"]


class TestFailures:
    """Result codes for failed runs."""

    def test_strict_conflict(self, service, registry, project, write_manifest):
        registry.publish("a", "1.0.0")
        registry.publish("a", "2.0.0")
        registry.publish("b", "1.0.0", {"a": "^2.0.0"})
        path = write_manifest({"a": "^1.0.0", "b": "^1.0.0"})

        result = service.install(path, InstallOptions(strict=True))

        assert result.code == ResultCode.RESOLUTION_FAILED
        assert result.diagnostics[0]["error"] == "ResolutionConflict"
        assert result.diagnostics[0]["package"] == "a"
        assert not (project / "modules").exists()
        assert not (project / "box.lock").exists()

    def test_unknown_package(self, service, project, write_manifest):
        result = service.install(write_manifest({"ghost": "^1.0.0"}))
        assert result.code == ResultCode.RESOLUTION_FAILED
        assert result.diagnostics[0]["error"] == "NotFound"

    def test_partial_failure(self, service, registry, project, write_manifest):
        registry.publish("good", "1.0.0")
        registry.publish("bad", "1.0.0")
        registry.publish("parent", "1.0.0", {"bad": "^1.0.0"})
        registry.broken.add("bad")
        path = write_manifest({"good": "*", "parent": "*"})

        result = service.install(path)

        assert result.code == ResultCode.PARTIAL_INSTALL_FAILED
        assert (project / "modules" / "good").exists()
        assert not (project / "box.lock").exists()
        failed = {f["package"] for f in result.diagnostics[0]["failures"]}
        assert failed == {"bad", "parent"}
        assert result.to_dict()["code"] == "partial_install_failed"

    def test_cancelled(self, service, registry, project, write_manifest):
        registry.publish("a", "1.0.0")
        path = write_manifest({"a": "*"})
        service.cancel()

        result = service.install(path)

        assert result.code == ResultCode.CANCELLED
        assert not (project / "modules" / "a").exists()


    def test_cancel_mid_update_keeps_lock(self, service, registry, project, write_manifest, monkeypatch):
        registry.publish("a", "1.0.0")
        path = write_manifest({"a": "^1.0.0"})
        assert service.install(path).ok
        lock_before = (project / "box.lock").read_text()
        registry.publish("a", "1.1.0")
        fetch = registry.fetch

        def fetch_then_cancel(artifact, dest_dir, context):
            archive = fetch(artifact, dest_dir, context)
            service.cancel()
            return archive

        monkeypatch.setattr(registry, "fetch", fetch_then_cancel)

        result = service.update(path)

        assert result.code == ResultCode.CANCELLED
        assert (project / "box.lock").read_text() == lock_before
        assert (project / "modules" / "a" / "index.js").read_text() == "// a 1.0.0\n"


class TestUpdate:
    """update"""

    def test_update_all(self, service, registry, project, write_manifest):
        registry.publish("foo", "1.0.0")
        path = write_manifest({"foo": "^1.0.0"})
        assert service.install(path).ok
        registry.publish("foo", "1.1.0")

        result = service.update(path)

        assert result.ok
        assert [op.kind for op in result.plan] == [OperationKind.UPGRADE]
        assert _lock(project)["packages"][0]["resolvedVersion"] == "1.1.0"

    def test_update_one_keeps_others_locked(self, service, registry, project, write_manifest, record_of):
        registry.publish("a", "1.0.0")
        registry.publish("a", "2.0.0")
        registry.publish("b", "1.0.0", {"a": "^2.0.0"})
        path = write_manifest({"a": "^1.0.0", "b": "^1.0.0"})
        assert service.install(path).ok
        registry.publish("a", "1.5.0")
        registry.publish("b", "1.1.0", {"a": "^2.0.0"})

        result = service.update(path, ["b"])

        assert result.ok
        assert record_of("modules/b")["installed_version"] == "1.1.0"
        assert (project / "modules" / "b" / "index.js").read_text() == "// b 1.1.0\n"
        assert record_of("modules/b/modules/a")["installed_version"] == "2.0.0"
        assert record_of("modules/a")["installed_version"] == "1.0.0"


class TestRemove:
    """remove"""

    def test_remove_prunes(self, service, registry, project, write_manifest):
        registry.publish("a", "1.0.0")
        registry.publish("b", "1.0.0")
        path = write_manifest({"a": "*", "b": "*"})
        assert service.install(path).ok

        result = service.remove(path, ["b"])

        assert result.ok
        assert not (project / "modules" / "b").exists()
        assert _manifest(project)["dependencies"] == {"a": "*"}
        assert [p["name"] for p in _lock(project)["packages"]] == ["a"]

    def test_remove_keeps_package_still_required(self, service, registry, project, write_manifest, record_of):
        registry.publish("foo", "1.2.0")
        registry.publish("bar", "1.0.0", {"foo": "^1.0.0"})
        path = write_manifest({"foo": "^1.0.0", "bar": "^1.0.0"})
        assert service.install(path).ok

        result = service.remove(path, ["foo"])

        assert result.ok
        assert [(op.kind, op.install_path) for op in result.plan.mutating] == [
            (OperationKind.RELABEL, "modules/foo")
        ]
        assert record_of("modules/foo")["kind"] == "transitive"
        assert not (project / "modules" / "bar" / "modules").exists()
        assert _manifest(project)["dependencies"] == {"bar": "^1.0.0"}


class TestResolve:
    """Dry run."""

    def test_nothing_written(self, service, registry, project, write_manifest, recording_fs):
        registry.publish("a", "1.0.0")
        path = write_manifest({"a": "*"})

        result = service.resolve(path)

        assert result.ok
        assert [op.to_dict()["op"] for op in result.plan] == ["install"]
        assert recording_fs.writes == []
        assert not (project / "modules").exists()
        assert registry.fetches == []
