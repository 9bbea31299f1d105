"""Tests for dependency resolution."""

import pytest

from common.errors import CircularDependency, MalformedConstraint, NotFound, OperationCancelled, ResolutionConflict
from constants import DependencyKind
from context import RunContext
from resolution import DependencyGraph, ResolvedNode, Resolver, StrictPolicy
from versioning.models import PackageMetadata
from versioning.parser import parse_manifest_entry


def _versions(graph, name):
    return sorted(node.version_str for node in graph.find(name))


class TestResolver:
    """Graph construction."""

    def test_transitive_dependencies(self, ctx, registry):
        registry.publish("app-lib", "1.0.0", {"util": "^2.0.0"})
        registry.publish("util", "2.0.0")
        registry.publish("util", "2.3.1")

        graph = Resolver(ctx).resolve({"app-lib": "^1.0.0"})

        lib = graph.direct()["app-lib"]
        assert lib.kind == DependencyKind.DIRECT
        util = lib.requires["util"][1]
        assert util.version_str == "2.3.1"
        assert util.kind == DependencyKind.TRANSITIVE
        assert util.placement() == ("app-lib", "util")

    def test_visible_copy_reused(self, ctx, registry):
        registry.publish("a", "1.0.0", {"shared": "^1.0.0"})
        registry.publish("shared", "1.1.0")

        graph = Resolver(ctx).resolve({"a": "^1.0.0", "shared": "^1.0.0"})

        assert len(graph.find("shared")) == 1
        assert graph.direct()["a"].requires["shared"][1] is graph.direct()["shared"]

    def test_conflict_nests_private_copy(self, ctx, registry):
        registry.publish("a", "1.0.0")
        registry.publish("a", "2.0.0")
        registry.publish("b", "1.0.0", {"a": "^2.0.0"})

        graph = Resolver(ctx).resolve({"a": "^1.0.0", "b": "^1.0.0"})

        assert graph.direct()["a"].version_str == "1.0.0"
        nested = graph.direct()["b"].nested["a"]
        assert nested.version_str == "2.0.0"
        assert graph.direct()["b"].requires["a"][1] is nested

    def test_conflict_strict_mode(self, ctx, registry):
        registry.publish("a", "1.0.0")
        registry.publish("a", "2.0.0")
        registry.publish("b", "1.0.0", {"a": "^2.0.0"})

        with pytest.raises(ResolutionConflict) as excinfo:
            Resolver(ctx, policy=StrictPolicy()).resolve({"a": "^1.0.0", "b": "^1.0.0"})

        requesters = dict(excinfo.value.requesters)
        assert requesters == {"b": "^2.0.0", "<root>": "^1.0.0"}
        assert excinfo.value.package == "a"

    def test_strict_mode_sibling_conflict(self, ctx, registry):
        registry.publish("d", "1.0.0")
        registry.publish("d", "2.0.0")
        registry.publish("b", "1.0.0", {"d": "^1.0.0"})
        registry.publish("c", "1.0.0", {"d": "^2.0.0"})

        with pytest.raises(ResolutionConflict) as excinfo:
            Resolver(ctx, policy=StrictPolicy()).resolve({"b": "*", "c": "*"})

        assert excinfo.value.package == "d"
        assert dict(excinfo.value.requesters) == {"c": "^2.0.0", "b": "^1.0.0"}

    def test_strict_mode_sibling_reuses_selected_version(self, ctx, registry):
        registry.publish("d", "1.0.0")
        registry.publish("d", "1.5.0")
        registry.publish("b", "1.0.0", {"d": "1.0.0"})
        registry.publish("c", "1.0.0", {"d": "^1.0.0"})

        graph = Resolver(ctx, policy=StrictPolicy()).resolve({"b": "*", "c": "*"})

        assert _versions(graph, "d") == ["1.0.0", "1.0.0"]

    def test_every_edge_satisfied(self, ctx, registry):
        registry.publish("x", "1.0.0", {"y": "^1.0.0", "z": "~2.1.0"})
        registry.publish("y", "1.0.0", {"z": ">=2.0.0 <3.0.0"})
        registry.publish("y", "1.9.0", {"z": "^2.2.0"})
        for v in ("2.0.0", "2.1.4", "2.2.0", "2.5.0"):
            registry.publish("z", v)

        graph = Resolver(ctx).resolve({"x": "*", "z": "2.0.0"})

        for _, identifier, target in graph.edges():
            assert identifier.version_constraint.satisfies(target.version)
        assert _versions(graph, "z") == ["2.0.0", "2.1.4", "2.5.0"]

    def test_direct_cycle(self, ctx, registry):
        registry.publish("a", "1.0.0", {"b": "^1.0.0"})
        registry.publish("b", "1.0.0", {"a": "^1.0.0"})

        with pytest.raises(CircularDependency) as excinfo:
            Resolver(ctx).resolve({"a": "^1.0.0"})
        assert excinfo.value.chain == ["a", "b", "a"]

    def test_cycle_closed_by_reuse(self, ctx, registry):
        registry.publish("a", "1.0.0", {"b": "^1.0.0"})
        registry.publish("b", "1.0.0", {"a": "^1.0.0"})

        with pytest.raises(CircularDependency):
            Resolver(ctx).resolve({"a": "^1.0.0", "b": "^1.0.0"})

    def test_self_dependency(self, ctx, registry):
        registry.publish("a", "1.0.0", {"a": "^1.0.0"})
        with pytest.raises(CircularDependency):
            Resolver(ctx).resolve({"a": "^1.0.0"})

    def test_missing_transitive_reports_chain(self, ctx, registry):
        registry.publish("a", "1.0.0", {"ghost": "^1.0.0"})

        with pytest.raises(NotFound) as excinfo:
            Resolver(ctx).resolve({"a": "^1.0.0"})
        assert excinfo.value.package == "ghost"
        assert excinfo.value.chain == ["a"]

    def test_malformed_manifest_constraint(self, ctx, registry):
        with pytest.raises(MalformedConstraint):
            Resolver(ctx).resolve({"a": ">>1"})

    def test_preferred_versions(self, ctx, registry):
        registry.publish("a", "1.0.0")
        registry.publish("a", "1.2.0")

        graph = Resolver(ctx, preferred={"a": ["1.0.0"]}).resolve({"a": "^1.0.0"})

        assert graph.direct()["a"].version_str == "1.0.0"

    def test_engines_filter(self, settings, endpoints, project, registry):
        registry.publish("a", "1.0.0")
        registry.publish("a", "1.1.0", engines={"box": ">=3.0.0"})
        context = RunContext(settings=settings.replace(engines={"box": "2.4.0"}), endpoints=endpoints,
                             project_dir=project)

        graph = Resolver(context).resolve({"a": "^1.0.0"})

        assert graph.direct()["a"].version_str == "1.0.0"

    def test_metadata_loaded_once_per_package(self, ctx, registry):
        registry.publish("a", "1.0.0", {"c": "^1.0.0"})
        registry.publish("b", "1.0.0", {"c": "^1.0.0"})
        registry.publish("c", "1.0.0")

        Resolver(ctx).resolve({"a": "*", "b": "*"})

        assert registry.loads["c"] == 1

    def test_dev_marking(self, ctx, registry):
        registry.publish("lib", "1.0.0", {"shared": "^1.0.0"})
        registry.publish("tool", "1.0.0", {"helper": "^1.0.0"})
        registry.publish("shared", "1.0.0")
        registry.publish("helper", "1.0.0")

        graph = Resolver(ctx).resolve({"lib": "^1.0.0"}, {"tool": "^1.0.0"})

        assert graph.direct()["tool"].dev
        assert graph.find("helper")[0].dev
        assert not graph.direct()["lib"].dev
        assert not graph.find("shared")[0].dev

    def test_dev_entry_shadowed_by_production_entry(self, ctx, registry):
        registry.publish("lib", "1.0.0")

        graph = Resolver(ctx).resolve({"lib": "^1.0.0"}, {"lib": "^1.0.0"})

        assert not graph.direct()["lib"].dev

    def test_deterministic(self, ctx, registry):
        registry.publish("a", "1.0.0", {"c": "^1.0.0", "d": "*"})
        registry.publish("b", "1.0.0", {"c": "^2.0.0"})
        registry.publish("c", "1.0.0")
        registry.publish("c", "2.0.0")
        registry.publish("d", "1.0.0")

        first = [n.placement() for n in Resolver(ctx).resolve({"a": "*", "b": "*"})]
        ctx.cache.clear()
        second = [n.placement() for n in Resolver(ctx).resolve({"b": "*", "a": "*"})]

        assert first == second

    def test_cancelled(self, ctx, registry):
        registry.publish("a", "1.0.0")
        ctx.cancel_event.set()
        with pytest.raises(OperationCancelled):
            Resolver(ctx).resolve({"a": "*"})


class TestDependencyGraph:
    """Graph primitives."""

    @staticmethod
    def _node(name, version="1.0.0", parent=None):
        return ResolvedNode(parse_manifest_entry(name, "*"), PackageMetadata(name, version), parent=parent)

    def test_visible_prefers_nearest_scope(self):
        graph = DependencyGraph()
        outer = self._node("x")
        owner = self._node("owner")
        graph.place(outer, None)
        graph.place(owner, None)
        inner = self._node("x", "2.0.0", parent=owner)
        graph.place(inner, owner)

        assert graph.visible("x", owner) is inner
        assert graph.visible("x", None) is outer

    def test_place_duplicate_raises(self):
        graph = DependencyGraph()
        graph.place(self._node("x"), None)
        with pytest.raises(ResolutionConflict):
            graph.place(self._node("x", "2.0.0"), None)

    def test_find_cycle(self):
        graph = DependencyGraph()
        a, b = self._node("a"), self._node("b")
        graph.place(a, None)
        graph.place(b, None)
        graph.link(a, parse_manifest_entry("b", "*"), b)
        assert graph.find_cycle() is None
        graph.link(b, parse_manifest_entry("a", "*"), a)
        assert graph.find_cycle() == ["a", "b", "a"]
