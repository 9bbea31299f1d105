"""Installation planner: diff a resolved graph against what is installed.

Install paths mirror the graph's placement (``modules/<name>`` for the root
scope, ``<parent>/modules/<name>`` below it), with one exception: a package
already installed at a shallower slot with the same version and source is
kept there when doing so leaves every requirement edge pointing at the same
package (the on-disk lookup walks up ``modules/`` directories exactly like
``DependencyGraph.visible``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from common.logging_utils import extra_context, is_debug_enabled
from resolution.graph import DependencyGraph, ResolvedNode

from .records import InstalledPackageRecord, package_dir

logger = logging.getLogger(__name__)

Chain = Tuple[str, ...]


class OperationKind(Enum):
    """What an operation does to one install path."""
    INSTALL = "install"
    UPGRADE = "upgrade"
    REMOVE = "remove"
    RELABEL = "relabel"
    UNCHANGED = "unchanged"


@dataclass
class Operation:
    """One step of a plan."""
    kind: OperationKind
    name: str
    install_path: str
    node: Optional[ResolvedNode] = None
    record: Optional[InstalledPackageRecord] = None
    from_version: Optional[str] = None
    source: Optional[str] = None

    @property
    def version(self) -> Optional[str]:
        if self.node is not None:
            return self.node.version_str
        return self.record.installed_version if self.record else None

    @property
    def mutating(self) -> bool:
        return self.kind != OperationKind.UNCHANGED

    @property
    def writes_files(self) -> bool:
        return self.kind in (OperationKind.INSTALL, OperationKind.UPGRADE)

    def to_dict(self) -> dict:
        return {
            "op": self.kind.value,
            "name": self.name,
            "path": self.install_path,
            "version": self.version,
            "from": self.from_version,
        }

    def __str__(self) -> str:
        if self.kind == OperationKind.UPGRADE:
            return f"{self.kind.value} {self.name} {self.from_version} -> {self.version} ({self.install_path})"
        return f"{self.kind.value} {self.name}@{self.version} ({self.install_path})"


@dataclass
class Plan:
    """Ordered operations: removes first (deepest first), then children before parents."""
    operations: List[Operation] = field(default_factory=list)

    def __iter__(self) -> Iterator[Operation]:
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    @property
    def mutating(self) -> List[Operation]:
        return [op for op in self.operations if op.mutating]

    @property
    def is_noop(self) -> bool:
        return not self.mutating

    def of_kind(self, kind: OperationKind) -> List[Operation]:
        return [op for op in self.operations if op.kind == kind]

    def find(self, name: str) -> List[Operation]:
        return [op for op in self.operations if op.name == name]

    def summary(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for op in self.operations:
            counts[op.kind.value] = counts.get(op.kind.value, 0) + 1
        return counts

    def to_list(self) -> List[dict]:
        return [op.to_dict() for op in self.operations]


def is_nested(path: str, outer: str) -> bool:
    return path.startswith(outer.rstrip("/") + "/")


class Planner:
    """Turn (graph, install records) into a Plan.

    Args:
        endpoints: EndpointRegistry, used to label package sources.
        install_dir: Name of the install directory (``modules``).
    """

    def __init__(self, endpoints, install_dir: str):
        self.endpoints = endpoints
        self.install_dir = install_dir

    def plan(
        self,
        graph: DependencyGraph,
        records: Dict[str, InstalledPackageRecord],
        force: bool = False,
    ) -> Plan:
        chains = self.assign_paths(graph, records)
        desired: Dict[str, ResolvedNode] = {node.install_path: node for node in graph.walk()}

        removes = self._removes(desired, records)
        ordered = [self._diff(node, records.get(node.install_path), force) for node in _children_first(graph)]
        plan = Plan(removes + ordered)
        if is_debug_enabled(logger):
            logger.debug(
                "Plan computed",
                extra=extra_context(event="plan", component="planner", outcome="computed",
                                    count=len(plan), summary=plan.summary(),
                                    depth=max(map(len, chains.values()), default=0))
            )
        return plan

    def source_of(self, node: ResolvedNode) -> str:
        return self.endpoints.source_of(node.identifier)

    def assign_paths(self, graph: DependencyGraph, records: Dict[str, InstalledPackageRecord]) -> Dict[int, Chain]:
        """Set ``install_path`` on every node; returns node id -> scope chain."""
        chains: Dict[int, Chain] = {}
        occupied: Dict[Chain, ResolvedNode] = {}

        def place(node: ResolvedNode, chain: Chain) -> None:
            chains[id(node)] = chain
            occupied[chain] = node
            for name in sorted(node.nested):
                place(node.nested[name], chain + (name,))

        def unplace(node: ResolvedNode) -> None:
            occupied.pop(chains.pop(id(node)), None)
            for child in node.nested.values():
                unplace(child)

        for name in sorted(graph.root_scope):
            place(graph.root_scope[name], (name,))

        def lookup(requester: Optional[ResolvedNode], name: str) -> Optional[ResolvedNode]:
            chain = chains[id(requester)] if requester is not None else ()
            for depth in range(len(chain), -1, -1):
                found = occupied.get(chain[:depth] + (name,))
                if found is not None:
                    return found
            return None

        def consistent() -> bool:
            return all(lookup(requester, ident.name) is target for requester, ident, target in graph.edges())

        for node in list(graph.walk()):
            current = chains[id(node)]
            if len(current) < 2:
                continue
            source = self.source_of(node)
            for depth in range(1, len(current)):
                slot = current[:depth - 1] + (node.name,)
                record = records.get(package_dir(self.install_dir, slot))
                if (slot in occupied or record is None or record.installed_version != node.version_str
                        or record.source != source):
                    continue
                unplace(node)
                place(node, slot)
                if consistent():
                    logger.debug("Keeping %s@%s at %s", node.name, node.version_str, "/".join(slot))
                    break
                unplace(node)
                place(node, current)

        for node in graph.walk():
            node.install_path = package_dir(self.install_dir, chains[id(node)])
        return chains

    def _diff(self, node: ResolvedNode, record: Optional[InstalledPackageRecord], force: bool) -> Operation:
        source = self.source_of(node)
        op = Operation(OperationKind.UNCHANGED, node.name, node.install_path, node=node, record=record, source=source)
        if record is None:
            op.kind = OperationKind.INSTALL
        elif record.installed_version != node.version_str or record.source != source or force:
            op.kind = OperationKind.UPGRADE
            op.from_version = record.installed_version
        elif record.kind != node.kind.value or record.is_dev != node.dev:
            op.kind = OperationKind.RELABEL
        return op

    @staticmethod
    def _removes(desired: Dict[str, ResolvedNode], records: Dict[str, InstalledPackageRecord]) -> List[Operation]:
        stale = sorted((path for path in records if path not in desired), key=lambda p: (-p.count("/"), p))
        outermost = [p for p in stale if not any(is_nested(p, other) for other in stale)]
        return [
            Operation(OperationKind.REMOVE, records[path].name, path, record=records[path],
                      from_version=records[path].installed_version, source=records[path].source)
            for path in outermost
        ]


def _children_first(graph: DependencyGraph) -> List[ResolvedNode]:
    """Post-order over requirement edges and placement; deterministic."""
    order: List[ResolvedNode] = []
    seen = set()

    def visit(node: ResolvedNode) -> None:
        if id(node) in seen:
            return
        seen.add(id(node))
        for child in node.children:
            visit(child)
        for name in sorted(node.nested):
            visit(node.nested[name])
        order.append(node)

    for node in graph.walk():
        visit(node)
    return order
