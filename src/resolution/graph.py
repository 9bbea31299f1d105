"""Resolved dependency graph.

Two relations live side by side:

* **placement**: every node sits in exactly one scope, either the project root or
  the nested ``modules/`` directory of another node (its ``parent``);
* **requirement edges**: ``requester -> name -> node`` for every dependency
  declaration, pointing at the node visible from the requester (its own
  nested scope first, then each enclosing scope up to the root).

A node may be required by many requesters but is placed once.
"""

from __future__ import annotations

import threading
import weakref
from collections import deque
from typing import Dict, Iterator, List, Optional, Tuple

from constants import DependencyKind
from common.errors import CircularDependency, ResolutionConflict
from versioning.models import ArtifactReference, PackageIdentifier, PackageMetadata


class ResolvedNode:  # pylint: disable=too-many-instance-attributes
    """One package placed in the graph."""

    def __init__(
        self,
        identifier: PackageIdentifier,
        metadata: PackageMetadata,
        artifact: Optional[ArtifactReference] = None,
        parent: Optional["ResolvedNode"] = None,
        kind: DependencyKind = DependencyKind.TRANSITIVE,
        dev: bool = False,
    ):
        self.identifier = identifier
        self.metadata = metadata
        self.artifact = artifact if artifact is not None else metadata.artifact
        self._parent = weakref.ref(parent) if parent is not None else None
        self.kind = kind
        self.dev = dev
        # Placement: nodes installed inside this node's modules/ directory.
        self.nested: Dict[str, ResolvedNode] = {}
        # Requirement edges: dependency name -> (declared identifier, satisfying node).
        self.requires: Dict[str, Tuple[PackageIdentifier, ResolvedNode]] = {}
        self.install_path: Optional[str] = None
        self.integrity: Optional[str] = self.artifact.integrity if self.artifact else None

    @property
    def name(self) -> str:
        return self.identifier.name

    @property
    def version(self):
        return self.metadata.version

    @property
    def version_str(self) -> str:
        return self.metadata.version_str

    @property
    def parent(self) -> Optional["ResolvedNode"]:
        return self._parent() if self._parent is not None else None

    @property
    def children(self) -> List["ResolvedNode"]:
        """Nodes this node requires, in name order."""
        return [self.requires[name][1] for name in sorted(self.requires)]

    def placement(self) -> Tuple[str, ...]:
        """Names of the scope chain from the root down to this node."""
        names = []
        node: Optional[ResolvedNode] = self
        while node is not None:
            names.append(node.name)
            node = node.parent
        return tuple(reversed(names))

    def __repr__(self) -> str:
        return f"ResolvedNode({self.name}@{self.version_str}, at={'/'.join(self.placement())})"


class DependencyGraph:
    """Owns every resolved node; the root holds the manifest's direct dependencies."""

    def __init__(self) -> None:
        self.root_scope: Dict[str, ResolvedNode] = {}
        self.root_requires: Dict[str, Tuple[PackageIdentifier, ResolvedNode]] = {}
        self.lock = threading.RLock()

    def scope(self, owner: Optional[ResolvedNode]) -> Dict[str, ResolvedNode]:
        return self.root_scope if owner is None else owner.nested

    def requirements_of(self, requester: Optional[ResolvedNode]) -> Dict[str, Tuple[PackageIdentifier, ResolvedNode]]:
        return self.root_requires if requester is None else requester.requires

    def visible(self, name: str, requester: Optional[ResolvedNode]) -> Optional[ResolvedNode]:
        """Nearest node called ``name`` seen from ``requester``'s position."""
        scope_owner = requester
        while scope_owner is not None:
            found = scope_owner.nested.get(name)
            if found is not None:
                return found
            scope_owner = scope_owner.parent
        return self.root_scope.get(name)

    def place(self, node: ResolvedNode, owner: Optional[ResolvedNode]) -> None:
        """Put ``node`` in ``owner``'s scope (the root when None).

        Raises:
            ResolutionConflict: When the scope already holds that name.
        """
        with self.lock:
            scope = self.scope(owner)
            if node.name in scope and scope[node.name] is not node:
                raise ResolutionConflict(
                    f"scope already holds {scope[node.name].name}@{scope[node.name].version_str}",
                    package=node.name,
                )
            scope[node.name] = node

    def link(self, requester: Optional[ResolvedNode], identifier: PackageIdentifier, target: ResolvedNode) -> None:
        with self.lock:
            self.requirements_of(requester)[identifier.name] = (identifier, target)

    def walk(self) -> Iterator[ResolvedNode]:
        """Every placed node, breadth first by placement, names sorted within a scope."""
        queue = deque(self.root_scope[name] for name in sorted(self.root_scope))
        while queue:
            node = queue.popleft()
            yield node
            queue.extend(node.nested[name] for name in sorted(node.nested))

    def __iter__(self) -> Iterator[ResolvedNode]:
        return self.walk()

    def __len__(self) -> int:
        return sum(1 for _ in self.walk())

    def find(self, name: str) -> List[ResolvedNode]:
        return [node for node in self.walk() if node.name == name]

    def direct(self) -> Dict[str, ResolvedNode]:
        return {name: target for name, (_, target) in self.root_requires.items()}

    def edges(self) -> Iterator[Tuple[Optional[ResolvedNode], PackageIdentifier, ResolvedNode]]:
        for name in sorted(self.root_requires):
            identifier, target = self.root_requires[name]
            yield None, identifier, target
        for node in self.walk():
            for name in sorted(node.requires):
                identifier, target = node.requires[name]
                yield node, identifier, target

    def mark_dev(self) -> None:
        """A node is dev-only when nothing outside the dev dependencies reaches it."""
        production = set()
        queue = deque(node for ident, node in self._root_edges() if not node.dev)
        while queue:
            node = queue.popleft()
            if id(node) in production:
                continue
            production.add(id(node))
            queue.extend(node.children)
        for node in self.walk():
            node.dev = id(node) not in production

    def _root_edges(self):
        return [self.root_requires[name] for name in sorted(self.root_requires)]

    def find_cycle(self) -> Optional[List[str]]:
        """A name-level cycle in the requirement relation, or None."""
        adjacency: Dict[str, set] = {}
        for requester, identifier, _ in self.edges():
            if requester is not None:
                adjacency.setdefault(requester.name, set()).add(identifier.name)
        state: Dict[str, int] = {}
        stack: List[str] = []

        def visit(name: str) -> Optional[List[str]]:
            state[name] = 1
            stack.append(name)
            for dep in sorted(adjacency.get(name, ())):
                if state.get(dep) == 1:
                    return stack[stack.index(dep):] + [dep]
                if dep not in state:
                    found = visit(dep)
                    if found:
                        return found
            stack.pop()
            state[name] = 2
            return None

        for name in sorted(adjacency):
            if name not in state:
                cycle = visit(name)
                if cycle:
                    return cycle
        return None

    def validate(self, endpoints, allow_prerelease: bool = False) -> None:
        """Check edge satisfaction, visibility and acyclicity.

        Raises:
            ResolutionConflict: When an edge is unsatisfied or points past a nearer node.
            CircularDependency: When the requirement relation has a cycle.
        """
        for requester, identifier, target in self.edges():
            endpoint = endpoints.for_identifier(identifier)
            if not endpoint.satisfied_by(identifier, target.identifier, target.version,
                                         allow_prerelease=allow_prerelease):
                raise ResolutionConflict(
                    f"{target.name}@{target.version_str} does not satisfy {identifier.constraint}",
                    package=identifier.name,
                    chain=list(requester.placement()) if requester else [],
                )
            if self.visible(identifier.name, requester) is not target:
                raise ResolutionConflict("dependency shadowed by a nearer copy", package=identifier.name,
                                         chain=list(requester.placement()) if requester else [])
        cycle = self.find_cycle()
        if cycle:
            raise CircularDependency(f"circular dependency {' -> '.join(cycle)}", package=cycle[0], chain=cycle)
