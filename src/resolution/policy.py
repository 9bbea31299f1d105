"""Conflict policies: what to do when the visible copy of a package does not fit."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

from common.errors import ResolutionConflict
from common.logging_utils import extra_context, is_debug_enabled
from versioning.models import PackageIdentifier

from .graph import DependencyGraph, ResolvedNode

logger = logging.getLogger(__name__)


def _label(requester: Optional[ResolvedNode]) -> str:
    return "/".join(requester.placement()) if requester is not None else "<root>"


class ConflictPolicy(ABC):
    """Decides between nesting a second copy and failing the resolution."""

    name = "abstract"

    @abstractmethod
    def on_conflict(
        self,
        graph: DependencyGraph,
        requester: Optional[ResolvedNode],
        identifier: PackageIdentifier,
        existing: ResolvedNode,
    ) -> None:
        """Return to nest a private copy under ``requester``; raise to abort."""

    def before_place(self, graph, requester, identifier, satisfied_by) -> Optional[ResolvedNode]:
        """Called before a new copy of ``identifier`` is placed under ``requester``.

        Returns an already placed node whose selection the new copy should
        repeat, or None to select afresh.
        """
        return None


class NestedCopyPolicy(ConflictPolicy):
    """Nearest-wins: the requester gets its own copy in its nested scope."""

    name = "nested"

    def on_conflict(self, graph, requester, identifier, existing) -> None:
        if is_debug_enabled(logger):
            logger.debug(
                "Nesting private copy",
                extra=extra_context(
                    event="conflict",
                    component="resolver",
                    action="nest",
                    package=identifier.name,
                    target=_label(requester),
                    outcome=f"{existing.version_str} !~ {identifier.constraint}",
                )
            )


class StrictPolicy(ConflictPolicy):
    """Single version per name; any mismatch is an error."""

    name = "strict"

    def on_conflict(self, graph, requester, identifier, existing) -> None:
        requesters = [(_label(requester), identifier.constraint)]
        for label, (ident, node) in _incoming(graph, existing):
            requesters.append((label, ident.constraint))
        described = "; ".join(f"{label} wants {constraint}" for label, constraint in requesters)
        raise ResolutionConflict(
            f"conflicting requirements for {identifier.name} ({described}); "
            f"{existing.version_str} already selected",
            package=identifier.name,
            requesters=requesters,
            chain=list(requester.placement()) if requester is not None else [],
        )

    def before_place(self, graph, requester, identifier, satisfied_by) -> Optional[ResolvedNode]:
        # Copies outside the requester's scope still count as the one version.
        placed = graph.find(identifier.name)
        for existing in placed:
            if not satisfied_by(existing):
                self.on_conflict(graph, requester, identifier, existing)
        return placed[0] if placed else None


def _incoming(graph: DependencyGraph, target: ResolvedNode):
    for requester, ident, node in graph.edges():
        if node is target:
            yield _label(requester), (ident, node)


def policy_for(strict: bool) -> ConflictPolicy:
    return StrictPolicy() if strict else NestedCopyPolicy()
