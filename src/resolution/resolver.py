"""Breadth-first dependency resolver.

Requirements are processed one depth level at a time. Within a level every
metadata lookup is submitted to a thread pool up front (the metadata cache
collapses duplicates); the results are then merged into the graph by this
thread alone, ordered by requester placement and then by name, so the outcome
does not depend on which lookup finished first.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from constants import DependencyKind
from common.errors import BoxError, CircularDependency
from common.logging_utils import Timer, extra_context, is_debug_enabled
from versioning.models import ArtifactReference, PackageIdentifier, PackageMetadata
from versioning.parser import parse_manifest_entry

from .graph import DependencyGraph, ResolvedNode
from .policy import ConflictPolicy, NestedCopyPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Requirement:
    """One dependency declaration waiting to be merged."""
    requester: Optional[ResolvedNode]
    identifier: PackageIdentifier
    branch: Tuple[str, ...]
    dev: bool = False

    @property
    def name(self) -> str:
        return self.identifier.name

    def order_key(self) -> Tuple[Tuple[str, ...], str]:
        placement = self.requester.placement() if self.requester is not None else ()
        return placement, self.name


class Resolver:
    """Turn root requirements into a validated DependencyGraph.

    Args:
        ctx: Run context (endpoints, cache, settings, cancellation).
        policy: Conflict policy; nearest-wins nesting by default.
        preferred: Versions per package name to keep when they still satisfy
            (normally everything recorded in the previous lock).
    """

    def __init__(
        self,
        ctx,
        policy: Optional[ConflictPolicy] = None,
        preferred: Optional[Mapping[str, Iterable[str]]] = None,
    ):
        self.ctx = ctx
        self.policy = policy or NestedCopyPolicy()
        self.preferred: Dict[str, Tuple[str, ...]] = {
            name: tuple(versions) for name, versions in (preferred or {}).items()
        }

    def resolve(
        self,
        dependencies: Mapping[str, str],
        dev_dependencies: Optional[Mapping[str, str]] = None,
    ) -> DependencyGraph:
        """Resolve manifest-style ``name -> spec`` mappings.

        Raises:
            MalformedConstraint, NotFound, AuthRequired, NetworkPermanent,
            CircularDependency, ResolutionConflict, OperationCancelled.
        """
        roots: List[Requirement] = []
        for name in sorted(dependencies):
            roots.append(Requirement(None, parse_manifest_entry(name, dependencies[name]), (), dev=False))
        for name in sorted(dev_dependencies or {}):
            if name not in dependencies:
                roots.append(Requirement(None, parse_manifest_entry(name, dev_dependencies[name]), (), dev=True))
        return self.resolve_requirements(roots)

    def resolve_requirements(self, roots: List[Requirement]) -> DependencyGraph:
        graph = DependencyGraph()
        level = roots
        depth = 0
        with Timer() as timer, ThreadPoolExecutor(
            max_workers=self.ctx.settings.max_workers, thread_name_prefix="boxpm-resolve"
        ) as pool:
            while level:
                self.ctx.check_cancelled()
                lookups = self._prefetch(pool, graph, level)
                next_level: List[Requirement] = []
                with graph.lock:
                    for requirement in sorted(level, key=Requirement.order_key):
                        next_level.extend(self._merge(graph, requirement, lookups))
                if is_debug_enabled(logger):
                    logger.debug(
                        "Resolved level",
                        extra=extra_context(event="resolve_level", component="resolver", depth=depth,
                                            count=len(level), outcome="merged")
                    )
                level = next_level
                depth += 1

        graph.mark_dev()
        graph.validate(self.ctx.endpoints, allow_prerelease=self.ctx.settings.allow_prerelease)
        logger.info(
            "Resolved %d package(s) in %d ms", len(graph), timer.duration_ms(),
            extra=extra_context(event="resolve", component="resolver", outcome="success",
                                duration_ms=timer.duration_ms(), cache=self.ctx.cache.stats()),
        )
        return graph

    def _lookup_key(self, identifier: PackageIdentifier) -> Tuple[str, str, str]:
        endpoint = self.ctx.endpoints.for_identifier(identifier)
        kind, identity = endpoint.cache_key(identifier)
        return kind, identity, identifier.constraint

    def _prefetch(
        self, pool: ThreadPoolExecutor, graph: DependencyGraph, level: List[Requirement]
    ) -> Dict[Tuple[str, str, str], "Future[Tuple[PackageMetadata, ArtifactReference]]"]:
        """Start a lookup for every requirement not already served by a visible node."""
        lookups = {}
        for requirement in level:
            if requirement.name in requirement.branch:
                continue
            identifier = requirement.identifier
            visible = graph.visible(identifier.name, requirement.requester)
            if visible is not None and self._satisfies(identifier, visible):
                continue
            key = self._lookup_key(identifier)
            if key not in lookups:
                endpoint = self.ctx.endpoints.for_identifier(identifier)
                lookups[key] = pool.submit(
                    endpoint.resolve, identifier, self.ctx, self.preferred.get(identifier.name, ())
                )
        return lookups

    def _satisfies(self, identifier: PackageIdentifier, node: ResolvedNode) -> bool:
        endpoint = self.ctx.endpoints.for_identifier(identifier)
        return endpoint.satisfied_by(identifier, node.identifier, node.version,
                                     allow_prerelease=self.ctx.settings.allow_prerelease)

    def _merge(self, graph: DependencyGraph, requirement: Requirement, lookups) -> List[Requirement]:
        identifier = requirement.identifier
        requester = requirement.requester
        if requirement.name in requirement.branch:
            chain = list(requirement.branch) + [requirement.name]
            raise CircularDependency(f"circular dependency {' -> '.join(chain)}",
                                     package=requirement.name, chain=chain)

        visible = graph.visible(identifier.name, requester)
        if visible is not None:
            if self._satisfies(identifier, visible):
                graph.link(requester, identifier, visible)
                return []
            self.policy.on_conflict(graph, requester, identifier, visible)

        template = self.policy.before_place(
            graph, requester, identifier, lambda node: self._satisfies(identifier, node)
        )
        future = lookups.get(self._lookup_key(identifier))
        endpoint = self.ctx.endpoints.for_identifier(identifier)
        try:
            if template is not None:
                metadata, artifact = template.metadata, template.artifact
            elif future is not None:
                metadata, artifact = future.result()
            else:
                metadata, artifact = endpoint.resolve(identifier, self.ctx, self.preferred.get(identifier.name, ()))
        except BoxError as exc:
            if requirement.branch and not exc.chain:
                exc.chain = list(requirement.branch)
            raise

        node = ResolvedNode(
            identifier,
            metadata,
            artifact,
            parent=requester,
            kind=DependencyKind.DIRECT if requester is None else DependencyKind.TRANSITIVE,
            dev=requirement.dev,
        )
        graph.place(node, requester)
        graph.link(requester, identifier, node)
        if is_debug_enabled(logger):
            logger.debug(
                "Selected %s@%s", node.name, node.version_str,
                extra=extra_context(event="select", component="resolver", package=node.name,
                                    target="/".join(node.placement()), outcome=node.version_str)
            )

        branch = requirement.branch + (requirement.name,)
        return [
            Requirement(node, parse_manifest_entry(name, spec), branch, dev=requirement.dev)
            for name, spec in sorted(metadata.dependencies.items())
        ]
