"""Lock file (``box.lock``): the exact resolved tree of the last successful run.

Besides the minimal per-package fields (name, resolvedVersion, source,
integrityDigest, path) each entry keeps what is needed to rebuild the graph
offline: the declared spec and source kind, the artifact reference, the
dependency kind and dev flag, the package's own requirements and hooks.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from constants import Constants, DependencyKind, SourceKind
from common.errors import BoxError, PersistenceFailure
from resolution.graph import DependencyGraph, ResolvedNode
from versioning.constraint import parse_version
from versioning.models import ArtifactReference, PackageIdentifier, PackageMetadata
from versioning.parser import parse_manifest_entry

logger = logging.getLogger(__name__)


@dataclass
class LockEntry:  # pylint: disable=too-many-instance-attributes
    """One locked package."""
    name: str
    resolved_version: str
    source: str
    path: str
    spec: str
    source_kind: str
    integrity: Optional[str] = None
    artifact: Dict[str, Any] = field(default_factory=dict)
    kind: str = DependencyKind.TRANSITIVE.value
    dev: bool = False
    requires: Dict[str, str] = field(default_factory=dict)
    scripts: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "resolvedVersion": self.resolved_version,
            "source": self.source,
            "integrityDigest": self.integrity,
            "path": self.path,
            "spec": self.spec,
            "sourceKind": self.source_kind,
            "artifact": self.artifact,
            "kind": self.kind,
            "dev": self.dev,
            "requires": dict(sorted(self.requires.items())),
            "scripts": dict(sorted(self.scripts.items())),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LockEntry":
        return cls(
            name=str(data["name"]),
            resolved_version=str(data["resolvedVersion"]),
            source=str(data.get("source", "")),
            path=str(data["path"]),
            spec=str(data.get("spec", "")),
            source_kind=str(data.get("sourceKind", SourceKind.REGISTRY.value)),
            integrity=data.get("integrityDigest"),
            artifact=dict(data.get("artifact") or {}),
            kind=str(data.get("kind", DependencyKind.TRANSITIVE.value)),
            dev=bool(data.get("dev", False)),
            requires={str(k): str(v) for k, v in (data.get("requires") or {}).items()},
            scripts={str(k): str(v) for k, v in (data.get("scripts") or {}).items()},
        )


@dataclass
class LockState:
    """Parsed lock file."""
    manifest_digest: str
    packages: List[LockEntry] = field(default_factory=list)
    lockfile_version: int = Constants.LOCKFILE_VERSION

    @classmethod
    def load(cls, path: Path, fs) -> Optional["LockState"]:
        """Read the lock; a missing, unreadable or foreign-version lock yields None."""
        if not fs.exists(path):
            return None
        try:
            data = json.loads(fs.read_text(path))
            if data.get("lockfileVersion") != Constants.LOCKFILE_VERSION:
                logger.warning("Ignoring %s: unsupported lockfileVersion %r", path, data.get("lockfileVersion"))
                return None
            return cls(
                manifest_digest=str(data.get("manifestDigest", "")),
                packages=[LockEntry.from_dict(p) for p in data.get("packages") or []],
            )
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("Ignoring unreadable lock file %s: %s", path, exc)
            return None

    @classmethod
    def from_graph(cls, graph: DependencyGraph, manifest_digest: str, endpoints) -> "LockState":
        entries = []
        for node in graph.walk():
            artifact = node.artifact
            entries.append(LockEntry(
                name=node.name,
                resolved_version=node.version_str,
                source=endpoints.source_of(node.identifier),
                path=node.install_path or "",
                spec=node.identifier.constraint,
                source_kind=node.identifier.source_kind.value,
                integrity=node.integrity,
                artifact={
                    "location": artifact.location,
                    "integrity": artifact.integrity or node.integrity,
                    "size": artifact.size,
                } if artifact is not None else {},
                kind=node.kind.value,
                dev=node.dev,
                requires={name: ident.constraint for name, (ident, _) in node.requires.items()},
                scripts=dict(node.metadata.scripts),
            ))
        entries.sort(key=lambda e: e.path)
        return cls(manifest_digest=manifest_digest, packages=entries)

    def preferred_versions(self) -> Dict[str, List[str]]:
        """Locked versions per package name (nested copies give several)."""
        preferred: Dict[str, List[str]] = {}
        for entry in self.packages:
            versions = preferred.setdefault(entry.name, [])
            if entry.resolved_version not in versions:
                versions.append(entry.resolved_version)
        return preferred

    def to_graph(self, dependencies: Mapping[str, str], install_dir: str) -> DependencyGraph:
        """Rebuild the graph recorded in the lock without touching the network.

        Placement follows the recorded paths; requirement edges are re-linked
        to the nearest visible node.

        Raises:
            BoxError: When the lock does not describe a consistent tree.
        """
        graph = DependencyGraph()
        by_path: Dict[str, ResolvedNode] = {}
        marker = f"/{install_dir}/"
        for entry in sorted(self.packages, key=lambda e: (e.path.count(marker), e.path)):
            parent_path, sep, _ = entry.path.rpartition(marker)
            parent = by_path.get(parent_path) if sep else None
            if sep and parent is None:
                raise BoxError(f"locked path {entry.path} has no parent package", package=entry.name)
            node = _node_from_entry(entry, parent)
            graph.place(node, parent)
            node.install_path = entry.path
            by_path[entry.path] = node

        for entry in self.packages:
            node = by_path[entry.path]
            for name, spec in sorted(entry.requires.items()):
                _link(graph, node, parse_manifest_entry(name, spec))
        for name, spec in sorted(dependencies.items()):
            _link(graph, None, parse_manifest_entry(name, spec))
        return graph

    def to_text(self) -> str:
        return json.dumps(
            {
                "lockfileVersion": self.lockfile_version,
                "manifestDigest": self.manifest_digest,
                "packages": [entry.to_dict() for entry in self.packages],
            },
            indent=2,
            ensure_ascii=False,
        ) + "\n"

    def write(self, path: Path, fs) -> bool:
        """Atomically write the lock unless its content is unchanged.

        Raises:
            PersistenceFailure: When the write fails.
        """
        text = self.to_text()
        try:
            if fs.exists(path) and fs.read_text(path) == text:
                logger.debug("Lock unchanged; not rewriting %s", path)
                return False
            fs.write_text(path, text)
        except OSError as exc:
            raise PersistenceFailure(f"cannot write lock {path}: {exc}", cause=exc) from exc
        return True


def _node_from_entry(entry: LockEntry, parent: Optional[ResolvedNode]) -> ResolvedNode:
    kind = SourceKind(entry.source_kind)
    art = entry.artifact
    artifact = ArtifactReference(
        location=str(art.get("location", "")),
        kind=kind,
        integrity=art.get("integrity") or entry.integrity,
        size=art.get("size"),
    ) if art else None
    metadata = PackageMetadata(
        name=entry.name,
        version=parse_version(entry.resolved_version) or entry.resolved_version,
        dependencies=dict(entry.requires),
        artifact=artifact,
        scripts=dict(entry.scripts),
    )
    node = ResolvedNode(
        PackageIdentifier(entry.name, kind, entry.spec),
        metadata,
        artifact,
        parent=parent,
        kind=DependencyKind(entry.kind),
        dev=entry.dev,
    )
    node.integrity = entry.integrity
    return node


def _link(graph: DependencyGraph, requester: Optional[ResolvedNode], identifier: PackageIdentifier) -> None:
    target = graph.visible(identifier.name, requester)
    if target is None:
        raise BoxError("locked tree is missing a required package", package=identifier.name,
                       chain=list(requester.placement()) if requester is not None else [])
    graph.link(requester, identifier, target)
