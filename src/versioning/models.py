"""Data models for package identifiers, metadata and artifacts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

from constants import SourceKind
from common.errors import MalformedConstraint
from versioning.constraint import Constraint, Version, parse_constraint, parse_version, sort_versions


@dataclass(frozen=True)
class PackageIdentifier:
    """A requested package: manifest entry or CLI argument.

    ``constraint`` holds the raw string: a version range for registry packages,
    the repository/URL/path spec for the other kinds.
    """
    name: str
    source_kind: SourceKind
    constraint: str

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise MalformedConstraint("package name must not be empty")
        if self.source_kind == SourceKind.REGISTRY:
            try:
                parse_constraint(self.constraint)
            except MalformedConstraint as exc:
                raise MalformedConstraint(exc.message, package=self.name, cause=exc) from exc

    @property
    def version_constraint(self) -> Optional[Constraint]:
        """Parsed range for registry identifiers, None otherwise."""
        if self.source_kind != SourceKind.REGISTRY:
            return None
        return parse_constraint(self.constraint)

    def __str__(self) -> str:
        return f"{self.name}@{self.constraint or '*'}"


@dataclass(frozen=True)
class ArtifactReference:
    """Where an artifact lives and what to verify after fetching it."""
    location: str
    kind: SourceKind
    integrity: Optional[str] = None
    size: Optional[int] = None


@dataclass(frozen=True, eq=False)
class PackageMetadata:
    """Metadata for one published version; immutable after fetch."""
    name: str
    version: Union[Version, str]
    dependencies: Dict[str, str] = field(default_factory=dict)
    dev_dependencies: Dict[str, str] = field(default_factory=dict)
    artifact: Optional[ArtifactReference] = None
    engines: Dict[str, str] = field(default_factory=dict)
    scripts: Dict[str, str] = field(default_factory=dict)

    @property
    def version_str(self) -> str:
        return str(self.version)

    @property
    def semver(self) -> Optional[Version]:
        """The version as a semantic version, None for bare VCS refs."""
        return parse_version(self.version) if isinstance(self.version, str) else self.version

    def engine_compatible(self, host_engines: Mapping[str, str]) -> bool:
        """False when a declared engine range excludes a configured host engine version."""
        for engine, host_version in host_engines.items():
            declared = self.engines.get(engine)
            if not declared:
                continue
            try:
                if not parse_constraint(declared).satisfies(host_version, allow_prerelease=True):
                    return False
            except MalformedConstraint:
                # An unreadable engines block cannot rule the version out.
                continue
        return True

    @classmethod
    def from_manifest(
        cls,
        data: Mapping[str, Any],
        *,
        fallback_name: str,
        fallback_version: Union[Version, str],
        artifact: Optional[ArtifactReference] = None,
    ) -> "PackageMetadata":
        """Build metadata from a ``box.json``-shaped mapping."""
        version: Union[Version, str] = fallback_version
        declared = data.get("version")
        if isinstance(declared, str):
            version = parse_version(declared) or declared
        return cls(
            name=str(data.get("name") or fallback_name),
            version=version,
            dependencies=_str_map(data.get("dependencies")),
            dev_dependencies=_str_map(data.get("devDependencies")),
            artifact=artifact,
            engines=_str_map(data.get("engines")),
            scripts=_str_map(data.get("scripts")),
        )


def _str_map(value: Any) -> Dict[str, str]:
    if not isinstance(value, Mapping):
        return {}
    return {str(k): "" if v is None else str(v) for k, v in value.items()}


class PackageCatalog:
    """Every candidate version one source offers for one package name."""

    def __init__(self, name: str, entries: Optional[Mapping[str, PackageMetadata]] = None):
        self.name = name
        self.entries: Dict[str, PackageMetadata] = dict(entries or {})

    def add(self, metadata: PackageMetadata) -> None:
        self.entries[metadata.version_str] = metadata

    def get(self, version: str) -> Optional[PackageMetadata]:
        return self.entries.get(version)

    def versions(self) -> List[str]:
        """Semantic versions, lowest first."""
        return sort_versions(self.entries.keys())

    def only(self) -> Optional[PackageMetadata]:
        """The single entry of a one-version catalog (VCS ref, URL, local path)."""
        if len(self.entries) == 1:
            return next(iter(self.entries.values()))
        return None

    def __iter__(self) -> Iterator[PackageMetadata]:
        return iter(self.entries.values())

    def __len__(self) -> int:
        return len(self.entries)
