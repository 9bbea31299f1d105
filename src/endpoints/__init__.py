"""Package sources: registry, version control, direct URL and local path."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, Optional

from constants import SourceKind
from common.errors import BoxError
from versioning.models import PackageIdentifier

from .base import Endpoint
from .local import LocalPathEndpoint
from .registry import RegistryEndpoint
from .url import DirectURLEndpoint
from .vcs import VersionControlEndpoint, parse_vcs_spec


class EndpointRegistry:
    """Endpoints keyed by the source kind they serve."""

    def __init__(self, endpoints: Iterable[Endpoint] = ()):
        self._table: Dict[SourceKind, Endpoint] = {}
        for endpoint in endpoints:
            self.register(endpoint)

    def register(self, endpoint: Endpoint) -> None:
        self._table[endpoint.kind] = endpoint

    def for_kind(self, kind: SourceKind) -> Endpoint:
        try:
            return self._table[kind]
        except KeyError:
            raise BoxError(f"no endpoint registered for {kind.value} sources") from None

    def for_identifier(self, identifier: PackageIdentifier) -> Endpoint:
        return self.for_kind(identifier.source_kind)

    def source_of(self, identifier: PackageIdentifier) -> str:
        """Canonical ``kind:identity`` label recorded for an installed package."""
        return "{}:{}".format(*self.for_identifier(identifier).cache_key(identifier))


def default_endpoints(project_dir: Optional[Path] = None) -> EndpointRegistry:
    """The four built-in endpoints."""
    return EndpointRegistry([
        RegistryEndpoint(),
        VersionControlEndpoint(),
        DirectURLEndpoint(),
        LocalPathEndpoint(project_dir or Path(".")),
    ])


__all__ = [
    "DirectURLEndpoint",
    "Endpoint",
    "EndpointRegistry",
    "LocalPathEndpoint",
    "RegistryEndpoint",
    "VersionControlEndpoint",
    "default_endpoints",
    "parse_vcs_spec",
]
