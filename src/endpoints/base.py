"""Endpoint contract shared by every package source."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, Tuple

from constants import SourceKind
from common.errors import NotFound
from versioning.models import ArtifactReference, PackageCatalog, PackageIdentifier, PackageMetadata

logger = logging.getLogger(__name__)


class Endpoint(ABC):
    """A source able to describe a package and fetch its artifact.

    Subclasses implement ``load`` (every candidate the source offers for one
    identifier) and ``fetch``. ``resolve`` goes through the run's metadata cache
    so each (source, package) is loaded at most once per run.
    """

    kind: SourceKind

    def identity(self, identifier: PackageIdentifier) -> str:
        """Stable key for the source location an identifier points at."""
        return identifier.constraint

    def cache_key(self, identifier: PackageIdentifier) -> Tuple[str, str]:
        return self.kind.value, self.identity(identifier)

    @abstractmethod
    def load(self, identifier: PackageIdentifier, ctx) -> PackageCatalog:
        """Fetch the catalog for ``identifier`` (no caching here)."""

    @abstractmethod
    def fetch(self, artifact: ArtifactReference, dest_dir: Path, ctx) -> Path:
        """Materialize ``artifact`` under ``dest_dir``; returns an archive file or a directory."""

    def catalog(self, identifier: PackageIdentifier, ctx) -> PackageCatalog:
        return ctx.cache.get_or_load(self.cache_key(identifier), lambda: self.load(identifier, ctx))

    def resolve(
        self,
        identifier: PackageIdentifier,
        ctx,
        preferred: Iterable[str] = (),
    ) -> Tuple[PackageMetadata, ArtifactReference]:
        """Pick the metadata/artifact pair this source offers for ``identifier``."""
        metadata = self.select(identifier, self.catalog(identifier, ctx), ctx, preferred)
        return metadata, metadata.artifact

    def select(
        self,
        identifier: PackageIdentifier,
        catalog: PackageCatalog,
        ctx,
        preferred: Iterable[str] = (),
    ) -> PackageMetadata:
        """Single-version sources: the catalog's only entry."""
        metadata = catalog.only()
        if metadata is None:
            raise NotFound(f"no usable metadata at {identifier.constraint}", package=identifier.name)
        return metadata

    def satisfied_by(
        self,
        identifier: PackageIdentifier,
        existing: PackageIdentifier,
        version,
        allow_prerelease: bool = False,
    ) -> bool:
        """True when an already resolved package can serve ``identifier``."""
        return existing.source_kind == self.kind and self.identity(existing) == self.identity(identifier)
