"""Registry endpoint: versioned packages served as JSON documents plus tarballs."""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, Optional
from urllib.parse import quote, urlparse

from constants import SourceKind
from common.errors import NetworkPermanent, NotFound
from common.http_client import download, get_json
from common.logging_utils import Timer, extra_context, is_debug_enabled, safe_url
from versioning.constraint import parse_version, pick_best
from versioning.models import ArtifactReference, PackageCatalog, PackageIdentifier, PackageMetadata

from .base import Endpoint

logger = logging.getLogger(__name__)

PACKUMENT_ACCEPT = "application/vnd.npm.install-v1+json; q=1.0, application/json; q=0.8, */*"


class RegistryEndpoint(Endpoint):
    """Client for the package registry.

    The package document lives at ``{registry_url}/{name}`` and lists every
    published version under ``versions`` with its ``dist`` block (``tarball``,
    ``integrity`` or ``shasum``, optional ``size``).
    """

    kind = SourceKind.REGISTRY

    def identity(self, identifier: PackageIdentifier) -> str:
        return identifier.name

    def _headers(self, ctx) -> Dict[str, str]:
        headers = {}
        if ctx.settings.registry_token:
            headers["Authorization"] = f"Bearer {ctx.settings.registry_token}"
        return headers

    def package_url(self, ctx, name: str) -> str:
        return f"{ctx.settings.registry_url.rstrip('/')}/{quote(name, safe='@')}"

    def load(self, identifier: PackageIdentifier, ctx) -> PackageCatalog:
        """Fetch the package document and build a catalog of installable versions.

        Raises:
            NotFound: When the package or every one of its versions is unusable.
            NetworkPermanent: When the document is not shaped like a package document.
        """
        name = identifier.name
        url = self.package_url(ctx, name)
        headers = {"Accept": PACKUMENT_ACCEPT}
        headers.update(self._headers(ctx))

        with Timer() as timer:
            data = ctx.retry(
                lambda: get_json(url, headers=headers, timeout=ctx.settings.request_timeout, package=name),
                describe=f"metadata for {name}",
            )
        if is_debug_enabled(logger):
            logger.debug(
                "Registry metadata fetched",
                extra=extra_context(
                    event="metadata",
                    component="registry",
                    action="load",
                    outcome="success",
                    duration_ms=timer.duration_ms(),
                    target=safe_url(url),
                    package=name,
                )
            )

        versions = data.get("versions") if isinstance(data, dict) else None
        if not isinstance(versions, dict):
            raise NetworkPermanent("malformed package document: missing 'versions'", package=name)

        catalog = PackageCatalog(name)
        for raw_version, doc in versions.items():
            metadata = self._version_entry(name, raw_version, doc)
            if metadata is not None:
                catalog.add(metadata)
        if not catalog:
            raise NotFound("no installable versions published", package=name)
        return catalog

    @staticmethod
    def _version_entry(name: str, raw_version: str, doc) -> Optional[PackageMetadata]:
        parsed = parse_version(raw_version)
        if parsed is None or not isinstance(doc, dict):
            logger.debug("Skipping unparseable version %s of %s", raw_version, name)
            return None
        dist = doc.get("dist") or {}
        tarball = dist.get("tarball") if isinstance(dist, dict) else None
        if not tarball:
            logger.debug("Skipping %s@%s: no tarball", name, raw_version)
            return None
        size = dist.get("size") if isinstance(dist.get("size"), int) else None
        artifact = ArtifactReference(
            location=str(tarball),
            kind=SourceKind.REGISTRY,
            integrity=dist.get("integrity") or dist.get("shasum"),
            size=size,
        )
        metadata = PackageMetadata.from_manifest(doc, fallback_name=name, fallback_version=parsed, artifact=artifact)
        # The document key is authoritative over whatever the version body claims.
        return dataclasses.replace(metadata, name=name, version=parsed)

    def select(
        self,
        identifier: PackageIdentifier,
        catalog: PackageCatalog,
        ctx,
        preferred: Iterable[str] = (),
    ) -> PackageMetadata:
        """Highest version satisfying the range, preferring previously locked versions.

        Versions whose ``engines`` block excludes the configured host engines
        are never candidates.

        Raises:
            NotFound: When no compatible version satisfies the range.
        """
        constraint = identifier.version_constraint
        allow_pre = ctx.settings.allow_prerelease
        engines = ctx.settings.engines
        compatible = [m.version_str for m in catalog if m.engine_compatible(engines)]

        preferred_ok = [v for v in preferred if v in compatible]
        chosen = pick_best(preferred_ok, constraint, allow_pre) or pick_best(compatible, constraint, allow_pre)
        if chosen is None:
            if pick_best(catalog.entries.keys(), constraint, allow_pre) is not None:
                raise NotFound(
                    f"no version matching {constraint} supports engines {engines}",
                    package=identifier.name,
                )
            raise NotFound(f"no version matching {constraint}", package=identifier.name)
        return catalog.get(chosen)

    def satisfied_by(
        self,
        identifier: PackageIdentifier,
        existing: PackageIdentifier,
        version,
        allow_prerelease: bool = False,
    ) -> bool:
        if existing.source_kind != SourceKind.REGISTRY or existing.name != identifier.name:
            return False
        return identifier.version_constraint.satisfies(version, allow_prerelease)

    def fetch(self, artifact: ArtifactReference, dest_dir: Path, ctx) -> Path:
        name = PurePosixPath(urlparse(artifact.location).path).name or "package.tgz"
        headers = {}
        # Only send the token to the registry host itself, never to a CDN.
        if urlparse(artifact.location).netloc == urlparse(ctx.settings.registry_url).netloc:
            headers = self._headers(ctx)
        path, _ = download(
            artifact.location,
            Path(dest_dir) / name,
            headers=headers,
            timeout=ctx.settings.request_timeout,
            cancel_event=ctx.cancel_event,
        )
        return path
