"""Direct-URL endpoint: a single archive at an HTTP(S) address."""

from __future__ import annotations

import hashlib
import logging
import threading
from pathlib import Path, PurePosixPath
from typing import Dict
from urllib.parse import urlparse

from constants import Constants, SourceKind
from common.archive import read_embedded_manifest
from common.http_client import download
from common.integrity import compute_integrity
from versioning.models import ArtifactReference, PackageCatalog, PackageIdentifier, PackageMetadata

from .base import Endpoint

logger = logging.getLogger(__name__)

# Version recorded for archives that carry no manifest of their own.
UNVERSIONED = "0.0.0"


class DirectURLEndpoint(Endpoint):
    """The archive is downloaded once during resolution to read its manifest.

    The downloaded file is kept in the run's work directory and reused by
    ``fetch``; its digest becomes the artifact integrity so the engine still
    verifies what it extracts.
    """

    kind = SourceKind.URL

    def __init__(self) -> None:
        self._downloads: Dict[str, Path] = {}
        self._lock = threading.Lock()

    def identity(self, identifier: PackageIdentifier) -> str:
        return identifier.constraint.split("#", 1)[0]

    def _download(self, url: str, ctx, package: str) -> Path:
        digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:16]
        filename = PurePosixPath(urlparse(url).path).name or "archive"
        dest = ctx.work_dir / "url" / digest / filename
        path, _ = ctx.retry(
            lambda: download(url, dest, timeout=ctx.settings.request_timeout,
                             cancel_event=ctx.cancel_event, package=package),
            describe=f"download of {package}",
        )
        with self._lock:
            self._downloads[url] = path
        return path

    def load(self, identifier: PackageIdentifier, ctx) -> PackageCatalog:
        url = self.identity(identifier)
        path = self._download(url, ctx, identifier.name)
        manifest = read_embedded_manifest(path, Constants.MANIFEST_FILE) or {}
        artifact = ArtifactReference(
            location=url,
            kind=SourceKind.URL,
            integrity=compute_integrity(path),
            size=path.stat().st_size,
        )
        metadata = PackageMetadata.from_manifest(
            manifest, fallback_name=identifier.name, fallback_version=UNVERSIONED, artifact=artifact
        )
        return PackageCatalog(identifier.name, {metadata.version_str: metadata})

    def fetch(self, artifact: ArtifactReference, dest_dir: Path, ctx) -> Path:
        with self._lock:
            cached = self._downloads.get(artifact.location)
        if cached is not None and cached.exists():
            dest = Path(dest_dir) / cached.name
            ctx.fs.copyfile(cached, dest)
            return dest
        filename = PurePosixPath(urlparse(artifact.location).path).name or "archive"
        path, _ = download(
            artifact.location,
            Path(dest_dir) / filename,
            timeout=ctx.settings.request_timeout,
            cancel_event=ctx.cancel_event,
        )
        return path
