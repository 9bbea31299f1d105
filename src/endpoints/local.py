"""Local-path endpoint: a package directory on disk."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from constants import Constants, SourceKind
from common.errors import CorruptArtifact, NotFound
from versioning.models import ArtifactReference, PackageCatalog, PackageIdentifier, PackageMetadata

from .base import Endpoint
from .url import UNVERSIONED

logger = logging.getLogger(__name__)


def local_path(spec: str, project_dir: Path) -> Path:
    """Absolute path for a ``file:``/relative/absolute spec, relative to the project."""
    raw = spec.split("#", 1)[0]
    if raw.startswith("file:"):
        raw = raw[len("file:"):]
        if raw.startswith("//"):
            raw = raw[2:]
    path = Path(os.path.expanduser(raw))
    if not path.is_absolute():
        path = Path(project_dir) / path
    return Path(os.path.normpath(path))


class LocalPathEndpoint(Endpoint):
    """Reads the package's own manifest; the artifact is the directory itself.

    The engine copies the directory into place, or links it when the
    ``link_local`` setting is on.
    """

    kind = SourceKind.LOCAL

    def __init__(self, project_dir: Path = Path(".")):
        self.project_dir = Path(project_dir)

    def identity(self, identifier: PackageIdentifier) -> str:
        return str(local_path(identifier.constraint, self.project_dir))

    def load(self, identifier: PackageIdentifier, ctx) -> PackageCatalog:
        """Read ``box.json`` from the package directory, if it has one.

        Raises:
            NotFound: When the path is not a directory.
            CorruptArtifact: When its manifest is not valid JSON.
        """
        path = Path(self.identity(identifier))
        if not ctx.fs.is_dir(path):
            raise NotFound(f"no package directory at {path}", package=identifier.name)
        manifest = {}
        manifest_file = path / Constants.MANIFEST_FILE
        if ctx.fs.exists(manifest_file):
            try:
                manifest = json.loads(ctx.fs.read_text(manifest_file))
            except ValueError as exc:
                raise CorruptArtifact(f"{manifest_file} is not valid JSON", package=identifier.name,
                                      cause=exc) from exc
        artifact = ArtifactReference(location=str(path), kind=SourceKind.LOCAL)
        metadata = PackageMetadata.from_manifest(
            manifest if isinstance(manifest, dict) else {},
            fallback_name=identifier.name,
            fallback_version=UNVERSIONED,
            artifact=artifact,
        )
        return PackageCatalog(identifier.name, {metadata.version_str: metadata})

    def fetch(self, artifact: ArtifactReference, dest_dir: Path, ctx) -> Path:
        path = Path(artifact.location)
        if not ctx.fs.is_dir(path):
            raise NotFound(f"no package directory at {path}")
        return path
