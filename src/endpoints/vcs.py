"""Version-control endpoint for GitHub and GitLab hosted packages.

A VCS spec names a repository and an optional ref (branch, tag or commit):
``github:owner/repo#v1.2.0``, ``gitlab:group/sub/repo#main``,
``git+https://github.com/owner/repo.git#abc123`` or the ``owner/repo``
shorthand (GitHub). The ref is pinned to a commit during resolution so the
artifact URL recorded in the lock is reproducible.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union
from urllib.parse import quote, urlparse

from constants import Constants, SourceKind
from common.errors import MalformedConstraint, NetworkPermanent
from common.http_client import download, get_json, get_optional_json
from common.logging_utils import extra_context, is_debug_enabled, safe_url
from versioning.constraint import Version, parse_version
from versioning.models import ArtifactReference, PackageCatalog, PackageIdentifier, PackageMetadata

from .base import Endpoint

logger = logging.getLogger(__name__)

_SCP_RE = re.compile(r"^(?:[\w.-]+@)?(?P<host>[\w.-]+):(?P<path>[^/].*)$")


@dataclass(frozen=True)
class RepositoryLocation:
    """Host, owner (namespace) and repository name plus an optional ref."""
    host: str  # "github" | "gitlab"
    owner: str
    repo: str
    ref: Optional[str] = None

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.repo}"

    def __str__(self) -> str:
        return f"{self.host}:{self.slug}" + (f"#{self.ref}" if self.ref else "")


def _host_from_netloc(netloc: str) -> str:
    netloc = netloc.lower()
    if "github" in netloc:
        return "github"
    if "gitlab" in netloc:
        return "gitlab"
    raise MalformedConstraint(f"unsupported repository host {netloc!r}")


def parse_vcs_spec(spec: str) -> RepositoryLocation:
    """Parse a VCS spec into a RepositoryLocation.

    Raises:
        MalformedConstraint: For hosts other than GitHub/GitLab or a missing owner/repo.
    """
    text = spec.strip()
    base, _, ref = text.partition("#")
    ref = ref.strip() or None
    if base.startswith("git+"):
        base = base[len("git+"):]

    if base.startswith(("github:", "gitlab:")):
        host, _, path = base.partition(":")
    elif "://" in base:
        parsed = urlparse(base)
        host, path = _host_from_netloc(parsed.netloc), parsed.path
    elif _SCP_RE.match(base) and "." in base.split(":", 1)[0]:
        match = _SCP_RE.match(base)
        host, path = _host_from_netloc(match.group("host")), match.group("path")
    else:
        host, path = "github", base

    path = path.strip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    owner, _, repo = path.rpartition("/")
    if not owner or not repo:
        raise MalformedConstraint(f"expected owner/repo in {spec!r}")
    return RepositoryLocation(host=host, owner=owner, repo=repo, ref=ref)


class VersionControlEndpoint(Endpoint):
    """Resolve repository refs through the GitHub and GitLab REST APIs."""

    kind = SourceKind.VCS

    def identity(self, identifier: PackageIdentifier) -> str:
        return str(parse_vcs_spec(identifier.constraint))

    def _headers(self, ctx, host: str) -> Dict[str, str]:
        headers = {}
        if host == "github" and ctx.settings.github_token:
            headers["Authorization"] = f"Bearer {ctx.settings.github_token}"
        elif host == "gitlab" and ctx.settings.gitlab_token:
            headers["Private-Token"] = ctx.settings.gitlab_token
        return headers

    def _github_urls(self, ctx, loc: RepositoryLocation) -> Dict[str, str]:
        base = f"{ctx.settings.github_api.rstrip('/')}/repos/{loc.owner}/{loc.repo}"
        return {
            "commit": f"{base}/commits/{quote(loc.ref or 'HEAD', safe='')}",
            "manifest": f"{base}/contents/{Constants.MANIFEST_FILE}?ref={{sha}}",
            "archive": f"{base}/tarball/{{sha}}",
        }

    def _gitlab_urls(self, ctx, loc: RepositoryLocation) -> Dict[str, str]:
        project = quote(loc.slug, safe="")
        base = f"{ctx.settings.gitlab_api.rstrip('/')}/projects/{project}/repository"
        manifest = quote(Constants.MANIFEST_FILE, safe="")
        return {
            "commit": f"{base}/commits/{quote(loc.ref or 'HEAD', safe='')}",
            "manifest": f"{base}/files/{manifest}/raw?ref={{sha}}",
            "archive": f"{base}/archive.tar.gz?sha={{sha}}",
        }

    def load(self, identifier: PackageIdentifier, ctx) -> PackageCatalog:
        """Pin the ref to a commit and read the repository's manifest at that commit.

        A repository without a manifest yields dependency-free metadata named
        after the identifier.
        """
        loc = parse_vcs_spec(identifier.constraint)
        urls = self._github_urls(ctx, loc) if loc.host == "github" else self._gitlab_urls(ctx, loc)
        headers = self._headers(ctx, loc.host)
        timeout = ctx.settings.request_timeout
        name = identifier.name

        commit = ctx.retry(
            lambda: get_json(urls["commit"], headers=headers, timeout=timeout, package=name),
            describe=f"commit lookup for {loc}",
        )
        sha = None
        if isinstance(commit, dict):
            sha = commit.get("sha") or commit.get("id")
        if not sha:
            raise NetworkPermanent(f"could not resolve ref of {loc}", package=name)

        manifest_headers = dict(headers)
        if loc.host == "github":
            manifest_headers["Accept"] = "application/vnd.github.raw+json"
        manifest = ctx.retry(
            lambda: get_optional_json(urls["manifest"].format(sha=sha), headers=manifest_headers,
                                      timeout=timeout, package=name),
            describe=f"manifest of {loc}",
        )
        if is_debug_enabled(logger):
            logger.debug(
                "Repository ref pinned",
                extra=extra_context(
                    event="metadata",
                    component="vcs",
                    action="load",
                    outcome="success" if manifest is not None else "no_manifest",
                    target=safe_url(urls["commit"]),
                    package=name,
                )
            )

        artifact = ArtifactReference(location=urls["archive"].format(sha=sha), kind=SourceKind.VCS)
        metadata = PackageMetadata.from_manifest(
            manifest if isinstance(manifest, dict) else {},
            fallback_name=name,
            fallback_version=sha[:12],
            artifact=artifact,
        )
        # A semver tag is the version; any other ref is carried verbatim.
        version: Union[Version, str] = metadata.version
        if loc.ref:
            version = parse_version(loc.ref) or loc.ref
        metadata = _named(metadata, name, version)
        return PackageCatalog(name, {metadata.version_str: metadata})

    def fetch(self, artifact: ArtifactReference, dest_dir: Path, ctx) -> Path:
        netloc = urlparse(artifact.location).netloc
        host = "gitlab" if netloc == urlparse(ctx.settings.gitlab_api).netloc else "github"
        path, _ = download(
            artifact.location,
            Path(dest_dir) / "repository.tar.gz",
            headers=self._headers(ctx, host),
            timeout=ctx.settings.request_timeout,
            cancel_event=ctx.cancel_event,
        )
        return path


def _named(metadata: PackageMetadata, name: str, version: Any) -> PackageMetadata:
    """The requested name and the ref win over whatever the repository manifest says."""
    return PackageMetadata(
        name=name,
        version=version,
        dependencies=metadata.dependencies,
        dev_dependencies=metadata.dev_dependencies,
        artifact=metadata.artifact,
        engines=metadata.engines,
        scripts=metadata.scripts,
    )
