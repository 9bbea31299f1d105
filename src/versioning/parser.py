"""Token parsing utilities for package identifiers."""

import os
import re
from pathlib import PurePosixPath
from typing import Optional, Tuple
from urllib.parse import urlparse

from constants import SourceKind
from common.errors import MalformedConstraint
from .models import PackageIdentifier

_SHORTHAND_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+(#.+)?$")
_SCP_RE = re.compile(r"^[A-Za-z0-9_-]+(\.[A-Za-z0-9_-]+)+:(?!//)")
_VCS_PREFIXES = ("git+", "git://", "github:", "gitlab:")
_LOCAL_PREFIXES = ("file:", "./", "../", "/", "~/", ".\\", "..\\")
_ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".tar.bz2", ".tar.xz", ".tar", ".zip")


def detect_source_kind(spec: str) -> SourceKind:
    """Classify a manifest value or CLI spec by the source it points at."""
    s = (spec or "").strip()
    if s.startswith(_LOCAL_PREFIXES) or re.match(r"^[A-Za-z]:[\\/]", s):
        return SourceKind.LOCAL
    if s.startswith(_VCS_PREFIXES):
        return SourceKind.VCS
    base = s.split("#", 1)[0]
    if base.endswith(".git"):
        return SourceKind.VCS
    if s.startswith(("http://", "https://")):
        return SourceKind.URL
    if _SHORTHAND_RE.match(s):
        return SourceKind.VCS
    return SourceKind.REGISTRY


def tokenize_rightmost_at(s: str) -> Tuple[str, Optional[str]]:
    """Return (name, spec or None) using the rightmost-``@`` rule.

    A leading ``@`` belongs to a scoped name (``@scope/pkg``).
    """
    s = s.strip()
    idx = s.rfind("@")
    if idx <= 0:
        return s, None
    name = s[:idx].strip()
    spec = s[idx + 1:].strip()
    return name, spec if spec else None


def derive_name(spec: str, kind: SourceKind) -> str:
    """Best-effort package name for a spec given without an explicit name."""
    base = spec.split("#", 1)[0].rstrip("/\\")
    if kind == SourceKind.LOCAL:
        if base.startswith("file:"):
            base = base[len("file:"):]
        return os.path.basename(os.path.normpath(os.path.expanduser(base))) or base
    if kind == SourceKind.URL:
        name = PurePosixPath(urlparse(base).path).name
    else:
        name = base.rsplit("/", 1)[-1].rsplit(":", 1)[-1]
    for suffix in _ARCHIVE_SUFFIXES + (".git",):
        if name.endswith(suffix):
            name = name[: -len(suffix)]
            break
    if not name:
        raise MalformedConstraint(f"cannot derive a package name from {spec!r}")
    return name


def parse_manifest_entry(name: str, raw_spec: Optional[str]) -> PackageIdentifier:
    """Construct a PackageIdentifier from a manifest ``name: spec`` pair.

    Raises:
        MalformedConstraint: For an unparseable registry range.
    """
    spec = (raw_spec or "").strip()
    if spec.lower() == "latest":
        spec = "*"
    kind = detect_source_kind(spec)
    return PackageIdentifier(name=name.strip(), source_kind=kind, constraint=spec or "*")


def parse_cli_token(token: str) -> PackageIdentifier:
    """Parse a CLI token such as ``foo``, ``foo@^1.2``, ``github:me/lib#v2`` or ``bar@file:../bar``."""
    token = token.strip()
    if not token:
        raise MalformedConstraint("empty package token")
    whole_kind = detect_source_kind(token)
    if whole_kind != SourceKind.REGISTRY and not _has_name_prefix(token):
        return PackageIdentifier(name=derive_name(token, whole_kind), source_kind=whole_kind, constraint=token)
    name, spec = tokenize_rightmost_at(token)
    return parse_manifest_entry(name, spec)


def _has_name_prefix(token: str) -> bool:
    """True for ``name@<spec>`` whose specifier names a non-registry source."""
    name, spec = tokenize_rightmost_at(token)
    if spec is None or "/" in name or ":" in name:
        return False
    if _SCP_RE.match(spec):
        # git@host:owner/repo is an scp-style remote, not name@spec.
        return False
    return detect_source_kind(spec) != SourceKind.REGISTRY
