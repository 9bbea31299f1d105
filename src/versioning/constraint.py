"""Version constraint parsing and evaluation.

Constraints follow the npm range grammar and are evaluated with
``semantic_version.NpmSpec``: ``||`` alternatives, space or comma separated
comparators, caret/tilde ranges, x-ranges and partial versions, hyphen
ranges, and ``*``/``latest``/empty for any stable release. Expressions that
NpmSpec rejects are retried as a ``SimpleSpec`` (``==1.2.3``, ``!=1.4.0``,
``~=1.2``). Parsing is eager: a malformed string fails in ``parse_constraint``.

Pre-release versions only match when a bound names a pre-release of the
same ``major.minor.patch`` or the caller passes ``allow_prerelease``.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Iterable, Optional, TypeVar, Union

import semantic_version

from common.errors import MalformedConstraint

Version = semantic_version.Version
VersionLike = Union[str, Version]
T = TypeVar("T", str, Version)

_OP_SPACE_RE = re.compile(r"(<=|>=|<|>|=|\^|~)\s+")
_ANY_TOKENS = {"", "*", "x", "X", "latest"}


def parse_version(value: VersionLike) -> Optional[Version]:
    """Parse a full semantic version, tolerating a leading ``v`` or ``=``.

    Returns:
        The Version, or None when ``value`` is not a semantic version.
    """
    if isinstance(value, Version):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip().lstrip("=").strip()
    if text[:1] in ("v", "V"):
        text = text[1:]
    try:
        return Version(text)
    except ValueError:
        return None


def _npm_expression(text: str) -> str:
    """Normalize spacing so every comparator is one NpmSpec block."""
    alternatives = []
    for alt in text.split("||"):
        alt = alt.strip()
        if alt == "latest":
            alt = "*"
        alt = alt.replace("~>", "~").replace(",", " ")
        alt = _OP_SPACE_RE.sub(r"\1", " ".join(alt.split()))
        alternatives.append(alt)
    return " || ".join(alternatives)


class Constraint:
    """Parsed, immutable version constraint."""

    def __init__(self, raw: str, spec: semantic_version.BaseSpec):
        self.raw = raw
        self.spec = spec

    @property
    def is_any(self) -> bool:
        """True for ``*``/empty: every stable release matches."""
        return any(alt.strip() in _ANY_TOKENS for alt in self.raw.split("||"))

    @property
    def is_npm(self) -> bool:
        return isinstance(self.spec, semantic_version.NpmSpec)

    def satisfies(self, version: VersionLike, allow_prerelease: bool = False) -> bool:
        parsed = parse_version(version)
        if parsed is None:
            return False
        if self.spec.match(parsed):
            # SimpleSpec has no release-line rule, so its pre-releases need the opt-in.
            return self.is_npm or not parsed.prerelease or allow_prerelease
        if parsed.prerelease and allow_prerelease:
            # With the opt-in a pre-release is judged by its release line.
            return self.spec.match(parsed.truncate())
        return False

    def __contains__(self, version: VersionLike) -> bool:
        return self.satisfies(version)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Constraint) and self.spec == other.spec

    def __hash__(self) -> int:
        return hash(self.spec)

    def __str__(self) -> str:
        return self.raw

    def __repr__(self) -> str:
        return f"Constraint({self.raw!r} -> {self.spec})"


@lru_cache(maxsize=2048)
def parse_constraint(raw: Optional[str]) -> Constraint:
    """Parse a constraint string.

    Raises:
        MalformedConstraint: When ``raw`` is neither an npm range nor a simple spec.
    """
    if raw is None:
        raw = ""
    if not isinstance(raw, str):
        raise MalformedConstraint(f"constraint must be a string, got {type(raw).__name__}")
    text = raw.strip()
    try:
        spec = semantic_version.NpmSpec(_npm_expression(text))
    except ValueError:
        try:
            spec = semantic_version.SimpleSpec(text)
        except ValueError as exc:
            raise MalformedConstraint(f"invalid version constraint {raw!r}", cause=exc) from exc
    return Constraint(text or "*", spec)


def satisfies(version: VersionLike, constraint: Union[str, Constraint], allow_prerelease: bool = False) -> bool:
    """True when ``version`` matches ``constraint``."""
    if isinstance(constraint, str):
        constraint = parse_constraint(constraint)
    return constraint.satisfies(version, allow_prerelease)


def pick_best(
    candidates: Iterable[T],
    constraint: Union[str, Constraint],
    allow_prerelease: bool = False,
) -> Optional[T]:
    """Return the highest candidate satisfying ``constraint``.

    Candidates that are not semantic versions are ignored. Returns None (the
    not-found outcome) when nothing matches; the candidate object is returned
    as given so callers can map it back to their own records.
    """
    if isinstance(constraint, str):
        constraint = parse_constraint(constraint)
    best = None
    best_version = None
    for candidate in candidates:
        parsed = parse_version(candidate)
        if parsed is None or not constraint.satisfies(parsed, allow_prerelease):
            continue
        if best_version is None or parsed > best_version:
            best, best_version = candidate, parsed
    return best


def sort_versions(candidates: Iterable[T], reverse: bool = False) -> list:
    """Sort semantic version candidates by precedence, dropping the rest."""
    parsed = [(parse_version(c), c) for c in candidates]
    return [c for _, c in sorted(((v, c) for v, c in parsed if v is not None),
                                 key=lambda pair: pair[0], reverse=reverse)]
