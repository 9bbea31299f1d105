"""Error taxonomy for resolution, installation and persistence.

Every error names the package it concerns, the requesting chain where one is
known (conflicts and cycles), and the underlying cause.
"""

from __future__ import annotations

from typing import List, Optional, Sequence


class BoxError(Exception):
    """Base class for all boxpm failures."""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        package: Optional[str] = None,
        chain: Optional[Sequence[str]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.package = package
        self.chain: List[str] = list(chain or [])
        self.cause = cause

    def __str__(self) -> str:
        text = self.message
        if self.package and self.package not in text:
            text = f"{self.package}: {text}"
        if self.chain:
            text = f"{text} (via {' > '.join(self.chain)})"
        return text

    def to_dict(self) -> dict:
        """Serializable diagnostic payload."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "package": self.package,
            "chain": self.chain,
            "cause": str(self.cause) if self.cause else None,
        }


class MalformedConstraint(BoxError, ValueError):
    """A version constraint or package specifier could not be parsed."""


class NotFound(BoxError):
    """The package, or a version satisfying the constraint, does not exist."""


class AuthRequired(BoxError):
    """The source rejected the request for lack of credentials."""


class NetworkTransient(BoxError):
    """Timeout, connection reset or server-side error; safe to retry."""

    retryable = True


class NetworkPermanent(BoxError):
    """A network failure that retrying will not fix."""


class CorruptArtifact(BoxError):
    """A downloaded artifact failed its size or digest check, or cannot be unpacked."""

    retryable = True


class CircularDependency(BoxError):
    """Packages depend on each other by name."""


class ResolutionConflict(BoxError):
    """Two requesters need incompatible versions of one package (strict mode)."""

    def __init__(self, message: str, *, requesters: Sequence[tuple] = (), **kwargs):
        super().__init__(message, **kwargs)
        self.requesters = list(requesters)


class HookFailure(BoxError):
    """A package install hook exited non-zero or timed out."""


class OperationCancelled(BoxError):
    """The run was interrupted at a cancellation checkpoint."""


class PersistenceFailure(BoxError):
    """Writing the manifest or lock file failed."""


class PartialInstallFailure(BoxError):
    """Aggregate of failed install operations."""

    def __init__(self, failures: Sequence[BoxError]):
        names = ", ".join(sorted({f.package or "?" for f in failures}))
        super().__init__(f"{len(failures)} operation(s) failed: {names}")
        self.failures = list(failures)

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["failures"] = [f.to_dict() for f in self.failures]
        return payload
