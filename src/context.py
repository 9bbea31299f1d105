"""Run context: everything one resolution/installation run needs, passed explicitly."""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, TypeVar

from common.errors import OperationCancelled
from common.fs import LocalFileSystem
from common.logging_utils import extra_context
from common.retry import call_with_retry
from settings import Settings
from versioning.cache import MetadataCache

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class InstallOptions:
    """Per-command switches.

    ``dev`` installs devDependencies; ``strict`` fails on version conflicts
    instead of nesting copies; ``force`` reinstalls unchanged packages and
    bypasses the lock fast path; ``save_dev`` records packages added by
    ``install`` under devDependencies.
    """
    dev: bool = True
    strict: bool = False
    force: bool = False
    save_dev: bool = False


@dataclass(frozen=True)
class ProgressEvent:
    """Per-operation progress notification for the host to render."""
    kind: str  # "start" | "finish" | "error" | "skip" | "warning"
    operation: Optional[str] = None
    package: Optional[str] = None
    version: Optional[str] = None
    path: Optional[str] = None
    message: Optional[str] = None


def log_event(event: ProgressEvent) -> None:
    """Default event sink: render progress through logging."""
    level = {"error": logging.ERROR, "warning": logging.WARNING}.get(event.kind, logging.INFO)
    label = f"{event.package}@{event.version}" if event.version else (event.package or "")
    text = f"{event.operation or 'run'} {label}".strip()
    if event.kind == "start":
        logger.debug("%s started", text, extra=extra_context(event="progress", action=event.operation,
                                                              outcome="start", package=event.package))
        return
    suffix = f": {event.message}" if event.message else ""
    logger.log(level, "%s %s%s", text, event.kind, suffix,
               extra=extra_context(event="progress", action=event.operation, outcome=event.kind,
                                   package=event.package))


@dataclass
class RunContext:  # pylint: disable=too-many-instance-attributes
    """Bundle of collaborators for one run.

    ``endpoints`` is an ``endpoints.EndpointRegistry``; typed loosely to keep
    this module import-light.
    """
    settings: Settings
    endpoints: object
    project_dir: Path
    fs: LocalFileSystem = field(default_factory=LocalFileSystem)
    cache: MetadataCache = field(default_factory=MetadataCache)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    events: Callable[[ProgressEvent], None] = log_event
    _work_dir: Optional[Path] = field(default=None, init=False, repr=False)
    _work_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def install_root(self) -> Path:
        return self.project_dir / self.settings.install_dir

    @property
    def manifest_path(self) -> Path:
        return self.project_dir / self.settings.manifest_file

    @property
    def lock_path(self) -> Path:
        return self.project_dir / self.settings.lock_file

    @property
    def work_dir(self) -> Path:
        """Scoped temporary directory for downloads, removed by ``close``."""
        with self._work_lock:
            if self._work_dir is None:
                self._work_dir = Path(tempfile.mkdtemp(prefix="boxpm-"))
            return self._work_dir

    def retry(self, func: Callable[[], T], describe: str) -> T:
        """Run ``func`` under the configured back-off policy."""
        return call_with_retry(
            func,
            attempts=self.settings.retry_attempts,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
            cancel_event=self.cancel_event,
            describe=describe,
        )

    def check_cancelled(self, package: Optional[str] = None) -> None:
        """Cancellation checkpoint."""
        if self.cancel_event.is_set():
            raise OperationCancelled("interrupted", package=package)

    def emit(self, kind: str, **fields) -> None:
        try:
            self.events(ProgressEvent(kind=kind, **fields))
        except Exception:  # pylint: disable=broad-exception-caught
            # A broken renderer must not fail the install.
            logger.debug("Progress sink raised", exc_info=True)

    def close(self) -> None:
        with self._work_lock:
            if self._work_dir is not None:
                shutil.rmtree(self._work_dir, ignore_errors=True)
                self._work_dir = None

    def __enter__(self) -> "RunContext":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
