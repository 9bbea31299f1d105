"""Command surface: install, update, remove and dry-run resolve.

Each call runs the full pipeline (manifest -> resolver -> planner -> engine
-> persistence) inside its own RunContext and returns a RunResult; errors are
reported through the result code, never raised to the host.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Set

from constants import SourceKind
from common.errors import (
    AuthRequired,
    BoxError,
    CorruptArtifact,
    NetworkPermanent,
    NetworkTransient,
    OperationCancelled,
    PartialInstallFailure,
    PersistenceFailure,
)
from common.fs import LocalFileSystem
from common.logging_utils import Timer, extra_context
from context import InstallOptions, ProgressEvent, RunContext, log_event
from endpoints import EndpointRegistry, default_endpoints
from installer.engine import EngineReport, InstallEngine, OperationResult
from installer.planner import Plan, Planner
from installer.records import RecordStore
from persistence.lock import LockState
from persistence.manifest import Manifest
from resolution.graph import DependencyGraph
from resolution.policy import policy_for
from resolution.resolver import Resolver
from settings import Settings, load_settings
from versioning.parser import parse_cli_token

logger = logging.getLogger(__name__)


class ResultCode(Enum):
    """Outcome of a command."""
    SUCCESS = "success"
    RESOLUTION_FAILED = "resolution_failed"
    NETWORK_FAILED = "network_failed"
    PARTIAL_INSTALL_FAILED = "partial_install_failed"
    PERSISTENCE_FAILED = "persistence_failed"
    CANCELLED = "cancelled"


_NETWORK_ERRORS = (AuthRequired, NetworkTransient, NetworkPermanent, CorruptArtifact)


def result_code_for(exc: BoxError) -> ResultCode:
    """Map an error onto the command result code."""
    if isinstance(exc, OperationCancelled):
        return ResultCode.CANCELLED
    if isinstance(exc, PartialInstallFailure):
        if exc.failures and all(isinstance(f, OperationCancelled) for f in exc.failures):
            return ResultCode.CANCELLED
        return ResultCode.PARTIAL_INSTALL_FAILED
    if isinstance(exc, PersistenceFailure):
        return ResultCode.PERSISTENCE_FAILED
    if isinstance(exc, _NETWORK_ERRORS):
        return ResultCode.NETWORK_FAILED
    return ResultCode.RESOLUTION_FAILED


@dataclass
class RunResult:
    """What a command did (or would do, for a dry run)."""
    code: ResultCode
    plan: Optional[Plan] = None
    results: List[OperationResult] = field(default_factory=list)
    diagnostics: List[dict] = field(default_factory=list)
    graph: Optional[DependencyGraph] = None

    @property
    def ok(self) -> bool:
        return self.code == ResultCode.SUCCESS

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "plan": self.plan.to_list() if self.plan is not None else [],
            "results": [r.to_dict() for r in self.results],
            "diagnostics": list(self.diagnostics),
        }


class PackageService:
    """Entry point for hosts (the CLI, tests, embedding applications).

    Args:
        settings: Fixed settings; loaded per project when None.
        endpoints: Endpoint registry; the built-in endpoints when None.
        fs: Filesystem implementation.
        events: Progress event sink.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        endpoints: Optional[EndpointRegistry] = None,
        fs: Optional[LocalFileSystem] = None,
        events: Callable[[ProgressEvent], None] = log_event,
    ):
        self.settings = settings
        self.endpoints = endpoints
        self.fs = fs or LocalFileSystem()
        self.events = events
        self.cancel_event = threading.Event()

    def cancel(self) -> None:
        """Ask the running command to stop at its next checkpoint."""
        self.cancel_event.set()

    def context(self, project_dir: Path) -> RunContext:
        project_dir = Path(project_dir)
        return RunContext(
            settings=self.settings or load_settings(project_dir),
            endpoints=self.endpoints or default_endpoints(project_dir),
            project_dir=project_dir,
            fs=self.fs,
            cancel_event=self.cancel_event,
            events=self.events,
        )

    # Commands

    def install(
        self,
        manifest_path: Path,
        options: Optional[InstallOptions] = None,
        packages: Sequence[str] = (),
    ) -> RunResult:
        """Install the manifest's dependencies plus ``packages`` (saved on success)."""
        options = options or InstallOptions()
        added: List[str] = []

        def add_packages(manifest: Manifest) -> None:
            for token in packages:
                identifier = parse_cli_token(token)
                manifest.save_entry(identifier.name, identifier.constraint, dev=options.save_dev)
                added.append(identifier.name)

        return self._run(manifest_path, options, add_packages, pin=added,
                         create_manifest=bool(packages), command="install")

    def update(
        self,
        manifest_path: Path,
        names: Iterable[str] = (),
        options: Optional[InstallOptions] = None,
    ) -> RunResult:
        """Re-resolve ignoring locked versions for ``names`` (every package when empty)."""
        return self._run(manifest_path, options or InstallOptions(), refresh=set(names) or {"*"},
                         command="update")

    def remove(
        self,
        manifest_path: Path,
        names: Iterable[str],
        options: Optional[InstallOptions] = None,
    ) -> RunResult:
        """Drop ``names`` from the manifest and prune what nothing else needs."""
        names = list(names)

        def drop(manifest: Manifest) -> None:
            removed = manifest.remove_entries(names)
            for name in names:
                if name not in removed:
                    logger.warning("%s is not in the manifest", name)

        return self._run(manifest_path, options or InstallOptions(), drop, command="remove")

    def resolve(self, manifest_path: Path, options: Optional[InstallOptions] = None) -> RunResult:
        """Dry run: the plan an install would execute; nothing is written."""
        return self._run(manifest_path, options or InstallOptions(), dry_run=True, command="resolve")

    # Pipeline stages

    def resolve_graph(
        self,
        ctx: RunContext,
        manifest: Manifest,
        lock: Optional[LockState],
        options: InstallOptions,
        digest: str,
        refresh: Optional[Set[str]] = None,
    ) -> DependencyGraph:
        """Graph for ``manifest``: rebuilt from the lock when it is current, else resolved."""
        dependencies = manifest.dependencies
        dev_dependencies = manifest.dev_dependencies if options.dev else {}
        if lock is not None and lock.manifest_digest == digest and not options.force and not refresh:
            try:
                roots = dict(dev_dependencies)
                roots.update(dependencies)
                graph = lock.to_graph(roots, ctx.settings.install_dir)
                graph.validate(ctx.endpoints, allow_prerelease=True)
                logger.info("Lock is current; skipping resolution",
                            extra=extra_context(event="resolve", component="service", outcome="lock_fast_path"))
                return graph
            except (BoxError, ValueError, KeyError) as exc:
                logger.warning("Lock file cannot be reused (%s); resolving again", exc)

        preferred = {}
        if lock is not None and "*" not in (refresh or ()):
            preferred = {name: versions for name, versions in lock.preferred_versions().items()
                         if name not in (refresh or ())}
        resolver = Resolver(ctx, policy=policy_for(options.strict), preferred=preferred)
        return resolver.resolve(dependencies, dev_dependencies)

    def plan(self, ctx: RunContext, graph: DependencyGraph, options: InstallOptions) -> Plan:
        records = RecordStore(ctx.fs, ctx.project_dir, ctx.settings.install_dir).scan()
        return Planner(ctx.endpoints, ctx.settings.install_dir).plan(graph, records, force=options.force)

    def apply(self, ctx: RunContext, plan: Plan) -> EngineReport:
        return InstallEngine(ctx).execute(plan)

    def save(self, ctx: RunContext, manifest: Manifest, graph: DependencyGraph, digest: str) -> None:
        """Write manifest and lock (each skipped when unchanged)."""
        wrote_manifest = manifest.write(ctx.fs)
        lock = LockState.from_graph(graph, digest, ctx.endpoints)
        wrote_lock = lock.write(ctx.lock_path, ctx.fs)
        logger.debug("Persisted state", extra=extra_context(event="persist", component="service",
                                                            manifest=wrote_manifest, lock=wrote_lock))

    # Internals

    @staticmethod
    def _digest_options(ctx: RunContext, options: InstallOptions) -> dict:
        return {
            "dev": options.dev,
            "strict": options.strict,
            "allow_prerelease": ctx.settings.allow_prerelease,
            "engines": dict(ctx.settings.engines),
        }

    @staticmethod
    def _pin_added(manifest: Manifest, graph: DependencyGraph, names: Iterable[str], dev: bool) -> None:
        """Rewrite bare registry additions (``foo``) to ``^<resolved version>``."""
        direct = graph.direct()
        for name in names:
            node = direct.get(name)
            if node is None or node.identifier.source_kind != SourceKind.REGISTRY:
                continue
            if node.identifier.constraint.strip() in ("", "*") and node.metadata.semver is not None:
                manifest.save_entry(name, f"^{node.version_str}", dev=dev)

    def _run(  # pylint: disable=too-many-arguments,too-many-locals
        self,
        manifest_path: Path,
        options: InstallOptions,
        mutate: Optional[Callable[[Manifest], None]] = None,
        refresh: Optional[Set[str]] = None,
        pin: Sequence[str] = (),
        create_manifest: bool = False,
        dry_run: bool = False,
        command: str = "install",
    ) -> RunResult:
        manifest_path = Path(manifest_path).absolute()
        ctx = self.context(manifest_path.parent)
        plan: Optional[Plan] = None
        report = EngineReport()
        graph: Optional[DependencyGraph] = None
        with ctx, Timer() as timer:
            try:
                if create_manifest and not ctx.fs.exists(manifest_path):
                    manifest = Manifest(manifest_path, {})
                else:
                    manifest = Manifest.load(manifest_path, ctx.fs)
                if mutate is not None:
                    mutate(manifest)
                lock = LockState.load(ctx.lock_path, ctx.fs)
                digest = manifest.digest(self._digest_options(ctx, options))

                graph = self.resolve_graph(ctx, manifest, lock, options, digest, refresh)
                plan = self.plan(ctx, graph, options)
                if dry_run:
                    return RunResult(ResultCode.SUCCESS, plan=plan, graph=graph)

                ctx.check_cancelled()
                report = self.apply(ctx, plan)
                report.raise_for_failures()
                for result in report.results:
                    node = result.operation.node
                    if node is not None and result.integrity:
                        node.integrity = result.integrity

                if pin:
                    self._pin_added(manifest, graph, pin, options.save_dev)
                    digest = manifest.digest(self._digest_options(ctx, options))
                self.save(ctx, manifest, graph, digest)
            except BoxError as exc:
                code = result_code_for(exc)
                logger.error(
                    "%s failed: %s", command, exc,
                    extra=extra_context(event="command", component="service", action=command,
                                        outcome=code.value, duration_ms=timer.duration_ms()),
                )
                return RunResult(code, plan=plan, results=report.results, diagnostics=[exc.to_dict()], graph=graph)

        logger.info(
            "%s finished: %s", command, plan.summary() if plan is not None else {},
            extra=extra_context(event="command", component="service", action=command, outcome="success",
                                duration_ms=timer.duration_ms()),
        )
        return RunResult(ResultCode.SUCCESS, plan=plan, results=report.results, graph=graph)
