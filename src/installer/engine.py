"""Installation engine: execute a plan against the install tree.

Removes run first. The remaining operations form a DAG: an operation waits
for the operations of the packages it requires and of every path nested
inside its own directory. Ready operations run on a bounded thread pool.

Every package directory is prepared in a sibling staging directory (files,
install record, carried-over nested ``modules/``) and swapped into place with
renames, so an interrupted run leaves each package either fully old or fully
new. A failed operation never aborts independent branches; its dependents are
skipped and the run reports a PartialInstallFailure.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set

from constants import Constants, SourceKind
from common.archive import extract_archive
from common.errors import BoxError, HookFailure, OperationCancelled, PartialInstallFailure
from common.integrity import verify_artifact
from common.logging_utils import Timer, extra_context, is_debug_enabled

from .planner import Operation, OperationKind, Plan, is_nested
from .records import InstalledPackageRecord, RecordStore

logger = logging.getLogger(__name__)

HOOKS = ("preinstall", "postinstall")


@dataclass
class OperationResult:
    """Outcome of one operation."""
    operation: Operation
    status: str  # "done" | "unchanged" | "failed" | "skipped"
    error: Optional[BoxError] = None
    integrity: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status in ("done", "unchanged")

    def to_dict(self) -> dict:
        payload = self.operation.to_dict()
        payload["status"] = self.status
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        if self.warnings:
            payload["warnings"] = list(self.warnings)
        return payload


@dataclass
class EngineReport:
    results: List[OperationResult] = field(default_factory=list)

    @property
    def failures(self) -> List[OperationResult]:
        return [r for r in self.results if not r.ok]

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def cancelled(self) -> bool:
        return any(isinstance(r.error, OperationCancelled) for r in self.results)

    def integrity_of(self, install_path: str) -> Optional[str]:
        for result in self.results:
            if result.operation.install_path == install_path:
                return result.integrity
        return None

    def raise_for_failures(self) -> None:
        """Raise when any operation failed or was skipped.

        Raises:
            PartialInstallFailure: Listing every failed or skipped operation.
        """
        if self.failures:
            raise PartialInstallFailure([
                r.error or BoxError("skipped", package=r.operation.name) for r in self.failures
            ])


class InstallEngine:
    """Execute plans; one instance per run context."""

    def __init__(self, ctx):
        self.ctx = ctx
        self._dir_locks: Dict[str, threading.Lock] = {}
        self._dir_locks_guard = threading.Lock()
        self.records = RecordStore(ctx.fs, ctx.project_dir, ctx.settings.install_dir)

    def _dir_lock(self, directory: Path) -> threading.Lock:
        key = os.path.normpath(str(directory))
        with self._dir_locks_guard:
            return self._dir_locks.setdefault(key, threading.Lock())

    def target(self, op: Operation) -> Path:
        return self.ctx.project_dir / op.install_path

    def execute(self, plan: Plan) -> EngineReport:
        """Run ``plan``; never raises for per-operation failures (see EngineReport)."""
        report = EngineReport()
        install_root = self.ctx.install_root
        if self.ctx.fs.is_dir(install_root):
            self.ctx.fs.sweep_leftovers(install_root)

        removes = plan.of_kind(OperationKind.REMOVE)
        rest = [op for op in plan if op.kind != OperationKind.REMOVE]
        wanted = [op.install_path for op in rest]

        with Timer() as timer, ThreadPoolExecutor(
            max_workers=self.ctx.settings.max_workers, thread_name_prefix="boxpm-install"
        ) as pool:
            for op in removes:
                report.results.append(self._run(op, lambda o=op: self._remove(o, wanted)))
            self._run_dag(pool, rest, report)

        logger.info(
            "Applied %d operation(s), %d failed", len(report.results), len(report.failures),
            extra=extra_context(event="apply", component="engine", duration_ms=timer.duration_ms(),
                                outcome="success" if report.ok else "partial"),
        )
        return report

    def _dependencies(self, ops: List[Operation]) -> Dict[int, Set[int]]:
        index_of_node = {id(op.node): i for i, op in enumerate(ops) if op.node is not None}
        deps: Dict[int, Set[int]] = {i: set() for i in range(len(ops))}
        for i, op in enumerate(ops):
            if op.node is not None:
                for child in op.node.children:
                    j = index_of_node.get(id(child))
                    if j is not None and j != i:
                        deps[i].add(j)
            for j, other in enumerate(ops):
                if j != i and is_nested(other.install_path, op.install_path):
                    deps[i].add(j)
        return deps

    def _run_dag(self, pool: ThreadPoolExecutor, ops: List[Operation], report: EngineReport) -> None:
        deps = self._dependencies(ops)
        dependents: Dict[int, Set[int]] = {i: set() for i in deps}
        for i, needed in deps.items():
            for j in needed:
                dependents[j].add(i)

        results: Dict[int, OperationResult] = {}
        running: Dict[Future, int] = {}

        def skip(i: int, reason: BoxError) -> None:
            if i in results:
                return
            results[i] = OperationResult(ops[i], "skipped", error=reason)
            self.ctx.emit("skip", operation=ops[i].kind.value, package=ops[i].name,
                          version=ops[i].version, path=ops[i].install_path, message=str(reason))
            for k in dependents[i]:
                skip(k, BoxError(f"dependency {ops[i].name} was not installed", package=ops[k].name))

        def submit_ready() -> None:
            for i in sorted(deps):
                if i in results or i in running.values() or deps[i]:
                    continue
                if self.ctx.cancel_event.is_set():
                    skip(i, OperationCancelled("interrupted before start", package=ops[i].name))
                    continue
                running[pool.submit(self._run, ops[i], lambda o=ops[i]: self._apply(o))] = i

        submit_ready()
        while running:
            done, _ = wait(list(running), return_when=FIRST_COMPLETED)
            for future in done:
                i = running.pop(future)
                result = future.result()
                results[i] = result
                for k in dependents[i]:
                    deps[k].discard(i)
                if not result.ok:
                    for k in dependents[i]:
                        skip(k, BoxError(f"dependency {ops[i].name} failed", package=ops[k].name))
            submit_ready()
        for i in sorted(deps):
            if i not in results:
                skip(i, BoxError("operation dependencies never completed", package=ops[i].name))
        report.results.extend(results[i] for i in sorted(results))

    def _run(self, op: Operation, action) -> OperationResult:
        if op.kind == OperationKind.UNCHANGED:
            return OperationResult(op, "unchanged", integrity=op.record.integrity if op.record else None)
        self.ctx.emit("start", operation=op.kind.value, package=op.name, version=op.version,
                      path=op.install_path)
        result = OperationResult(op, "done")
        with Timer() as timer:
            try:
                self.ctx.check_cancelled(op.name)
                outcome = action()
                if isinstance(outcome, OperationResult):
                    result = outcome
            except BoxError as exc:
                result = OperationResult(op, "failed", error=exc)
            except OSError as exc:
                result = OperationResult(op, "failed", error=BoxError(str(exc), package=op.name, cause=exc))
        result.duration_ms = timer.duration_ms()
        if result.ok:
            self.ctx.emit("finish", operation=op.kind.value, package=op.name, version=op.version,
                          path=op.install_path)
        else:
            self.ctx.emit("error", operation=op.kind.value, package=op.name, version=op.version,
                          path=op.install_path, message=str(result.error))
        return result

    def _apply(self, op: Operation) -> OperationResult:
        if op.kind == OperationKind.RELABEL:
            return self._relabel(op)
        return self._install(op)

    def _record(self, op: Operation, integrity: Optional[str]) -> InstalledPackageRecord:
        node = op.node
        return InstalledPackageRecord(
            name=node.name,
            installed_version=node.version_str,
            install_path=op.install_path,
            kind=node.kind.value,
            is_dev=node.dev,
            source=op.source or "",
            integrity=integrity,
        )

    def _relabel(self, op: Operation) -> OperationResult:
        integrity = op.record.integrity if op.record else op.node.integrity
        self.ctx.fs.write_text(self.records.marker(op.install_path), self._record(op, integrity).to_json())
        return OperationResult(op, "done", integrity=integrity)

    def _remove(self, op: Operation, wanted: List[str]) -> OperationResult:
        for path in wanted:
            if path == op.install_path or is_nested(path, op.install_path):
                raise BoxError(f"refusing to remove {op.install_path}: {path} is still needed", package=op.name)
        target = self.target(op)
        with self._dir_lock(target.parent):
            self.ctx.fs.remove(target)
            self._drop_link_marker(op.install_path)
        return OperationResult(op, "done")

    def _drop_link_marker(self, install_path: str) -> None:
        marker = self.records.link_marker(install_path)
        if self.ctx.fs.exists(marker):
            self.ctx.fs.remove(marker)

    def _fetch_verified(self, op: Operation):
        node = op.node
        endpoint = self.ctx.endpoints.for_identifier(node.identifier)
        download_dir = self.ctx.work_dir / "artifacts" / uuid.uuid4().hex[:12]

        def attempt():
            archive = endpoint.fetch(node.artifact, download_dir, self.ctx)
            sri = verify_artifact(archive, integrity=node.artifact.integrity, size=node.artifact.size,
                                  package=node.name)
            return archive, sri

        return self.ctx.retry(attempt, describe=f"fetch of {node.name}@{node.version_str}")

    def _install(self, op: Operation) -> OperationResult:
        node = op.node
        fs = self.ctx.fs
        target = self.target(op)
        local = node.identifier.source_kind == SourceKind.LOCAL
        linked = local and self.ctx.settings.link_local

        if local:
            source_dir = self.ctx.endpoints.for_identifier(node.identifier).fetch(node.artifact, target, self.ctx)
            integrity = None
        else:
            archive, integrity = self._fetch_verified(op)
        self.ctx.check_cancelled(node.name)

        record = self._record(op, integrity)
        carried = None
        if linked:
            staged = fs.staging_path(target)
            fs.symlink(source_dir, staged)
        else:
            staged = fs.make_staging_dir(target)
        try:
            if not linked:
                if local:
                    fs.copytree(source_dir, staged, ignore=shutil.ignore_patterns(
                        self.ctx.settings.install_dir, Constants.RECORD_FILE))
                else:
                    extract_archive(archive, staged, self.ctx.cancel_event)
                fs.write_text(staged / Constants.RECORD_FILE, record.to_json())
                nested_new = staged / self.ctx.settings.install_dir
                if fs.exists(nested_new):
                    fs.remove(nested_new)
            self.ctx.check_cancelled(node.name)

            with self._dir_lock(target.parent):
                nested_old = target / self.ctx.settings.install_dir
                if not linked and not fs.is_symlink(target) and fs.is_dir(nested_old):
                    carried = staged / self.ctx.settings.install_dir
                    fs.atomic_rename(nested_old, carried)
                fs.replace_dir(staged, target)
                if linked:
                    fs.write_text(self.records.link_marker(op.install_path), record.to_json())
                else:
                    self._drop_link_marker(op.install_path)
        except BaseException:
            if carried is not None and fs.exists(carried) and fs.is_dir(target):
                fs.atomic_rename(carried, target / self.ctx.settings.install_dir)
            if fs.exists(staged):
                fs.remove(staged)
            raise

        if is_debug_enabled(logger):
            logger.debug(
                "Package placed",
                extra=extra_context(event="install", component="engine", action=op.kind.value,
                                    package=node.name, target=op.install_path, outcome="placed")
            )
        warnings = self._run_hooks(op, target)
        return OperationResult(op, "done", integrity=integrity, warnings=warnings)

    def _run_hooks(self, op: Operation, cwd: Path) -> List[str]:
        """Run install hooks in the package directory.

        Returns:
            Warning messages for failed hooks (when hooks are not fatal).

        Raises:
            HookFailure: When a hook fails and ``fatal_hooks`` is set.
        """
        settings = self.ctx.settings
        warnings: List[str] = []
        if not settings.run_hooks:
            return warnings
        for hook in HOOKS:
            command = op.node.metadata.scripts.get(hook)
            if not command:
                continue
            self.ctx.check_cancelled(op.name)
            logger.info("Running %s hook for %s", hook, op.name)
            try:
                result = subprocess.run(
                    command, shell=True, cwd=str(cwd), capture_output=True, text=True,
                    timeout=settings.hook_timeout, check=False,
                )
                failure = None if result.returncode == 0 else (
                    f"{hook} exited with {result.returncode}: {(result.stderr or '').strip()[:500]}"
                )
            except subprocess.TimeoutExpired:
                failure = f"{hook} timed out after {settings.hook_timeout}s"
            except OSError as exc:
                failure = f"{hook} could not start: {exc}"
            if failure is None:
                continue
            if settings.fatal_hooks:
                raise HookFailure(failure, package=op.name)
            logger.warning("%s: %s", op.name, failure)
            self.ctx.emit("warning", operation=op.kind.value, package=op.name, version=op.version,
                          path=op.install_path, message=failure)
            warnings.append(failure)
        return warnings


def apply_plan(ctx, plan: Plan) -> EngineReport:
    """Execute ``plan`` and raise PartialInstallFailure when anything failed."""
    report = InstallEngine(ctx).execute(plan)
    report.raise_for_failures()
    return report
