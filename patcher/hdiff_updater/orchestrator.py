"""Top-level update state machine.

A run walks ``Idle -> Resolving -> Applying(i) -> Verifying(i) -> Committed(i)``
for each package of the resolved chain and ends in one of ``Committed`` (last
package), ``Failed``, ``UpToDate`` or ``Stalled``.

The whole run is a :class:`RunState` value. Each ``_step`` takes one and returns
the next, so a caller can stop after resolving (to show the sequence and ask
for confirmation) and hand the same state back to :meth:`UpdateOrchestrator.run`.

Only this thread writes the version marker. Resolving never writes it. Right
before a package's first file is touched the marker is pinned at the installed
version with that package recorded as pending, and it moves to the target only
after every operation has succeeded or been skipped. A failed package leaves
the marker at the last committed version; re-running resumes from there and the
per-file pre-check skips whatever is already correct.

With no packages at the source location, update files unpacked straight into
the game folder (hdiffmap.json plus deletefiles.txt) are applied in place and
removed once committed.
"""
from __future__ import annotations

import logging
import shutil
import tempfile
import threading
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Optional

from .archive import InPlaceSource
from .delete_list import prune_empty_dirs
from .errors import ArchiveError, CommitError, NoApplicablePackage, ResolutionError
from .integrity import IntegrityChecker
from .models import OpKind, TaskOutcome, TaskResult, UpdatePackage, VerificationRecord
from .resolver import PackageResolver
from .scheduler import ProgressFn, TaskScheduler
from .version import BinaryVersion, VersionStore

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    APPLYING = "applying"
    VERIFYING = "verifying"
    COMMITTED = "committed"
    FAILED = "failed"
    UP_TO_DATE = "up-to-date"
    STALLED = "stalled"


_TERMINAL = (Phase.FAILED, Phase.UP_TO_DATE, Phase.STALLED)


@dataclass(frozen=True)
class PackageReport:
    package: UpdatePackage
    outcomes: tuple[TaskOutcome, ...] = ()
    mismatches: tuple[VerificationRecord, ...] = ()

    def count(self, result: TaskResult) -> int:
        return sum(1 for o in self.outcomes if o.result is result)

    @property
    def tasks_ok(self) -> bool:
        return all(o.ok for o in self.outcomes)

    def failures(self) -> list[tuple[str, str]]:
        """(path, reason) for every file that kept this package from committing."""
        out = [(o.operation.path, o.reason) for o in self.outcomes if o.result is TaskResult.FAILED]
        out.extend((str(r.path), r.describe()) for r in self.mismatches)
        return out


@dataclass(frozen=True)
class RunState:
    phase: Phase = Phase.IDLE
    installed: Optional[BinaryVersion] = None
    chain: tuple[UpdatePackage, ...] = ()
    index: int = 0
    current: Optional[PackageReport] = None
    committed: tuple[PackageReport, ...] = ()
    error: Optional[str] = None

    @property
    def terminal(self) -> bool:
        if self.phase in _TERMINAL:
            return True
        return self.phase is Phase.COMMITTED and self.index >= len(self.chain) - 1

    @property
    def package(self) -> Optional[UpdatePackage]:
        return self.chain[self.index] if self.index < len(self.chain) else None

    @property
    def exit_code(self) -> int:
        if self.phase in (Phase.COMMITTED, Phase.UP_TO_DATE):
            return 0
        if self.phase is Phase.STALLED:
            return 2
        return 1


class UpdateOrchestrator:
    def __init__(self, root: Path, source_location: Path, resolver: PackageResolver,
                 scheduler: TaskScheduler, store: VersionStore, checker: IntegrityChecker,
                 temp_root: Path, verify_after: bool = True, verify_workers: int = 4,
                 cancel_event: Optional[threading.Event] = None,
                 on_progress: Optional[ProgressFn] = None):
        self.root = Path(root)
        self.source_location = Path(source_location)
        self.resolver = resolver
        self.scheduler = scheduler
        self.store = store
        self.checker = checker
        self.temp_root = Path(temp_root)
        self.verify_after = verify_after
        self.verify_workers = verify_workers
        self.cancel_event = cancel_event
        self.on_progress = on_progress

    def run(self, state: Optional[RunState] = None) -> RunState:
        state = state or RunState()
        while not state.terminal:
            state = self.step(state)
        return state

    def resolve(self) -> RunState:
        return self.step(RunState())

    def step(self, state: RunState) -> RunState:
        if state.phase is Phase.IDLE:
            return self._resolve(state)
        if state.phase is Phase.APPLYING:
            return self._apply(state)
        if state.phase is Phase.VERIFYING:
            return self._verify(state)
        if state.phase is Phase.COMMITTED and not state.terminal:
            return replace(state, phase=Phase.APPLYING, index=state.index + 1)
        raise ValueError(f"no transition out of {state.phase.value}")

    # ----- transitions -----

    def _resolve(self, state: RunState) -> RunState:
        state = replace(state, phase=Phase.RESOLVING)
        installed = None
        try:
            installed = self.store.read()
            chain = self.resolver.resolve(self.source_location, installed,
                                          game_root=self.root, committed=self.store.committed())
        except NoApplicablePackage as e:
            if e.up_to_date:
                logger.info("Already up to date (%s)", installed)
                return replace(state, phase=Phase.UP_TO_DATE, installed=installed)
            logger.warning("%s", e)
            return replace(state, phase=Phase.STALLED, installed=installed, error=str(e))
        except (ResolutionError, ArchiveError) as e:
            logger.error("%s", e)
            return replace(state, phase=Phase.FAILED, installed=installed, error=str(e))
        if isinstance(chain[0].origin, InPlaceSource):
            # the unpacked update already rewrote the version file
            installed = chain[0].source_version
        return replace(state, phase=Phase.APPLYING, installed=installed, chain=tuple(chain), index=0)

    def _apply(self, state: RunState) -> RunState:
        pkg = state.package
        logger.info("-- Update %d of %d: %s", state.index + 1, len(state.chain), pkg)
        try:
            # pin the starting point before any payload can rewrite the game's version file
            self.store.write(state.installed, pending=pkg.id)
        except CommitError as e:
            logger.error("%s", e)
            return replace(state, phase=Phase.FAILED, current=PackageReport(pkg), error=str(e))
        self.temp_root.mkdir(parents=True, exist_ok=True)
        staging_dir = Path(tempfile.mkdtemp(prefix="stage_", dir=self.temp_root))
        try:
            staged = None
            if pkg.origin is not None:
                logger.info("Extracting %s", pkg.id)
                staged = pkg.origin.stage(staging_dir, self.cancel_event)
            logger.info("Patching files")
            outcomes = self.scheduler.run(
                pkg.operations, staging=staged, cancel_event=self.cancel_event,
                on_progress=self.on_progress, desc=f"Applying {pkg.id}",
            )
        except ArchiveError as e:
            logger.error("%s", e)
            return replace(state, phase=Phase.FAILED, current=PackageReport(pkg), error=f"{pkg.id}: {e}")
        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)
        return replace(state, phase=Phase.VERIFYING, current=PackageReport(pkg, tuple(outcomes)))

    def _verify(self, state: RunState) -> RunState:
        report = state.current
        pkg = report.package
        if not report.tasks_ok:
            failed = report.count(TaskResult.FAILED)
            cancelled = report.count(TaskResult.CANCELLED)
            if failed:
                error = f"{pkg.id}: {failed} file(s) failed"
            else:
                error = f"{pkg.id}: interrupted with {cancelled} file(s) not applied"
            return replace(state, phase=Phase.FAILED, error=error)

        if self.verify_after:
            logger.info("Verifying client integrity")
            entries = [
                (op.path, op.expected) for op in pkg.operations
                if op.kind is not OpKind.DELETE and op.expected is not None
            ]
            bad = tuple(r for r in self.checker.verify_many(self.root, entries, self.verify_workers) if not r.ok)
            if bad:
                for r in bad:
                    logger.error("%s: %s", r.path, r.describe())
                return replace(
                    state, phase=Phase.FAILED, current=replace(report, mismatches=bad),
                    error=f"{pkg.id}: {len(bad)} file(s) failed verification",
                )

        gone = {op.path for op in pkg.operations if op.kind is OpKind.DELETE}
        gone.update(op.source for op in pkg.operations if op.renames)
        prune_empty_dirs(self.root, gone)
        return self._commit(state)

    def _commit(self, state: RunState) -> RunState:
        pkg = state.package
        try:
            self.store.write(pkg.target_version, pkg.id)
        except CommitError as e:
            # files are patched but unrecorded: say so loudly, never retry silently
            logger.critical("%s", e)
            return replace(state, phase=Phase.FAILED, error=str(e))
        logger.info("Updated to %s", pkg.target_version)
        if isinstance(pkg.origin, InPlaceSource):
            removed = pkg.origin.consume(pkg)
            logger.debug("removed %d applied update file(s) from %s", len(removed), self.root)
        return replace(
            state, phase=Phase.COMMITTED, installed=pkg.target_version,
            committed=state.committed + (state.current,), current=None,
        )
