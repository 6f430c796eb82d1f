from __future__ import annotations
import logging, threading, time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Iterable, Optional

from tqdm import tqdm

from .errors import IntegrityError, PatchError
from .fsio import copy_to_temp, discard, safe_replace, temp_sibling
from .integrity import IntegrityChecker
from .log import tqdm_disable, tqdm_file
from .models import FileOperation, OpKind, TaskOutcome, TaskResult
from .patch import Patcher

logger = logging.getLogger(__name__)

# Optional progress callback signature:
#   on_progress(phase: str, current: int, total: int, message: str)
ProgressFn = Callable[[str, int, int, str], None]


class TaskScheduler:
    """Runs one package's file operations on a bounded thread pool.

    Operations within a package never share a path, so workers touch disjoint
    files and need no locking. Each file is written to a scratch sibling,
    verified, and only then moved over the original.

    With ``fail_fast`` no new task is dispatched after the first failure;
    tasks already running finish normally. Tasks that never ran come back as
    ``cancelled`` so every operation has an outcome.
    """

    def __init__(self, root: Path, patcher: Patcher, checker: IntegrityChecker,
                 workers: int = 4, fail_fast: bool = True, verify_sources: bool = True):
        self.root = Path(root)
        self.patcher = patcher
        self.checker = checker
        self.workers = max(1, workers)
        self.fail_fast = fail_fast
        self.verify_sources = verify_sources

    def run(self, tasks: Iterable[FileOperation], staging: Optional[Path] = None,
            workers: Optional[int] = None, cancel_event: Optional[threading.Event] = None,
            on_progress: Optional[ProgressFn] = None, desc: str = "Patching files") -> list[TaskOutcome]:
        tasks = list(tasks)
        total = len(tasks)
        workers = max(1, workers or self.workers)
        outcomes: list[Optional[TaskOutcome]] = [None] * total
        queue = iter(enumerate(tasks))
        in_flight: dict[Future, int] = {}
        halted = False
        done = 0

        with tqdm(total=total, desc=desc, unit="file", file=tqdm_file(), disable=tqdm_disable()) as bar:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="patch") as ex:
                while True:
                    # top up the pool; never more queued work than workers
                    while not halted and len(in_flight) < workers:
                        if cancel_event is not None and cancel_event.is_set():
                            halted = True
                            break
                        nxt = next(queue, None)
                        if nxt is None:
                            break
                        i, op = nxt
                        in_flight[ex.submit(self.execute, op, staging)] = i
                    if not in_flight:
                        break

                    finished, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                    for fut in finished:
                        i = in_flight.pop(fut)
                        outcome = fut.result()
                        outcomes[i] = outcome
                        done += 1
                        bar.update(1)
                        if outcome.result is TaskResult.FAILED:
                            logger.error("%s: %s", outcome.operation.path, outcome.reason)
                            if self.fail_fast and not halted:
                                halted = True
                                logger.warning("stopping dispatch after first failure; letting %d running task(s) finish",
                                               len(in_flight))
                        if on_progress:
                            on_progress("apply", done, total, f"{done}/{total} {outcome.operation.path}")

        reason = "interrupted" if cancel_event is not None and cancel_event.is_set() else "not run after an earlier failure"
        for i, op in enumerate(tasks):
            if outcomes[i] is None:
                outcomes[i] = TaskOutcome(op, TaskResult.CANCELLED, reason)
        return outcomes

    # ----- per task -----

    def execute(self, op: FileOperation, staging: Optional[Path] = None) -> TaskOutcome:
        started = time.perf_counter()
        try:
            result = self._dispatch(op, staging)
            reason = ""
        except (PatchError, IntegrityError) as e:
            result, reason = TaskResult.FAILED, str(e)
        except OSError as e:
            result, reason = TaskResult.FAILED, f"{type(e).__name__}: {e}"
        return TaskOutcome(op, result, reason, time.perf_counter() - started)

    def _dispatch(self, op: FileOperation, staging: Optional[Path]) -> TaskResult:
        if op.kind is OpKind.SKIP:
            return TaskResult.SKIPPED
        if op.kind is OpKind.DELETE:
            return self._delete(op)
        if staging is None:
            raise PatchError(f"{op.kind.value} needs a staged package")
        if op.kind is OpKind.PATCH:
            return self._patch(op, staging)
        return self._add(op, staging)

    def _delete(self, op: FileOperation) -> TaskResult:
        target = self.root / op.path
        try:
            target.unlink()
        except FileNotFoundError:
            return TaskResult.SKIPPED
        logger.debug("deleted: %s", op.path)
        return TaskResult.SUCCEEDED

    def _already_done(self, op: FileOperation, target: Path) -> bool:
        # resume support: a previous run may have finished this file already
        if op.expected is None or not self.checker.verify(target, op.expected).ok:
            return False
        if op.renames:
            old = self.root / op.source
            if old.exists():
                old.unlink()
        return True

    def _patch(self, op: FileOperation, staging: Path) -> TaskResult:
        target = self.root / op.path
        if self._already_done(op, target):
            return TaskResult.SKIPPED

        old = None
        if op.source is not None:
            old = self.root / op.source
            if self.verify_sources and op.source_expected is not None:
                rec = self.checker.verify(old, op.source_expected)
                if not rec.ok:
                    raise IntegrityError(rec, f"old file {op.source} does not match the package: {rec.describe()}")
            elif not old.is_file():
                raise PatchError(f"old file {op.source} is missing")

        diff = staging / op.diff
        if not diff.is_file():
            raise PatchError(f"patch file {op.diff} is missing from the staged package")

        tmp = temp_sibling(target)
        try:
            # the name stays reserved to this task; the patcher must create the file itself
            discard(tmp)
            self.patcher.apply(old, diff, tmp)
            if not tmp.is_file():
                raise PatchError(f"patcher wrote no output for {op.path}")
            rec = self.checker.verify(tmp, op.expected)
            if not rec.ok:
                raise IntegrityError(rec, f"patched {op.path} failed verification: {rec.describe()}")
            safe_replace(tmp, target)
        finally:
            discard(tmp)

        if op.renames:
            old.unlink()
        return TaskResult.SUCCEEDED

    def _add(self, op: FileOperation, staging: Path) -> TaskResult:
        target = self.root / op.path
        payload = staging / op.payload
        if not payload.is_file():
            raise PatchError(f"payload {op.payload} is missing from the staged package")
        expected = op.expected or self.checker.describe(payload)
        if self.checker.verify(target, expected).ok:
            return TaskResult.SKIPPED
        tmp = copy_to_temp(payload, target)
        try:
            rec = self.checker.verify(tmp, expected)
            if not rec.ok:
                raise IntegrityError(rec, f"copied {op.path} failed verification: {rec.describe()}")
            safe_replace(tmp, target)
        finally:
            discard(tmp)
        return TaskResult.SUCCEEDED
