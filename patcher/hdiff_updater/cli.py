from __future__ import annotations
import argparse, logging, signal, threading, time
from contextlib import contextmanager
from pathlib import Path

from .integrity import IntegrityChecker
from .log import configure_logging
from .models import OpKind, TaskResult
from .orchestrator import Phase, RunState, UpdateOrchestrator
from .patch import HPatchZ
from .paths import clean_temp_root
from .resolver import PackageResolver, describe_sequence
from .scheduler import TaskScheduler
from .settings import UpdateSettings
from .system import check_resources
from .version import VersionStore

logger = logging.getLogger(__name__)


def confirm(message: str, default: bool = True, input_fn=None) -> bool:
    suffix = "(Y/n)" if default else "(y/N)"
    try:
        answer = (input_fn or input)(f"{message} {suffix}: ")
    except EOFError:
        return default
    answer = answer.strip().lower()
    if answer in ("y", "yes"):
        return True
    if answer in ("n", "no"):
        return False
    return default


@contextmanager
def cancel_on_interrupt(event: threading.Event):
    """First Ctrl+C stops dispatching new files; a second one aborts."""
    def _handler(signum, frame):
        if event.is_set():
            raise KeyboardInterrupt
        event.set()
        logger.warning("Interrupted: finishing files in progress, then stopping (Ctrl+C again to abort)")

    try:
        prev = signal.signal(signal.SIGINT, _handler)
    except ValueError:  # not the main thread
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, prev)


def build_orchestrator(root: Path, packages: Path, settings: UpdateSettings,
                       patcher=None, cancel_event: threading.Event | None = None) -> UpdateOrchestrator:
    checker = IntegrityChecker(settings.hash_algorithm)
    patcher = patcher or HPatchZ(retries=settings.patch_retries)
    scheduler = TaskScheduler(
        root, patcher, checker, workers=settings.workers,
        fail_fast=settings.fail_fast, verify_sources=settings.verify_sources,
    )
    return UpdateOrchestrator(
        root, packages,
        resolver=PackageResolver(settings.temp_root, settings.version_file),
        scheduler=scheduler,
        store=VersionStore(root, settings.version_file),
        checker=checker,
        temp_root=settings.temp_root,
        verify_after=settings.verify_after,
        verify_workers=settings.verify_workers,
        cancel_event=cancel_event,
    )


def print_summary(state: RunState) -> None:
    print()
    for r in state.committed:
        print(f"  committed {r.package}: {r.count(TaskResult.SUCCEEDED)} changed, "
              f"{r.count(TaskResult.SKIPPED)} already current")
    if state.phase is Phase.COMMITTED:
        print(f"Done. Installation is at {state.installed}.")
    elif state.phase is Phase.UP_TO_DATE:
        print(f"Nothing to do, installation is up to date ({state.installed}).")
    elif state.phase is Phase.STALLED:
        print(f"No update applies: {state.error}")
    else:
        print(f"Update FAILED: {state.error}")
        if state.current is not None:
            for path, reason in state.current.failures():
                print(f"  - {path}: {reason}")
            cancelled = state.current.count(TaskResult.CANCELLED)
            if cancelled:
                print(f"  ({cancelled} file(s) were not attempted)")
        if state.installed is not None:
            print(f"Last committed version: {state.installed}. Fix the issues above and run again to resume.")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="hdiff-updater",
                                description="Apply chained hdiff update packages to a game installation")
    p.add_argument("game_dir", nargs="?", help="Game installation folder (default: current folder)")
    p.add_argument("--packages", type=str, help="Folder holding update packages (default: the game folder)")
    p.add_argument("--workers", type=int, help="Parallel patch workers (default: auto)")
    p.add_argument("--best-effort", action="store_true", help="Keep patching after a file fails")
    p.add_argument("--retries", type=int, help="Retry a failed hpatchz call this many times")
    p.add_argument("--no-verify", action="store_true", help="Skip the old-file check and the post-patch verify pass")
    p.add_argument("-y", "--yes", action="store_true", help="Assume yes for prompts")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug output")
    p.add_argument("--log-file", type=str, help="Also write a debug log here")
    return p


def run_cli(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(verbose=args.verbose, log_file=args.log_file)

    root = Path(args.game_dir or Path.cwd()).resolve()
    if not root.is_dir():
        logger.error("game folder not found: %s", root)
        return 1
    packages = Path(args.packages).resolve() if args.packages else root

    verify = False if args.no_verify else None
    settings = UpdateSettings.from_env(
        workers=args.workers, patch_retries=args.retries,
        fail_fast=False if args.best_effort else None,
        verify_sources=verify, verify_after=verify,
    )
    if clean_temp_root(settings.temp_root):
        logger.debug("removed stale scratch folders in %s", settings.temp_root)
    check_resources(settings.temp_root)

    print("Preparing for update...")
    cancel_event = threading.Event()
    patcher = HPatchZ(retries=settings.patch_retries)
    orch = build_orchestrator(root, packages, settings, patcher=patcher, cancel_event=cancel_event)
    state = orch.resolve()

    if state.phase is Phase.APPLYING:
        needs_patcher = any(op.kind is OpKind.PATCH for p in state.chain for op in p.operations)
        if needs_patcher and not patcher.executable:
            logger.error("hpatchz not found (set HDIFF_HPATCHZ or put it on PATH)")
            return 1
        seq = describe_sequence(state.installed, list(state.chain))
        if not args.yes and not confirm(f"Proceed with this update sequence: {seq}"):
            print("Nothing was changed.")
            return 0
        started = time.perf_counter()
        with cancel_on_interrupt(cancel_event):
            state = orch.run(state)
        print(f"\nFinished in {time.perf_counter() - started:.2f}s")

    print_summary(state)
    return state.exit_code
