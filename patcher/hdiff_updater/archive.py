from __future__ import annotations
import logging, shutil, subprocess, threading
from pathlib import Path, PurePosixPath
from typing import Protocol

from .delete_list import prune_empty_dirs
from .errors import ArchiveError
from .paths import ARCHIVE_SUFFIXES, DELETEFILES_NAME, HDIFFMAP_NAME, SEVENZIP_NAMES, find_tool
from .proc import Cancelled, run_quiet

logger = logging.getLogger(__name__)


class PackageSource(Protocol):
    name: str

    def list(self) -> list[str]:
        """Relative member paths (forward slashes), files only."""

    def extract_to(self, member: str, destination: Path) -> Path:
        """Copy one member into ``destination`` (flattened); return its path."""

    def stage(self, destination: Path, cancel_event: threading.Event | None = None) -> Path:
        """Make the whole payload readable; return the folder it lives in."""


def normalize_member(name: str) -> str:
    return name.replace("\\", "/").strip("/")


def parse_slt_listing(text: str) -> list[str]:
    """Pull file paths out of ``7z l -slt`` technical output."""
    files: list[str] = []
    entry: dict[str, str] = {}

    def _flush():
        path = entry.get("Path")
        if path is None:
            return
        is_dir = entry.get("Folder") == "+" or entry.get("Attributes", "").startswith("D")
        if not is_dir:
            files.append(normalize_member(path))

    for line in text.splitlines():
        if not line.strip():
            _flush()
            entry = {}
            continue
        key, sep, value = line.partition(" = ")
        if sep:
            entry[key.strip()] = value
    _flush()
    return files


class SevenZipArchive:
    def __init__(self, archive: Path, executable: str | None = None):
        self.archive = Path(archive)
        self.name = self.archive.name
        self.executable = executable or find_tool(SEVENZIP_NAMES, "HDIFF_7Z")

    def _run(self, args: list[str], cancel_event=None) -> str:
        if not self.executable:
            raise ArchiveError("7-Zip not found (set HDIFF_7Z or put 7z on PATH)")
        try:
            res = run_quiet([self.executable, *args], check=True, cancel_event=cancel_event)
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise ArchiveError(f"7-Zip failed on {self.name} (exit {e.returncode}): {stderr}") from e
        except Cancelled as e:
            raise ArchiveError(f"extraction of {self.name} was cancelled") from e
        except OSError as e:
            raise ArchiveError(f"failed to run 7-Zip: {e}") from e
        return res.stdout

    def list(self) -> list[str]:
        return parse_slt_listing(self._run(["l", "-ba", "-slt", str(self.archive)]))

    def extract_to(self, member: str, destination: Path) -> Path:
        destination.mkdir(parents=True, exist_ok=True)
        self._run(["e", str(self.archive), member, f"-o{destination}", "-aoa", "-y"])
        out = destination / PurePosixPath(member).name
        if not out.is_file():
            raise ArchiveError(f"{member} not found in {self.name}")
        return out

    def stage(self, destination: Path, cancel_event: threading.Event | None = None) -> Path:
        destination.mkdir(parents=True, exist_ok=True)
        self._run(["x", str(self.archive), f"-o{destination}", "-aoa", "-y"], cancel_event=cancel_event)
        return destination


class FolderSource:
    """An already-unpacked package folder."""

    def __init__(self, folder: Path):
        self.folder = Path(folder)
        self.name = self.folder.name

    def list(self) -> list[str]:
        try:
            return sorted(
                p.relative_to(self.folder).as_posix()
                for p in self.folder.rglob("*") if p.is_file()
            )
        except OSError as e:
            raise ArchiveError(f"cannot list {self.folder}: {e}") from e

    def extract_to(self, member: str, destination: Path) -> Path:
        src = self.folder / member
        if not src.is_file():
            raise ArchiveError(f"{member} not found in {self.name}")
        destination.mkdir(parents=True, exist_ok=True)
        out = destination / src.name
        try:
            shutil.copyfile(src, out)
        except OSError as e:
            raise ArchiveError(f"cannot copy {member} from {self.name}: {e}") from e
        return out

    def stage(self, destination: Path, cancel_event: threading.Event | None = None) -> Path:
        # read in place; nothing to unpack
        return self.folder


class InPlaceSource(FolderSource):
    """Update files already unpacked into the game folder itself.

    Older releases shipped hdiffmap.json, deletefiles.txt and the diffs this
    way. Only what the manifest names is applied; every other file in the
    folder belongs to the game.
    """

    def __init__(self, root: Path):
        super().__init__(root)
        self.name = f"{HDIFFMAP_NAME} in {self.folder.name}"

    def consume(self, package) -> list[str]:
        """Remove the diffs and metadata once the package is committed."""
        used = [op.diff for op in package.operations if op.diff] + [HDIFFMAP_NAME, DELETEFILES_NAME]
        removed = []
        for member in used:
            try:
                (self.folder / member).unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("could not remove %s: %s", member, e)
                continue
            removed.append(member)
        prune_empty_dirs(self.folder, set(removed))
        return removed


def find_in_place(root: Path) -> InPlaceSource | None:
    root = Path(root)
    if (root / HDIFFMAP_NAME).is_file() and (root / DELETEFILES_NAME).is_file():
        return InPlaceSource(root)
    return None


def discover_sources(location: Path) -> list[PackageSource]:
    """Archives and unpacked package folders directly inside ``location``."""
    location = Path(location)
    if not location.is_dir():
        raise ArchiveError(f"package location {location} is not a directory")
    found: list[PackageSource] = []
    for p in sorted(location.iterdir(), key=lambda q: q.name.lower()):
        if p.is_file() and p.suffix.lower() in ARCHIVE_SUFFIXES:
            found.append(SevenZipArchive(p))
        elif p.is_dir() and (p / HDIFFMAP_NAME).is_file():
            found.append(FolderSource(p))
    logger.debug("found %d package(s) in %s", len(found), location)
    return found
