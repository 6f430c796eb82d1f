from __future__ import annotations
import logging, shutil, tempfile
from pathlib import Path
from typing import Callable, Iterable

from .archive import PackageSource, discover_sources, find_in_place
from .errors import BrokenChain, NoApplicablePackage
from .metadata import read_package
from .models import UpdatePackage
from .version import BinaryVersion

logger = logging.getLogger(__name__)


def order_chain(packages: Iterable[UpdatePackage], current: BinaryVersion) -> list[UpdatePackage]:
    """Sort packages into the single chain that starts at ``current``.

    Packages whose target is not newer than ``current`` are leftovers from
    earlier runs and are ignored. Everything else must sit on the chain.
    """
    packages = list(packages)
    pending = [p for p in packages if p.target_version > current]
    for p in packages:
        if p.target_version <= current:
            logger.debug("ignoring %s: already at %s", p, current)

    by_source: dict[BinaryVersion, UpdatePackage] = {}
    for p in pending:
        other = by_source.get(p.source_version)
        if other is not None:
            raise BrokenChain(f"{other.id} and {p.id} both update from {p.source_version}")
        by_source[p.source_version] = p

    chain: list[UpdatePackage] = []
    seen = {current}
    version = current
    while version in by_source:
        p = by_source.pop(version)
        if p.target_version in seen:
            raise BrokenChain(f"version cycle: {p.id} leads back to {p.target_version}")
        chain.append(p)
        seen.add(p.target_version)
        version = p.target_version

    if not chain:
        up_to_date = bool(packages) and not pending
        detail = ""
        if pending:
            detail = "waiting packages start at " + ", ".join(sorted(str(p.source_version) for p in pending))
        elif not packages:
            detail = "no update packages found"
        raise NoApplicablePackage(current, up_to_date=up_to_date, detail=detail)

    if by_source:
        stray = ", ".join(str(p) for p in by_source.values())
        raise BrokenChain(f"packages outside the update chain from {current}: {stray}")
    return chain


class PackageResolver:
    """Finds update packages, reads their metadata and orders them.

    Nothing in the installation is touched here; metadata is pulled into a
    scratch folder under ``temp_root`` that is removed before returning.
    """

    def __init__(self, temp_root: Path, version_file: str,
                 discover: Callable[[Path], list[PackageSource]] = discover_sources):
        self.temp_root = Path(temp_root)
        self.version_file = version_file
        self.discover = discover

    def _read(self, sources: list[PackageSource], payload: bool = True) -> list[UpdatePackage]:
        self.temp_root.mkdir(parents=True, exist_ok=True)
        meta_root = Path(tempfile.mkdtemp(prefix="meta_", dir=self.temp_root))
        packages = []
        try:
            for i, src in enumerate(sources):
                logger.debug("reading metadata of %s", src.name)
                packages.append(read_package(src, meta_root / str(i), self.version_file, payload=payload))
        finally:
            shutil.rmtree(meta_root, ignore_errors=True)
        return packages

    def read_all(self, location: Path) -> list[UpdatePackage]:
        return self._read(self.discover(Path(location)))

    def resolve(self, location: Path, current: BinaryVersion, game_root: Path | None = None,
                committed: BinaryVersion | None = None) -> list[UpdatePackage]:
        """Order the packages at ``location``. When there are none and
        ``game_root`` holds unpacked update files, those form a one-package chain."""
        packages = self.read_all(location)
        if not packages and game_root is not None:
            in_place = find_in_place(game_root)
            if in_place is not None:
                logger.info("No update packages; applying the update files in %s", game_root)
                (pkg,) = self._read([in_place], payload=False)
                return in_place_chain(pkg, committed)
        chain = order_chain(packages, current)
        logger.debug("update chain: %s", " -> ".join(p.id for p in chain))
        return chain


def in_place_chain(package: UpdatePackage, committed: BinaryVersion | None) -> list[UpdatePackage]:
    # the game's version file already shows the target, so only the marker can tell it was applied
    if committed is not None and committed >= package.target_version:
        raise NoApplicablePackage(committed, up_to_date=True,
                                  detail=f"{package.id} was already applied")
    return [package]


def describe_sequence(current: BinaryVersion, chain: list[UpdatePackage]) -> str:
    return " → ".join([str(current)] + [str(p.target_version) for p in chain])
