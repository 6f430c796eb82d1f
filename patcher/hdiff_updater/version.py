from __future__ import annotations
import json, logging, re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .errors import CommitError, MetadataParseError
from .fsio import atomic_write_text

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"(\d+)\.(\d+)\.(\d+)")

MARKER_NAME = ".hdiff_version.json"


@dataclass(frozen=True, order=True)
class BinaryVersion:
    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, text: str) -> "BinaryVersion":
        m = _VERSION_RE.search(text or "")
        if not m:
            raise MetadataParseError(f"no version number found in {text!r}")
        return cls(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    @classmethod
    def read(cls, path: str | Path) -> "BinaryVersion":
        # the game's version file is binary with the version string embedded
        p = Path(path)
        try:
            raw = p.read_bytes()
        except OSError as e:
            raise MetadataParseError(f"cannot read version file {p}: {e}") from e
        try:
            return cls.parse(raw.decode("utf-8", errors="ignore"))
        except MetadataParseError:
            raise MetadataParseError(f"no version number found in {p}") from None

    def predecessor(self) -> "BinaryVersion":
        if self.patch == 0:
            raise MetadataParseError(f"cannot infer the version preceding {self}")
        return BinaryVersion(self.major, self.minor, self.patch - 1)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


class VersionStore:
    """The installation's current-version marker.

    The marker is the single record of what has been committed. Until one
    exists, the game's own version file stands in for it. The marker also
    notes what the version file said when it was written and, while a
    package is being applied, that package's id (``pending``). A version file
    that has since moved past the marker without a package in flight means
    the game was updated by other means, and the version file wins.
    """

    def __init__(self, root: str | Path, version_file: str | None = None):
        self.root = Path(root)
        self.marker = self.root / MARKER_NAME
        self.version_file = self.root / version_file if version_file else None

    def _load_marker(self) -> dict | None:
        if not self.marker.is_file():
            return None
        try:
            data = json.loads(self.marker.read_text(encoding="utf-8"))
            data["version"] = BinaryVersion.parse(str(data["version"]))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise MetadataParseError(f"unreadable version marker {self.marker}: {e}") from e
        return data

    def game_version(self) -> BinaryVersion | None:
        """What the game's version file says, or None when it is absent or unreadable."""
        if self.version_file is None or not self.version_file.is_file():
            return None
        try:
            return BinaryVersion.read(self.version_file)
        except MetadataParseError as e:
            logger.debug("%s", e)
            return None

    def committed(self) -> BinaryVersion | None:
        data = self._load_marker()
        return data["version"] if data else None

    def read(self) -> BinaryVersion:
        data = self._load_marker()
        if data is None:
            if self.version_file is not None and self.version_file.is_file():
                return BinaryVersion.read(self.version_file)
            raise MetadataParseError(
                f"no version marker and no version file found in {self.root}"
            )
        marked = data["version"]
        game = self.game_version()
        if (not data.get("pending") and game is not None and game > marked
                and str(game) != data.get("game_version")):
            logger.info("Version file reports %s, newer than the recorded %s; starting from %s", game, marked, game)
            return game
        return marked

    def write(self, version: BinaryVersion, package: str | None = None, pending: str | None = None) -> None:
        game = self.game_version()
        data = {
            "version": str(version),
            "package": package,
            "pending": pending,
            "game_version": str(game) if game else None,
            "updated_utc": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        }
        try:
            atomic_write_text(self.marker, json.dumps(data, indent=2) + "\n")
        except OSError as e:
            raise CommitError(f"failed to record version {version} in {self.marker}: {e}") from e
        if pending:
            logger.debug("version marker -> %s (applying %s)", version, pending)
        else:
            logger.debug("version marker -> %s (%s)", version, package or "bootstrap")
