# hdiff_updater/paths.py
from __future__ import annotations
import os, shutil, sys, tempfile
from pathlib import Path

# Where the package code lives (…/hdiff_updater)
PKG_ROOT: Path = Path(__file__).resolve().parent

# Where the bundled files live at runtime:
# - Frozen: sys._MEIPASS (top of the extracted bundle)
# - Dev: project root (one level above hdiff_updater/)
if getattr(sys, "frozen", False) and hasattr(sys, "_MEIPASS"):
    APP_ROOT: Path = Path(sys._MEIPASS)
else:
    APP_ROOT: Path = PKG_ROOT.parent

# ---- Bundled binaries (optional, PATH wins) ----
BIN_DIR: Path = APP_ROOT / "bin"

_EXE = ".exe" if os.name == "nt" else ""

HPATCHZ_NAMES = ("hpatchz",)
SEVENZIP_NAMES = ("7z", "7za", "7zz")

# ---- Package layout ----
HDIFFMAP_NAME = "hdiffmap.json"
DELETEFILES_NAME = "deletefiles.txt"
ARCHIVE_SUFFIXES = (".7z", ".zip", ".rar", ".tar")
DEFAULT_VERSION_FILE = "StarRail_Data/StreamingAssets/BinaryVersion.bytes"

# ---- Scratch space ----
TEMP_DIR_NAME = "hdiff-apply"


def default_temp_root() -> Path:
    return Path(tempfile.gettempdir()) / TEMP_DIR_NAME


def find_tool(names: tuple[str, ...], env_var: str) -> str | None:
    """Env override first, then PATH, then the bundled bin/ folder."""
    override = os.environ.get(env_var)
    if override:
        return override if Path(override).is_file() else None
    for name in names:
        found = shutil.which(name)
        if found:
            return found
    for name in names:
        cand = BIN_DIR / (name + _EXE)
        if cand.is_file():
            return str(cand)
    return None


def clean_temp_root(temp_root: Path) -> int:
    """Remove scratch folders a previous (crashed) run left behind."""
    removed = 0
    if not temp_root.is_dir():
        return removed
    for p in temp_root.iterdir():
        if p.is_dir():
            shutil.rmtree(p, ignore_errors=True)
            removed += 1
    return removed


__all__ = [
    "PKG_ROOT", "APP_ROOT", "BIN_DIR",
    "HPATCHZ_NAMES", "SEVENZIP_NAMES",
    "HDIFFMAP_NAME", "DELETEFILES_NAME", "ARCHIVE_SUFFIXES", "DEFAULT_VERSION_FILE",
    "TEMP_DIR_NAME", "default_temp_root", "find_tool", "clean_temp_root",
]
