from __future__ import annotations
import logging, subprocess
from pathlib import Path
from typing import Optional, Protocol

from .errors import PatchError
from .paths import HPATCHZ_NAMES, find_tool
from .proc import run_quiet

logger = logging.getLogger(__name__)


class Patcher(Protocol):
    def apply(self, old_file: Optional[Path], diff_file: Path, out_file: Path) -> None:
        """Write the patched result to ``out_file``; raise PatchError on failure."""


class HPatchZ:
    """Drives the external ``hpatchz`` binary.

    The output always goes to the path the caller hands in, which is a scratch
    file next to the target; the original is never written in place.
    """

    def __init__(self, executable: str | None = None, retries: int = 0):
        self.executable = executable or find_tool(HPATCHZ_NAMES, "HDIFF_HPATCHZ")
        self.retries = max(0, retries)

    def apply(self, old_file: Optional[Path], diff_file: Path, out_file: Path) -> None:
        if not self.executable:
            raise PatchError("hpatchz not found (set HDIFF_HPATCHZ or put it on PATH)")
        out_file.parent.mkdir(parents=True, exist_ok=True)
        # an empty old path tells hpatchz to build the file from the diff alone
        cmd = [self.executable, str(old_file) if old_file else "", str(diff_file), str(out_file), "-f"]
        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                self._run(cmd, out_file)
                return
            except PatchError as e:
                if attempt == attempts:
                    raise
                logger.debug("retrying %s after: %s (%d/%d)", diff_file.name, e, attempt, self.retries)

    def _run(self, cmd: list[str], out_file: Path) -> None:
        try:
            run_quiet(cmd, check=True)
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise PatchError(f"hpatchz exited with {e.returncode}" + (f": {stderr}" if stderr else ""), stderr) from e
        except OSError as e:
            raise PatchError(f"failed to run hpatchz: {e}") from e
        if not out_file.is_file():
            raise PatchError(f"hpatchz reported success but wrote no {out_file.name}")
