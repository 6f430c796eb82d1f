from __future__ import annotations
import os, shutil, tempfile
from pathlib import Path

# every scratch file ends with this; package paths may not
TMP_SUFFIX = ".hdiff-tmp"


def temp_sibling(dst: Path) -> Path:
    """Reserve a uniquely named scratch file next to ``dst``.

    Same folder so the final replace stays on one volume; the random part
    keeps it from ever colliding with a real file or another task's scratch.
    """
    dst.parent.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(dir=dst.parent, prefix="." + dst.name + ".", suffix=TMP_SUFFIX)
    os.close(fd)
    return Path(name)


def safe_replace(src_tmp: Path, dst: Path) -> None:
    """Atomic replace on the same volume (os.replace is atomic on Windows too).
    Caller ensures src_tmp exists and is complete/verified.
    """
    dst.parent.mkdir(parents=True, exist_ok=True)
    os.replace(str(src_tmp), str(dst))


def discard(p: Path) -> None:
    try:
        p.unlink()
    except FileNotFoundError:
        pass


def atomic_write_text(dst: Path, text: str) -> None:
    tmp = temp_sibling(dst)
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        safe_replace(tmp, dst)
    except BaseException:
        discard(tmp)
        raise


def copy_to_temp(src: Path, dst: Path) -> Path:
    tmp = temp_sibling(dst)
    try:
        shutil.copyfile(src, tmp)
    except BaseException:
        discard(tmp)
        raise
    return tmp
