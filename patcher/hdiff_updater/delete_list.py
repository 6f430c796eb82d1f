import logging, os
from pathlib import Path

logger = logging.getLogger(__name__)


# deletefiles.txt: one relative path per line


def read_delete_list(p: Path) -> list[str]:
    items = []
    for line in p.read_text(encoding="utf-8", errors="replace").splitlines():
        line = line.strip()
        if line:
            items.append(line)
    return items


# after deletes: remove folders left empty (bottom-up), never the root itself


def prune_empty_dirs(root: Path, under: set[str] | None = None) -> list[Path]:
    """Remove empty folders below ``root``. With ``under``, only folders that
    are a prefix of one of those relative paths are considered."""
    removed: list[Path] = []
    root = Path(root)
    if not root.is_dir():
        return removed
    candidates: set[Path] = set()
    if under is None:
        for dirpath, _, _ in os.walk(root, topdown=False):
            candidates.add(Path(dirpath))
    else:
        for rel in under:
            parent = (root / rel).parent
            while parent != root and root in parent.parents:
                candidates.add(parent)
                parent = parent.parent
    # deepest first so children go before their parents
    for d in sorted(candidates, key=lambda q: len(q.parts), reverse=True):
        if d == root or not d.is_dir():
            continue
        try:
            if not any(d.iterdir()):
                d.rmdir()
                removed.append(d)
                logger.debug("removed empty: %s", d)
        except OSError as e:
            logger.debug("could not remove %s: %s", d, e)
    return removed
