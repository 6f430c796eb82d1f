import logging, os, shutil
from pathlib import Path

import psutil

logger = logging.getLogger(__name__)


def check_resources(temp_dir: str | Path, min_ram_gb: float = 2, min_temp_gb: float = 4) -> list[str]:
    """Warn about conditions that make large patch runs fail halfway."""
    warnings: list[str] = []
    mem = psutil.virtual_memory().available / (1024**3)
    anchor = Path(temp_dir)
    while not anchor.exists() and anchor != anchor.parent:
        anchor = anchor.parent
    tmp = shutil.disk_usage(anchor).free / (1024**3)
    if mem < min_ram_gb:
        warnings.append(f"Low memory ({mem:.1f} GB available)")
    if tmp < min_temp_gb:
        warnings.append(f"Low temp space ({tmp:.1f} GB free)")
    for w in warnings:
        logger.warning(w)
    return warnings


def optimal_threads(cap: int = 8) -> int:
    # conservative: 2GB per thread and leave one core
    cores = max(psutil.cpu_count(logical=False) or 1, 1)
    ram_gb = psutil.virtual_memory().total / (1024**3)
    by_ram = max(1, int(ram_gb / 2))
    by_cpu = max(1, cores - 1)
    return max(1, min(by_ram, by_cpu, cap))


def verify_threads() -> int:
    # hashing is I/O bound, so more threads than cores pay off
    return min(32, max(4, (os.cpu_count() or 4)))
