from __future__ import annotations
import hashlib, logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Iterable

from tqdm import tqdm

from .log import tqdm_disable, tqdm_file
from .models import FileDescriptor, Verdict, VerificationRecord

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class IntegrityChecker:
    """Compares files on disk against (size, hash) descriptors.

    The hash algorithm has to be the one the manifests were generated with;
    hdiffmap.json files carry MD5.
    """

    def __init__(self, algorithm: str = "md5", chunk_size: int = CHUNK_SIZE):
        hashlib.new(algorithm)  # fail early on an unknown name
        self.algorithm = algorithm
        self.chunk_size = chunk_size

    def hash_file(self, p: Path) -> str:
        h = hashlib.new(self.algorithm)
        with p.open("rb") as f:
            for chunk in iter(lambda: f.read(self.chunk_size), b""):
                h.update(chunk)
        return h.hexdigest()

    def describe(self, p: Path) -> FileDescriptor:
        return FileDescriptor(p.stat().st_size, self.hash_file(p))

    def verify(self, p: str | Path, expected: FileDescriptor) -> VerificationRecord:
        p = Path(p)
        try:
            size = p.stat().st_size
        except FileNotFoundError:
            return VerificationRecord(p, Verdict.MISSING, expected=expected)
        if not p.is_file():
            return VerificationRecord(p, Verdict.MISSING, expected=expected)
        # size first: no point hashing gigabytes that can't match
        if size != expected.size:
            return VerificationRecord(p, Verdict.SIZE_MISMATCH, size=size, expected=expected)
        digest = self.hash_file(p)
        if digest.lower() != expected.hash.lower():
            return VerificationRecord(p, Verdict.HASH_MISMATCH, size=size, hash=digest, expected=expected)
        return VerificationRecord(p, Verdict.MATCH, size=size, hash=digest, expected=expected)

    def verify_many(self, root: Path, entries: Iterable[tuple[str, FileDescriptor]],
                    workers: int = 4, desc: str = "Verifying files") -> list[VerificationRecord]:
        """Verify ``(relative path, expected)`` pairs under ``root`` in parallel.
        Records come back in input order."""
        entries = list(entries)
        if not entries:
            return []
        results: list[VerificationRecord] = []
        with tqdm(total=len(entries), desc=desc, unit="file", file=tqdm_file(), disable=tqdm_disable()) as bar:
            with ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="verify") as ex:
                for rec in ex.map(lambda e: self.verify(root / e[0], e[1]), entries):
                    results.append(rec)
                    bar.update(1)
        bad = sum(1 for r in results if not r.ok)
        logger.debug("verified %d files, %d mismatched", len(results), bad)
        return results
