from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from .version import BinaryVersion


class OpKind(str, Enum):
    PATCH = "patch"
    ADD = "add"
    DELETE = "delete"
    SKIP = "skip"


@dataclass(frozen=True)
class FileDescriptor:
    size: int
    hash: str

    def __str__(self) -> str:
        return f"{self.size} bytes, {self.hash}"


@dataclass(frozen=True)
class FileOperation:
    """One file's worth of work inside a package.

    ``path`` is the file the operation produces (or removes). For a patch,
    ``source`` is the old file fed to the patcher; it differs from ``path`` when
    the package renames a file and is ``None`` when the diff builds the file from
    nothing. ``diff`` and ``payload`` are member names inside the staged package.
    """
    path: str
    kind: OpKind
    expected: Optional[FileDescriptor] = None
    source: Optional[str] = None
    source_expected: Optional[FileDescriptor] = None
    diff: Optional[str] = None
    payload: Optional[str] = None

    @property
    def renames(self) -> bool:
        return self.source is not None and self.source != self.path


@dataclass(frozen=True)
class UpdatePackage:
    id: str
    format_version: str
    source_version: BinaryVersion
    target_version: BinaryVersion
    operations: tuple[FileOperation, ...]
    origin: object = field(default=None, compare=False, repr=False)

    def __str__(self) -> str:
        return f"{self.id} ({self.source_version} -> {self.target_version})"

    def count(self, kind: OpKind) -> int:
        return sum(1 for op in self.operations if op.kind is kind)


class Verdict(str, Enum):
    MATCH = "match"
    SIZE_MISMATCH = "size-mismatch"
    HASH_MISMATCH = "hash-mismatch"
    MISSING = "missing"


@dataclass(frozen=True)
class VerificationRecord:
    path: Path
    verdict: Verdict
    size: Optional[int] = None
    hash: Optional[str] = None
    expected: Optional[FileDescriptor] = None

    @property
    def ok(self) -> bool:
        return self.verdict is Verdict.MATCH

    def describe(self) -> str:
        if self.verdict is Verdict.MISSING:
            return "file is missing"
        if self.verdict is Verdict.SIZE_MISMATCH:
            return f"size mismatch: expected {self.expected.size} bytes, got {self.size}"
        if self.verdict is Verdict.HASH_MISMATCH:
            return f"hash mismatch: expected {self.expected.hash}, got {self.hash}"
        return "ok"


class TaskResult(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    # never dispatched: fail-fast or an external stop
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TaskOutcome:
    operation: FileOperation
    result: TaskResult
    reason: str = ""
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.result in (TaskResult.SUCCEEDED, TaskResult.SKIPPED)
