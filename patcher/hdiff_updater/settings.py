from __future__ import annotations
import os
from dataclasses import dataclass, field
from pathlib import Path

from .paths import DEFAULT_VERSION_FILE, default_temp_root
from .system import optimal_threads, verify_threads

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


def _read_int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _read_bool_env(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    raw = raw.strip().lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    return default


@dataclass
class UpdateSettings:
    workers: int = 0
    verify_workers: int = 0
    fail_fast: bool = True
    patch_retries: int = 0
    verify_sources: bool = True
    verify_after: bool = True
    hash_algorithm: str = "md5"
    version_file: str = DEFAULT_VERSION_FILE
    temp_root: Path = field(default_factory=default_temp_root)

    def __post_init__(self):
        if self.workers <= 0:
            self.workers = optimal_threads()
        if self.verify_workers <= 0:
            self.verify_workers = verify_threads()
        self.patch_retries = max(0, self.patch_retries)
        self.temp_root = Path(self.temp_root)

    @classmethod
    def from_env(cls, **overrides) -> "UpdateSettings":
        """Settings from HDIFF_* environment variables; keyword overrides win
        unless they are None (unset CLI flags)."""
        values = dict(
            workers=_read_int_env("HDIFF_WORKERS", 0),
            verify_workers=_read_int_env("HDIFF_VERIFY_WORKERS", 0),
            fail_fast=_read_bool_env("HDIFF_FAIL_FAST", True),
            patch_retries=_read_int_env("HDIFF_PATCH_RETRIES", 0),
            verify_sources=_read_bool_env("HDIFF_VERIFY_SOURCES", True),
            verify_after=_read_bool_env("HDIFF_VERIFY_AFTER", True),
            version_file=os.environ.get("HDIFF_VERSION_FILE") or DEFAULT_VERSION_FILE,
            temp_root=Path(os.environ["HDIFF_TEMP"]) if os.environ.get("HDIFF_TEMP") else default_temp_root(),
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
