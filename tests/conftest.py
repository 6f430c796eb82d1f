import hashlib
import json
import threading
from pathlib import Path

import pytest

from hdiff_updater.errors import PatchError
from hdiff_updater.integrity import IntegrityChecker
from hdiff_updater.settings import UpdateSettings


def md5(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


class FakePatcher:
    """Stands in for hpatchz: a "diff" file simply holds the new file's bytes.

    ``fail`` names diff files whose application errors out, ``corrupt`` names
    diff files whose output gets one byte flipped, and ``gates`` maps diff
    names to events the call waits on before writing.
    """

    executable = "fake-hpatchz"

    def __init__(self):
        self.calls: list[str] = []
        self.fail: set[str] = set()
        self.corrupt: set[str] = set()
        self.gates: dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def apply(self, old_file, diff_file: Path, out_file: Path) -> None:
        with self._lock:
            self.calls.append(diff_file.name)
        gate = self.gates.get(diff_file.name)
        if gate is not None:
            gate.wait(timeout=10)
        if old_file is not None and not Path(old_file).is_file():
            raise PatchError(f"old file {old_file} missing")
        if diff_file.name in self.fail:
            raise PatchError("hpatchz exited with 1: simulated failure")
        data = bytearray(diff_file.read_bytes())
        if diff_file.name in self.corrupt and data:
            data[0] ^= 0xFF
        out_file.parent.mkdir(parents=True, exist_ok=True)
        out_file.write_bytes(bytes(data))


def write_package(folder: Path, source_version, target_version, patches=None, adds=None,
                  deletes=None, renames=None, extra=None) -> Path:
    """Lay out an unpacked package folder.

    ``patches``: {path: (old_bytes, new_bytes)}; ``renames``: {new_path: (old_path, old_bytes, new_bytes)};
    ``adds``: {path: bytes}; ``deletes``: [path]; ``extra``: keys merged into hdiffmap.json.
    """
    folder.mkdir(parents=True, exist_ok=True)
    diff_map = []
    for rel, (old, new) in (patches or {}).items():
        diff_map.append(_entry(folder, rel, rel, old, new))
    for rel, (old_rel, old, new) in (renames or {}).items():
        diff_map.append(_entry(folder, old_rel, rel, old, new))
    for rel, data in (adds or {}).items():
        p = folder / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)
    if deletes:
        (folder / "deletefiles.txt").write_text("\n".join(deletes) + "\n", encoding="utf-8")
    doc = {"diff_map": diff_map}
    if source_version:
        doc["source_version"] = source_version
    if target_version:
        doc["target_version"] = target_version
    doc.update(extra or {})
    (folder / "hdiffmap.json").write_text(json.dumps(doc, indent=2), encoding="utf-8")
    return folder


def _entry(folder: Path, source: str, target: str, old: bytes, new: bytes) -> dict:
    diff_name = target + ".hdiff"
    p = folder / diff_name
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(new)
    return {
        "source_file_name": source,
        "source_file_md5": md5(old),
        "source_file_size": len(old),
        "target_file_name": target,
        "target_file_md5": md5(new),
        "target_file_size": len(new),
        "patch_file_name": diff_name,
    }


def write_tree(root: Path, files: dict) -> None:
    for rel, data in files.items():
        p = root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)


def read_tree(root: Path) -> dict:
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*")) if p.is_file()
    }


@pytest.fixture(autouse=True)
def _quiet_env(monkeypatch, tmp_path):
    monkeypatch.setenv("HDIFF_TQDM", "1")
    monkeypatch.setenv("HDIFF_TEMP", str(tmp_path / "scratch"))
    for name in ("HDIFF_WORKERS", "HDIFF_FAIL_FAST", "HDIFF_PATCH_RETRIES", "HDIFF_VERIFY_SOURCES",
                 "HDIFF_VERIFY_AFTER", "HDIFF_VERIFY_WORKERS", "HDIFF_VERSION_FILE", "HDIFF_LOG_FILE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings(tmp_path) -> UpdateSettings:
    return UpdateSettings(workers=4, verify_workers=4, temp_root=tmp_path / "scratch")


@pytest.fixture
def checker() -> IntegrityChecker:
    return IntegrityChecker("md5")


@pytest.fixture
def patcher() -> FakePatcher:
    return FakePatcher()


@pytest.fixture
def game(tmp_path) -> Path:
    root = tmp_path / "game"
    root.mkdir()
    return root
