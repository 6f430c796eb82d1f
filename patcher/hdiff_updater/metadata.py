from __future__ import annotations
import json, logging, os
from pathlib import Path, PurePosixPath

from .archive import PackageSource, normalize_member
from .delete_list import read_delete_list
from .errors import MetadataParseError, UnsupportedFormat
from .fsio import TMP_SUFFIX
from .models import FileDescriptor, FileOperation, OpKind, UpdatePackage
from .paths import DELETEFILES_NAME, HDIFFMAP_NAME
from .version import BinaryVersion

logger = logging.getLogger(__name__)

DEFAULT_FORMAT = "hdiffmap-v1"
SUPPORTED_FORMATS = (DEFAULT_FORMAT,)

_METADATA_MEMBERS = (HDIFFMAP_NAME, DELETEFILES_NAME)

# NTFS folds case, so two paths differing only in case are the same file there
FOLD_CASE = os.name == "nt"


def safe_relpath(name: object, package: str) -> str:
    """Normalise a manifest path; refuse anything that escapes the installation."""
    if not isinstance(name, str) or not name.strip():
        raise MetadataParseError(f"{package}: empty or non-string path {name!r}")
    if any(ord(c) < 32 or ord(c) == 127 for c in name):
        raise MetadataParseError(f"{package}: control character in path {name!r}")
    rel = normalize_member(name.strip())
    pp = PurePosixPath(rel)
    if name.strip().startswith(("/", "\\")) or (len(rel) > 1 and rel[1] == ":"):
        raise MetadataParseError(f"{package}: absolute path not allowed: {name}")
    if ".." in pp.parts or not pp.parts:
        raise MetadataParseError(f"{package}: path escapes the installation: {name}")
    return pp.as_posix()


def _descriptor(entry: dict, size_key: str, hash_key: str, package: str) -> FileDescriptor | None:
    size, digest = entry.get(size_key), entry.get(hash_key)
    if size is None and not digest:
        return None
    if isinstance(size, bool) or not isinstance(size, int) or size < 0 or not isinstance(digest, str) or not digest:
        raise MetadataParseError(f"{package}: bad {size_key}/{hash_key} in {entry!r}")
    return FileDescriptor(size, digest.strip().lower())


def _diff_entry(entry: object, package: str, members: set[str]) -> tuple[FileOperation, str | None]:
    if not isinstance(entry, dict):
        raise MetadataParseError(f"{package}: diff_map entry is not an object: {entry!r}")
    target = safe_relpath(entry.get("target_file_name"), package)
    source = safe_relpath(entry["source_file_name"], package) if entry.get("source_file_name") else None
    patch = safe_relpath(entry["patch_file_name"], package) if entry.get("patch_file_name") else None
    expected = _descriptor(entry, "target_file_size", "target_file_md5", package)
    source_expected = _descriptor(entry, "source_file_size", "source_file_md5", package)

    if expected is None:
        raise MetadataParseError(f"{package}: {target} has no target size/md5")
    if source == target and source_expected == expected:
        return FileOperation(target, OpKind.SKIP, expected=expected), patch
    if patch is None:
        raise MetadataParseError(f"{package}: {target} has no patch_file_name")
    if patch not in members:
        raise MetadataParseError(f"{package}: patch file {patch} is not in the package")
    op = FileOperation(
        target, OpKind.PATCH, expected=expected,
        source=source, source_expected=source_expected if source else None, diff=patch,
    )
    return op, patch


def _package_versions(data: dict, source: PackageSource, members: set[str],
                      meta_dir: Path, version_file: str) -> tuple[BinaryVersion, BinaryVersion]:
    name = source.name
    if data.get("target_version"):
        target = BinaryVersion.parse(str(data["target_version"]))
    elif version_file in members:
        target = BinaryVersion.read(source.extract_to(version_file, meta_dir))
    else:
        raise MetadataParseError(f"{name}: no target_version and no {version_file} in the package")
    if data.get("source_version"):
        src = BinaryVersion.parse(str(data["source_version"]))
    else:
        src = target.predecessor()
    if src == target:
        raise MetadataParseError(f"{name}: source and target version are both {src}")
    return src, target


def check_disjoint(ops: list[FileOperation], package: str, fold_case: bool = FOLD_CASE) -> None:
    """No two operations may touch the same file; workers rely on it instead of locks."""
    owner: dict[str, FileOperation] = {}
    for op in ops:
        touched = [op.path] + ([op.source] if op.renames else [])
        for rel in touched:
            if rel.lower().endswith(TMP_SUFFIX):
                raise MetadataParseError(f"{package}: {rel} uses the reserved scratch suffix {TMP_SUFFIX}")
            key = rel.lower() if fold_case else rel
            if key in owner:
                raise MetadataParseError(
                    f"{package}: {rel} is touched by more than one operation "
                    f"({owner[key].kind.value} and {op.kind.value})"
                )
            owner[key] = op


def read_package(source: PackageSource, meta_dir: Path, version_file: str,
                 payload: bool = True) -> UpdatePackage:
    """Parse a package's metadata without unpacking its payload.

    Only hdiffmap.json, deletefiles.txt and the version file are pulled out
    (into ``meta_dir``); the archive listing supplies everything else. With
    ``payload`` off, members the manifest does not name are left alone
    instead of becoming add operations (a game folder read in place).
    """
    name = source.name
    members = set(normalize_member(m) for m in source.list())
    if HDIFFMAP_NAME not in members:
        raise MetadataParseError(f"{name}: {HDIFFMAP_NAME} not found")

    hmap = source.extract_to(HDIFFMAP_NAME, meta_dir)
    try:
        data = json.loads(hmap.read_text(encoding="utf-8-sig"))
    except (OSError, ValueError) as e:
        raise MetadataParseError(f"{name}: unreadable {HDIFFMAP_NAME}: {e}") from e
    if not isinstance(data, dict):
        raise MetadataParseError(f"{name}: {HDIFFMAP_NAME} is not a JSON object")

    fmt = str(data.get("format_version") or DEFAULT_FORMAT)
    if fmt not in SUPPORTED_FORMATS:
        raise UnsupportedFormat(name, fmt)

    src_version, target_version = _package_versions(data, source, members, meta_dir, version_file)

    diff_map = data.get("diff_map")
    if not isinstance(diff_map, list):
        raise MetadataParseError(f"{name}: diff_map missing or not a list")

    ops: list[FileOperation] = []
    referenced: set[str] = set()
    for entry in diff_map:
        op, patch = _diff_entry(entry, name, members)
        ops.append(op)
        if patch:
            referenced.add(patch)

    if DELETEFILES_NAME in members:
        try:
            lines = read_delete_list(source.extract_to(DELETEFILES_NAME, meta_dir))
        except OSError as e:
            raise MetadataParseError(f"{name}: unreadable {DELETEFILES_NAME}: {e}") from e
        ops.extend(FileOperation(safe_relpath(line, name), OpKind.DELETE) for line in lines)

    declared: dict[str, FileDescriptor] = {}
    for entry in (data.get("add_files") or []) if payload else []:
        if not isinstance(entry, dict):
            raise MetadataParseError(f"{name}: add_files entry is not an object: {entry!r}")
        desc = _descriptor(entry, "file_size", "file_md5", name)
        if desc is None:
            raise MetadataParseError(f"{name}: add_files entry without size/md5: {entry!r}")
        declared[safe_relpath(entry.get("file_name"), name)] = desc

    for m in sorted(members) if payload else []:
        if m in _METADATA_MEMBERS or m in referenced:
            continue
        rel = safe_relpath(m, name)
        ops.append(FileOperation(rel, OpKind.ADD, expected=declared.pop(rel, None), payload=m))
    if declared:
        raise MetadataParseError(f"{name}: add_files lists files the package lacks: {', '.join(sorted(declared))}")

    check_disjoint(ops, name)
    pkg = UpdatePackage(
        id=name, format_version=fmt,
        source_version=src_version, target_version=target_version,
        operations=tuple(ops), origin=source,
    )
    logger.debug(
        "%s: %d patch, %d add, %d delete, %d skip", pkg,
        pkg.count(OpKind.PATCH), pkg.count(OpKind.ADD), pkg.count(OpKind.DELETE), pkg.count(OpKind.SKIP),
    )
    return pkg
