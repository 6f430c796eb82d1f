from __future__ import annotations


class UpdateError(Exception):
    """Base class for everything the updater raises on purpose."""


# ----- resolution (fatal before any file is touched) -----

class ResolutionError(UpdateError):
    pass


class MetadataParseError(ResolutionError):
    pass


class UnsupportedFormat(ResolutionError):
    def __init__(self, package: str, format_version: str):
        super().__init__(f"{package}: unsupported package format '{format_version}'")
        self.package = package
        self.format_version = format_version


class BrokenChain(ResolutionError):
    pass


class NoApplicablePackage(ResolutionError):
    """Nothing advances the installation from ``current``.

    ``up_to_date`` tells apart "already at a terminal version" from a stalled chain.
    """

    def __init__(self, current, up_to_date: bool, detail: str = ""):
        if up_to_date:
            msg = f"installation is up to date ({current})"
        else:
            msg = f"no update package applies to version {current}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)
        self.current = current
        self.up_to_date = up_to_date


# ----- per package / per file -----

class ArchiveError(UpdateError):
    pass


class PatchError(UpdateError):
    def __init__(self, reason: str, stderr: str = ""):
        super().__init__(reason)
        self.reason = reason
        self.stderr = stderr


class IntegrityError(UpdateError):
    def __init__(self, record, message: str | None = None):
        super().__init__(message or f"{record.path}: {record.verdict.value}")
        self.record = record


class CommitError(UpdateError):
    pass
