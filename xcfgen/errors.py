"""Error taxonomy shared by the scheme resolver, location store and orchestrator."""
from __future__ import annotations

from pathlib import Path


class XcfgenError(RuntimeError):
    """Base class for all user-facing failures."""


class ConfigError(XcfgenError):
    """Raised when a configuration file holds invalid values."""


class ResolutionError(XcfgenError):
    pass


class ContainerListError(ResolutionError):
    def __init__(self, root: Path, reason: str):
        super().__init__(f"Error accessing project: {reason}")
        self.root = root
        self.reason = reason


class NoSchemesFound(ResolutionError):
    def __init__(self, root: Path):
        super().__init__(
            "No schemes found. Ensure you selected the folder containing your .xcworkspace/.xcodeproj "
            "and that the scheme is saved (Shared or user scheme). You can also open "
            "Xcode > Product > Scheme > Manage Schemes and verify."
        )
        self.root = root


class AccessError(XcfgenError):
    pass


class AccessDenied(AccessError):
    def __init__(self, path: Path | str, reason: str | None = None):
        message = f"Failed to access output folder: {path}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.path = Path(path)
        self.reason = reason


class BookmarkCreateFailed(AccessError):
    def __init__(self, path: Path | str, reason: str):
        super().__init__(f"Failed to create bookmark: {reason}")
        self.path = Path(path)
        self.reason = reason


class BookmarkStale(AccessError):
    def __init__(self, reason: str):
        super().__init__(f"Stored output folder is no longer valid: {reason}")
        self.reason = reason


class BuildInProgress(XcfgenError):
    def __init__(self) -> None:
        super().__init__("A build is already running")


class BuildError(XcfgenError):
    """Terminal failure of a build run, reported through ``Done``."""


class OutputAccessDenied(BuildError):
    def __init__(self, cause: AccessError):
        super().__init__(str(cause))
        self.cause = cause


class OutputCheckFailed(BuildError):
    def __init__(self, path: Path, reason: str):
        super().__init__(f"Failed to check for an existing XCFramework: {reason}")
        self.path = path
        self.reason = reason


class OutputCreateFailed(BuildError):
    def __init__(self, path: Path, reason: str):
        super().__init__(f"Failed to create output directory: {reason}")
        self.path = path
        self.reason = reason


class RemovalFailed(BuildError):
    def __init__(self, path: Path, reason: str):
        super().__init__(f"Failed to remove existing XCFramework: {reason}")
        self.path = path
        self.reason = reason


class ArchiveFailed(BuildError):
    def __init__(self, stage: str, reason: str):
        super().__init__(f"Archive for {stage} failed: {reason}")
        self.stage = stage
        self.reason = reason


class MergeFailed(BuildError):
    def __init__(self, reason: str):
        super().__init__(f"Creating XCFramework failed: {reason}")
        self.reason = reason


__all__ = [
    "AccessDenied",
    "AccessError",
    "ArchiveFailed",
    "BookmarkCreateFailed",
    "BookmarkStale",
    "BuildError",
    "BuildInProgress",
    "ConfigError",
    "ContainerListError",
    "MergeFailed",
    "NoSchemesFound",
    "OutputAccessDenied",
    "OutputCheckFailed",
    "OutputCreateFailed",
    "RemovalFailed",
    "ResolutionError",
    "XcfgenError",
]
