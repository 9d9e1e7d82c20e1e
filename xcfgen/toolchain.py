"""Argument-vector builders for the ``xcodebuild`` invocations."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, List, Sequence
import json

WORKSPACE_SUFFIX = ".xcworkspace"
PROJECT_SUFFIX = ".xcodeproj"
ARCHIVE_SUFFIX = ".xcarchive"
XCFRAMEWORK_SUFFIX = ".xcframework"


class ContainerKind(str, Enum):
    WORKSPACE = "workspace"
    PROJECT = "project"

    @property
    def flag(self) -> str:
        return f"-{self.value}"

    @classmethod
    def from_name(cls, name: str) -> "ContainerKind | None":
        if name.endswith(WORKSPACE_SUFFIX):
            return cls.WORKSPACE
        if name.endswith(PROJECT_SUFFIX):
            return cls.PROJECT
        return None


@dataclass(frozen=True, slots=True)
class Container:
    path: Path
    kind: ContainerKind

    @property
    def name(self) -> str:
        return self.path.name


def archive_bundle(archive_path: Path) -> Path:
    """Path xcodebuild writes for ``-archivePath archive_path``."""

    return archive_path.with_name(f"{archive_path.name}{ARCHIVE_SUFFIX}")


def framework_in_archive(archive_path: Path, scheme: str) -> Path:
    return archive_bundle(archive_path) / "Products" / "Library" / "Frameworks" / f"{scheme}.framework"


def _names(value: Any) -> List[str] | None:
    if not isinstance(value, list):
        return None
    return [item for item in value if isinstance(item, str) and item]


def parse_scheme_listing(text: str) -> List[str]:
    """Extract scheme names from ``xcodebuild -list -json`` output.

    Newer toolchains nest the list under ``workspace`` or ``project``; older
    ones put ``schemes`` at the top level. Raises ``ValueError`` for output
    that is not JSON.
    """

    data = json.loads(text)
    if not isinstance(data, dict):
        return []
    for key in ("workspace", "project"):
        nested = data.get(key)
        if isinstance(nested, dict):
            names = _names(nested.get("schemes"))
            if names is not None:
                return names
    return _names(data.get("schemes")) or []


@dataclass(slots=True)
class Xcodebuild:
    executable: str = "xcodebuild"

    def list_schemes(self, container: Container) -> List[str]:
        return [self.executable, "-list", "-json", container.kind.flag, container.name]

    def archive(self, scheme: str, destination: str, archive_path: Path) -> List[str]:
        return [
            self.executable,
            "archive",
            "-scheme",
            scheme,
            "-destination",
            destination,
            "-archivePath",
            str(archive_path),
            "SKIP_INSTALL=NO",
            "BUILD_LIBRARY_FOR_DISTRIBUTION=YES",
        ]

    def create_xcframework(self, frameworks: Sequence[Path], output: Path) -> List[str]:
        command = [self.executable, "-create-xcframework"]
        for framework in frameworks:
            command.extend(["-framework", str(framework)])
        command.extend(["-output", str(output)])
        return command


__all__ = [
    "ARCHIVE_SUFFIX",
    "Container",
    "ContainerKind",
    "PROJECT_SUFFIX",
    "WORKSPACE_SUFFIX",
    "XCFRAMEWORK_SUFFIX",
    "Xcodebuild",
    "archive_bundle",
    "framework_in_archive",
    "parse_scheme_listing",
]
