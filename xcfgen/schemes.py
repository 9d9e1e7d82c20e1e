"""Scheme discovery for Xcode workspaces and projects."""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, List
import os

from .command_runner import CommandError, CommandRunner
from .console import Console
from .errors import ContainerListError, NoSchemesFound
from .toolchain import Container, ContainerKind, Xcodebuild, parse_scheme_listing

SCHEME_SUFFIX = ".xcscheme"
USER_DATA_SUFFIX = ".xcuserdatad"


def _listdir(path: Path) -> List[str]:
    try:
        return os.listdir(path)
    except OSError:
        return []


def list_containers(root: Path) -> List[Container]:
    """Workspaces first, then projects, each in directory listing order."""

    try:
        entries = os.listdir(root)
    except OSError as exc:
        raise ContainerListError(root, exc.strerror or str(exc)) from exc

    workspaces: List[Container] = []
    projects: List[Container] = []
    for entry in entries:
        kind = ContainerKind.from_name(entry)
        if kind is ContainerKind.WORKSPACE:
            workspaces.append(Container(root / entry, kind))
        elif kind is ContainerKind.PROJECT:
            projects.append(Container(root / entry, kind))
    return [*workspaces, *projects]


def scheme_directories(container_path: Path) -> List[Path]:
    paths: List[Path] = []

    shared = container_path / "xcshareddata" / "xcschemes"
    if shared.is_dir():
        paths.append(shared)

    user_data = container_path / "xcuserdata"
    if user_data.is_dir():
        for user in _listdir(user_data):
            if not user.endswith(USER_DATA_SUFFIX):
                continue
            user_schemes = user_data / user / "xcschemes"
            if user_schemes.is_dir():
                paths.append(user_schemes)
    return paths


def find_scheme_files(container_path: Path) -> List[str]:
    names: List[str] = []
    for directory in scheme_directories(container_path):
        for entry in _listdir(directory):
            if entry.endswith(SCHEME_SUFFIX):
                names.append(entry[: -len(SCHEME_SUFFIX)])
    return names


def select_scheme(names: Iterable[str]) -> str | None:
    """Prefer the first scheme that is not a test scheme."""

    ordered = list(names)
    for name in ordered:
        if "test" not in name.lower():
            return name
    return ordered[0] if ordered else None


def _distinct(names: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    result: List[str] = []
    for name in names:
        if name and name not in seen:
            seen.add(name)
            result.append(name)
    return result


class SchemeResolver:
    def __init__(
        self,
        runner: CommandRunner,
        *,
        xcodebuild: Xcodebuild | None = None,
        console: Console | None = None,
    ) -> None:
        self._runner = runner
        self._xcodebuild = xcodebuild or Xcodebuild()
        self._console = console

    def _debug(self, message: str) -> None:
        if self._console is not None:
            self._console.debug(message)

    def candidates(self, root: Path) -> List[str]:
        containers = list_containers(root)

        found: List[str] = []
        for container in containers:
            names = find_scheme_files(container.path)
            self._debug(f"{container.name}: {len(names)} scheme file(s) on disk")
            found.extend(names)

        if not found:
            # Schemes that were never shared or saved only exist inside xcodebuild.
            for container in containers:
                names = self._query_toolchain(container)
                self._debug(f"{container.name}: {len(names)} scheme(s) reported by xcodebuild")
                found.extend(names)

        return _distinct(found)

    def resolve(self, root: Path) -> str:
        scheme = select_scheme(self.candidates(root))
        if scheme is None:
            raise NoSchemesFound(root)
        return scheme

    def _query_toolchain(self, container: Container) -> List[str]:
        command = self._xcodebuild.list_schemes(container)
        try:
            result = self._runner.run(command, cwd=container.path.parent, note="List schemes")
        except CommandError as exc:
            self._debug(f"Scheme listing for {container.name} failed: {exc}")
            return []
        try:
            return parse_scheme_listing(result.stdout)
        except ValueError:
            self._debug(f"Scheme listing for {container.name} is not valid JSON")
            return []


__all__ = [
    "SchemeResolver",
    "find_scheme_files",
    "list_containers",
    "scheme_directories",
    "select_scheme",
]
