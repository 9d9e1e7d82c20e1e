"""Utilities for executing external commands with streaming and dry-run support."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Iterable, List, Sequence
import codecs
import shlex
import subprocess
import threading

from .errors import XcfgenError

OutputSink = Callable[[str], None]
"""Receives decoded output chunks as soon as a pipe yields them."""

STDERR_PREFIX = "Error: "
_CHUNK_SIZE = 4096


@dataclass
class CommandResult:
    """Represents the outcome of an executed command."""

    command: Sequence[str]
    returncode: int
    stdout: str
    stderr: str
    streamed: bool = False


class CommandError(XcfgenError):
    """Base class for command failures."""


class NonZeroExit(CommandError):
    """Raised when a command exits with a non-zero status."""

    def __init__(self, result: CommandResult):
        message = f"Command failed with exit code {result.returncode}: {' '.join(map(shlex.quote, result.command))}"
        if result.streamed:
            message = f"{message}\nstdout/stderr already streamed above."
        else:
            message = (
                f"{message}\n"
                f"stdout: {result.stdout}\n"
                f"stderr: {result.stderr}"
            )
        super().__init__(message)
        self.result = result
        self.returncode = result.returncode


class SpawnFailed(CommandError):
    """Raised when the child process could not be started at all."""

    def __init__(self, command: Sequence[str], reason: str):
        super().__init__(f"Failed to execute command: {reason}")
        self.command = list(command)
        self.reason = reason


class CommandRunner:
    """Abstract command runner interface."""

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
        note: str | None = None,
        on_output: OutputSink | None = None,
    ) -> CommandResult:
        raise NotImplementedError

    def format_command(self, command: Sequence[str]) -> str:
        return " ".join(shlex.quote(part) for part in command)


def _pump(pipe: IO[bytes], sink: OutputSink, prefix: str, collected: List[str]) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    with pipe:
        while True:
            data = pipe.read1(_CHUNK_SIZE)  # type: ignore[attr-defined]
            if not data:
                break
            text = decoder.decode(data)
            if text:
                collected.append(text)
                sink(f"{prefix}{text}")
        tail = decoder.decode(b"", final=True)
        if tail:
            collected.append(tail)
            sink(f"{prefix}{tail}")


class SubprocessCommandRunner(CommandRunner):
    """Command runner that executes commands via :mod:`subprocess`.

    With ``use_shell`` the argument vector is rendered with shell quoting and
    handed to ``shell -c``.
    """

    def __init__(self, *, use_shell: bool = False, shell: str = "/bin/bash") -> None:
        self.use_shell = use_shell
        self.shell = shell

    def _finalize(self, result: CommandResult, *, check: bool) -> CommandResult:
        if check and result.returncode != 0:
            raise NonZeroExit(result)
        return result

    def argv(self, command: Sequence[str]) -> List[str]:
        if self.use_shell:
            return [self.shell, "-c", self.format_command(command)]
        return list(command)

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
        note: str | None = None,
        on_output: OutputSink | None = None,
    ) -> CommandResult:
        argv = self.argv(command)
        if on_output is None:
            try:
                process = subprocess.run(
                    argv,
                    cwd=str(cwd) if cwd else None,
                    capture_output=True,
                    encoding="utf-8",
                    errors="replace",
                    check=False,
                )
            except OSError as exc:
                raise SpawnFailed(command, exc.strerror or str(exc)) from exc
            return self._finalize(
                CommandResult(
                    command=command,
                    returncode=process.returncode,
                    stdout=process.stdout,
                    stderr=process.stderr,
                ),
                check=check,
            )

        try:
            child = subprocess.Popen(
                argv,
                cwd=str(cwd) if cwd else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise SpawnFailed(command, exc.strerror or str(exc)) from exc

        stdout_parts: List[str] = []
        stderr_parts: List[str] = []
        readers = [
            threading.Thread(target=_pump, args=(child.stdout, on_output, "", stdout_parts), daemon=True),
            threading.Thread(target=_pump, args=(child.stderr, on_output, STDERR_PREFIX, stderr_parts), daemon=True),
        ]
        for reader in readers:
            reader.start()
        returncode = child.wait()
        for reader in readers:
            reader.join()

        return self._finalize(
            CommandResult(
                command=command,
                returncode=returncode,
                stdout="".join(stdout_parts),
                stderr="".join(stderr_parts),
                streamed=True,
            ),
            check=check,
        )


@dataclass(slots=True)
class RecordedCommand:
    command: List[str]
    cwd: str | None
    note: str | None
    streamed: bool


class RecordingCommandRunner(CommandRunner):
    """Command runner that records commands instead of executing them."""

    def __init__(self) -> None:
        self.commands: List[RecordedCommand] = []

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
        note: str | None = None,
        on_output: OutputSink | None = None,
    ) -> CommandResult:
        self.commands.append(
            RecordedCommand(
                command=list(command),
                cwd=str(cwd) if cwd else None,
                note=note,
                streamed=on_output is not None,
            )
        )
        return CommandResult(command=command, returncode=0, stdout="", stderr="")

    def iter_formatted(self) -> Iterable[str]:
        for record in self.commands:
            parts: List[str] = ["[dry-run]"]
            if record.note:
                parts.append(record.note)
            if record.cwd:
                parts.append(f"(cwd={record.cwd})")
            parts.append(self.format_command(record.command))
            yield " ".join(parts)


__all__ = [
    "CommandError",
    "CommandResult",
    "CommandRunner",
    "NonZeroExit",
    "OutputSink",
    "RecordedCommand",
    "RecordingCommandRunner",
    "STDERR_PREFIX",
    "SpawnFailed",
    "SubprocessCommandRunner",
]
