"""Build orchestration: output access, collision handling and the three xcodebuild steps.

The orchestrator is driven from one foreground thread. Build steps run on a
background worker; every observable change (log text, phase, active flag) is
posted to a single event queue and applied to the :class:`BuildRun` only
while the foreground thread drains that queue through :meth:`events` or
:meth:`pump`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Union
import queue
import shutil
import threading

from .command_runner import CommandError, CommandRunner, NonZeroExit, SpawnFailed
from .config_loader import BuildConfig
from .errors import (
    AccessError,
    ArchiveFailed,
    BuildError,
    BuildInProgress,
    MergeFailed,
    OutputAccessDenied,
    OutputCheckFailed,
    OutputCreateFailed,
    RemovalFailed,
)
from .location_store import Bookmark, LocationStore
from .toolchain import XCFRAMEWORK_SUFFIX, Xcodebuild, framework_in_archive


class Phase(str, Enum):
    IDLE = "idle"
    RESOLVING_OUTPUT = "resolving-output"
    CHECKING_COLLISION = "checking-collision"
    AWAITING_OVERWRITE_DECISION = "awaiting-overwrite-decision"
    ARCHIVING_DEVICE = "archiving-device"
    ARCHIVING_SIMULATOR = "archiving-simulator"
    MERGING = "merging"
    DONE = "done"


@dataclass(frozen=True, slots=True)
class LogChunk:
    text: str


@dataclass(frozen=True, slots=True)
class PhaseChanged:
    phase: Phase


@dataclass(frozen=True, slots=True)
class CollisionDetected:
    path: Path


@dataclass(frozen=True, slots=True)
class Done:
    artifact: Path | None = None
    error: BuildError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


BuildEvent = Union[LogChunk, PhaseChanged, CollisionDetected, Done]


@dataclass(slots=True)
class OutputLayout:
    output_root: Path
    output_dir: Path
    artifact: Path
    device_archive: Path
    simulator_archive: Path

    @classmethod
    def for_scheme(cls, output_root: Path, scheme: str, config: BuildConfig) -> "OutputLayout":
        output_dir = output_root / config.output_subdir
        return cls(
            output_root=output_root,
            output_dir=output_dir,
            artifact=output_dir / f"{scheme}{XCFRAMEWORK_SUFFIX}",
            device_archive=output_dir / f"{scheme}{config.device_suffix}",
            simulator_archive=output_dir / f"{scheme}{config.simulator_suffix}",
        )


@dataclass(slots=True)
class BuildStep:
    description: str
    phase: Phase
    stage: str
    command: List[str]
    cwd: Path


@dataclass(slots=True)
class BuildRun:
    project_path: Path
    scheme: str
    bookmark: Bookmark
    output_root: Path | None = None
    phase: Phase = Phase.IDLE
    log: List[str] = field(default_factory=list)
    pending_artifact: Path | None = None
    artifact: Path | None = None
    error: BuildError | None = None
    cancelled: bool = False
    finished: bool = False

    @property
    def log_text(self) -> str:
        return "".join(self.log)


class BuildOrchestrator:
    def __init__(
        self,
        *,
        location_store: LocationStore,
        command_runner: CommandRunner,
        config: BuildConfig | None = None,
        xcodebuild: Xcodebuild | None = None,
    ) -> None:
        self._location_store = location_store
        self._command_runner = command_runner
        self._config = config or BuildConfig()
        self._xcodebuild = xcodebuild or Xcodebuild()
        self._events: "queue.Queue[BuildEvent]" = queue.Queue()
        self._run: BuildRun | None = None
        self._active = False
        self._pending: OutputLayout | None = None
        self._worker: threading.Thread | None = None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def run(self) -> BuildRun | None:
        return self._run

    def layout(self, output_root: Path, scheme: str) -> OutputLayout:
        return OutputLayout.for_scheme(output_root, scheme, self._config)

    def plan_steps(self, run: BuildRun, layout: OutputLayout) -> List[BuildStep]:
        xcodebuild = self._xcodebuild
        scheme = run.scheme
        return [
            BuildStep(
                description="Building for iOS...",
                phase=Phase.ARCHIVING_DEVICE,
                stage="device",
                command=xcodebuild.archive(scheme, self._config.device_destination, layout.device_archive),
                cwd=run.project_path,
            ),
            BuildStep(
                description="Building for iOS Simulator...",
                phase=Phase.ARCHIVING_SIMULATOR,
                stage="simulator",
                command=xcodebuild.archive(scheme, self._config.simulator_destination, layout.simulator_archive),
                cwd=run.project_path,
            ),
            BuildStep(
                description="Creating XCFramework...",
                phase=Phase.MERGING,
                stage="merge",
                command=xcodebuild.create_xcframework(
                    [
                        framework_in_archive(layout.device_archive, scheme),
                        framework_in_archive(layout.simulator_archive, scheme),
                    ],
                    layout.artifact,
                ),
                cwd=run.project_path,
            ),
        ]

    def request_build(self, project_path: Path | str, scheme: str, bookmark: Bookmark | None) -> BuildRun:
        if self._active:
            raise BuildInProgress()
        if not str(project_path).strip() or not scheme or bookmark is None:
            raise ValueError("A project folder, a scheme and an output folder are required to build")

        run = BuildRun(project_path=Path(project_path), scheme=scheme, bookmark=bookmark)
        self._run = run
        self._active = True
        self._post(PhaseChanged(Phase.RESOLVING_OUTPUT))

        try:
            with self._location_store.access(bookmark) as output_root:
                run.output_root = output_root
                layout = self.layout(output_root, scheme)
                self._post(PhaseChanged(Phase.CHECKING_COLLISION))
                try:
                    collision = layout.artifact.exists() or layout.artifact.is_symlink()
                except OSError as exc:
                    self._post(Done(error=OutputCheckFailed(layout.artifact, exc.strerror or str(exc))))
                    return run
                if collision:
                    self._pending = layout
                    self._post(CollisionDetected(layout.artifact))
                    return run
                if not self._prepare_output_dir(layout):
                    return run
        except AccessError as exc:
            self._post(Done(error=OutputAccessDenied(exc)))
            return run

        self._start_worker(run, layout)
        return run

    def confirm_overwrite(self) -> None:
        layout = self._take_pending()
        run = self._current()
        try:
            with self._location_store.access(run.bookmark):
                try:
                    if layout.artifact.is_dir() and not layout.artifact.is_symlink():
                        shutil.rmtree(layout.artifact)
                    else:
                        layout.artifact.unlink()
                except OSError as exc:
                    self._post(Done(error=RemovalFailed(layout.artifact, exc.strerror or str(exc))))
                    return
                self._post(LogChunk("Removed existing XCFramework\n"))
                if not self._prepare_output_dir(layout):
                    return
        except AccessError as exc:
            self._post(Done(error=OutputAccessDenied(exc)))
            return

        self._start_worker(run, layout)

    def cancel_overwrite(self) -> None:
        self._take_pending()
        self._post(PhaseChanged(Phase.IDLE))

    def events(self) -> Iterator[BuildEvent]:
        """Drain events on the calling thread until the run stops or needs a decision."""

        while True:
            if self._pending is not None and self._events.empty():
                return
            if not self._active and self._events.empty():
                return
            event = self._events.get()
            self._apply(event)
            yield event
            if self._is_terminal(event):
                return

    def pump(self) -> List[BuildEvent]:
        """Apply every event queued so far without blocking."""

        drained: List[BuildEvent] = []
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return drained
            self._apply(event)
            drained.append(event)

    def join(self, timeout: float | None = None) -> None:
        if self._worker is not None:
            self._worker.join(timeout)

    def _current(self) -> BuildRun:
        if self._run is None:
            raise RuntimeError("No build has been requested")
        return self._run

    def _take_pending(self) -> OutputLayout:
        layout = self._pending
        if layout is None:
            raise RuntimeError("No overwrite decision is pending")
        self._pending = None
        return layout

    def _post(self, event: BuildEvent) -> None:
        self._events.put(event)

    def _post_log(self, text: str) -> None:
        self._events.put(LogChunk(text))

    @staticmethod
    def _is_terminal(event: BuildEvent) -> bool:
        return isinstance(event, Done) or (isinstance(event, PhaseChanged) and event.phase is Phase.IDLE)

    def _apply(self, event: BuildEvent) -> None:
        run = self._current()
        if isinstance(event, LogChunk):
            run.log.append(event.text)
        elif isinstance(event, PhaseChanged):
            run.phase = event.phase
            if event.phase is Phase.IDLE:
                run.pending_artifact = None
                run.cancelled = True
                run.finished = True
                self._active = False
        elif isinstance(event, CollisionDetected):
            run.phase = Phase.AWAITING_OVERWRITE_DECISION
            run.pending_artifact = event.path
        elif isinstance(event, Done):
            run.phase = Phase.DONE
            run.pending_artifact = None
            run.artifact = event.artifact
            run.error = event.error
            run.finished = True
            self._active = False

    def _prepare_output_dir(self, layout: OutputLayout) -> bool:
        if layout.output_dir.is_dir():
            return True
        try:
            layout.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            self._post(Done(error=OutputCreateFailed(layout.output_dir, exc.strerror or str(exc))))
            return False
        self._post(LogChunk(f"Created output directory: {layout.output_dir}\n"))
        return True

    def _start_worker(self, run: BuildRun, layout: OutputLayout) -> None:
        self._worker = threading.Thread(
            target=self._execute,
            args=(run, layout),
            name=f"xcfgen-build-{run.scheme}",
            daemon=True,
        )
        self._worker.start()

    def _execute(self, run: BuildRun, layout: OutputLayout) -> None:
        try:
            with self._location_store.access(run.bookmark):
                self._run_steps(run, layout)
        except AccessError as exc:
            self._post(Done(error=OutputAccessDenied(exc)))
        except BuildError as exc:
            self._post(Done(error=exc))
        except Exception as exc:
            self._post(Done(error=BuildError(f"Unexpected build failure: {exc}")))
        else:
            self._post(LogChunk("✅ XCFramework created successfully!\n"))
            self._post(LogChunk(f"Output location: {layout.artifact}\n"))
            self._post(Done(artifact=layout.artifact))

    def _run_steps(self, run: BuildRun, layout: OutputLayout) -> None:
        for step in self.plan_steps(run, layout):
            self._post(PhaseChanged(step.phase))
            self._post(LogChunk(f"{step.description}\n"))
            try:
                self._command_runner.run(
                    step.command,
                    cwd=step.cwd,
                    note=step.description,
                    on_output=self._post_log,
                )
            except NonZeroExit as exc:
                self._post(LogChunk(f"❌ Command failed with exit code: {exc.returncode}\n"))
                raise self._step_failure(step, f"exit code {exc.returncode}") from exc
            except SpawnFailed as exc:
                self._post(LogChunk(f"❌ Failed to execute command: {exc.reason}\n"))
                raise self._step_failure(step, exc.reason) from exc
            except CommandError as exc:
                raise self._step_failure(step, str(exc)) from exc

    @staticmethod
    def _step_failure(step: BuildStep, reason: str) -> BuildError:
        if step.phase is Phase.MERGING:
            return MergeFailed(reason)
        return ArchiveFailed(step.stage, reason)


__all__ = [
    "BuildEvent",
    "BuildOrchestrator",
    "BuildRun",
    "BuildStep",
    "CollisionDetected",
    "Done",
    "LogChunk",
    "OutputLayout",
    "Phase",
    "PhaseChanged",
]
