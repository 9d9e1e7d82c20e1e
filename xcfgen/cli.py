"""Command line interface for the XCFramework generator."""
from __future__ import annotations

from argparse import ArgumentParser, Namespace
from pathlib import Path
from typing import Callable, Dict, Iterable
import sys

from .command_runner import CommandError, CommandRunner, RecordingCommandRunner, SubprocessCommandRunner
from .config_loader import AppConfig, default_config_dir
from .console import Console
from .errors import XcfgenError
from .location_store import Bookmark, LocationStore
from .orchestrator import BuildOrchestrator, BuildRun, CollisionDetected, Done, LogChunk, PhaseChanged
from .schemes import SchemeResolver
from .toolchain import Xcodebuild


def _parse_arguments(argv: Iterable[str]) -> Namespace:
    parser = ArgumentParser(prog="xcfgen", description="Build an XCFramework from an Xcode project or workspace")
    parser.add_argument("--config-dir", help="Directory holding config.toml and the saved output folder")
    parser.add_argument(
        "--log-level",
        choices=sorted(Console.LEVELS, key=Console.LEVELS.__getitem__),
        help="Console verbosity (overrides global.log_level)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    detect_parser = subparsers.add_parser("detect", help="Print the scheme that would be built")
    detect_parser.add_argument("project", help="Folder containing the .xcworkspace/.xcodeproj")

    schemes_parser = subparsers.add_parser("schemes", help="List every discovered scheme")
    schemes_parser.add_argument("project", help="Folder containing the .xcworkspace/.xcodeproj")

    output_parser = subparsers.add_parser("output", help="Manage the saved output folder")
    output_sub = output_parser.add_subparsers(dest="action", required=True)
    set_parser = output_sub.add_parser("set", help="Select and remember the output folder")
    set_parser.add_argument("path", help="Output folder")
    output_sub.add_parser("show", help="Print the saved output folder")
    output_sub.add_parser("clear", help="Forget the saved output folder")

    build_parser = subparsers.add_parser("build", help="Archive device and simulator slices and merge them")
    build_parser.add_argument("project", help="Folder containing the .xcworkspace/.xcodeproj")
    build_parser.add_argument("--scheme", help="Scheme to build instead of the detected one")
    build_parser.add_argument("--output", help="Output folder to use and remember")
    overwrite = build_parser.add_mutually_exclusive_group()
    overwrite.add_argument(
        "--overwrite",
        dest="overwrite",
        action="store_const",
        const=True,
        default=None,
        help="Replace an existing XCFramework without asking",
    )
    overwrite.add_argument(
        "--no-overwrite",
        dest="overwrite",
        action="store_const",
        const=False,
        help="Keep an existing XCFramework and cancel the build",
    )
    build_parser.add_argument("--dry-run", action="store_true", help="Print commands without executing them")
    build_parser.add_argument("--reveal", action="store_true", help="Show the XCFramework in the file browser")

    return parser.parse_args(list(argv))


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_arguments(sys.argv[1:] if argv is None else argv)
    config_dir = Path(args.config_dir).expanduser() if args.config_dir else default_config_dir()

    try:
        config = AppConfig.from_directory(config_dir)
        console = Console(args.log_level or config.global_config.log_level)
        return _HANDLERS[args.command](args, config, console)
    except (XcfgenError, OSError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


def _create_runner(config: AppConfig) -> SubprocessCommandRunner:
    return SubprocessCommandRunner(use_shell=config.toolchain.use_shell, shell=config.toolchain.shell)


def _xcodebuild(config: AppConfig) -> Xcodebuild:
    return Xcodebuild(executable=config.toolchain.xcodebuild)


def _resolver(config: AppConfig, console: Console, runner: CommandRunner) -> SchemeResolver:
    return SchemeResolver(runner, xcodebuild=_xcodebuild(config), console=console)


def _project_path(args: Namespace) -> Path:
    if not args.project.strip():
        raise ValueError("A project folder is required")
    return Path(args.project).expanduser()


def _handle_detect(args: Namespace, config: AppConfig, console: Console) -> int:
    resolver = _resolver(config, console, _create_runner(config))
    print(resolver.resolve(_project_path(args)))
    return 0


def _handle_schemes(args: Namespace, config: AppConfig, console: Console) -> int:
    resolver = _resolver(config, console, _create_runner(config))
    names = resolver.candidates(_project_path(args))
    if not names:
        console.error("No schemes found")
        return 1
    for name in names:
        print(name)
    return 0


def _handle_output(args: Namespace, config: AppConfig, console: Console) -> int:
    store = LocationStore.from_config_dir(config.config_dir)
    if args.action == "set":
        bookmark = store.pick(args.path)
        print(f"Output folder selected: {bookmark.path}")
        return 0
    if args.action == "show":
        location = store.load()
        print(location.path if location else "No output folder selected")
        return 0
    if args.action == "clear":
        store.clear()
        print("Output folder cleared")
        return 0
    raise ValueError(f"Unknown output action: {args.action}")


def _decide_overwrite(args: Namespace, path: Path) -> bool:
    if args.overwrite is not None:
        return bool(args.overwrite)
    if not sys.stdin.isatty():
        print(f"XCFramework already exists at {path}; pass --overwrite to replace it.", file=sys.stderr)
        return False
    answer = input(f"An XCFramework with the same name already exists at {path}. Overwrite it? [y/N] ")
    return answer.strip().lower() in {"y", "yes"}


def _output_bookmark(args: Namespace, store: LocationStore, console: Console) -> Bookmark | None:
    if args.output:
        bookmark = store.pick(args.output)
        console.info(f"Output folder selected: {bookmark.path}")
        return bookmark
    location = store.load()
    if location is None:
        return None
    console.debug(f"Using saved output folder: {location.path}")
    return location.bookmark


def _emit_dry_run_output(orchestrator: BuildOrchestrator, run: BuildRun, store: LocationStore) -> None:
    recorder = RecordingCommandRunner()
    with store.access(run.bookmark) as output_root:
        layout = orchestrator.layout(output_root, run.scheme)
        for step in orchestrator.plan_steps(run, layout):
            recorder.run(step.command, cwd=step.cwd, note=step.description)
    for line in recorder.iter_formatted():
        print(line)


def _reveal(runner: CommandRunner, path: Path, console: Console) -> None:
    if sys.platform == "darwin":
        command = ["open", "-R", str(path)]
    else:
        command = ["xdg-open", str(path.parent)]
    try:
        runner.run(command, note="Reveal artifact")
    except CommandError as exc:
        console.error(f"Could not reveal {path}: {exc}")


def _drain(orchestrator: BuildOrchestrator, args: Namespace, console: Console) -> None:
    for event in orchestrator.events():
        if isinstance(event, LogChunk):
            console.raw(event.text)
        elif isinstance(event, PhaseChanged):
            console.debug(f"Phase: {event.phase.value}")
        elif isinstance(event, CollisionDetected):
            if _decide_overwrite(args, event.path):
                orchestrator.confirm_overwrite()
            else:
                orchestrator.cancel_overwrite()
        elif isinstance(event, Done) and event.error is not None:
            console.debug(f"Build failed: {event.error!r}")


def _handle_build(args: Namespace, config: AppConfig, console: Console) -> int:
    project = _project_path(args)
    runner = _create_runner(config)
    store = LocationStore.from_config_dir(config.config_dir)

    scheme = args.scheme or _resolver(config, console, runner).resolve(project)
    console.info(f"Detected Scheme: {scheme}")

    bookmark = _output_bookmark(args, store, console)
    if bookmark is None:
        print("Error: No output folder selected (use --output or `xcfgen output set`)", file=sys.stderr)
        return 1

    orchestrator = BuildOrchestrator(
        location_store=store,
        command_runner=runner,
        config=config.build,
        xcodebuild=_xcodebuild(config),
    )

    if args.dry_run:
        _emit_dry_run_output(orchestrator, BuildRun(project_path=project, scheme=scheme, bookmark=bookmark), store)
        return 0

    run = orchestrator.request_build(project, scheme, bookmark)
    _drain(orchestrator, args, console)

    if run.cancelled:
        console.info("Build cancelled; the existing XCFramework was kept")
        return 1
    if run.error is not None:
        print(f"Error: {run.error}", file=sys.stderr)
        return 1

    print(f"XCFramework was created successfully at:\n{run.artifact}")
    if args.reveal and run.artifact is not None:
        _reveal(runner, run.artifact, console)
    return 0


_HANDLERS: Dict[str, Callable[[Namespace, AppConfig, Console], int]] = {
    "detect": _handle_detect,
    "schemes": _handle_schemes,
    "output": _handle_output,
    "build": _handle_build,
}


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
