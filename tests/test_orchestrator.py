from __future__ import annotations

from pathlib import Path
from unittest.mock import patch
import tempfile
import unittest

from xcfgen.command_runner import STDERR_PREFIX, CommandResult, CommandRunner, NonZeroExit, SpawnFailed
from xcfgen.errors import (
    ArchiveFailed,
    BuildError,
    BuildInProgress,
    MergeFailed,
    OutputAccessDenied,
    OutputCheckFailed,
    OutputCreateFailed,
    RemovalFailed,
)
from xcfgen.location_store import LocationStore
from xcfgen.orchestrator import (
    BuildOrchestrator,
    CollisionDetected,
    Done,
    LogChunk,
    Phase,
    PhaseChanged,
)


def _stage(command: list[str]) -> str:
    if "-create-xcframework" in command:
        return "merge"
    destination = command[command.index("-destination") + 1]
    return "simulator" if destination.endswith("Simulator") else "device"


class ScriptedBuildRunner(CommandRunner):
    """Records xcodebuild invocations and fails the configured stages."""

    def __init__(self, *, failures: dict[str, object] | None = None, watch: Path | None = None) -> None:
        self.failures = failures or {}
        self.watch = watch
        self.history: list[dict] = []

    @property
    def stages(self) -> list[str]:
        return [entry["stage"] for entry in self.history]

    def run(self, command, *, cwd=None, check=True, note=None, on_output=None):  # type: ignore[override]
        cmd_list = list(command)
        stage = _stage(cmd_list)
        self.history.append(
            {
                "command": cmd_list,
                "cwd": cwd,
                "note": note,
                "stage": stage,
                "watched_exists": self.watch.exists() if self.watch else None,
            }
        )
        if on_output is not None:
            on_output(f"{stage} step 1\n")
            on_output(f"{STDERR_PREFIX}{stage} warning\n")
            on_output(f"{stage} step 2\n")
        failure = self.failures.get(stage)
        if failure == "crash":
            raise RuntimeError("runner crashed")
        if failure == "spawn":
            raise SpawnFailed(cmd_list, "No such file or directory")
        if isinstance(failure, int):
            raise NonZeroExit(CommandResult(command=cmd_list, returncode=failure, stdout="", stderr="", streamed=True))
        return CommandResult(command=cmd_list, returncode=0, stdout="", stderr="", streamed=on_output is not None)


class BuildOrchestratorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.project = root / "Kit"
        self.project.mkdir()
        self.output_root = root / "out"
        self.output_root.mkdir()
        self.store = LocationStore.from_config_dir(root / "config")
        self.bookmark = self.store.pick(self.output_root)
        self.output_dir = self.output_root.resolve() / "output"
        self.artifact = self.output_dir / "Kit.xcframework"

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _orchestrator(self, runner: CommandRunner) -> BuildOrchestrator:
        return BuildOrchestrator(location_store=self.store, command_runner=runner)

    def _existing_artifact(self) -> None:
        (self.artifact / "Info.plist").parent.mkdir(parents=True)
        (self.artifact / "Info.plist").write_text("<plist/>")

    @staticmethod
    def _phases(events) -> list[Phase]:
        return [event.phase for event in events if isinstance(event, PhaseChanged)]

    def test_successful_build_runs_three_steps(self) -> None:
        runner = ScriptedBuildRunner()
        orchestrator = self._orchestrator(runner)

        run = orchestrator.request_build(self.project, "Kit", self.bookmark)
        events = list(orchestrator.events())

        self.assertEqual(
            self._phases(events),
            [
                Phase.RESOLVING_OUTPUT,
                Phase.CHECKING_COLLISION,
                Phase.ARCHIVING_DEVICE,
                Phase.ARCHIVING_SIMULATOR,
                Phase.MERGING,
            ],
        )
        done = events[-1]
        self.assertIsInstance(done, Done)
        self.assertTrue(done.succeeded)
        self.assertEqual(done.artifact, self.artifact)

        self.assertEqual(runner.stages, ["device", "simulator", "merge"])
        self.assertTrue(all(entry["cwd"] == self.project for entry in runner.history))
        device = runner.history[0]["command"]
        self.assertIn("generic/platform=iOS", device)
        self.assertIn(str(self.output_dir / "KitIOS"), device)
        merge = runner.history[2]["command"]
        self.assertIn(str(self.output_dir / "KitIOS.xcarchive/Products/Library/Frameworks/Kit.framework"), merge)
        self.assertIn(str(self.output_dir / "KitSIM.xcarchive/Products/Library/Frameworks/Kit.framework"), merge)
        self.assertEqual(merge[-2:], ["-output", str(self.artifact)])

        self.assertTrue(self.output_dir.is_dir())
        self.assertEqual(run.phase, Phase.DONE)
        self.assertEqual(run.artifact, self.artifact)
        self.assertIsNone(run.error)
        self.assertFalse(orchestrator.active)
        self.assertIn("Created output directory", run.log_text)
        self.assertIn("Building for iOS...\ndevice step 1\n", run.log_text)
        self.assertIn("Error: simulator warning", run.log_text)
        self.assertIn(f"Output location: {self.artifact}", run.log_text)

    def test_streamed_chunks_keep_channel_order(self) -> None:
        orchestrator = self._orchestrator(ScriptedBuildRunner())
        orchestrator.request_build(self.project, "Kit", self.bookmark)
        chunks = [event.text for event in orchestrator.events() if isinstance(event, LogChunk)]
        device = [chunk for chunk in chunks if chunk.startswith("device step")]
        self.assertEqual(device, ["device step 1\n", "device step 2\n"])

    def test_collision_is_reported_before_any_command(self) -> None:
        self._existing_artifact()
        runner = ScriptedBuildRunner()
        orchestrator = self._orchestrator(runner)

        run = orchestrator.request_build(self.project, "Kit", self.bookmark)
        events = list(orchestrator.events())

        self.assertIsInstance(events[-1], CollisionDetected)
        self.assertEqual(events[-1].path, self.artifact)
        self.assertEqual(runner.history, [])
        self.assertEqual(run.phase, Phase.AWAITING_OVERWRITE_DECISION)
        self.assertEqual(run.pending_artifact, self.artifact)
        self.assertTrue(orchestrator.active)

        with patch("xcfgen.orchestrator.shutil.rmtree") as rmtree:
            orchestrator.cancel_overwrite()
            cancelled = list(orchestrator.events())
        rmtree.assert_not_called()

        self.assertEqual(cancelled, [PhaseChanged(Phase.IDLE)])
        self.assertTrue((self.artifact / "Info.plist").exists())
        self.assertEqual(run.phase, Phase.IDLE)
        self.assertIsNone(run.pending_artifact)
        self.assertTrue(run.cancelled)
        self.assertFalse(orchestrator.active)
        self.assertEqual(runner.history, [])

    def test_confirm_removes_artifact_before_archiving(self) -> None:
        self._existing_artifact()
        runner = ScriptedBuildRunner(watch=self.artifact)
        orchestrator = self._orchestrator(runner)

        run = orchestrator.request_build(self.project, "Kit", self.bookmark)
        for event in orchestrator.events():
            if isinstance(event, CollisionDetected):
                orchestrator.confirm_overwrite()

        self.assertEqual(runner.stages, ["device", "simulator", "merge"])
        self.assertFalse(runner.history[0]["watched_exists"])
        self.assertIn("Removed existing XCFramework", run.log_text)
        self.assertIsNone(run.error)
        self.assertEqual(run.artifact, self.artifact)

    def test_confirm_unlinks_file_artifact(self) -> None:
        self.output_dir.mkdir()
        self.artifact.write_text("stale")
        runner = ScriptedBuildRunner(watch=self.artifact)
        orchestrator = self._orchestrator(runner)

        run = orchestrator.request_build(self.project, "Kit", self.bookmark)
        with patch("xcfgen.orchestrator.shutil.rmtree") as rmtree:
            for event in orchestrator.events():
                if isinstance(event, CollisionDetected):
                    orchestrator.confirm_overwrite()
        rmtree.assert_not_called()

        self.assertEqual(runner.stages, ["device", "simulator", "merge"])
        self.assertFalse(runner.history[0]["watched_exists"])
        self.assertFalse(self.artifact.exists())
        self.assertIn("Removed existing XCFramework", run.log_text)
        self.assertIsNone(run.error)

    def test_unreadable_output_ends_run(self) -> None:
        runner = ScriptedBuildRunner()
        orchestrator = self._orchestrator(runner)
        exists = Path.exists

        def guarded_exists(path, *args, **kwargs):
            if path.name.endswith(".xcframework"):
                raise PermissionError(13, "Permission denied")
            return exists(path, *args, **kwargs)

        with patch.object(Path, "exists", autospec=True, side_effect=guarded_exists):
            run = orchestrator.request_build(self.project, "Kit", self.bookmark)
        events = list(orchestrator.events())

        self.assertIsInstance(events[-1], Done)
        self.assertIsInstance(run.error, OutputCheckFailed)
        self.assertIn("Permission denied", str(run.error))
        self.assertEqual(runner.history, [])
        self.assertFalse(orchestrator.active)

        retry = orchestrator.request_build(self.project, "Kit", self.bookmark)
        list(orchestrator.events())
        self.assertIsNone(retry.error)
        self.assertEqual(retry.artifact, self.artifact)

    def test_output_directory_creation_failure(self) -> None:
        self.output_dir.write_text("not a directory")
        runner = ScriptedBuildRunner()
        orchestrator = self._orchestrator(runner)

        run = orchestrator.request_build(self.project, "Kit", self.bookmark)
        events = list(orchestrator.events())

        self.assertIsInstance(events[-1], Done)
        self.assertIsInstance(run.error, OutputCreateFailed)
        self.assertEqual(runner.history, [])
        self.assertFalse(orchestrator.active)

    def test_unexpected_runner_error_ends_run(self) -> None:
        runner = ScriptedBuildRunner(failures={"device": "crash"})
        orchestrator = self._orchestrator(runner)

        with patch("threading.excepthook") as excepthook:
            run = orchestrator.request_build(self.project, "Kit", self.bookmark)
            orchestrator.join(timeout=10)
        list(orchestrator.events())

        excepthook.assert_not_called()
        self.assertIs(type(run.error), BuildError)
        self.assertIn("Unexpected build failure: runner crashed", str(run.error))
        self.assertFalse(orchestrator.active)

    def test_removal_failure_skips_all_commands(self) -> None:
        self._existing_artifact()
        runner = ScriptedBuildRunner()
        orchestrator = self._orchestrator(runner)

        run = orchestrator.request_build(self.project, "Kit", self.bookmark)
        list(orchestrator.events())
        with patch("xcfgen.orchestrator.shutil.rmtree", side_effect=PermissionError(13, "Permission denied")):
            orchestrator.confirm_overwrite()
        events = list(orchestrator.events())

        self.assertIsInstance(events[-1], Done)
        self.assertIsInstance(run.error, RemovalFailed)
        self.assertIn("Permission denied", str(run.error))
        self.assertEqual(runner.history, [])
        self.assertFalse(orchestrator.active)

    def test_device_failure_stops_remaining_steps(self) -> None:
        runner = ScriptedBuildRunner(failures={"device": 65})
        orchestrator = self._orchestrator(runner)

        run = orchestrator.request_build(self.project, "Kit", self.bookmark)
        list(orchestrator.events())

        self.assertEqual(runner.stages, ["device"])
        self.assertIsInstance(run.error, ArchiveFailed)
        assert isinstance(run.error, ArchiveFailed)
        self.assertEqual(run.error.stage, "device")
        self.assertIn("❌ Command failed with exit code: 65", run.log_text)
        self.assertIsNone(run.artifact)
        self.assertEqual(run.phase, Phase.DONE)

    def test_simulator_spawn_failure(self) -> None:
        runner = ScriptedBuildRunner(failures={"simulator": "spawn"})
        orchestrator = self._orchestrator(runner)

        run = orchestrator.request_build(self.project, "Kit", self.bookmark)
        list(orchestrator.events())

        self.assertEqual(runner.stages, ["device", "simulator"])
        assert isinstance(run.error, ArchiveFailed)
        self.assertEqual(run.error.stage, "simulator")
        self.assertIn("❌ Failed to execute command: No such file or directory", run.log_text)

    def test_merge_failure(self) -> None:
        runner = ScriptedBuildRunner(failures={"merge": 1})
        orchestrator = self._orchestrator(runner)

        run = orchestrator.request_build(self.project, "Kit", self.bookmark)
        list(orchestrator.events())

        self.assertEqual(runner.stages, ["device", "simulator", "merge"])
        self.assertIsInstance(run.error, MergeFailed)
        self.assertNotIn("created successfully", run.log_text)

    def test_second_request_is_rejected_while_active(self) -> None:
        self._existing_artifact()
        orchestrator = self._orchestrator(ScriptedBuildRunner())
        orchestrator.request_build(self.project, "Kit", self.bookmark)

        with self.assertRaises(BuildInProgress):
            orchestrator.request_build(self.project, "Kit", self.bookmark)

        list(orchestrator.events())
        orchestrator.cancel_overwrite()
        list(orchestrator.events())
        orchestrator.request_build(self.project, "Other", self.bookmark)
        self.assertIsInstance(list(orchestrator.events())[-1], Done)

    def test_missing_output_folder_is_access_denied(self) -> None:
        runner = ScriptedBuildRunner()
        orchestrator = self._orchestrator(runner)
        self.output_root.rmdir()

        run = orchestrator.request_build(self.project, "Kit", self.bookmark)
        list(orchestrator.events())

        self.assertIsInstance(run.error, OutputAccessDenied)
        self.assertEqual(runner.history, [])

    def test_requires_inputs(self) -> None:
        orchestrator = self._orchestrator(ScriptedBuildRunner())
        with self.assertRaises(ValueError):
            orchestrator.request_build(self.project, "", self.bookmark)
        with self.assertRaises(ValueError):
            orchestrator.request_build(self.project, "Kit", None)
        with self.assertRaises(ValueError):
            orchestrator.request_build("", "Kit", self.bookmark)
        with self.assertRaises(ValueError):
            orchestrator.request_build("  ", "Kit", self.bookmark)
        self.assertFalse(orchestrator.active)

    def test_decisions_require_pending_collision(self) -> None:
        orchestrator = self._orchestrator(ScriptedBuildRunner())
        with self.assertRaises(RuntimeError):
            orchestrator.confirm_overwrite()
        with self.assertRaises(RuntimeError):
            orchestrator.cancel_overwrite()

    def test_state_changes_only_when_drained(self) -> None:
        orchestrator = self._orchestrator(ScriptedBuildRunner())
        run = orchestrator.request_build(self.project, "Kit", self.bookmark)
        orchestrator.join(timeout=10)

        self.assertEqual(run.phase, Phase.IDLE)
        self.assertEqual(run.log, [])
        self.assertTrue(orchestrator.active)

        drained = orchestrator.pump()
        self.assertIsInstance(drained[-1], Done)
        self.assertEqual(run.phase, Phase.DONE)
        self.assertFalse(orchestrator.active)
        self.assertEqual(orchestrator.pump(), [])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
