from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, List, Sequence
import io
import json
import tempfile
import unittest
from unittest import mock

from core.command_runner import RecordingCommandRunner
from project_tasks import session as keys
from project_tasks.backends import Task
from project_tasks.config import GlobalConfig
from project_tasks.context import AppContext, Console, create_app_context
from project_tasks.dispatcher import DispatchStatus, TaskDispatcher, build_command
from project_tasks.launch import FileOpener, LaunchRequest, Launcher
from project_tasks.output import LogCollectorSink
from project_tasks.selector import Selector


class ScriptedSelector(Selector):
    """Answers prompts from a script of labels; ``None`` declines."""

    def __init__(self, *answers: str | None) -> None:
        self.answers = list(answers)
        self.prompts: List[str] = []

    def select(self, items: Sequence[Any], prompt: str, format_item: Callable[[Any], str] | None = None) -> Any:
        self.prompts.append(prompt)
        if not self.answers:
            raise AssertionError(f"Unexpected prompt: {prompt}")
        answer = self.answers.pop(0)
        if answer is None:
            return None
        render = format_item or str
        for item in items:
            if render(item) == answer:
                return item
        raise AssertionError(f"{answer!r} not offered for {prompt} {[render(item) for item in items]}")


class RecordingLauncher(Launcher):
    def __init__(self, accept: bool) -> None:
        self.accept = accept
        self.requests: List[LaunchRequest] = []

    def launch(self, request: LaunchRequest) -> bool:
        self.requests.append(request)
        return self.accept


class RecordingOpener(FileOpener):
    def __init__(self) -> None:
        self.paths: List[Path] = []

    def open(self, path: Path) -> bool:
        self.paths.append(path)
        return True


def _write_json(path: Path, data: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")


class DispatcherTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        base = Path(self.temp_dir.name).resolve()
        self.root = base / "project"
        self.root.mkdir()
        self.session_path = base / "session.json"
        self.stdout = io.StringIO()
        self.stderr = io.StringIO()
        self.runner = RecordingCommandRunner()
        self.launcher = RecordingLauncher(accept=True)
        self.opener = RecordingOpener()

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def make_app(self, selector: Selector | None = None) -> AppContext:
        self.selector = selector or ScriptedSelector()
        return create_app_context(
            GlobalConfig(),
            runner=self.runner,
            console=Console("debug", stdout=self.stdout, stderr=self.stderr),
            selector=self.selector,
            launcher=self.launcher,
            opener=self.opener,
            sink=LogCollectorSink(self.runner),
            session_path=self.session_path,
        )

    def run_task(self, app: AppContext, name: str, **kwargs: Any):
        return TaskDispatcher(app).run_task(name, start_path=self.root, **kwargs)

    def commands(self) -> List[List[str]]:
        return [record.command for record in self.runner.commands]

    def cmake_project(self, *, build_presets: bool = False) -> None:
        (self.root / "CMakeLists.txt").write_text("project(demo)\n", encoding="utf-8")
        document: dict[str, Any] = {
            "configurePresets": [
                {"name": "base", "hidden": True, "binaryDir": "${sourceDir}/build/${presetName}"},
                {"name": "dev", "inherits": "base"},
                {"name": "rel", "inherits": "base"},
            ]
        }
        if build_presets:
            document["buildPresets"] = [{"name": "b-dev", "configurePreset": "dev"}]
        _write_json(self.root / "CMakePresets.json", document)

    @property
    def dev_dir(self) -> Path:
        return self.root / "build" / "dev"

    def configure_dev(self) -> None:
        self.dev_dir.mkdir(parents=True, exist_ok=True)
        (self.dev_dir / "CMakeCache.txt").write_text("", encoding="utf-8")

    def write_reply(self, *names: str) -> None:
        reply = self.dev_dir / ".cmake" / "api" / "v1" / "reply"
        _write_json(reply / "index-1.json", {"objects": [{"kind": "codemodel", "jsonFile": "codemodel.json"}]})
        _write_json(
            reply / "codemodel.json",
            {"configurations": [{"targets": [{"jsonFile": f"target-{name}.json"} for name in names]}]},
        )
        for name in names:
            _write_json(
                reply / f"target-{name}.json",
                {"name": name, "type": "EXECUTABLE", "artifacts": [{"path": f"bin/{name}"}]},
            )


class EarlyExitTests(DispatcherTestCase):
    def test_cancel_with_nothing_running(self) -> None:
        result = TaskDispatcher(self.make_app()).run_task("cancel")
        self.assertEqual(result.status, DispatchStatus.NOT_FOUND)
        self.assertIsNone(result.context)
        self.assertIn("Nothing to cancel", self.stdout.getvalue())

    def test_cancel_delegates_to_sink(self) -> None:
        app = self.make_app()
        with mock.patch.object(app.sink, "cancel", return_value=True) as cancel:
            result = TaskDispatcher(app).run_task("cancel")
        cancel.assert_called_once_with()
        self.assertEqual(result.status, DispatchStatus.CANCELLED)
        self.assertIn("Cancelled", self.stdout.getvalue())

    def test_no_project_root(self) -> None:
        with mock.patch("project_tasks.dispatcher.find_root", return_value=None):
            result = self.run_task(self.make_app(), "build")
        self.assertEqual(result.status, DispatchStatus.NOT_FOUND)
        self.assertIn("No project root found", self.stderr.getvalue())

    def test_no_backend(self) -> None:
        (self.root / ".project-tasks.json").write_text("{}", encoding="utf-8")
        result = self.run_task(self.make_app(), "build")
        self.assertEqual(result.status, DispatchStatus.NOT_FOUND)
        self.assertIn("No backend detected for this project", self.stderr.getvalue())

    def test_task_not_available(self) -> None:
        (self.root / "pyproject.toml").write_text("", encoding="utf-8")
        result = self.run_task(self.make_app(), "configure")
        self.assertEqual(result.status, DispatchStatus.NOT_FOUND)
        self.assertEqual(result.message, "Task 'configure' not available for python")
        self.assertEqual(self.commands(), [])


class ConfigurePresetTests(DispatcherTestCase):
    def test_prompt_once_then_remember(self) -> None:
        self.cmake_project()
        app = self.make_app(ScriptedSelector("dev"))
        result = self.run_task(app, "configure")

        self.assertEqual(result.status, DispatchStatus.STARTED)
        expected = ["cmake", "--preset", "dev", "-B", str(self.dev_dir)]
        self.assertEqual(result.command, expected)
        self.assertEqual(self.selector.prompts, ["Select preset:"])
        self.assertEqual(app.session.get(self.root, keys.PRESET), "dev")

        app.session.invalidate()
        again = self.run_task(app, "configure")
        self.assertEqual(again.command, expected)
        self.assertEqual(self.selector.prompts, ["Select preset:"])

    def test_forced_prompt_ignores_session(self) -> None:
        self.cmake_project()
        app = self.make_app(ScriptedSelector("rel"))
        app.session.set(self.root, keys.PRESET, "dev")
        result = self.run_task(app, "configure", prompt=True)
        self.assertEqual(result.command[:3], ["cmake", "--preset", "rel"])
        self.assertEqual(app.session.get(self.root, keys.PRESET), "rel")

    def test_stale_session_preset_prompts(self) -> None:
        self.cmake_project()
        app = self.make_app(ScriptedSelector("dev"))
        app.session.set(self.root, keys.PRESET, "gone")
        self.run_task(app, "configure")
        self.assertEqual(self.selector.prompts, ["Select preset:"])

    def test_declining_uses_fallback(self) -> None:
        self.cmake_project()
        result = self.run_task(self.make_app(ScriptedSelector(None)), "configure")
        self.assertEqual(result.status, DispatchStatus.STARTED)
        self.assertEqual(result.command, ["cmake", "-B", "build", "-S", "."])

    def test_no_presets_uses_fallback(self) -> None:
        (self.root / "CMakeLists.txt").write_text("", encoding="utf-8")
        result = self.run_task(self.make_app(), "configure")
        self.assertEqual(result.command, ["cmake", "-B", "build", "-S", "."])
        self.assertIn("No CMake presets found", self.stderr.getvalue())

    def test_malformed_inherits_does_not_abort(self) -> None:
        (self.root / "CMakeLists.txt").write_text("", encoding="utf-8")
        _write_json(self.root / "CMakePresets.json", {"configurePresets": [{"name": "a", "inherits": 5}]})
        app = self.make_app()
        app.session.set(self.root, keys.PRESET, "a")
        result = self.run_task(app, "configure")
        self.assertEqual(result.status, DispatchStatus.STARTED)
        self.assertEqual(result.command, ["cmake", "--preset", "a", "-B", "build/a"])

    def test_completion_is_reported(self) -> None:
        self.cmake_project()
        self.run_task(self.make_app(ScriptedSelector("dev")), "configure")
        output = self.stdout.getvalue()
        self.assertIn("Running: cmake", output)
        self.assertIn("✓ cmake completed", output)
        self.assertEqual(self.runner.commands[0].cwd, str(self.root))


class BuildTests(DispatcherTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.cmake_project()

    def test_build_target_selection_with_fallback(self) -> None:
        self.configure_dev()
        self.write_reply("app", "tool")
        app = self.make_app(ScriptedSelector("app"))
        app.session.set(self.root, keys.PRESET, "dev")

        result = self.run_task(app, "build")
        self.assertEqual(result.status, DispatchStatus.STARTED)
        self.assertEqual(result.command, ["cmake", "--build", str(self.dev_dir), "--target", "app"])
        self.assertEqual(self.selector.prompts, ["Select build target:"])
        self.assertEqual(app.session.get(self.root, keys.BUILD_TARGET), "app")

        again = self.run_task(app, "build")
        self.assertEqual(again.command, result.command)
        self.assertEqual(len(self.selector.prompts), 1)

    def test_all_targets_is_remembered(self) -> None:
        self.configure_dev()
        self.write_reply("app")
        app = self.make_app(ScriptedSelector("(all targets)"))
        app.session.set(self.root, keys.PRESET, "dev")

        result = self.run_task(app, "build")
        self.assertEqual(result.command, ["cmake", "--build", str(self.dev_dir)])
        self.assertEqual(app.session.get(self.root, keys.BUILD_TARGET), "")

        self.run_task(app, "build")
        self.assertEqual(self.selector.prompts, ["Select build target:"])

    def test_remembered_target_trusted_when_nothing_discovered(self) -> None:
        self.configure_dev()
        app = self.make_app()
        app.session.set(self.root, keys.PRESET, "dev")
        app.session.set(self.root, keys.BUILD_TARGET, "custom")

        result = self.run_task(app, "build")
        self.assertEqual(result.command, ["cmake", "--build", str(self.dev_dir), "--target", "custom"])
        self.assertTrue((self.dev_dir / ".cmake" / "api" / "v1" / "query" / "client-project-tasks" / "codemodel-v2").exists())

    def test_stale_remembered_target_prompts(self) -> None:
        self.configure_dev()
        self.write_reply("app")
        app = self.make_app(ScriptedSelector("app"))
        app.session.set(self.root, keys.PRESET, "dev")
        app.session.set(self.root, keys.BUILD_TARGET, "removed")
        result = self.run_task(app, "build")
        self.assertEqual(result.command[-2:], ["--target", "app"])

    def test_declining_build_target_builds_everything(self) -> None:
        self.configure_dev()
        self.write_reply("app")
        app = self.make_app(ScriptedSelector(None))
        app.session.set(self.root, keys.PRESET, "dev")
        result = self.run_task(app, "build")
        self.assertEqual(result.command, ["cmake", "--build", str(self.dev_dir)])
        self.assertIsNone(app.session.get(self.root, keys.BUILD_TARGET))

    def test_unconfigured_build_directory(self) -> None:
        app = self.make_app(ScriptedSelector("(all targets)"))
        app.session.set(self.root, keys.PRESET, "dev")
        result = self.run_task(app, "build")
        self.assertEqual(result.status, DispatchStatus.CONFIGURATION_INCOMPLETE)
        self.assertEqual(result.message, f"Build directory '{self.dev_dir}' not configured. Run configure first.")
        self.assertEqual(self.commands(), [])
        self.assertIn("not configured", self.stderr.getvalue())

    def test_preset_prerequisite_prompts_when_nothing_remembered(self) -> None:
        self.configure_dev()
        app = self.make_app(ScriptedSelector("dev", "(all targets)"))
        result = self.run_task(app, "build")
        self.assertEqual(self.selector.prompts, ["Select preset:", "Select build target:"])
        self.assertEqual(result.command, ["cmake", "--build", str(self.dev_dir)])


class BuildPresetTests(DispatcherTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.cmake_project(build_presets=True)

    def test_build_preset_is_selected_and_remembered(self) -> None:
        app = self.make_app(ScriptedSelector("b-dev"))
        app.session.set(self.root, keys.PRESET, "dev")
        result = self.run_task(app, "build")
        self.assertEqual(result.command, ["cmake", "--build", "--preset", "b-dev"])
        self.assertEqual(app.session.get(self.root, keys.BUILD_PRESET), "b-dev")

        self.run_task(app, "build")
        self.assertEqual(self.selector.prompts, ["Select build preset:"])

    def test_forced_prompt_continues_into_build_target(self) -> None:
        self.write_reply("app")
        app = self.make_app(ScriptedSelector("b-dev", "app"))
        app.session.set(self.root, keys.PRESET, "dev")
        app.session.set(self.root, keys.BUILD_PRESET, "b-dev")
        result = self.run_task(app, "build", prompt=True)
        self.assertEqual(self.selector.prompts, ["Select build preset:", "Select build target:"])
        self.assertEqual(result.context.variables["build_target"], "app")
        self.assertEqual(result.context.variables["target_flag"], "--target")

    def test_declined_build_preset_falls_back(self) -> None:
        self.configure_dev()
        app = self.make_app(ScriptedSelector(None))
        app.session.set(self.root, keys.PRESET, "dev")
        result = self.run_task(app, "build")
        self.assertEqual(result.command, ["cmake", "--build", str(self.dev_dir)])


class TargetTests(DispatcherTestCase):
    def test_run_discovered_target_with_passthrough(self) -> None:
        self.cmake_project()
        self.configure_dev()
        self.write_reply("app")
        app = self.make_app(ScriptedSelector("app"))
        app.session.set(self.root, keys.PRESET, "dev")

        result = self.run_task(app, "run", args=["--flag"])
        self.assertEqual(result.command, [str(self.dev_dir / "bin" / "app"), "--flag"])
        self.assertEqual(self.selector.prompts, ["Select target:"])
        self.assertEqual(app.session.get(self.root, keys.TARGET), "app")

    def test_no_targets(self) -> None:
        self.cmake_project()
        app = self.make_app()
        app.session.set(self.root, keys.PRESET, "dev")
        result = self.run_task(app, "run")
        self.assertEqual(result.status, DispatchStatus.NOT_FOUND)
        self.assertIn("No targets found. Run configure first?", self.stderr.getvalue())

    def test_malformed_codemodel_reports_no_targets(self) -> None:
        self.cmake_project()
        reply = self.dev_dir / ".cmake" / "api" / "v1" / "reply"
        _write_json(reply / "index-1.json", {"objects": [{"kind": "codemodel", "jsonFile": "codemodel.json"}]})
        _write_json(reply / "codemodel.json", {"configurations": 5})
        app = self.make_app()
        app.session.set(self.root, keys.PRESET, "dev")
        result = self.run_task(app, "run")
        self.assertEqual(result.status, DispatchStatus.NOT_FOUND)
        self.assertIn("No targets found. Run configure first?", self.stderr.getvalue())

    def test_declining_target_stops(self) -> None:
        self.cmake_project()
        self.write_reply("app")
        app = self.make_app(ScriptedSelector(None))
        app.session.set(self.root, keys.PRESET, "dev")
        result = self.run_task(app, "run")
        self.assertEqual(result.status, DispatchStatus.DECLINED)
        self.assertEqual(self.commands(), [])

    def test_explicit_targets_from_project_config(self) -> None:
        (self.root / "Makefile").write_text("", encoding="utf-8")
        _write_json(
            self.root / ".project-tasks.json",
            {
                "env": {"CC": "clang", "MODE": "project"},
                "backends": {
                    "make": {
                        "markers": ["Makefile"],
                        "tasks": {"run": {"cmd": ["${target_path}"], "needs_target": True, "args_passthrough": True}},
                    }
                },
                "targets": {"tool": {"path": "out/tool", "args": ["--verbose"], "env": {"MODE": "target"}}},
            },
        )
        app = self.make_app(ScriptedSelector("tool"))
        result = self.run_task(app, "run", args=["extra"], env={"X": "1"})
        self.assertEqual(result.command, ["out/tool", "--verbose", "extra"])
        env = self.runner.commands[0].env
        self.assertEqual(env["CC"], "clang")
        self.assertEqual(env["MODE"], "target")
        self.assertEqual(env["X"], "1")


class FinalizeTests(DispatcherTestCase):
    def test_debug_goes_through_launcher(self) -> None:
        self.cmake_project()
        self.write_reply("app")
        app = self.make_app(ScriptedSelector("app"))
        app.session.set(self.root, keys.PRESET, "dev")

        result = self.run_task(app, "debug", args=["--x"])
        self.assertEqual(result.status, DispatchStatus.LAUNCHED)
        request = self.launcher.requests[0]
        self.assertEqual(request.program, str(self.dev_dir / "bin" / "app"))
        self.assertEqual(request.args, ["--x"])
        self.assertEqual(request.cwd, self.root)
        self.assertEqual(request.config, {"type": "codelldb", "request": "launch"})
        self.assertEqual(self.commands(), [])

    def test_refused_launch_runs_in_sink(self) -> None:
        self.launcher.accept = False
        self.cmake_project()
        self.write_reply("app")
        app = self.make_app(ScriptedSelector("app"))
        app.session.set(self.root, keys.PRESET, "dev")
        result = self.run_task(app, "debug")
        self.assertEqual(result.status, DispatchStatus.STARTED)
        self.assertEqual(self.commands(), [[str(self.dev_dir / "bin" / "app")]])

    def test_edit_opens_project_config(self) -> None:
        (self.root / "pyproject.toml").write_text("", encoding="utf-8")
        result = self.run_task(self.make_app(), "edit")
        self.assertEqual(result.status, DispatchStatus.OPENED)
        self.assertEqual(self.opener.paths, [self.root / ".project-tasks.json"])
        self.assertEqual(self.commands(), [])

    def test_edit_opens_existing_config_format(self) -> None:
        (self.root / "pyproject.toml").write_text("", encoding="utf-8")
        (self.root / ".project-tasks.toml").write_text("[env]\nA = \"1\"\n", encoding="utf-8")
        result = self.run_task(self.make_app(), "edit")
        self.assertEqual(result.status, DispatchStatus.OPENED)
        self.assertEqual(self.opener.paths, [self.root / ".project-tasks.toml"])

    def test_environment_and_variable_precedence(self) -> None:
        (self.root / "pyproject.toml").write_text("", encoding="utf-8")
        _write_json(
            self.root / ".project-tasks.json",
            {
                "env": {"A": "project", "B": "project"},
                "variables": {"entry_point": "app.py"},
                "backends": {"python": {"tasks": {"test": {"env": {"C": "task"}}}}},
            },
        )
        app = self.make_app()
        run = self.run_task(app, "run", args=["--x"], env={"B": "request", "C": "request"})
        self.assertEqual(run.command, ["uv", "run", "app.py", "--x"])
        self.assertEqual(run.context.env["A"], "project")
        self.assertEqual(run.context.env["B"], "request")

        test = self.run_task(app, "test", env={"C": "request"})
        self.assertEqual(test.context.env["C"], "task")

    def test_empty_command_fails(self) -> None:
        (self.root / "pyproject.toml").write_text("", encoding="utf-8")
        _write_json(
            self.root / ".project-tasks.json",
            {"backends": {"python": {"tasks": {"lint": {"cmd": ["${nothing}"]}}}}},
        )
        result = self.run_task(self.make_app(), "lint")
        self.assertEqual(result.status, DispatchStatus.FAILED)
        self.assertIn("Could not build command", self.stderr.getvalue())

    def test_malformed_override_is_reported_and_ignored(self) -> None:
        (self.root / "pyproject.toml").write_text("", encoding="utf-8")
        _write_json(
            self.root / ".project-tasks.json",
            {"backends": {"python": {"tasks": {"run": {"cmd": 42}}}}},
        )
        result = self.run_task(self.make_app(), "run")
        self.assertEqual(result.command, ["uv", "run", "src/main.py"])
        self.assertIn("Invalid .project-tasks.json", self.stderr.getvalue())


class BuildCommandTests(unittest.TestCase):
    def test_fallback_when_selection_missing(self) -> None:
        task = Task.from_mapping(
            "configure",
            {"cmd": ["cmake", "--preset", "${preset}"], "fallback_cmd": ["cmake", "-B", "${build_dir}"], "needs_preset": True},
        )
        self.assertEqual(build_command(task, {"build_dir": "out"}), ["cmake", "-B", "out"])
        self.assertEqual(build_command(task, {"preset": "dev"}), ["cmake", "--preset", "dev"])

    def test_primary_without_fallback(self) -> None:
        task = Task.from_mapping("build", {"cmd": ["make", "${preset}"], "needs_preset": True})
        self.assertEqual(build_command(task, {}), ["make"])

    def test_passthrough_only_when_enabled(self) -> None:
        plain = Task.from_mapping("package", {"cmd": ["uv", "build"]})
        passthrough = Task.from_mapping("test", {"cmd": ["pytest"], "args_passthrough": True})
        self.assertEqual(build_command(plain, {}, ["-k", "x"]), ["uv", "build"])
        self.assertEqual(build_command(passthrough, {}, ["-k", "x"]), ["pytest", "-k", "x"])

    def test_empty_result(self) -> None:
        task = Task.from_mapping("run", {"cmd": ["${target_path}"]})
        self.assertEqual(build_command(task, {}), [])


if __name__ == "__main__":
    unittest.main()
