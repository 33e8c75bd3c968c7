"""Shared test fixtures."""

import asyncio
import shutil
import tempfile
from pathlib import Path
from types import SimpleNamespace

import pytest

from packager.models.session import BuildSession, BuildType
from packager.services.process_runner import STDOUT, ProcessResult
from packager.utils.session_log import SessionLog


class FakeRunner:
    """Stands in for ProcessRunner; handlers simulate the external tools.

    A handler receives ``(args, cwd)`` and returns ``(exit_code, output)``.
    It may create files to mimic what the real tool would produce.
    """

    def __init__(self) -> None:
        self.calls: list[SimpleNamespace] = []
        self.handlers: dict[str, object] = {}

    def on(self, command: str, handler) -> None:
        self.handlers[command] = handler

    async def run(
        self,
        command,
        args=(),
        *,
        cwd=None,
        env=None,
        on_output=None,
        responder=None,
        capture_limit=None,
        check=False,
    ):
        cwd = Path(cwd) if cwd is not None else None
        self.calls.append(SimpleNamespace(
            command=command, args=list(args), cwd=cwd, env=env, responder=responder
        ))
        handler = self.handlers.get(command)
        exit_code, output = (0, "") if handler is None else handler(list(args), cwd)
        if output and on_output is not None:
            await on_output(STDOUT, output)
        return ProcessResult(
            command=" ".join([command, *args]), exit_code=exit_code, output=output
        )

    def commands(self) -> list[str]:
        return [call.command for call in self.calls]


class GatedRunner(FakeRunner):
    """FakeRunner whose gated commands block until their gate is opened.

    ``started[command]`` is set when a gated command is first invoked.
    """

    def __init__(self, *gated: str) -> None:
        super().__init__()
        self.started = {command: asyncio.Event() for command in gated}
        self.gates = {command: asyncio.Event() for command in gated}

    async def run(self, command, args=(), **kwargs):
        if command in self.gates:
            self.started[command].set()
            await self.gates[command].wait()
        return await super().run(command, args, **kwargs)


@pytest.fixture
def tmp_project_dir():
    """Create a temporary project directory and clean up after test."""
    d = tempfile.mkdtemp(prefix="packager-test-")
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def gated_runner():
    return GatedRunner


@pytest.fixture
def make_session(tmp_path):
    def _make(**overrides) -> BuildSession:
        fields = {
            "id": "test-session",
            "project_path": str(tmp_path / "project"),
            "output_path": str(tmp_path / "out"),
            "build_type": BuildType.android,
        }
        fields.update(overrides)
        return BuildSession(**fields)

    return _make


@pytest.fixture
def session_log(make_session):
    return SessionLog(make_session())


@pytest.fixture
def android_module():
    """Create ``<root>/<name>`` with a Gradle wrapper and build file."""

    def _make(root: Path, name: str = "android_jc") -> Path:
        module = Path(root) / name
        module.mkdir(parents=True)
        (module / "gradlew").write_text("#!/bin/sh\nexit 0\n")
        (module / "build.gradle").write_text("// root build file\n")
        return module

    return _make


@pytest.fixture
def ios_module():
    """Create ``<root>/<name>`` holding ``<scheme>.xcodeproj``."""

    def _make(root: Path, name: str = "ios_jc", scheme: str = "Runner", workspace: bool = False) -> Path:
        module = Path(root) / name
        (module / f"{scheme}.xcodeproj").mkdir(parents=True)
        if workspace:
            (module / f"{scheme}.xcworkspace").mkdir()
        return module

    return _make


@pytest.fixture
def flutter_module():
    def _make(root: Path, name: str = "flutter_jc") -> Path:
        module = Path(root) / name
        (module / "lib").mkdir(parents=True)
        (module / "pubspec.yaml").write_text("name: jc\n")
        return module

    return _make


def gradle_apk_handler(variant: str = "jc", names: tuple[str, ...] = ("app-jc-release.apk",)):
    """Handler that writes APKs where Gradle's plain Android layout puts them."""

    def _handler(args, cwd):
        release = cwd / "app" / "build" / "outputs" / "apk" / variant / "release"
        release.mkdir(parents=True, exist_ok=True)
        for name in names:
            (release / name).write_bytes(b"apk")
        return 0, "BUILD SUCCESSFUL\n"

    return _handler


def xcodebuild_handler(ipa_name: str = "Runner.ipa"):
    """Handler that creates the archive on ``archive`` and an IPA on export."""

    def _handler(args, cwd):
        if "archive" in args:
            Path(args[args.index("-archivePath") + 1]).mkdir(parents=True, exist_ok=True)
            return 0, "** ARCHIVE SUCCEEDED **\n"
        export_dir = Path(args[args.index("-exportPath") + 1])
        export_dir.mkdir(parents=True, exist_ok=True)
        (export_dir / ipa_name).write_bytes(b"ipa")
        return 0, "** EXPORT SUCCEEDED **\n"

    return _handler


@pytest.fixture
def gradle_success():
    return gradle_apk_handler


@pytest.fixture
def xcodebuild_success():
    return xcodebuild_handler
