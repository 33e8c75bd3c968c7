"""Orchestrates a build session: code sync, version patching, platform builds, notification."""

import asyncio
import logging
import re
import time
import uuid
from functools import partial
from pathlib import Path

from packager.errors import (
    ConfigurationError,
    ProjectNotADirectoryError,
    ProjectNotFoundError,
    VersionPatchError,
)
from packager.models.project import ProjectDetectionResult
from packager.models.session import (
    BuildSession,
    BuildType,
    Platform,
    SessionStatus,
    StageResult,
)
from packager.services import version_patcher
from packager.services.android_builder import AndroidBuilder
from packager.services.artifacts import date_folder_name
from packager.services.config_store import ConfigStore
from packager.services.git_service import GitService
from packager.services.ios_builder import IOSBuilder, XcodeProject
from packager.services.notifier import LarkNotifier
from packager.services.process_runner import ProcessRunner
from packager.services.project_detector import detect
from packager.services.session_registry import SessionRegistry
from packager.utils.session_log import SessionLog
from packager.utils.stage_runner import (
    Stage,
    StageOutcome,
    execute_stage,
    run_parallel,
    run_sequential,
)

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 300
SYNC_DONE_PROGRESS = 10
FIRST_BUILD_PROGRESS = 20
SECOND_BUILD_PROGRESS = 50

ENV_TYPE_PATTERN = re.compile(r"^\w+$")
VERSION_NAME_PATTERN = re.compile(r"^[^\s'\"\\]+$")

_PLATFORM_LABELS = {Platform.android: "Android", Platform.ios: "iOS"}


def new_session_id() -> str:
    """Millisecond timestamp plus a random suffix; sortable by creation time."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def _parse_version_code(value: int | str | None) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ConfigurationError("versionCode 必须是非负整数")
    if isinstance(value, int):
        code = value
    elif isinstance(value, str) and value.strip().isdigit():
        code = int(value.strip())
    else:
        raise ConfigurationError("versionCode 必须是非负整数")
    if code < 0:
        raise ConfigurationError("versionCode 必须是非负整数")
    return code


class BuildOrchestrator:
    """Owns the live sessions and runs one pipeline task per session.

    ``start_build`` validates and registers a session, then returns at once;
    the pipeline runs as a background task. Finished sessions are dropped from
    the registry after the retention period.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        *,
        registry: SessionRegistry | None = None,
        runner: ProcessRunner | None = None,
        git: GitService | None = None,
        android: AndroidBuilder | None = None,
        ios: IOSBuilder | None = None,
        notifier: LarkNotifier | None = None,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
    ) -> None:
        runner = runner or ProcessRunner()
        self.registry = registry or SessionRegistry()
        self._config_store = config_store
        self._git = git or GitService(runner)
        self._android = android or AndroidBuilder(runner)
        self._ios = ios or IOSBuilder(runner)
        self._notifier = notifier or LarkNotifier()
        self._retention = retention_seconds
        self._tasks: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._reapers: dict[str, asyncio.TimerHandle] = {}

    # -- public API -----------------------------------------------------------

    def start_build(
        self,
        project_path: str | None,
        output_path: str | None,
        build_type: str | BuildType | None,
        env_type: str | None = None,
        version_name: str | None = None,
        version_code: int | str | None = None,
    ) -> BuildSession:
        """Validate the request, register a session and start its pipeline.

        Must be called from a running event loop. Raises ConfigurationError
        for invalid input; nothing is registered in that case.
        """
        if not project_path:
            raise ConfigurationError("项目路径不能为空")
        if not output_path:
            raise ConfigurationError("输出包文件夹路径不能为空")

        project = Path(project_path).expanduser()
        if not project.exists():
            raise ProjectNotFoundError(f"项目路径不存在: {project}")
        if not project.is_dir():
            raise ProjectNotADirectoryError(f"项目路径必须是一个目录: {project}")

        try:
            build_type = BuildType(build_type)
        except ValueError:
            raise ConfigurationError("无效的打包类型") from None

        env_type = env_type or None
        if env_type is not None and not ENV_TYPE_PATTERN.match(env_type):
            raise ConfigurationError(f"无效的环境类型: {env_type}")

        version_name = version_name or None
        if version_name is not None and not VERSION_NAME_PATTERN.match(version_name):
            raise ConfigurationError(f"无效的版本号: {version_name}")
        code = _parse_version_code(version_code)

        output = Path(output_path).expanduser()
        try:
            output.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"无法创建输出目录: {output} ({e.strerror or e})") from e

        session = BuildSession(
            id=new_session_id(),
            project_path=str(project.resolve()),
            output_path=str(output.resolve()),
            build_type=build_type,
            env_type=env_type,
            version_name=version_name,
            version_code=code,
        )
        self.registry.add(session)

        task = asyncio.create_task(self.run(session), name=f"build-{session.id}")
        self._tasks[session.id] = task
        task.add_done_callback(lambda _t, sid=session.id: self._tasks.pop(sid, None))
        logger.info(
            "Started build session %s (%s) for %s",
            session.id, build_type.value, session.project_path,
        )
        return session

    def get_session(self, session_id: str) -> BuildSession | None:
        return self.registry.get(session_id)

    async def wait_for(self, session_id: str) -> BuildSession | None:
        """Wait until the session's pipeline task has finished."""
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.shield(task)
        return self.registry.get(session_id)

    def reap(self, session_id: str) -> None:
        handle = self._reapers.pop(session_id, None)
        if handle is not None:
            handle.cancel()
        if self.registry.remove(session_id) is not None:
            logger.info("Removed finished session %s", session_id)

    async def shutdown(self) -> None:
        """Cancel running pipelines and notifications, then pending reaps."""
        pending = [*self._tasks.values(), *self._background]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for handle in self._reapers.values():
            handle.cancel()
        self._reapers.clear()

    # -- pipeline -------------------------------------------------------------

    async def run(self, session: BuildSession) -> None:
        """Execute the full pipeline for ``session``; never raises except on cancel."""
        log = SessionLog(session)
        try:
            await self._run_pipeline(session, log)
        except asyncio.CancelledError:
            if not session.is_terminal:
                session.record_error("pipeline", "打包已取消")
                self._finish(session, log, SessionStatus.failed, "打包已取消")
            raise
        except Exception as e:
            logger.exception("Build pipeline error for session %s", session.id)
            if not session.is_terminal:
                session.record_error("pipeline", str(e))
                self._finish(session, log, SessionStatus.failed, f"打包过程中出现错误: {e}")

    async def _run_pipeline(self, session: BuildSession, log: SessionLog) -> None:
        session.reset()
        config = self._config_store.load()

        date_dir = Path(session.output_path) / date_folder_name()
        date_dir.mkdir(parents=True, exist_ok=True)
        session.results.output_path = str(date_dir)

        log.info("准备开始打包，先拉取最新代码...")
        layout = detect(session.project_path)

        await run_sequential(
            self._sync_stages(session, layout, log, config.ssh_passphrase),
            on_done=partial(self._advisory_done, session, log),
        )
        log.info("代码拉取完成，开始打包...")
        session.set_progress(SYNC_DONE_PROGRESS)

        await run_sequential(
            self._patch_stages(session, layout, log),
            on_done=partial(self._advisory_done, session, log),
        )

        await self._run_builds(session, log)

        if session.status is SessionStatus.completed and config.lark_webhook_url:
            self._spawn(self._notify(session, log, config.lark_webhook_url))

    def _sync_targets(self, session: BuildSession, layout: ProjectDetectionResult) -> list[Path]:
        """Module directories to pull: Flutter first, then the requested platforms."""
        root = Path(session.project_path)
        platforms = session.build_type.platforms
        names = [layout.location(Platform.flutter)]
        names += [layout.location(p) for p in (Platform.ios, Platform.android) if p in platforms]

        targets: list[Path] = []
        for name in names:
            if name and root / name not in targets:
                targets.append(root / name)
        return targets or [root]

    def _sync_stages(
        self,
        session: BuildSession,
        layout: ProjectDetectionResult,
        log: SessionLog,
        passphrase: str,
    ) -> list[Stage]:
        async def pull(path: Path) -> StageOutcome:
            await self._git.pull(path, log, passphrase)
            return StageOutcome(name="git", success=True)

        return [
            Stage(name="git", label=f"代码拉取 ({path.name})", run=partial(pull, path))
            for path in self._sync_targets(session, layout)
        ]

    def _patch_stages(
        self, session: BuildSession, layout: ProjectDetectionResult, log: SessionLog
    ) -> list[Stage]:
        root = Path(session.project_path)
        stages: list[Stage] = []

        flutter_name = layout.location(Platform.flutter)
        if session.env_type and flutter_name:

            async def patch_flutter() -> StageOutcome:
                log.info(f"设置Flutter环境: {session.env_type}")
                files = await asyncio.to_thread(
                    version_patcher.patch_flutter_env, root / flutter_name, session.env_type
                )
                names = ", ".join(f.name for f in files)
                return StageOutcome(
                    name="version", success=True, message=f"Flutter环境已设置为 {session.env_type}: {names}"
                )

            stages.append(Stage(name="version", label="Flutter环境设置", run=patch_flutter))

        if session.version_name is None and session.version_code is None:
            return stages

        platforms = session.build_type.platforms
        if Platform.android in platforms:
            stages.append(Stage(
                name="version",
                label="Android版本号修改",
                run=partial(self._patch_android_version, session, layout, log),
            ))
        if Platform.ios in platforms:
            stages.append(Stage(
                name="version",
                label="iOS版本号修改",
                run=partial(self._patch_ios_version, session, layout, log),
            ))
        return stages

    async def _patch_android_version(
        self, session: BuildSession, layout: ProjectDetectionResult, log: SessionLog
    ) -> StageOutcome:
        name = layout.location(Platform.android)
        if name is None:
            raise VersionPatchError("未找到Android项目目录")
        log.info(f"修改Android版本号: {self._version_label(session)}")
        outcome = await asyncio.to_thread(
            version_patcher.patch_android_version,
            Path(session.project_path) / name,
            session.version_name,
            session.version_code,
        )
        if outcome.missing:
            log.warning(f"Android版本配置中未找到: {', '.join(outcome.missing)}")
        return StageOutcome(name="version", success=True, message="Android版本号修改成功")

    async def _patch_ios_version(
        self, session: BuildSession, layout: ProjectDetectionResult, log: SessionLog
    ) -> StageOutcome:
        name = layout.location(Platform.ios)
        if name is None:
            raise VersionPatchError("未找到iOS项目目录")
        ios_dir = Path(session.project_path) / name
        scheme = XcodeProject.locate(ios_dir).scheme
        log.info(f"修改iOS版本号: {self._version_label(session)}")
        await asyncio.to_thread(
            version_patcher.patch_ios_version,
            ios_dir,
            session.version_name,
            session.version_code,
            scheme,
        )
        return StageOutcome(name="version", success=True, message="iOS版本号修改成功")

    @staticmethod
    def _version_label(session: BuildSession) -> str:
        parts = []
        if session.version_name is not None:
            parts.append(f"versionName={session.version_name}")
        if session.version_code is not None:
            parts.append(f"versionCode={session.version_code}")
        return ", ".join(parts)

    async def _advisory_done(
        self, session: BuildSession, log: SessionLog, stage: Stage, outcome: StageOutcome
    ) -> None:
        if outcome.success:
            if outcome.message:
                log.success(outcome.message)
            return
        session.record_error(stage.name, outcome.message)
        log.warning(f"{stage.display_name}失败: {outcome.message}，将继续执行打包")

    async def _run_builds(self, session: BuildSession, log: SessionLog) -> None:
        platforms = session.build_type.platforms
        stages = []
        for index, platform in enumerate(platforms):
            checkpoint = FIRST_BUILD_PROGRESS if index == 0 else SECOND_BUILD_PROGRESS
            stages.append(Stage(
                name=platform.value,
                label=f"{_PLATFORM_LABELS[platform]}打包",
                advisory=False,
                platform=platform.value,
                run=partial(self._build_platform, session, log, platform, checkpoint),
            ))

        completed = 0

        async def on_done(stage: Stage, outcome: StageOutcome) -> None:
            nonlocal completed
            platform = Platform(stage.platform)
            label = _PLATFORM_LABELS[platform]
            if outcome.success:
                log.success(f"{label}打包成功")
            else:
                session.record_error(platform.value, outcome.message)
                log.error(f"{label}打包失败: {outcome.message}")
            session.set_platform_result(
                platform, StageResult(success=outcome.success, output=outcome.output)
            )
            completed += 1
            session.set_progress(round(completed / len(stages) * 100))
            if completed == len(stages):
                self._finish_builds(session, log)

        if len(stages) > 1:
            await run_parallel(stages, on_done)
        else:
            await run_sequential(stages, on_done)

    async def _build_platform(
        self, session: BuildSession, log: SessionLog, platform: Platform, checkpoint: int
    ) -> StageOutcome:
        session.set_progress(checkpoint)
        builder = self._android if platform is Platform.android else self._ios
        log.info(f"开始{_PLATFORM_LABELS[platform]}打包...")
        output = await builder.build(session.project_path, session.output_path, log)
        return StageOutcome(name=platform.value, success=True, output=output)

    def _finish_builds(self, session: BuildSession, log: SessionLog) -> None:
        succeeded = all(
            (result := session.results.for_platform(p)) is not None and result.success
            for p in session.build_type.platforms
        )
        if succeeded:
            self._finish(
                session, log, SessionStatus.completed,
                f"打包完成，文件已保存到: {session.results.output_path}",
            )
        else:
            self._finish(session, log, SessionStatus.failed, "打包过程中出现错误")

    def _finish(
        self, session: BuildSession, log: SessionLog, status: SessionStatus, summary: str
    ) -> None:
        """Append the summary line and move to ``status``; the first call wins."""
        if session.is_terminal:
            return
        if status is SessionStatus.completed:
            log.success(summary)
        else:
            log.error(summary)
        session.finalize(status)
        logger.info("Build session %s finished: %s", session.id, status.value)
        self._schedule_reap(session.id)

    def _schedule_reap(self, session_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._reapers[session_id] = loop.call_later(self._retention, self.reap, session_id)

    # -- notification ---------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _notify(self, session: BuildSession, log: SessionLog, webhook_url: str) -> None:
        async def send() -> None:
            await self._notifier.notify(webhook_url, session)

        log.info("发送飞书通知...")
        outcome = await execute_stage(Stage(name="notify", label="飞书通知", run=send))
        if outcome.success:
            log.success("飞书通知发送成功")
        else:
            session.record_error("notify", outcome.message)
            log.warning(outcome.message)
