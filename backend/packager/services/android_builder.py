"""Platform-build stage for Android: Gradle release build plus artifact copy."""

import asyncio
import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from packager.errors import ArtifactNotFoundError, DetectionError, ProcessExitError, ProcessSpawnError
from packager.models.session import Platform
from packager.services.artifacts import (
    copy_tree,
    date_folder_name,
    find_output_root,
    locate_artifacts,
    output_root_candidates,
)
from packager.services.process_runner import ProcessRunner, ensure_executable
from packager.services.project_detector import find_module_dir
from packager.utils.session_log import SessionLog

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

GRADLE_TASKS = ["assembleRelease", "bundleRelease"]

# (gradle output folder, file extension, label)
ARTIFACT_KINDS = (
    ("apk", ".apk", "APK"),
    ("bundle", ".aab", "AAB"),
)


@dataclass
class CopiedGroup:
    label: str
    variant: str
    count: int
    destination: Path


class AndroidBuilder:
    """Builds every release variant and copies APK/AAB outputs."""

    def __init__(self, runner: ProcessRunner | None = None) -> None:
        self._runner = runner or ProcessRunner()

    @staticmethod
    def wrapper_name() -> str:
        return "gradlew.bat" if IS_WINDOWS else "gradlew"

    def locate_module(self, project_path: str | Path) -> Path:
        android_dir = find_module_dir(project_path, Platform.android)
        if android_dir is None:
            raise DetectionError("未找到Android项目目录", stage="android")
        return android_dir

    async def build(
        self,
        project_path: str | Path,
        output_path: str | Path,
        log: SessionLog,
        now: datetime | None = None,
    ) -> str:
        """Run the release build and copy its outputs.

        Returns the human-readable summary stored in the stage result.
        """
        android_dir = self.locate_module(project_path)
        gradlew = android_dir / self.wrapper_name()
        if not gradlew.is_file():
            raise DetectionError("未找到gradlew文件，请确保这是Android项目", stage="android")
        if not IS_WINDOWS:
            ensure_executable(gradlew)

        command = str(gradlew) if IS_WINDOWS else "./gradlew"
        log.info(f"开始执行Android打包命令: {command} {' '.join(GRADLE_TASKS)}")
        log.info(f"工作目录: {android_dir}")

        try:
            result = await self._runner.run(
                command, GRADLE_TASKS, cwd=android_dir, on_output=log.process_output
            )
        except ProcessSpawnError as e:
            log.error(f"执行打包命令时出错: {e.message}")
            e.stage = "android"
            raise

        if not result.success:
            log.error(f"Android打包失败，退出代码: {result.exit_code}")
            raise ProcessExitError(
                f"打包失败，退出代码: {result.exit_code}",
                exit_code=result.exit_code,
                output=result.output,
                stage="android",
            )

        log.success("Android打包命令执行完成，开始复制文件...")
        output_dir = Path(output_path) / date_folder_name(now) / "android"
        copied = await self.copy_artifacts(android_dir, output_dir, log)

        if not copied:
            log.warning("未找到APK或AAB文件，请检查以下路径：")
            for kind, _ext, _label in ARTIFACT_KINDS:
                for candidate in output_root_candidates(android_dir, kind):
                    log.warning(f"  - {candidate}")
            # A zero exit with nothing copied is a failed build, as on iOS.
            # Do not downgrade to a warning: the session would report success
            # with an empty output folder.
            raise ArtifactNotFoundError("Android打包完成，但未找到APK或AAB文件", stage="android")

        return self.summary(output_dir, copied)

    async def copy_artifacts(
        self, android_dir: Path, output_dir: Path, log: SessionLog
    ) -> list[CopiedGroup]:
        """Copy each variant's release folder to ``<output_dir>/<kind>/<variant>/release``."""
        copied: list[CopiedGroup] = []
        for kind, extension, label in ARTIFACT_KINDS:
            root = find_output_root(android_dir, kind)
            if root is None:
                continue
            log.info(f"找到{label}目录: {root}")

            by_variant: dict[str, list[Path]] = {}
            artifacts = await asyncio.to_thread(locate_artifacts, android_dir, kind, extension)
            for artifact in artifacts:
                by_variant.setdefault(artifact.parent.parent.name, []).append(artifact)

            for variant, files in by_variant.items():
                log.info(f"变体 {variant} 找到 {len(files)} 个{label}文件")
                destination = output_dir / kind / variant / "release"
                await asyncio.to_thread(copy_tree, files[0].parent, destination)
                copied.append(CopiedGroup(label, variant, len(files), destination))
                log.success(f"已复制{label}: {variant}")
        return copied

    @staticmethod
    def summary(output_dir: Path, copied: list[CopiedGroup]) -> str:
        total = sum(group.count for group in copied)
        lines = [
            "",
            "✅ Android打包成功完成！",
            f"📁 输出目录: {output_dir}",
            "",
            f"已复制 {total} 个文件：",
        ]
        lines += [f"  ✓ {g.label} ({g.variant}): {g.count} 个文件" for g in copied]
        return "\n".join(lines) + "\n"
