"""Platform-build stage for iOS: xcodebuild archive, IPA export and copy."""

import asyncio
import logging
import plistlib
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from packager.errors import ArtifactNotFoundError, DetectionError, ProcessExitError, ProcessSpawnError
from packager.models.session import Platform
from packager.services.artifacts import copy_tree, date_folder_name, find_by_extension, timestamped_dir_name
from packager.services.process_runner import ProcessRunner, ProcessResult
from packager.services.project_detector import find_module_dir, ios_entries
from packager.utils.session_log import SessionLog

logger = logging.getLogger(__name__)

SIGNING_DISABLED_ENV = {
    "CODE_SIGN_IDENTITY": "",
    "CODE_SIGNING_REQUIRED": "NO",
}

EXPORT_OPTIONS = {
    "method": "release-testing",
    "compileBitcode": False,
    "stripSwiftSymbols": True,
}

ERROR_PREVIEW_CHARS = 1000


@dataclass
class XcodeProject:
    directory: Path
    workspace: str | None = None
    project: str | None = None

    @classmethod
    def locate(cls, directory: str | Path) -> "XcodeProject":
        directory = Path(directory)
        names = ios_entries(directory)
        workspace = next((n for n in names if n.endswith(".xcworkspace")), None)
        project = next((n for n in names if n.endswith(".xcodeproj")), None)
        if workspace is None and project is None:
            raise DetectionError("未找到.xcworkspace或.xcodeproj文件", stage="ios")
        return cls(directory=directory, workspace=workspace, project=project)

    @property
    def scheme(self) -> str:
        return Path(self.project or self.workspace).stem

    def container_args(self) -> list[str]:
        if self.workspace:
            return ["-workspace", self.workspace]
        return ["-project", self.project]


def write_export_options(path: Path) -> Path:
    with open(path, "wb") as f:
        plistlib.dump(EXPORT_OPTIONS, f)
    return path


class IOSBuilder:
    """Archives the app for generic iOS devices and exports IPA files."""

    def __init__(self, runner: ProcessRunner | None = None) -> None:
        self._runner = runner or ProcessRunner()

    def locate_module(self, project_path: str | Path) -> XcodeProject:
        ios_dir = find_module_dir(project_path, Platform.ios)
        if ios_dir is None:
            raise DetectionError("未找到iOS项目目录", stage="ios")
        return XcodeProject.locate(ios_dir)

    async def build(
        self,
        project_path: str | Path,
        output_path: str | Path,
        log: SessionLog,
        now: datetime | None = None,
    ) -> str:
        xcode = self.locate_module(project_path)
        ios_dir = xcode.directory
        scheme = xcode.scheme

        build_dir = ios_dir / "build"
        build_dir.mkdir(parents=True, exist_ok=True)
        archive_path = build_dir / f"{scheme}.xcarchive"

        archive_args = [
            *xcode.container_args(),
            "-scheme", scheme,
            "-configuration", "Release",
            "-destination", "generic/platform=iOS",
            "archive",
            "-archivePath", str(archive_path),
        ]
        log.info("开始执行iOS Archive命令")
        log.info(f"工作目录: {ios_dir}")
        log.info(f"Scheme: {scheme}")
        log.info(f"命令: xcodebuild {' '.join(archive_args)}")

        result = await self._xcodebuild(archive_args, ios_dir, log, env=SIGNING_DISABLED_ENV)
        if not result.success:
            self._log_failure("iOS Archive失败", result, log)
            raise ProcessExitError(
                f"Archive失败，退出代码: {result.exit_code}",
                exit_code=result.exit_code,
                output=result.output,
                stage="ios",
            )
        if not archive_path.exists():
            log.error(f"Archive文件不存在: {archive_path}")
            raise ArtifactNotFoundError(f"Archive文件不存在: {archive_path}", stage="ios")
        log.success(f"iOS Archive创建成功: {archive_path}")

        export_dir = build_dir / "export"
        if export_dir.exists():
            await asyncio.to_thread(shutil.rmtree, export_dir)
        export_dir.mkdir(parents=True)
        options_path = write_export_options(build_dir / "ExportOptions.plist")

        log.info("开始导出IPA文件...")
        export_args = [
            "-exportArchive",
            "-archivePath", str(archive_path),
            "-exportPath", str(export_dir),
            "-exportOptionsPlist", str(options_path),
        ]
        result = await self._xcodebuild(export_args, ios_dir, log)
        if not result.success:
            self._log_failure("导出IPA失败", result, log)
            raise ProcessExitError(
                f"导出IPA失败，退出代码: {result.exit_code}",
                exit_code=result.exit_code,
                output=result.output,
                stage="ios",
            )
        log.success("IPA导出成功，开始复制文件...")

        output_dir = Path(output_path) / date_folder_name(now) / "ios"
        destination = output_dir / timestamped_dir_name(scheme, now)
        copied = await self.copy_ipas(export_dir, destination, log)
        if not copied:
            log.error("未找到或复制任何IPA文件")
            raise ArtifactNotFoundError("未找到或复制任何IPA文件", stage="ios")

        lines = [
            "",
            "✅ iOS打包成功完成！",
            f"📁 输出目录: {output_dir}",
            "",
            f"已复制 {len(copied)} 个文件：",
        ]
        lines += [f"  ✓ IPA文件: {name}" for name in copied]
        return "\n".join(lines) + "\n"

    async def copy_ipas(self, export_dir: Path, destination: Path, log: SessionLog) -> list[str]:
        """Copy every directory holding an IPA into ``destination``; returns IPA names."""
        ipa_files = await asyncio.to_thread(find_by_extension, export_dir, ".ipa")
        log.info(f"找到 {len(ipa_files)} 个IPA文件")

        groups: dict[Path, list[Path]] = {}
        for ipa in ipa_files:
            groups.setdefault(ipa.parent, []).append(ipa)

        copied: list[str] = []
        for directory, files in groups.items():
            await asyncio.to_thread(copy_tree, directory, destination)
            copied += [f.name for f in files]
            log.success(f"已复制IPA目录: {destination.name}")
        return copied

    async def _xcodebuild(
        self,
        args: list[str],
        cwd: Path,
        log: SessionLog,
        env: dict[str, str] | None = None,
    ) -> ProcessResult:
        try:
            return await self._runner.run(
                "xcodebuild", args, cwd=cwd, env=env, on_output=log.process_output
            )
        except ProcessSpawnError as e:
            log.error(f"执行xcodebuild时出错: {e.message}")
            e.stage = "ios"
            raise

    @staticmethod
    def _log_failure(title: str, result: ProcessResult, log: SessionLog) -> None:
        log.error(f"{title}，退出代码: {result.exit_code}")
        if result.output:
            log.error(f"输出: {result.output[-ERROR_PREVIEW_CHARS:]}")
