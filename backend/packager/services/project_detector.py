"""Classifies the top-level subdirectories of a project root."""

import logging
import os
from pathlib import Path

from packager.errors import ProjectNotADirectoryError, ProjectNotFoundError
from packager.models.project import ProjectDetectionResult
from packager.models.session import Platform

logger = logging.getLogger(__name__)

ANDROID_MARKERS = ("gradlew", "gradlew.bat", "build.gradle", "build.gradle.kts")
ANDROID_APP_MARKERS = ("build.gradle", "build.gradle.kts")
IOS_SUFFIXES = (".xcworkspace", ".xcodeproj")


def is_android_dir(path: Path) -> bool:
    if any((path / marker).exists() for marker in ANDROID_MARKERS):
        return True
    return any((path / "app" / marker).exists() for marker in ANDROID_APP_MARKERS)


def ios_entries(path: Path) -> list[str]:
    """Names of ``.xcworkspace`` / ``.xcodeproj`` directories inside ``path``.

    Raises OSError if ``path`` cannot be listed.
    """
    names: list[str] = []
    with os.scandir(path) as it:
        for entry in it:
            try:
                if entry.name.endswith(IOS_SUFFIXES) and entry.is_dir():
                    names.append(entry.name)
            except OSError:
                continue
    return sorted(names)


def is_flutter_dir(path: Path) -> bool:
    return "flutter" in path.name.lower() and (path / "pubspec.yaml").is_file()


def _subdirectories(root: Path) -> list[Path]:
    dirs: list[Path] = []
    with os.scandir(root) as it:
        for entry in it:
            try:
                if entry.is_dir():
                    dirs.append(Path(entry.path))
            except OSError:
                continue
    return sorted(dirs, key=lambda p: p.name)


def _check_root(project_root: str | Path) -> Path:
    root = Path(project_root)
    if not root.exists():
        raise ProjectNotFoundError(f"项目路径不存在: {root}")
    if not root.is_dir():
        raise ProjectNotADirectoryError(f"项目路径必须是一个目录: {root}")
    return root


def detect(project_root: str | Path) -> ProjectDetectionResult:
    """Detect Android, iOS and Flutter modules one level below ``project_root``.

    Each subdirectory is checked against all three markers; the first
    qualifying directory per platform wins. Subdirectories that cannot be read
    are skipped.
    """
    root = _check_root(project_root)
    result = ProjectDetectionResult()

    for directory in _subdirectories(root):
        try:
            if Platform.flutter not in result.locations and is_flutter_dir(directory):
                result.locations[Platform.flutter] = directory.name

            if Platform.android not in result.locations and is_android_dir(directory):
                result.locations[Platform.android] = directory.name
                result.types.append(Platform.android)

            if Platform.ios not in result.locations and ios_entries(directory):
                result.locations[Platform.ios] = directory.name
                result.types.append(Platform.ios)
        except OSError as e:
            logger.debug("Skipping unreadable directory %s: %s", directory, e)
            continue

    return result


def find_module_dir(project_root: str | Path, platform: Platform) -> Path | None:
    """Absolute path of the module for ``platform``, or None."""
    root = Path(project_root)
    name = detect(root).location(platform)
    return root / name if name else None


def list_directories(base_path: str | Path) -> list[dict[str, str]]:
    """Subdirectories of ``base_path`` sorted by name, for the path picker."""
    base = _check_root(base_path)
    return [
        {"name": d.name, "path": str(d), "fullPath": str(d)}
        for d in _subdirectories(base)
    ]
