"""Locates build outputs and copies them into the dated output tree."""

import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from packager.errors import SourceNotFoundError

logger = logging.getLogger(__name__)

# Flutter's Gradle layout first, plain Android Gradle second
OUTPUT_ROOT_CANDIDATES: tuple[tuple[str, ...], ...] = (
    ("build", "app", "outputs"),
    ("app", "build", "outputs"),
)


@dataclass
class CopyResult:
    success: bool
    message: str = ""


@dataclass
class FileInfo:
    name: str
    path: str
    size_bytes: int

    @property
    def size_label(self) -> str:
        size = float(self.size_bytes)
        for unit in ("B", "KB", "MB"):
            if size < 1024:
                return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
            size /= 1024
        return f"{size:.2f} GB"


def date_folder_name(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime("%Y-%m-%d")


def timestamped_dir_name(prefix: str, now: datetime | None = None) -> str:
    return f"{prefix} {(now or datetime.now()).strftime('%Y-%m-%d %H-%M-%S')}"


def copy_tree(src: str | Path, dst: str | Path) -> CopyResult:
    """Copy ``src`` (directory or file) to ``dst``, creating parents.

    Directories are merged into an existing destination. Raises
    SourceNotFoundError if ``src`` is missing; other OSErrors propagate.
    """
    src, dst = Path(src), Path(dst)
    if not src.exists():
        raise SourceNotFoundError(f"源路径不存在: {src}")

    if src.is_dir():
        dst.mkdir(parents=True, exist_ok=True)
        shutil.copytree(src, dst, dirs_exist_ok=True)
        return CopyResult(success=True, message=f"已复制目录: {src} -> {dst}")

    dst.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(src, dst)
    return CopyResult(success=True, message=f"已复制文件: {src} -> {dst}")


def output_root_candidates(base_dir: str | Path, kind: str) -> list[Path]:
    base = Path(base_dir)
    return [base.joinpath(*parts, kind) for parts in OUTPUT_ROOT_CANDIDATES]


def find_output_root(base_dir: str | Path, kind: str) -> Path | None:
    """First existing ``outputs/<kind>`` directory among the known layouts."""
    for candidate in output_root_candidates(base_dir, kind):
        if candidate.is_dir():
            return candidate
    return None


def locate_artifacts(
    base_dir: str | Path,
    kind: str,
    extension: str,
    configuration: str = "release",
) -> list[Path]:
    """Files ending in ``extension`` under ``<root>/<variant>/<configuration>``.

    ``kind`` is the Gradle output folder (``apk`` or ``bundle``). Variants and
    files are returned in name order.
    """
    root = find_output_root(base_dir, kind)
    if root is None:
        return []

    found: list[Path] = []
    for variant in sorted(p for p in root.iterdir() if p.is_dir()):
        config_dir = variant / configuration
        if not config_dir.is_dir():
            continue
        found.extend(
            sorted(f for f in config_dir.iterdir() if f.is_file() and f.name.endswith(extension))
        )
    return found


def find_by_extension(directory: str | Path, extension: str = ".ipa") -> list[Path]:
    """Recursively collect files ending in ``extension``; unreadable dirs are skipped."""
    found: list[Path] = []

    def _onerror(err: OSError) -> None:
        logger.warning("Cannot read %s: %s", err.filename, err)

    for root, dirs, files in os.walk(directory, onerror=_onerror):
        dirs.sort()
        for fname in sorted(files):
            if fname.endswith(extension):
                found.append(Path(root) / fname)
    return found


def describe_file(path: str | Path) -> FileInfo:
    p = Path(path)
    return FileInfo(name=p.name, path=str(p), size_bytes=p.stat().st_size)
