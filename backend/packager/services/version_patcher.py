"""Version-patch stage: targeted rewrites of hand-authored build metadata.

Only well-known key patterns are touched; surrounding formatting is kept as
is. The ``patch_*_fields`` functions work on text and are independent of the
filesystem.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from xml.sax.saxutils import escape

from packager.errors import VersionPatchError

logger = logging.getLogger(__name__)

ANDROID_VERSION_FILE = "config.gradle"

GRADLE_VERSION_NAME = re.compile(
    r"(?P<prefix>\bversionName\s*:\s*)(?P<quote>['\"])(?P<value>[^'\"\n]*)(?P=quote)(?P<suffix>\s*,)"
)
GRADLE_VERSION_CODE = re.compile(r"(?P<prefix>\bversionCode\s*:\s*)(?P<value>\d+)(?P<suffix>\s*,)")

PLIST_SHORT_VERSION = "CFBundleShortVersionString"
PLIST_BUILD_VERSION = "CFBundleVersion"
PLIST_SKIP_DIRS = {"build", "Pods", "DerivedData", ".git", ".svn", ".hg"}
PLIST_SEARCH_DEPTH = 4

ENV_SELECTOR = re.compile(
    r"(?P<prefix>\b\w*(?i:env)\w*\s*=\s*)(?P<type>(?i:env)\w*)\.(?P<tag>\w+)(?P<suffix>\s*;)"
)
DART_SKIP_DIRS = {"build", ".dart_tool", ".git", "ios", "android"}


@dataclass
class PatchOutcome:
    text: str
    changed: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)


# -- Android ----------------------------------------------------------------


def patch_gradle_version_fields(
    text: str, version_name: str | None = None, version_code: int | None = None
) -> PatchOutcome:
    """Rewrite ``versionName : '<v>',`` and ``versionCode : <n>,`` in place."""
    outcome = PatchOutcome(text=text)

    if version_name is not None:
        new_text, count = GRADLE_VERSION_NAME.subn(
            lambda m: f"{m['prefix']}{m['quote']}{version_name}{m['quote']}{m['suffix']}",
            outcome.text,
        )
        (outcome.changed if count else outcome.missing).append("versionName")
        outcome.text = new_text

    if version_code is not None:
        new_text, count = GRADLE_VERSION_CODE.subn(
            lambda m: f"{m['prefix']}{int(version_code)}{m['suffix']}",
            outcome.text,
        )
        (outcome.changed if count else outcome.missing).append("versionCode")
        outcome.text = new_text

    return outcome


def _read_source(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise VersionPatchError(f"{path.name} 不是UTF-8编码，无法修改版本号") from e


def find_android_version_file(android_dir: str | Path) -> Path | None:
    android_dir = Path(android_dir)
    for candidate in (android_dir / ANDROID_VERSION_FILE, android_dir.parent / ANDROID_VERSION_FILE):
        if candidate.is_file():
            return candidate
    return None


def patch_android_version(
    android_dir: str | Path, version_name: str | None, version_code: int | None
) -> PatchOutcome:
    path = find_android_version_file(android_dir)
    if path is None:
        raise VersionPatchError(f"未找到版本配置文件 {ANDROID_VERSION_FILE}: {android_dir}")

    outcome = patch_gradle_version_fields(_read_source(path), version_name, version_code)
    if not outcome.changed:
        raise VersionPatchError(
            f"{path.name} 中未找到 {'/'.join(outcome.missing)} 配置"
        )
    path.write_text(outcome.text, encoding="utf-8")
    return outcome


# -- iOS --------------------------------------------------------------------


def _plist_key_pattern(key: str) -> re.Pattern[str]:
    return re.compile(rf"(<key>{re.escape(key)}</key>\s*<string>)([^<]*)(</string>)")


def _root_dict_close(text: str) -> int:
    """Index of the ``</dict>`` that closes the root dictionary."""
    end = text.rfind("</plist>")
    close = text.rfind("</dict>", 0, end if end != -1 else len(text))
    if close == -1 or text.find("<dict>") == -1:
        raise VersionPatchError("Info.plist 中未找到根 <dict> 元素")
    return close


def _key_indent(text: str) -> str:
    m = re.search(r"^([ \t]+)<key>", text, re.MULTILINE)
    return m.group(1) if m else "\t"


def patch_plist_version_fields(
    text: str, version_name: str | None = None, version_code: int | None = None
) -> PatchOutcome:
    """Rewrite, or insert into the root dict, the two bundle version keys."""
    outcome = PatchOutcome(text=text)
    wanted = []
    if version_name is not None:
        wanted.append((PLIST_SHORT_VERSION, version_name))
    if version_code is not None:
        wanted.append((PLIST_BUILD_VERSION, str(version_code)))

    for key, value in wanted:
        pattern = _plist_key_pattern(key)
        value_xml = escape(value)
        new_text, count = pattern.subn(
            lambda m: f"{m.group(1)}{value_xml}{m.group(3)}", outcome.text, count=1
        )
        if not count:
            close = _root_dict_close(outcome.text)
            indent = _key_indent(outcome.text)
            line_start = outcome.text.rfind("\n", 0, close) + 1
            insert = f"{indent}<key>{key}</key>\n{indent}<string>{value_xml}</string>\n"
            new_text = outcome.text[:line_start] + insert + outcome.text[line_start:]
        outcome.text = new_text
        outcome.changed.append(key)

    return outcome


def find_info_plist(ios_dir: str | Path, scheme: str | None = None) -> Path | None:
    """Locate the app's Info.plist.

    Checks ``<scheme>/Info.plist``, ``Runner/Info.plist`` and ``Info.plist``,
    then searches a few levels down, skipping build output, CocoaPods, VCS
    and test target directories.
    """
    ios_dir = Path(ios_dir)
    candidates = []
    if scheme:
        candidates.append(ios_dir / scheme / "Info.plist")
    candidates += [ios_dir / "Runner" / "Info.plist", ios_dir / "Info.plist"]
    for candidate in candidates:
        if candidate.is_file():
            return candidate

    base_depth = len(ios_dir.parts)
    for root, dirs, files in os.walk(ios_dir):
        depth = len(Path(root).parts) - base_depth
        dirs[:] = sorted(
            d for d in dirs
            if d not in PLIST_SKIP_DIRS and "Tests" not in d and depth < PLIST_SEARCH_DEPTH
        )
        if "Info.plist" in files:
            return Path(root) / "Info.plist"
    return None


def patch_ios_version(
    ios_dir: str | Path,
    version_name: str | None,
    version_code: int | None,
    scheme: str | None = None,
) -> PatchOutcome:
    path = find_info_plist(ios_dir, scheme)
    if path is None:
        raise VersionPatchError(f"未找到 Info.plist: {ios_dir}")
    outcome = patch_plist_version_fields(_read_source(path), version_name, version_code)
    path.write_text(outcome.text, encoding="utf-8")
    return outcome


# -- Flutter ----------------------------------------------------------------


def patch_env_selector(text: str, env_type: str) -> PatchOutcome:
    """Point every ``<xxxEnv> = Env.<tag>;`` assignment at ``env_type``."""
    outcome = PatchOutcome(text=text)
    new_text, count = ENV_SELECTOR.subn(
        lambda m: f"{m['prefix']}{m['type']}.{env_type}{m['suffix']}", text
    )
    if count:
        outcome.changed.append("env")
    else:
        outcome.missing.append("env")
    outcome.text = new_text
    return outcome


def _dart_sources(flutter_dir: Path) -> list[Path]:
    lib = flutter_dir / "lib"
    base = lib if lib.is_dir() else flutter_dir
    sources: list[Path] = []
    for root, dirs, files in os.walk(base):
        dirs[:] = sorted(d for d in dirs if d not in DART_SKIP_DIRS)
        sources.extend(Path(root) / f for f in sorted(files) if f.endswith(".dart"))
    return sources


def patch_flutter_env(flutter_dir: str | Path, env_type: str) -> list[Path]:
    """Rewrite the environment selector in the Flutter sources.

    Returns the files that contain the selector. Raises VersionPatchError if
    none does.
    """
    matched: list[Path] = []
    for source in _dart_sources(Path(flutter_dir)):
        try:
            text = source.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            logger.debug("Skipping unreadable %s", source)
            continue
        outcome = patch_env_selector(text, env_type)
        if not outcome.changed:
            continue
        matched.append(source)
        if outcome.text != text:
            source.write_text(outcome.text, encoding="utf-8")

    if not matched:
        raise VersionPatchError(f"未在Flutter源码中找到环境配置: {flutter_dir}")
    return matched
