"""Notification stage: posts a build summary to a Lark (Feishu) webhook."""

import logging
from datetime import datetime
from pathlib import Path

import httpx

from packager.errors import NotificationError
from packager.models.session import BuildSession, Platform
from packager.services.artifacts import FileInfo, describe_file, find_by_extension

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0
SUCCESS_MARKER = "✓"

_PLATFORM_LABELS = {Platform.android: "Android", Platform.ios: "iOS"}
_PRIMARY_ARTIFACTS = (("android", ".apk"), ("ios", ".ipa"))


def success_markers(output: str) -> list[str]:
    """The ``✓ ...`` lines a platform build writes into its summary."""
    return [line.strip() for line in output.splitlines() if line.strip().startswith(SUCCESS_MARKER)]


def primary_artifact(output_dir: str | Path | None) -> FileInfo | None:
    """Newest APK under ``output_dir``, else newest IPA."""
    if not output_dir:
        return None
    base = Path(output_dir)
    for subdir, extension in _PRIMARY_ARTIFACTS:
        found = find_by_extension(base / subdir, extension) if (base / subdir).is_dir() else []
        if found:
            return describe_file(max(found, key=lambda p: p.stat().st_mtime))
    return None


class LarkNotifier:
    """Sends a plain-text message to a Lark custom-bot webhook."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport

    def compose(self, session: BuildSession, now: datetime | None = None) -> str:
        lines = [
            "📦 打包完成通知",
            f"项目: {Path(session.project_path).name}",
        ]
        for platform in session.build_type.platforms:
            result = session.results.for_platform(platform)
            label = _PLATFORM_LABELS[platform]
            if result is None:
                lines.append(f"{label}: 未执行")
                continue
            lines.append(f"{label}: {'✅ 成功' if result.success else '❌ 失败'}")
            lines += [f"  {marker}" for marker in success_markers(result.output)]

        lines.append(f"输出目录: {session.results.output_path or session.output_path}")

        artifact = primary_artifact(session.results.output_path)
        if artifact is not None:
            lines.append(f"安装包: {artifact.name} ({artifact.size_label})")

        lines.append(f"时间: {(now or datetime.now()).strftime('%Y-%m-%d %H:%M:%S')}")
        return "\n".join(lines)

    async def notify(self, webhook_url: str, session: BuildSession) -> None:
        """Post the summary for ``session``. Raises NotificationError on failure."""
        payload = {"msg_type": "text", "content": {"text": self.compose(session)}}

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(webhook_url, json=payload)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NotificationError(f"飞书通知发送失败: {e}") from e

        if resp.status_code >= 400:
            raise NotificationError(f"飞书通知发送失败: HTTP {resp.status_code}")

        try:
            body = resp.json()
        except ValueError:
            body = {}
        code = body.get("code", body.get("StatusCode", 0)) if isinstance(body, dict) else 0
        if code:
            message = body.get("msg") or body.get("StatusMessage") or "unknown error"
            raise NotificationError(f"飞书通知发送失败: {message} (code {code})")

        logger.info("Lark notification sent for session %s", session.id)
