"""Tests for the Lark webhook notifier."""

import json
import os
from datetime import datetime

import httpx
import pytest

from packager.errors import NotificationError
from packager.models.session import BuildType, Platform, StageResult
from packager.services.notifier import LarkNotifier, primary_artifact, success_markers

WEBHOOK = "https://open.feishu.cn/open-apis/bot/v2/hook/test"


def _transport(status=200, body=None, captured=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if captured is not None:
            captured.append(request)
        return httpx.Response(status, json=body if body is not None else {"code": 0, "msg": "success"})

    return httpx.MockTransport(handler)


@pytest.fixture
def finished_session(tmp_path, make_session):
    session = make_session(project_path=str(tmp_path / "my_app"), build_type=BuildType.both)
    out = tmp_path / "out" / "2024-05-01"
    apk_dir = out / "android" / "apk" / "jc" / "release"
    apk_dir.mkdir(parents=True)
    (apk_dir / "app-jc-release.apk").write_bytes(b"x" * 2048)
    session.results.output_path = str(out)
    session.set_platform_result(
        Platform.android, StageResult(success=True, output="\n  ✓ APK (jc): 1 个文件\n")
    )
    session.set_platform_result(Platform.ios, StageResult(success=False, output="ARCHIVE FAILED"))
    return session


class TestCompose:
    def test_message_contents(self, finished_session):
        text = LarkNotifier().compose(finished_session, now=datetime(2024, 5, 1, 12, 0, 0))
        lines = text.splitlines()
        assert lines[0] == "📦 打包完成通知"
        assert "项目: my_app" in lines
        assert "Android: ✅ 成功" in lines
        assert "  ✓ APK (jc): 1 个文件" in lines
        assert "iOS: ❌ 失败" in lines
        assert "安装包: app-jc-release.apk (2.0 KB)" in lines
        assert lines[-1] == "时间: 2024-05-01 12:00:00"

    def test_platform_not_run(self, make_session):
        session = make_session(build_type=BuildType.ios)
        assert "iOS: 未执行" in LarkNotifier().compose(session)


class TestNotify:
    async def test_posts_text_message(self, finished_session):
        captured = []
        notifier = LarkNotifier(transport=_transport(captured=captured))
        await notifier.notify(WEBHOOK, finished_session)
        request = captured[0]
        assert request.method == "POST"
        assert str(request.url) == WEBHOOK
        payload = json.loads(request.content)
        assert payload["msg_type"] == "text"
        assert payload["content"]["text"].startswith("📦 打包完成通知")

    async def test_http_error_status(self, finished_session):
        notifier = LarkNotifier(transport=_transport(status=500, body={}))
        with pytest.raises(NotificationError):
            await notifier.notify(WEBHOOK, finished_session)

    async def test_api_error_code(self, finished_session):
        notifier = LarkNotifier(transport=_transport(body={"code": 19021, "msg": "sign match fail"}))
        with pytest.raises(NotificationError) as exc_info:
            await notifier.notify(WEBHOOK, finished_session)
        assert "sign match fail" in exc_info.value.message

    async def test_transport_failure(self, finished_session):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        notifier = LarkNotifier(transport=httpx.MockTransport(handler))
        with pytest.raises(NotificationError):
            await notifier.notify(WEBHOOK, finished_session)

    async def test_malformed_webhook_url(self, finished_session):
        notifier = LarkNotifier(transport=_transport())
        with pytest.raises(NotificationError) as exc_info:
            await notifier.notify("http://example.com:abc/", finished_session)
        assert isinstance(exc_info.value.__cause__, httpx.InvalidURL)


class TestHelpers:
    def test_success_markers(self):
        output = "\n✅ done\n  ✓ APK (jc): 1 个文件\nnoise\n  ✓ AAB (jc): 1 个文件\n"
        assert success_markers(output) == ["✓ APK (jc): 1 个文件", "✓ AAB (jc): 1 个文件"]

    def test_primary_artifact_prefers_newest_apk(self, tmp_path):
        apk_dir = tmp_path / "android" / "apk"
        apk_dir.mkdir(parents=True)
        old, new = apk_dir / "old.apk", apk_dir / "new.apk"
        old.write_bytes(b"o")
        new.write_bytes(b"n")
        os.utime(old, (1_000_000, 1_000_000))
        os.utime(new, (2_000_000, 2_000_000))
        ios_dir = tmp_path / "ios"
        ios_dir.mkdir()
        (ios_dir / "App.ipa").write_bytes(b"i")
        assert primary_artifact(tmp_path).name == "new.apk"

    def test_primary_artifact_falls_back_to_ipa(self, tmp_path):
        (tmp_path / "ios" / "Runner 2024").mkdir(parents=True)
        (tmp_path / "ios" / "Runner 2024" / "Runner.ipa").write_bytes(b"i")
        assert primary_artifact(tmp_path).name == "Runner.ipa"

    def test_primary_artifact_none(self, tmp_path):
        assert primary_artifact(tmp_path) is None
        assert primary_artifact(None) is None
