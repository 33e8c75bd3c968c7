"""Tests for the polling progress channel and SSE rendering."""

import asyncio
import json

import pytest

from packager.models.session import LogKind, SessionStatus
from packager.services.progress import PollingProgressChannel, ended_frame, sse_event, sse_stream
from packager.services.session_registry import SessionRegistry


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def channel(registry):
    return PollingProgressChannel(registry, interval=0.01)


async def _drive(session, steps):
    """Apply each step to ``session`` with a short pause in between."""
    for step in steps:
        await asyncio.sleep(0.02)
        step(session)


class TestSubscribe:
    async def test_unknown_session_gets_ended_frame(self, channel):
        frames = [f async for f in channel.subscribe("missing")]
        assert frames == [ended_frame()]
        assert frames[0]["status"] == "ended"
        assert frames[0]["error"] == "会话不存在"

    async def test_finished_session_single_frame_with_all_logs(self, registry, channel, make_session):
        session = make_session()
        session.add_log(LogKind.info, "one")
        session.add_log(LogKind.success, "two")
        session.finalize(SessionStatus.completed)
        registry.add(session)

        frames = [f async for f in channel.subscribe(session.id)]
        assert len(frames) == 1
        assert [e["message"] for e in frames[0]["logs"]] == ["one", "two"]
        assert frames[0]["status"] == "completed"
        assert frames[0]["progress"] == 100

    async def test_each_entry_delivered_once_and_stream_ends(self, registry, channel, make_session):
        session = make_session()
        registry.add(session)
        driver = asyncio.create_task(_drive(session, [
            lambda s: s.add_log(LogKind.info, "a"),
            lambda s: (s.add_log(LogKind.output, "b"), s.set_progress(20)),
            lambda s: (s.add_log(LogKind.success, "c"), s.finalize(SessionStatus.completed)),
        ]))

        frames = [f async for f in channel.subscribe(session.id)]
        await driver

        messages = [e["message"] for f in frames for e in f["logs"]]
        assert messages == ["a", "b", "c"]
        assert frames[-1]["status"] == "completed"
        assert all(f["status"] == "building" for f in frames[:-1])
        progress = [f["progress"] for f in frames]
        assert progress == sorted(progress)

    async def test_concurrent_subscribers_see_everything(self, registry, channel, make_session):
        session = make_session()
        registry.add(session)

        async def collect():
            return [e["message"] for f in [f async for f in channel.subscribe(session.id)] for e in f["logs"]]

        first = asyncio.create_task(collect())
        await asyncio.sleep(0.02)
        session.add_log(LogKind.info, "x")
        second = asyncio.create_task(collect())
        await asyncio.sleep(0.02)
        session.add_log(LogKind.info, "y")
        session.finalize(SessionStatus.failed)

        assert await first == ["x", "y"]
        assert await second == ["x", "y"]

    async def test_reaped_mid_stream_ends(self, registry, channel, make_session):
        session = make_session()
        registry.add(session)
        frames = []
        async for frame in channel.subscribe(session.id):
            frames.append(frame)
            registry.remove(session.id)
        assert frames[-1]["status"] == "ended"


class TestSse:
    def test_event_format(self):
        event = sse_event({"status": "building", "logs": []})
        assert event.startswith("data: ")
        assert event.endswith("\n\n")
        assert json.loads(event[len("data: "):]) == {"status": "building", "logs": []}

    def test_non_ascii_kept_readable(self):
        assert "会话不存在" in sse_event(ended_frame())

    async def test_stream_renders_frames(self, channel):
        events = [e async for e in sse_stream(channel, "missing")]
        assert len(events) == 1
        assert json.loads(events[0][len("data: "):])["status"] == "ended"
