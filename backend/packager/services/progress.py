"""Delivers incremental session frames to SSE and WebSocket subscribers."""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

from packager.services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.2
SESSION_MISSING = "会话不存在"


def ended_frame(error: str = SESSION_MISSING) -> dict[str, Any]:
    """Frame sent when the session is unknown or has been reaped."""
    return {"status": "ended", "error": error, "logs": []}


class ProgressChannel(ABC):
    """Source of progress frames for one session.

    Every subscriber sees each log entry exactly once, in order. The stream
    ends after the first frame with a terminal status, or with an ``ended``
    frame when the session does not exist (any more).
    """

    @abstractmethod
    def subscribe(self, session_id: str) -> AsyncIterator[dict[str, Any]]:
        ...


class PollingProgressChannel(ProgressChannel):
    """Snapshots the session at a fixed interval with a per-subscriber cursor."""

    def __init__(self, registry: SessionRegistry, interval: float = DEFAULT_POLL_INTERVAL) -> None:
        self._registry = registry
        self._interval = interval

    async def subscribe(self, session_id: str) -> AsyncIterator[dict[str, Any]]:
        cursor = 0
        while True:
            session = self._registry.get(session_id)
            if session is None:
                yield ended_frame()
                return

            logs = session.logs
            if cursor > len(logs):
                cursor = 0
            new_entries = logs[cursor:]
            cursor += len(new_entries)
            terminal = session.is_terminal
            yield session.frame(new_entries)

            if terminal:
                return
            await asyncio.sleep(self._interval)


def sse_event(frame: dict[str, Any]) -> str:
    return f"data: {json.dumps(frame, ensure_ascii=False)}\n\n"


async def sse_stream(channel: ProgressChannel, session_id: str) -> AsyncIterator[str]:
    """Server-Sent Events rendering of ``channel.subscribe``."""
    async for frame in channel.subscribe(session_id):
        yield sse_event(frame)
    logger.debug("SSE stream for session %s closed", session_id)
