"""Appends to a session's log and mirrors each entry to Python logging."""

import logging

from packager.models.session import BuildSession, LogKind
from packager.services.process_runner import STDERR

logger = logging.getLogger("packager.session")

_LEVELS = {
    LogKind.info: logging.INFO,
    LogKind.output: logging.DEBUG,
    LogKind.error: logging.ERROR,
    LogKind.success: logging.INFO,
    LogKind.warning: logging.WARNING,
}


class SessionLog:
    """Stage-facing logger bound to one BuildSession."""

    def __init__(self, session: BuildSession) -> None:
        self._session = session

    @property
    def session_id(self) -> str:
        return self._session.id

    def add(self, kind: LogKind, message: str) -> None:
        self._session.add_log(kind, message)
        logger.log(
            _LEVELS[kind],
            "[%s] [%s] %s",
            self._session.id,
            kind.value,
            message.rstrip(),
            extra={"session_id": self._session.id},
        )

    def info(self, message: str) -> None:
        self.add(LogKind.info, message)

    def success(self, message: str) -> None:
        self.add(LogKind.success, message)

    def warning(self, message: str) -> None:
        self.add(LogKind.warning, message)

    def error(self, message: str) -> None:
        self.add(LogKind.error, message)

    async def process_output(self, channel: str, text: str) -> None:
        """``on_output`` handler for ProcessRunner.run."""
        self.add(LogKind.error if channel == STDERR else LogKind.output, text)
