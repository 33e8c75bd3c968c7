from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class WireModel(BaseModel):
    """Base for models serialized to the browser client with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Platform(str, Enum):
    android = "android"
    ios = "ios"
    flutter = "flutter"


class BuildType(str, Enum):
    android = "android"
    ios = "ios"
    both = "both"

    @property
    def platforms(self) -> list[Platform]:
        if self is BuildType.both:
            return [Platform.android, Platform.ios]
        return [Platform(self.value)]


class SessionStatus(str, Enum):
    building = "building"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.building


class LogKind(str, Enum):
    info = "info"
    output = "output"
    error = "error"
    success = "success"
    warning = "warning"


class LogEntry(WireModel):
    type: LogKind
    message: str
    timestamp: str = Field(default_factory=utc_now_iso)


class StageResult(WireModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    output: str = ""


class StageErrorRecord(WireModel):
    stage: str
    message: str


class BuildResults(WireModel):
    android: StageResult | None = None
    ios: StageResult | None = None
    errors: list[StageErrorRecord] = []
    output_path: str | None = None

    def for_platform(self, platform: Platform) -> StageResult | None:
        return getattr(self, platform.value, None)


class BuildSession(WireModel):
    """One build request: parameters, live log, progress and results.

    Owned by the orchestrator for the whole pipeline; stream readers only
    ever see serialized snapshots.
    """

    id: str = Field(frozen=True)
    project_path: str = Field(frozen=True)
    output_path: str = Field(frozen=True)
    build_type: BuildType = Field(frozen=True)
    env_type: str | None = Field(default=None, frozen=True)
    version_name: str | None = Field(default=None, frozen=True)
    version_code: int | None = Field(default=None, frozen=True)

    status: SessionStatus = SessionStatus.building
    progress: int = 0
    logs: list[LogEntry] = []
    results: BuildResults = Field(default_factory=BuildResults)
    created_at: str = Field(default_factory=utc_now_iso)
    finished_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def reset(self) -> None:
        """Re-initialize mutable fields before the pipeline starts."""
        self.status = SessionStatus.building
        self.progress = 0
        self.logs = []
        self.results = BuildResults()
        self.finished_at = None

    def add_log(self, kind: LogKind | str, message: str) -> LogEntry:
        entry = LogEntry(type=LogKind(kind), message=message)
        self.logs.append(entry)
        return entry

    def set_progress(self, value: int) -> int:
        """Raise progress to ``value`` (clamped to 0..100); never lowers it."""
        value = max(0, min(100, int(value)))
        if value > self.progress:
            self.progress = value
        return self.progress

    def record_error(self, stage: str, message: str) -> None:
        self.results.errors.append(StageErrorRecord(stage=stage, message=message))

    def set_platform_result(self, platform: Platform, result: StageResult) -> None:
        if self.results.for_platform(platform) is not None:
            raise ValueError(f"{platform.value} result already recorded")
        setattr(self.results, platform.value, result)

    def finalize(self, status: SessionStatus) -> bool:
        """Move to a terminal status. Returns False if already terminal."""
        if not status.is_terminal:
            raise ValueError("finalize() needs a terminal status")
        if self.is_terminal:
            return False
        self.status = status
        self.progress = 100
        self.finished_at = utc_now_iso()
        return True

    def frame(self, logs: list[LogEntry]) -> dict[str, Any]:
        """Progress frame with the given (new) log entries."""
        return {
            "status": self.status.value,
            "logs": [entry.to_wire() for entry in logs],
            "results": self.results.to_wire(),
            "progress": self.progress,
        }
