"""Error taxonomy shared by the pipeline stages and the HTTP layer."""


class PackagerError(Exception):
    """Base class for all packager errors.

    ``stage`` names the pipeline stage that raised the error so the
    orchestrator can record it in ``results.errors``.
    """

    stage: str = "packager"

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if stage is not None:
            self.stage = stage


class ConfigurationError(PackagerError):
    """Bad or missing request parameters; rejected before a session exists."""

    stage = "config"


class ProjectPathError(ConfigurationError):
    stage = "detect"


class ProjectNotFoundError(ProjectPathError):
    pass


class ProjectNotADirectoryError(ProjectPathError):
    pass


class DetectionError(PackagerError):
    """A module required by the requested platform could not be found."""

    stage = "detect"


class ProcessSpawnError(PackagerError):
    """The external tool could not be started at all."""

    stage = "process"


class ProcessExitError(PackagerError):
    """The external tool exited with a non-zero status."""

    stage = "process"

    def __init__(
        self, message: str, *, exit_code: int, output: str = "", stage: str | None = None
    ) -> None:
        super().__init__(message, stage=stage)
        self.exit_code = exit_code
        self.output = output


class ArtifactNotFoundError(PackagerError):
    """The tool reported success but no output could be located."""

    stage = "artifacts"


class SourceNotFoundError(PackagerError):
    stage = "copy"


class AdvisoryError(PackagerError):
    """Failures that are logged as warnings and never fail a session."""


class CodeSyncError(AdvisoryError):
    stage = "git"


class VersionPatchError(AdvisoryError):
    stage = "version"


class NotificationError(AdvisoryError):
    stage = "notify"
