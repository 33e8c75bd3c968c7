from pydantic import Field

from packager.models.session import Platform, WireModel


class ProjectDetectionResult(WireModel):
    """Platforms found directly under a project root.

    ``types`` lists buildable platforms only; a Flutter module is recorded in
    ``locations`` as a dependency of the native projects.
    """

    types: list[Platform] = []
    locations: dict[Platform, str] = Field(default_factory=dict)

    def location(self, platform: Platform) -> str | None:
        return self.locations.get(platform)

    def project_info(self) -> dict[str, str | None]:
        return {p.value: self.locations.get(p) for p in Platform}
