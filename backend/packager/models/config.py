from typing import Any

from packager.models.session import WireModel


class AppConfig(WireModel):
    """User configuration persisted by ConfigStore."""

    project_base_path: str = ""
    output_base_path: str = ""
    project_paths: list[str] = []
    output_paths: list[str] = []
    ssh_passphrase: str = ""
    lark_webhook_url: str = ""

    def public_view(self) -> dict[str, Any]:
        """Wire form without the passphrase itself."""
        data = self.to_wire()
        data.pop("sshPassphrase", None)
        data["hasSshPassphrase"] = bool(self.ssh_passphrase)
        return data
