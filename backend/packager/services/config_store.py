"""JSON-file persistence for the user's paths, passphrase and webhook."""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from packager.errors import ConfigurationError
from packager.models.config import AppConfig

logger = logging.getLogger(__name__)

PATH_KINDS = {"project": "project_paths", "output": "output_paths"}


class ConfigStore:
    """Reads and writes AppConfig as a JSON document.

    A missing or unreadable file yields the default config. Writes go to a
    temporary file first and are readable by the owner only.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> AppConfig:
        if not self._path.exists():
            return AppConfig()
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return AppConfig.model_validate(data)
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Ignoring unreadable config %s: %s", self._path, e)
            return AppConfig()

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self._write(config)

    def update(self, changes: dict[str, Any]) -> AppConfig:
        """Merge ``changes`` (snake_case field names) into the stored config."""
        with self._lock:
            config = self.load().model_copy(update=changes)
            config = AppConfig.model_validate(config.model_dump())
            self._write(config)
            return config

    def add_path(self, kind: str, new_path: str) -> AppConfig:
        field_name = PATH_KINDS.get(kind)
        if field_name is None:
            raise ConfigurationError(f"未知的路径类型: {kind}")
        if not new_path:
            raise ConfigurationError("参数不完整")

        with self._lock:
            config = self.load()
            paths: list[str] = getattr(config, field_name)
            if new_path not in paths:
                paths.append(new_path)
                self._write(config)
            return config

    def _write(self, config: AppConfig) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".config-", suffix=".json", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(config.to_wire(), f, indent=2, ensure_ascii=False)
            os.chmod(tmp, 0o600)
            os.replace(tmp, self._path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
