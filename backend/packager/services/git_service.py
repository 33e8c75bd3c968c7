"""Code-sync stage: pulls the latest changes before a build."""

import asyncio
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from git import InvalidGitRepositoryError, NoSuchPathError, Repo

from packager.errors import CodeSyncError, ProcessSpawnError
from packager.services.process_runner import ProcessRunner, PromptResponder
from packager.utils.session_log import SessionLog

logger = logging.getLogger(__name__)

ASKPASS_SECRET_ENV = "PACKAGER_ASKPASS_SECRET"
PASSPHRASE_PROMPT = "passphrase"

# Echoes the secret from the environment; the file itself holds no secret.
_ASKPASS_SCRIPT = f'#!/bin/sh\nprintf \'%s\\n\' "${ASKPASS_SECRET_ENV}"\n'


@dataclass
class PullResult:
    path: str
    skipped: bool = False
    before: str = ""
    after: str = ""
    output: str = ""

    @property
    def updated(self) -> bool:
        return bool(self.before and self.after and self.before != self.after)


class GitService:
    """Runs ``git pull`` through the process runner with live output."""

    def __init__(
        self, runner: ProcessRunner | None = None, scratch_dir: str | None = None
    ) -> None:
        self._runner = runner or ProcessRunner()
        self._scratch_dir = scratch_dir

    @staticmethod
    def is_repository(path: str | Path) -> bool:
        return (Path(path) / ".git").exists()

    @staticmethod
    def head_sha(path: str | Path) -> str:
        """HEAD commit of the repo at ``path``, or "" if there is none."""
        try:
            return Repo(path).head.commit.hexsha
        except (InvalidGitRepositoryError, NoSuchPathError, ValueError):
            return ""

    async def pull(
        self, path: str | Path, log: SessionLog, passphrase: str = ""
    ) -> PullResult:
        """Pull ``path``. Directories without ``.git`` are skipped.

        Raises CodeSyncError when git cannot start or exits non-zero; callers
        treat it as a warning.
        """
        path = Path(path)
        if not self.is_repository(path):
            log.info(f"项目不是Git仓库，跳过代码拉取: {path}")
            return PullResult(path=str(path), skipped=True)

        log.info("开始拉取最新代码...")
        log.info(f"Git仓库路径: {path}")
        before = await asyncio.to_thread(self.head_sha, path)

        env: dict[str, str] | None = None
        responder: PromptResponder | None = None
        askpass: Path | None = None
        if passphrase:
            askpass = self._write_askpass(log.session_id)
            env = {
                "SSH_ASKPASS": str(askpass),
                "SSH_ASKPASS_REQUIRE": "force",
                "DISPLAY": os.environ.get("DISPLAY", ":0"),
                "GIT_TERMINAL_PROMPT": "0",
                ASKPASS_SECRET_ENV: passphrase,
            }
            responder = PromptResponder(PASSPHRASE_PROMPT, passphrase)

        try:
            result = await self._runner.run(
                "git",
                ["pull"],
                cwd=path,
                env=env,
                on_output=log.process_output,
                responder=responder,
            )
        except ProcessSpawnError as e:
            raise CodeSyncError(f"执行git pull时出错: {e.message}") from e
        finally:
            if askpass is not None:
                askpass.unlink(missing_ok=True)

        if not result.success:
            raise CodeSyncError(f"Git pull失败，退出代码: {result.exit_code}")

        after = await asyncio.to_thread(self.head_sha, path)
        pulled = PullResult(path=str(path), before=before, after=after, output=result.output)
        if pulled.updated:
            log.success(f"代码拉取成功: {before[:7]}..{after[:7]}")
        else:
            log.success("代码拉取成功，已是最新版本")
        return pulled

    def _write_askpass(self, session_id: str) -> Path:
        """Write a private askpass helper at a path unique to this invocation."""
        fd, name = tempfile.mkstemp(
            prefix=f"packager-askpass-{session_id}-", suffix=".sh", dir=self._scratch_dir
        )
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(_ASKPASS_SCRIPT)
        os.chmod(name, 0o700)
        return Path(name)
