"""Runs external build tools and streams their output as it arrives."""

import asyncio
import codecs
import contextlib
import logging
import os
import stat
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Mapping, Sequence

from packager.errors import ProcessExitError, ProcessSpawnError

logger = logging.getLogger(__name__)

STDOUT = "stdout"
STDERR = "stderr"

READ_SIZE = 4096
DEFAULT_CAPTURE_LIMIT = 64 * 1024

OutputHandler = Callable[[str, str], Awaitable[None]]


@dataclass
class OutputChunk:
    channel: str
    text: str


@dataclass
class ProcessExit:
    exit_code: int


@dataclass
class ProcessResult:
    command: str
    exit_code: int
    output: str = ""
    truncated: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class BoundedBuffer:
    """Keeps only the last ``limit`` characters of everything appended."""

    def __init__(self, limit: int = DEFAULT_CAPTURE_LIMIT) -> None:
        self.limit = limit
        self.truncated = False
        self._chunks: deque[str] = deque()
        self._size = 0

    def append(self, text: str) -> None:
        if not text:
            return
        self._chunks.append(text)
        self._size += len(text)
        while self._size > self.limit:
            head = self._chunks[0]
            overflow = self._size - self.limit
            if len(head) <= overflow:
                self._chunks.popleft()
                self._size -= len(head)
            else:
                self._chunks[0] = head[overflow:]
                self._size -= overflow
            self.truncated = True

    def getvalue(self) -> str:
        return "".join(self._chunks)

    def __len__(self) -> int:
        return self._size


class PromptResponder:
    """Scripted input: answers a known prompt by writing a secret to stdin.

    Output is fed chunk by chunk; a prompt split across two chunks is still
    recognised. Every occurrence gets one answer, so a tool that asks again
    (e.g. one passphrase per submodule) is answered again.
    """

    def __init__(self, prompt: str, secret: str, *, case_sensitive: bool = False) -> None:
        if not prompt:
            raise ValueError("prompt must not be empty")
        self._case_sensitive = case_sensitive
        self.prompt = prompt if case_sensitive else prompt.lower()
        self._secret = secret
        self._tail = ""
        self.responses = 0

    def feed(self, text: str) -> bytes | None:
        """Return the bytes to write to stdin, or None if no prompt was seen."""
        window = self._tail + (text if self._case_sensitive else text.lower())
        hits = window.count(self.prompt)
        keep_from = len(window) - len(self.prompt) + 1
        if hits:
            last_end = window.rfind(self.prompt) + len(self.prompt)
            keep_from = max(keep_from, last_end)
        self._tail = window[max(0, keep_from):]
        if not hits:
            return None
        self.responses += hits
        return ((self._secret + "\n") * hits).encode("utf-8")


def ensure_executable(path: str | Path) -> None:
    """Add execute bits to ``path`` (the Gradle wrapper often loses them)."""
    p = Path(path)
    mode = p.stat().st_mode
    p.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


class ProcessRunner:
    """Spawns a process and yields its output incrementally."""

    def __init__(self, read_size: int = READ_SIZE) -> None:
        self._read_size = read_size

    @staticmethod
    def build_env(overrides: Mapping[str, str] | None = None) -> dict[str, str]:
        env = dict(os.environ)
        env["TERM"] = "xterm-color"
        if overrides:
            env.update(overrides)
        return env

    async def stream(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        responder: PromptResponder | None = None,
    ) -> AsyncIterator[OutputChunk | ProcessExit]:
        """Yield OutputChunk items as they arrive, then one ProcessExit.

        Raises ProcessSpawnError if the command cannot be started. Closing the
        iterator early kills the process.
        """
        argv = [command, *args]
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if responder else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd is not None else None,
                env=self.build_env(env),
            )
        except OSError as e:
            raise ProcessSpawnError(f"无法启动 {command}: {e}") from e

        logger.debug("Started %s (pid %s) in %s", " ".join(argv), proc.pid, cwd)

        queue: asyncio.Queue[OutputChunk | None] = asyncio.Queue()
        readers = [
            asyncio.create_task(self._pump(proc.stdout, STDOUT, queue)),
            asyncio.create_task(self._pump(proc.stderr, STDERR, queue)),
        ]
        open_streams = len(readers)

        try:
            while open_streams:
                item = await queue.get()
                if item is None:
                    open_streams -= 1
                    continue
                if responder is not None:
                    reply = responder.feed(item.text)
                    if reply:
                        await self._write_stdin(proc, reply)
                yield item

            exit_code = await proc.wait()
            yield ProcessExit(exit_code=exit_code)
        finally:
            for task in readers:
                if not task.done():
                    task.cancel()
            if proc.stdin is not None and not proc.stdin.is_closing():
                proc.stdin.close()
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

    async def run(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        on_output: OutputHandler | None = None,
        responder: PromptResponder | None = None,
        capture_limit: int = DEFAULT_CAPTURE_LIMIT,
        check: bool = False,
    ) -> ProcessResult:
        """Run to completion, forwarding each chunk to ``on_output``.

        Only the last ``capture_limit`` characters are kept in the result; the
        full output goes through ``on_output``. With ``check=True`` a non-zero
        exit raises ProcessExitError carrying the captured output.
        """
        captured = BoundedBuffer(capture_limit)
        exit_code = -1

        events = self.stream(command, args, cwd=cwd, env=env, responder=responder)
        async with contextlib.aclosing(events):
            async for event in events:
                if isinstance(event, ProcessExit):
                    exit_code = event.exit_code
                    continue
                captured.append(event.text)
                if on_output is not None:
                    await on_output(event.channel, event.text)

        result = ProcessResult(
            command=" ".join([command, *args]),
            exit_code=exit_code,
            output=captured.getvalue(),
            truncated=captured.truncated,
        )
        if check and not result.success:
            raise ProcessExitError(
                f"{command} 执行失败，退出代码: {exit_code}",
                exit_code=exit_code,
                output=result.output,
            )
        return result

    async def _pump(
        self,
        reader: asyncio.StreamReader | None,
        channel: str,
        queue: "asyncio.Queue[OutputChunk | None]",
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            if reader is None:
                return
            while True:
                data = await reader.read(self._read_size)
                if not data:
                    tail = decoder.decode(b"", final=True)
                    if tail:
                        queue.put_nowait(OutputChunk(channel=channel, text=tail))
                    return
                text = decoder.decode(data)
                if text:
                    queue.put_nowait(OutputChunk(channel=channel, text=text))
        finally:
            queue.put_nowait(None)

    @staticmethod
    async def _write_stdin(proc: asyncio.subprocess.Process, data: bytes) -> None:
        if proc.stdin is None:
            return
        try:
            proc.stdin.write(data)
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("stdin closed before the prompt could be answered")
