"""
Process Runner - spawns external tools and streams their output.

Each call to ``run`` starts one OS process. Its stdout and stderr are read
concurrently in fixed-size blocks and surfaced as tagged text chunks; the
chunks are NOT line-aligned. Once both streams are exhausted and the process
has exited, a single ProcessOutcome is produced. A missing binary, a
non-zero exit code and death by signal are all reported the same way, as a
failed outcome.
"""

import asyncio
import codecs
import logging
import shlex
from dataclasses import dataclass
from typing import AsyncIterator, Literal, Optional, Sequence

from app.config import get_settings

logger = logging.getLogger(__name__)

StreamName = Literal["stdout", "stderr"]

# Tail of stderr kept in failure messages
MAX_FAILURE_OUTPUT = 1000


@dataclass
class OutputChunk:
    """A fragment of text read from one of the process streams."""

    stream: StreamName
    text: str


@dataclass
class ProcessOutcome:
    """Terminal result of a process."""

    success: bool
    returncode: Optional[int]
    message: str
    stdout: str = ""
    stderr: str = ""


def describe_command(command: str, args: Sequence[str]) -> str:
    return shlex.join([command, *args])


def _failure_message(command_line: str, returncode: Optional[int], stderr: str) -> str:
    if returncode is not None and returncode < 0:
        reason = f"was killed by signal {-returncode}"
    else:
        reason = f"exited with code {returncode}"
    tail = stderr.strip()[-MAX_FAILURE_OUTPUT:]
    message = f"Command failed: {command_line} {reason}"
    return f"{message}\n{tail}" if tail else message


class ProcessHandle:
    """
    Handle on one running external process.

    ``chunks()`` may be iterated once. ``wait()`` drains any output that was
    not consumed and returns the outcome; calling it again returns the same
    outcome.
    """

    def __init__(
        self,
        command_line: str,
        process: Optional[asyncio.subprocess.Process],
        chunk_size: int = 4096,
        spawn_error: Optional[str] = None,
    ):
        self.command_line = command_line
        self._process = process
        self._chunk_size = chunk_size
        self._stdout_parts: list[str] = []
        self._stderr_parts: list[str] = []
        self._outcome: Optional[ProcessOutcome] = None
        self._consumed = False

        if spawn_error is not None:
            self._outcome = ProcessOutcome(
                success=False,
                returncode=None,
                message=spawn_error,
            )

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    async def _pump(
        self,
        name: StreamName,
        reader: Optional[asyncio.StreamReader],
        queue: "asyncio.Queue[Optional[OutputChunk]]",
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            if reader is None:
                return
            while True:
                data = await reader.read(self._chunk_size)
                if not data:
                    tail = decoder.decode(b"", final=True)
                    if tail:
                        await queue.put(OutputChunk(name, tail))
                    break
                text = decoder.decode(data)
                if text:
                    await queue.put(OutputChunk(name, text))
        finally:
            await queue.put(None)

    async def chunks(self) -> AsyncIterator[OutputChunk]:
        """Yield output chunks in the order they were read, then settle the outcome."""
        if self._consumed or self._process is None:
            return
        self._consumed = True

        queue: "asyncio.Queue[Optional[OutputChunk]]" = asyncio.Queue()
        pumps = [
            asyncio.create_task(self._pump("stdout", self._process.stdout, queue)),
            asyncio.create_task(self._pump("stderr", self._process.stderr, queue)),
        ]
        open_streams = len(pumps)
        try:
            while open_streams:
                chunk = await queue.get()
                if chunk is None:
                    open_streams -= 1
                    continue
                if chunk.stream == "stdout":
                    self._stdout_parts.append(chunk.text)
                else:
                    self._stderr_parts.append(chunk.text)
                yield chunk
        finally:
            for pump in pumps:
                if not pump.done():
                    pump.cancel()
            await self._settle()

    async def _settle(self) -> ProcessOutcome:
        if self._outcome is not None:
            return self._outcome

        returncode = await self._process.wait()
        stdout = "".join(self._stdout_parts)
        stderr = "".join(self._stderr_parts)
        if returncode == 0:
            self._outcome = ProcessOutcome(
                success=True,
                returncode=0,
                message="",
                stdout=stdout,
                stderr=stderr,
            )
        else:
            self._outcome = ProcessOutcome(
                success=False,
                returncode=returncode,
                message=_failure_message(self.command_line, returncode, stderr),
                stdout=stdout,
                stderr=stderr,
            )
        logger.debug(f"Process {self.pid} finished with code {returncode}: {self.command_line}")
        return self._outcome

    async def wait(self) -> ProcessOutcome:
        """Return the terminal outcome, draining unread output first."""
        if self._outcome is not None:
            return self._outcome
        async for _ in self.chunks():
            pass
        return await self._settle()


class ProcessRunner:
    """Starts external tool invocations."""

    def __init__(self, chunk_size: Optional[int] = None):
        self.chunk_size = chunk_size or get_settings().read_chunk_size

    async def run(self, command: str, args: Sequence[str], cwd: Optional[str] = None) -> ProcessHandle:
        """Spawn ``command`` with ``args`` and return a handle on it."""
        command_line = describe_command(command, args)
        logger.info(f"Running: {command_line}")
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
            )
        except FileNotFoundError:
            logger.error(f"Executable not found: {command}")
            return ProcessHandle(
                command_line,
                None,
                spawn_error=f"Command failed: {command_line}\n{command}: executable not found",
            )
        except OSError as e:
            logger.error(f"Failed to start {command}: {e}")
            return ProcessHandle(
                command_line,
                None,
                spawn_error=f"Command failed: {command_line}\n{e}",
            )

        return ProcessHandle(command_line, process, chunk_size=self.chunk_size)

    async def run_to_completion(
        self, command: str, args: Sequence[str], cwd: Optional[str] = None
    ) -> ProcessOutcome:
        """Run a process, collect all of its output and return the outcome."""
        handle = await self.run(command, args, cwd=cwd)
        return await handle.wait()
