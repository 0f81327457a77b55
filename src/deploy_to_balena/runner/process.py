"""Async subprocess execution shared by the balena CLI and git runners.

Executes an external command as an async subprocess with timeout
enforcement, output streaming, and structured result capture.

A cancelled run (SIGINT/SIGTERM of the action, or a cancelled workflow)
terminates the child process, kills it if it does not exit within the
grace period, and then re-raises the cancellation so no orphaned build
is left behind.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

# Output is read in chunks and split into lines here, so a single log line
# has no length limit.
READ_CHUNK_SIZE = 64 * 1024


@dataclass
class ProcessResult:
    """Result of a subprocess execution.

    Attributes:
        success: True when the process exited with code 0.
        exit_code: Process exit code (-1 for timeout/OS errors).
        stdout: Captured standard output.
        stderr: Captured standard error.
        duration_seconds: Wall-clock execution time.
        timed_out: True when the process was stopped by the timeout.
    """

    success: bool
    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float
    timed_out: bool = False


class ProcessRunner:
    """Runs external commands as async subprocesses.

    Output is streamed line-by-line to Python logging and an optional
    callback while it is being collected.

    Attributes:
        timeout_seconds: Maximum execution time before the process is
                         stopped. None disables the timeout.
        kill_grace_seconds: Time a terminated process gets to exit before
                            it is killed.
        stream_log_level: Log level output lines are streamed at.
        name: Label used in log messages.
    """

    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        kill_grace_seconds: float = 10.0,
        stream_log_level: int = logging.DEBUG,
        name: str = "process",
    ):
        self.timeout_seconds = timeout_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self.stream_log_level = stream_log_level
        self.name = name

    async def run(
        self,
        args: Sequence[str],
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        log_callback: Optional[Callable[[str], None]] = None,
    ) -> ProcessResult:
        """Execute a command and collect its output.

        Args:
            args: Executable followed by its arguments.
            env: Full environment of the child process (inherits when None).
            cwd: Working directory of the child process.
            log_callback: Optional function called with each output line.

        Returns:
            ProcessResult with exit code, captured output, and duration.

        Raises:
            asyncio.CancelledError: If the run is cancelled; the child
                                    process has been stopped by then.
        """
        start_time = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=cwd,
            )
        except OSError as exc:
            duration = time.monotonic() - start_time
            logger.error("Failed to start %s: %s", self.name, exc)
            return ProcessResult(
                success=False,
                exit_code=-1,
                stdout="",
                stderr=f"Failed to start {self.name}: {exc}",
                duration_seconds=duration,
            )

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []

        try:
            await asyncio.wait_for(
                self._collect(process, stdout_lines, stderr_lines, log_callback),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            await self._stop(process)
            duration = time.monotonic() - start_time
            logger.error("%s timed out after %ss", self.name, self.timeout_seconds)
            return ProcessResult(
                success=False,
                exit_code=-1,
                stdout="\n".join(stdout_lines),
                stderr=f"Process timed out after {self.timeout_seconds}s",
                duration_seconds=duration,
                timed_out=True,
            )
        except asyncio.CancelledError:
            logger.warning("Run cancelled, stopping %s", self.name)
            await self._stop(process)
            raise
        except Exception:
            logger.error("Reading output of %s failed, stopping it", self.name)
            await self._stop(process)
            raise

        exit_code = process.returncode if process.returncode is not None else -1
        duration = time.monotonic() - start_time

        if exit_code == 0:
            logger.debug("%s completed in %.1fs", self.name, duration)
        else:
            logger.error(
                "%s failed with exit code %d in %.1fs", self.name, exit_code, duration
            )

        return ProcessResult(
            success=exit_code == 0,
            exit_code=exit_code,
            stdout="\n".join(stdout_lines),
            stderr="\n".join(stderr_lines),
            duration_seconds=duration,
        )

    async def _collect(
        self,
        process: asyncio.subprocess.Process,
        stdout_lines: List[str],
        stderr_lines: List[str],
        log_callback: Optional[Callable[[str], None]],
    ) -> None:
        """Read stdout and stderr concurrently, then wait for exit."""

        async def stream(reader: Optional[asyncio.StreamReader], sink: List[str], label: str):
            async for line in self._read_stream(reader):
                sink.append(line)
                self._emit_line(label, line, log_callback)

        await asyncio.gather(
            stream(process.stdout, stdout_lines, "stdout"),
            stream(process.stderr, stderr_lines, "stderr"),
        )
        await process.wait()

    async def _read_stream(
        self, stream: Optional[asyncio.StreamReader]
    ) -> AsyncIterator[str]:
        if stream is None:
            return

        pending = b""
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            *lines, pending = (pending + chunk).split(b"\n")
            for raw_line in lines:
                yield self._decode(raw_line)
        if pending:
            yield self._decode(pending)

    @staticmethod
    def _decode(raw_line: bytes) -> str:
        return raw_line.decode("utf-8", errors="replace").rstrip("\r")

    def _emit_line(
        self,
        stream_name: str,
        line: str,
        log_callback: Optional[Callable[[str], None]],
    ) -> None:
        logger.log(self.stream_log_level, "%s %s: %s", self.name, stream_name, line)
        if log_callback is not None:
            log_callback(f"[{stream_name}] {line}")

    async def _stop(self, process: asyncio.subprocess.Process) -> None:
        """Terminate the process, killing it after the grace period."""
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "%s did not exit after terminate, killing it", self.name
            )
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()
