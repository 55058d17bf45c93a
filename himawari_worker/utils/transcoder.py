"""Async execution engine for the external transcoding tool.

This module runs ffmpeg for one task without blocking the event loop:

- Writes the task's preset payload to a unique temp file (PresetFile)
- Refuses any command other than "ffmpeg" before spawning anything
- Appends ``-fpre <preset>`` and the output path to the task's arguments
- Enforces a hard ceiling timeout independent of shutdown
- Kills the process promptly when the shutdown signal fires
- Reports failures with the exact invocation string (ExecutionFailure)

Unlike a ``subprocess.run`` call pushed into a thread, the process is spawned
with ``asyncio.create_subprocess_exec`` so it can be killed on cancellation.
"""

import asyncio
import os
import shlex
import signal
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from himawari_worker.exceptions import ArtifactIOError, ExecutionFailure
from himawari_worker.lifecycle import ShutdownSignal, run_until_shutdown
from himawari_worker.schemas.task import FFMPEG_COMMAND, Task
from himawari_worker.utils.logging import get_logger

log = get_logger(__name__)

PRESET_PREFIX = "ffmpeg-preset-"
PRESET_FLAG = "-fpre"


class PresetFile:
    """Handle on a preset side-input file.

    ``release()`` deletes the file; it is idempotent and also runs on context
    manager exit, so the file is removed whatever happens after it was written.
    An already-missing file is not an error; other OSErrors propagate.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.released = False

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "PresetFile":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


def prepare_preset(task: Task, directory: Path | None = None) -> PresetFile:
    """Write the task's preset payload to a freshly created temp file.

    Args:
        task: Task whose preset_payload is written
        directory: Where to create the file (default: system temp dir)

    Returns:
        PresetFile bound to the new file

    Raises:
        ArtifactIOError: If the file cannot be created or written. Nothing is
            left on disk in that case.
    """
    try:
        fd, name = tempfile.mkstemp(prefix=PRESET_PREFIX, dir=directory)
        os.close(fd)
    except OSError as e:
        raise ArtifactIOError(f"cannot create preset file: {e}") from e

    preset = PresetFile(Path(name))
    try:
        preset.path.write_text(task.preset_payload, encoding="utf-8")
    except OSError as e:
        preset.release()
        raise ArtifactIOError(f"cannot write preset file: {e}", path=name) from e
    return preset


def build_arguments(task: Task, preset_path: Path, output_path: Path) -> list[str]:
    """Task arguments, then the preset reference, then the output path last."""
    return [*task.arguments, PRESET_FLAG, str(preset_path), str(output_path)]


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of a successful tool run."""

    command: str
    exit_code: int
    duration_seconds: float


class Transcoder:
    """Runs the external tool for tasks.

    Attributes:
        binary: Executable launched for the "ffmpeg" command
        timeout: Hard ceiling in seconds for one run
        inherit_output: Pass ffmpeg's stdout/stderr through instead of discarding
    """

    def __init__(
        self,
        binary: str = "ffmpeg",
        timeout: float = 24 * 3600.0,
        inherit_output: bool = False,
        logger: Any = None,
    ) -> None:
        self.binary = binary
        self.timeout = timeout
        self.inherit_output = inherit_output
        self.log = logger if logger is not None else log

    async def execute(
        self,
        task: Task,
        preset: PresetFile,
        output_path: Path,
        shutdown: ShutdownSignal,
    ) -> ProcessResult:
        """Run the tool for one task and wait for it to exit.

        Args:
            task: Task to run (command must be "ffmpeg")
            preset: Preset file written by prepare_preset
            output_path: Where the tool writes the artifact (final argument)
            shutdown: Signal that kills the process early when set

        Returns:
            ProcessResult for a zero exit

        Raises:
            ExecutionFailure: Unknown command (nothing spawned), spawn error,
                non-zero exit, or ceiling timeout
            ShutdownRequested: Shutdown fired while the tool was running; the
                process has been killed and reaped
        """
        if task.command != FFMPEG_COMMAND:
            raise ExecutionFailure(f"unsupported command: {task.command!r}")

        args = build_arguments(task, preset.path, output_path)
        command = shlex.join([self.binary, *args])
        stream = None if self.inherit_output else asyncio.subprocess.DEVNULL

        self.log.info("transcode_start", task_id=task.id, command=command, timeout=self.timeout)
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=stream,
                stderr=stream,
            )
        except OSError as e:
            raise ExecutionFailure(f"failed to start {self.binary}: {e}", command=command) from e

        try:
            exit_code = await run_until_shutdown(
                asyncio.wait_for(process.wait(), timeout=self.timeout), shutdown
            )
        except asyncio.TimeoutError as e:
            await self._kill(process)
            raise ExecutionFailure(
                f"{self.binary} exceeded timeout of {self.timeout}s", command=command
            ) from e
        finally:
            if process.returncode is None:
                await self._kill(process)

        duration = time.monotonic() - started
        if exit_code != 0:
            raise ExecutionFailure(
                f"{self.binary} failed with {describe_exit(exit_code)}",
                command=command,
                exit_code=exit_code,
            )

        self.log.info(
            "transcode_success", task_id=task.id, exit_code=exit_code, duration_seconds=duration
        )
        return ProcessResult(command=command, exit_code=exit_code, duration_seconds=duration)

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()


def describe_exit(exit_code: int | None) -> str:
    """Human-readable exit status, naming the signal for negative codes."""
    if exit_code is None:
        return "not exited"
    if exit_code < 0:
        try:
            return f"killed by {signal.Signals(-exit_code).name}"
        except ValueError:
            return f"killed by signal {-exit_code}"
    return f"exit code {exit_code}"
