"""Single-task pipeline: preset -> ffmpeg -> upload -> cleanup.

A pipeline owns every file derived from its task (the preset side-input and
the {id}.mp4 artifact) and removes both before it returns, whether the task
succeeded, failed at any stage, or was interrupted by shutdown.

Failures never escape: each one is logged with the task's context and turned
into a PipelineOutcome, so one bad task cannot disturb the scheduler or the
other pipelines running next to it.
"""

import enum
import time
from pathlib import Path
from typing import Any

from himawari_worker.clients.coordinator import CoordinatorClient
from himawari_worker.exceptions import (
    ArtifactIOError,
    ExecutionFailure,
    ShutdownRequested,
    TransportError,
)
from himawari_worker.lifecycle import ShutdownSignal, run_until_shutdown
from himawari_worker.schemas.task import Task
from himawari_worker.utils.logging import get_logger
from himawari_worker.utils.transcoder import PresetFile, Transcoder, prepare_preset
from himawari_worker.utils.workdir import artifact_path, remove_quietly

log = get_logger(__name__)


class PipelineOutcome(str, enum.Enum):
    """How a pipeline ended."""

    COMPLETED = "completed"
    PRESET_FAILED = "preset_failed"
    TRANSCODE_FAILED = "transcode_failed"
    UPLOAD_FAILED = "upload_failed"
    CANCELLED = "cancelled"


class TaskPipeline:
    """Runs acquired tasks to completion.

    Attributes:
        client: Coordinator client used for the upload
        transcoder: Execution engine
        work_dir: Directory receiving {task id}.mp4
        shutdown: Shared shutdown signal
        preset_dir: Directory for preset temp files (None = system temp dir)
    """

    def __init__(
        self,
        client: CoordinatorClient,
        transcoder: Transcoder,
        work_dir: Path,
        shutdown: ShutdownSignal,
        preset_dir: Path | None = None,
        logger: Any = None,
    ) -> None:
        self.client = client
        self.transcoder = transcoder
        self.work_dir = work_dir
        self.shutdown = shutdown
        self.preset_dir = preset_dir
        self.log = logger if logger is not None else log

    async def run(self, task: Task) -> PipelineOutcome:
        """Execute one task and report how it ended. Never raises WorkerError."""
        task_log = self.log.bind(**task.log_fields())
        started = time.monotonic()
        outcome = await self._run(task, task_log)
        task_log.info(
            "task_pipeline_finished",
            outcome=outcome.value,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return outcome

    async def _run(self, task: Task, task_log: Any) -> PipelineOutcome:
        try:
            output = artifact_path(self.work_dir, task.id)
        except ValueError as e:
            task_log.warning("artifact_path_rejected", error=str(e))
            return PipelineOutcome.PRESET_FAILED

        try:
            preset = prepare_preset(task, self.preset_dir)
        except ArtifactIOError as e:
            task_log.warning("preset_write_failed", error=str(e), path=e.path)
            return PipelineOutcome.PRESET_FAILED

        try:
            return await self._transcode_and_upload(task, preset, output, task_log)
        finally:
            self._cleanup(preset, output, task_log)

    async def _transcode_and_upload(
        self, task: Task, preset: PresetFile, output: Path, task_log: Any
    ) -> PipelineOutcome:
        try:
            await self.transcoder.execute(task, preset, output, self.shutdown)
        except ShutdownRequested:
            task_log.info("transcode_cancelled", reason=self.shutdown.reason)
            return PipelineOutcome.CANCELLED
        except ExecutionFailure as e:
            task_log.warning(
                "transcode_failed", error=str(e), command=e.command, exit_code=e.exit_code
            )
            return PipelineOutcome.TRANSCODE_FAILED

        task_log.info("transcode_finished", output=str(output))

        try:
            bytes_sent = await run_until_shutdown(
                self.client.upload_artifact(task, output), self.shutdown
            )
        except ShutdownRequested:
            task_log.info("upload_cancelled", reason=self.shutdown.reason)
            return PipelineOutcome.CANCELLED
        except (TransportError, ArtifactIOError) as e:
            task_log.warning("upload_failed", error=str(e), error_type=type(e).__name__)
            return PipelineOutcome.UPLOAD_FAILED

        task_log.info("task_completed", bytes_sent=bytes_sent)
        return PipelineOutcome.COMPLETED

    def _cleanup(self, preset: PresetFile, output: Path, task_log: Any) -> None:
        try:
            preset.release()
        except OSError as e:
            task_log.error("preset_cleanup_failed", path=str(preset.path), error=str(e))
        try:
            removed = remove_quietly(output)
        except OSError as e:
            task_log.error("artifact_cleanup_failed", path=str(output), error=str(e))
            return
        if removed:
            task_log.debug("artifact_removed", path=str(output))
