"""Pydantic schemas for coordinator payloads."""

from himawari_worker.schemas.task import FFMPEG_COMMAND, Task, decode_task

__all__ = [
    "FFMPEG_COMMAND",
    "Task",
    "decode_task",
]
