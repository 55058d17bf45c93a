"""Streaming multipart/form-data body for artifact uploads.

Artifacts can be many gigabytes, so the body is never built in memory. A
producer coroutine reads the artifact in chunks and hands them to the HTTP
request through a bounded asyncio.Queue; the request consumes the queue as its
body while the producer is still reading.

Body layout (two parts, fixed order):

    --{boundary}
    Content-Disposition: form-data; name="uuid"

    {task id}
    --{boundary}
    Content-Disposition: form-data; name="videodata"; filename="{artifact name}"
    Content-Type: application/octet-stream

    {artifact bytes}
    --{boundary}--

Backpressure: the producer blocks while the queue is full. Termination: the
producer always closes the stream, with an end marker on success or with the
recorded error on failure; the consumer re-raises that error so a broken
artifact fails the upload instead of being sent truncated.

Usage:
    body = MultipartArtifactStream(task.id, artifact_path)
    producer = asyncio.create_task(body.produce())
    await client.post(url, content=body, headers={"Content-Type": body.content_type})
"""

import asyncio
import binascii
import os
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from himawari_worker.exceptions import ArtifactIOError
from himawari_worker.utils.logging import get_logger

log = get_logger(__name__)

ID_FIELD = "uuid"
FILE_FIELD = "videodata"
FILE_CONTENT_TYPE = "application/octet-stream"

DEFAULT_CHUNK_SIZE = 256 * 1024
DEFAULT_QUEUE_CHUNKS = 8

_END = object()


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def new_boundary() -> str:
    return binascii.hexlify(os.urandom(16)).decode("ascii")


class MultipartArtifactStream:
    """Producer/consumer pipe carrying one multipart upload body.

    Attributes:
        boundary: Multipart boundary string
        bytes_sent: Artifact bytes handed to the consumer so far
        completed: True once the producer delivered the closing boundary
        error: Failure recorded by the producer, if any
    """

    def __init__(
        self,
        task_id: str,
        artifact_path: Path,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_chunks: int = DEFAULT_QUEUE_CHUNKS,
        boundary: str | None = None,
        logger: Any = None,
    ) -> None:
        self.task_id = task_id
        self.artifact_path = artifact_path
        self.chunk_size = chunk_size
        self.boundary = boundary or new_boundary()
        self.bytes_sent = 0
        self.completed = False
        self.error: BaseException | None = None
        self.log = logger if logger is not None else log
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max_chunks)

    @property
    def content_type(self) -> str:
        return f"multipart/form-data; boundary={self.boundary}"

    def _field_header(self) -> bytes:
        return (
            f"--{self.boundary}\r\n"
            f'Content-Disposition: form-data; name="{ID_FIELD}"\r\n'
            "\r\n"
            f"{self.task_id}\r\n"
        ).encode("utf-8")

    def _file_header(self) -> bytes:
        return (
            f"--{self.boundary}\r\n"
            f'Content-Disposition: form-data; name="{FILE_FIELD}"; '
            f'filename="{_quote(self.artifact_path.name)}"\r\n'
            f"Content-Type: {FILE_CONTENT_TYPE}\r\n"
            "\r\n"
        ).encode("utf-8")

    def _closing(self) -> bytes:
        return f"\r\n--{self.boundary}--\r\n".encode("ascii")

    async def produce(self) -> None:
        """Write both parts into the pipe, then close it.

        Never raises for I/O problems: they are recorded in ``error`` and
        delivered to the consumer in place of the end marker.
        """
        try:
            await self._queue.put(self._field_header())
            await self._queue.put(self._file_header())
            try:
                f = open(self.artifact_path, "rb")  # noqa: ASYNC230
            except OSError as e:
                raise ArtifactIOError(
                    f"cannot open artifact: {e}", path=str(self.artifact_path)
                ) from e
            with f:
                while True:
                    try:
                        chunk = await asyncio.to_thread(f.read, self.chunk_size)
                    except OSError as e:
                        raise ArtifactIOError(
                            f"cannot read artifact: {e}", path=str(self.artifact_path)
                        ) from e
                    if not chunk:
                        break
                    await self._queue.put(chunk)
                    self.bytes_sent += len(chunk)
            await self._queue.put(self._closing())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.error = e
            self.log.warning(
                "upload_stream_write_failed",
                task_id=self.task_id,
                path=str(self.artifact_path),
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._queue.put(e)
            return
        self.completed = True
        await self._queue.put(_END)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        """Consumer side, used directly as the request body."""
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            if isinstance(item, BaseException):
                raise item
            yield item
