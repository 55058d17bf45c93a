"""Coordinator HTTP client.

This module provides the two calls the worker makes against the coordinator:

    GET  /task       -> acquire one task (200 = task JSON, anything else = no work)
    POST /task/done  -> upload the finished artifact as streamed multipart content

Architecture Pattern:
    Simple HTTP client wrapper - no retry logic (the scheduler's backoff
    handles no-work and transport failures)
    Async-only interface using httpx.AsyncClient
    Independent timeouts: acquisition is short, uploads are long

Dependencies:
    - httpx: Async HTTP client library

Usage:
    from himawari_worker.clients.coordinator import CoordinatorClient

    client = CoordinatorClient("10.0.0.5:8080", threads_hint=4)
    task = await client.acquire_task()
    ...
    await client.close()
"""

import asyncio
from pathlib import Path
from typing import Any

import httpx

from himawari_worker.exceptions import (
    ArtifactIOError,
    NoWorkAvailable,
    ProtocolViolation,
    TransportError,
)
from himawari_worker.schemas.task import Task, decode_task
from himawari_worker.utils.logging import get_logger
from himawari_worker.utils.multipart import MultipartArtifactStream

log = get_logger(__name__)

ACQUIRE_PATH = "/task"
SUBMIT_PATH = "/task/done"
THREADS_HEADER = "X-Himawari-Threads"


def _status_text(response: httpx.Response) -> str:
    """Format the status the way it is reported in errors, e.g. "503 Service Unavailable"."""
    reason = response.reason_phrase
    return f"{response.status_code} {reason}" if reason else str(response.status_code)


class CoordinatorClient:
    """Client for the coordinator's task endpoints.

    Attributes:
        base_url: http://{host}
        threads_hint: Value sent in X-Himawari-Threads (advisory only)
        acquire_timeout: Seconds allowed for GET /task
        upload_timeout: Seconds allowed for POST /task/done
        client: Async HTTP client for making requests

    Example:
        >>> client = CoordinatorClient("localhost:8080")
        >>> task = await client.acquire_task()
        >>> await client.close()
    """

    def __init__(
        self,
        host: str,
        threads_hint: int = 0,
        acquire_timeout: float = 10.0,
        upload_timeout: float = 3600.0,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: Any = None,
    ) -> None:
        self.base_url = f"http://{host}"
        self.threads_hint = threads_hint
        self.acquire_timeout = acquire_timeout
        self.upload_timeout = upload_timeout
        self.log = logger if logger is not None else log
        self.client = httpx.AsyncClient(base_url=self.base_url, transport=transport)

    async def _send(self, method: str, path: str, timeout: float, **kwargs: Any) -> httpx.Response:
        """Send one request under a total deadline.

        httpx timeouts bound each network operation; the outer deadline bounds
        the whole exchange, including the time spent streaming the body.

        Raises:
            TransportError: On any httpx failure or when the deadline passes
        """
        try:
            return await asyncio.wait_for(
                self.client.request(method, path, timeout=timeout, **kwargs),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransportError(f"{method} {path} timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} failed: {type(e).__name__}: {e}") from e

    async def acquire_task(self) -> Task:
        """Ask the coordinator for one task.

        Returns:
            The decoded, validated Task

        Raises:
            NoWorkAvailable: Coordinator answered with a non-200 status
            ProtocolViolation: 200 with an undecodable body or an empty/unsafe id
            TransportError: Request could not be sent or timed out
        """
        response = await self._send(
            "GET",
            ACQUIRE_PATH,
            self.acquire_timeout,
            headers={THREADS_HEADER: str(self.threads_hint)},
        )

        if response.status_code != httpx.codes.OK:
            raise NoWorkAvailable(response.status_code)

        try:
            return decode_task(response.content)
        except ProtocolViolation:
            self.log.debug(
                "acquire_response_rejected",
                status_code=response.status_code,
                body=response.text[:300],
            )
            raise

    async def submit_result(self, task: Task, body: MultipartArtifactStream) -> None:
        """Send a multipart artifact stream to the coordinator.

        The request consumes ``body`` while its producer is still running;
        use upload_artifact unless the producer is managed elsewhere.

        Raises:
            TransportError: Non-200 status, or the request failed to send
            ArtifactIOError: The producer failed while the body was streaming
        """
        response = await self._send(
            "POST",
            SUBMIT_PATH,
            self.upload_timeout,
            content=body,
            headers={"Content-Type": body.content_type},
        )

        if response.status_code != httpx.codes.OK:
            raise TransportError(
                f"bad status: {_status_text(response)}", status_code=response.status_code
            )

    async def upload_artifact(
        self,
        task: Task,
        artifact_path: Path,
        chunk_size: int | None = None,
    ) -> int:
        """Stream an artifact to POST /task/done without buffering it.

        Runs the body producer and the request concurrently: the request only
        finishes once the producer closes the stream, and the producer only
        finishes once the request has consumed every chunk.

        Args:
            task: Task the artifact belongs to (its id is the "uuid" field)
            artifact_path: Output file written by the transcoder
            chunk_size: Override for the read size (bytes)

        Returns:
            Number of artifact bytes sent

        Raises:
            TransportError: Non-200 status, or the request failed to send
            ArtifactIOError: The artifact could not be opened or read, or the
                request ended before the whole body was sent
        """
        options: dict[str, Any] = {"logger": self.log}
        if chunk_size is not None:
            options["chunk_size"] = chunk_size
        body = MultipartArtifactStream(task.id, artifact_path, **options)

        producer = asyncio.create_task(body.produce())
        try:
            await self.submit_result(task, body)
        finally:
            if not producer.done():
                producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)

        if body.error is not None:
            raise ArtifactIOError(f"artifact stream failed: {body.error}", path=str(artifact_path))
        if not body.completed:
            raise ArtifactIOError(
                "upload ended before the artifact was fully sent", path=str(artifact_path)
            )

        self.log.info("upload_accepted", task_id=task.id, bytes_sent=body.bytes_sent)
        return body.bytes_sent

    async def close(self) -> None:
        """Close HTTP client connections."""
        await self.client.aclose()
