"""Shared pytest fixtures for worker tests.

This module provides:
- A fake ffmpeg executable (real subprocess, scripted via environment variables)
- A fake coordinator served through httpx.MockTransport
- Sample task payloads in the coordinator's wire format
"""

import json
import os
import stat
import sys
from pathlib import Path
from unittest.mock import MagicMock

import httpx
import pytest

from himawari_worker.clients.coordinator import CoordinatorClient
from himawari_worker.schemas.task import Task

FAKE_FFMPEG_SOURCE = """\
#!{python}
import json
import os
import sys
import time

args = sys.argv[1:]
call_log = os.environ.get("FAKE_FFMPEG_LOG")
if call_log:
    preset_data = None
    if "-fpre" in args:
        preset_path = args[args.index("-fpre") + 1]
        if os.path.exists(preset_path):
            with open(preset_path) as f:
                preset_data = f.read()
    with open(call_log, "a") as f:
        f.write(json.dumps({{"args": args, "preset_data": preset_data}}) + "\\n")

mode = os.environ.get("FAKE_FFMPEG_MODE", "ok")
if mode == "sleep":
    time.sleep(float(os.environ.get("FAKE_FFMPEG_SLEEP", "30")))
if mode == "fail":
    sys.exit(3)

with open(args[-1], "wb") as out:
    out.write(b"fake-video-frame" * int(os.environ.get("FAKE_FFMPEG_FRAMES", "1000")))
"""


class FakeFFmpeg:
    """Handle on the fake ffmpeg script and its call log."""

    def __init__(self, binary: Path, call_log: Path) -> None:
        self.binary = binary
        self.call_log = call_log

    @property
    def calls(self) -> list[dict]:
        if not self.call_log.exists():
            return []
        return [json.loads(line) for line in self.call_log.read_text().splitlines() if line]


@pytest.fixture
def fake_ffmpeg(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeFFmpeg:
    """Install an executable that behaves like ffmpeg for the pipeline.

    Behaviour is selected with FAKE_FFMPEG_MODE: ok (default), fail (exit 3),
    sleep (sleeps FAKE_FFMPEG_SLEEP seconds, then writes the output).
    """
    tools = tmp_path / "tools"
    tools.mkdir()
    binary = tools / "ffmpeg"
    binary.write_text(FAKE_FFMPEG_SOURCE.format(python=sys.executable))
    binary.chmod(binary.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    call_log = tmp_path / "ffmpeg-calls.jsonl"
    monkeypatch.setenv("FAKE_FFMPEG_LOG", str(call_log))
    monkeypatch.delenv("FAKE_FFMPEG_MODE", raising=False)
    return FakeFFmpeg(binary, call_log)


class FakeCoordinator:
    """In-memory coordinator answering GET /task and POST /task/done.

    Attributes:
        tasks: Queued (status, body) responses for GET /task; when empty the
            coordinator answers 204
        submit_status: Status returned by POST /task/done
        submissions: Recorded uploads (headers and raw body)
        acquire_headers: Headers of every GET /task request
    """

    def __init__(self) -> None:
        self.tasks: list[tuple[int, bytes]] = []
        self.submit_status = 200
        self.submissions: list[dict] = []
        self.acquire_headers: list[httpx.Headers] = []

    def queue_task(self, payload: dict, status: int = 200) -> None:
        self.tasks.append((status, json.dumps(payload).encode()))

    def queue_raw(self, body: bytes, status: int = 200) -> None:
        self.tasks.append((status, body))

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET" and request.url.path == "/task":
            self.acquire_headers.append(request.headers)
            if not self.tasks:
                return httpx.Response(204)
            status, body = self.tasks.pop(0)
            return httpx.Response(status, content=body)
        if request.method == "POST" and request.url.path == "/task/done":
            self.submissions.append({"headers": request.headers, "body": request.content})
            return httpx.Response(self.submit_status)
        return httpx.Response(404)

    def client(self, **kwargs) -> CoordinatorClient:
        return CoordinatorClient(
            "coordinator.test:8080",
            transport=httpx.MockTransport(self.handler),
            **kwargs,
        )


@pytest.fixture
def coordinator() -> FakeCoordinator:
    return FakeCoordinator()


@pytest.fixture
def quiet_log() -> MagicMock:
    """No-op logging sink; records calls for assertions."""
    return MagicMock()


@pytest.fixture
def task_payload() -> dict:
    """Acquire-response payload in the coordinator's wire format."""
    return {
        "Id": "abc",
        "Size": 1048576,
        "Name": "episode-01",
        "PresetData": "x=1",
        "Command": "ffmpeg",
        "Args": ["-i", "in.mp4"],
    }


@pytest.fixture
def sample_task(task_payload: dict) -> Task:
    return Task.model_validate(task_payload)


@pytest.fixture(autouse=True)
def isolated_worker_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Clear HIMAWARI_* variables so the host environment cannot leak into tests."""
    for name in list(os.environ):
        if name.startswith("HIMAWARI_"):
            monkeypatch.delenv(name, raising=False)
