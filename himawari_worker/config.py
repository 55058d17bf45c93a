"""Configuration management for the transcoding worker.

This module provides configuration loading from environment variables. The
coordinator host and working directory come from the command line; everything
else has a documented default and can be tuned per machine.

Environment Variables:
    HIMAWARI_POOL_SIZE: Concurrent pipelines (default: derived from CPU count)
    HIMAWARI_CORES_PER_SLOT: CPU cores budgeted per ffmpeg process (default: 8)
    HIMAWARI_ACQUIRE_TIMEOUT_SECONDS: GET /task timeout (default: 10)
    HIMAWARI_UPLOAD_TIMEOUT_SECONDS: POST /task/done timeout (default: 3600)
    HIMAWARI_COMMAND_TIMEOUT_SECONDS: Hard ceiling per ffmpeg run (default: 86400)
    HIMAWARI_POLL_INTERVAL_SECONDS: Default backoff interval (default: 1)
    HIMAWARI_POLL_INTERVAL_MAX_SECONDS: Backoff ceiling (default: 1000)
    HIMAWARI_FFMPEG_BINARY: Executable run for the "ffmpeg" command (default: ffmpeg)
    HIMAWARI_TOOL_OUTPUT: discard|inherit ffmpeg stdout/stderr (default: discard)
    LOG_LEVEL: Minimum log level (default: INFO)

Usage:
    from himawari_worker.config import load_settings

    settings = load_settings("10.0.0.5:8080", "/srv/encode")
"""

import os
from dataclasses import dataclass
from pathlib import Path

import httpx

from himawari_worker.exceptions import ConfigurationError

DEFAULT_WORK_DIR = "/tmp"
DEFAULT_CORES_PER_SLOT = 8
DEFAULT_ACQUIRE_TIMEOUT = 10.0
DEFAULT_UPLOAD_TIMEOUT = 3600.0
DEFAULT_COMMAND_TIMEOUT = 24 * 3600.0
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_POLL_INTERVAL_MAX = 1000.0
TOOL_OUTPUT_MODES = ("discard", "inherit")


def _read_number(name: str, default: float, minimum: float) -> float:
    """Read a positive number from the environment.

    Raises:
        ConfigurationError: If the value is not a number or is below minimum.
    """
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got: {raw!r}") from e
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got: {value}")
    return value


def get_cores_per_slot() -> int:
    """Get the number of CPU cores budgeted for each concurrent ffmpeg process.

    Environment Variable:
        HIMAWARI_CORES_PER_SLOT: Cores per pipeline slot (default: 8)
    """
    return int(_read_number("HIMAWARI_CORES_PER_SLOT", DEFAULT_CORES_PER_SLOT, 1))


def derive_pool_size(cpu_count: int | None, cores_per_slot: int) -> int:
    """Derive the pipeline concurrency bound from available parallelism.

    Each slot runs a CPU-heavy external process, so the core count is scaled
    down by cores_per_slot. Never returns less than one.

    Example:
        >>> derive_pool_size(32, 8)
        4
        >>> derive_pool_size(4, 8)
        1
    """
    return max(1, (cpu_count or 1) // max(1, cores_per_slot))


def get_pool_size() -> int:
    """Get the maximum number of concurrent task pipelines.

    Environment Variable:
        HIMAWARI_POOL_SIZE: Explicit override (minimum 1)

    Returns:
        The override if set, otherwise os.cpu_count() // cores per slot (minimum 1).
    """
    if os.getenv("HIMAWARI_POOL_SIZE", "").strip():
        return int(_read_number("HIMAWARI_POOL_SIZE", 1, 1))
    return derive_pool_size(os.cpu_count(), get_cores_per_slot())


def get_acquire_timeout() -> float:
    """Get the GET /task timeout in seconds (default: 10)."""
    return _read_number("HIMAWARI_ACQUIRE_TIMEOUT_SECONDS", DEFAULT_ACQUIRE_TIMEOUT, 0.001)


def get_upload_timeout() -> float:
    """Get the POST /task/done timeout in seconds (default: 3600).

    Artifacts range from megabytes to many gigabytes, so this is much longer
    than the acquire timeout.
    """
    return _read_number("HIMAWARI_UPLOAD_TIMEOUT_SECONDS", DEFAULT_UPLOAD_TIMEOUT, 0.001)


def get_command_timeout() -> float:
    """Get the hard ceiling for one ffmpeg run in seconds (default: 24 hours)."""
    return _read_number("HIMAWARI_COMMAND_TIMEOUT_SECONDS", DEFAULT_COMMAND_TIMEOUT, 0.001)


def get_poll_interval() -> float:
    """Get the default backoff interval in seconds (default: 1)."""
    return _read_number("HIMAWARI_POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL, 0.001)


def get_poll_interval_max() -> float:
    """Get the backoff ceiling in seconds (default: 1000)."""
    return _read_number("HIMAWARI_POLL_INTERVAL_MAX_SECONDS", DEFAULT_POLL_INTERVAL_MAX, 0.001)


def get_ffmpeg_binary() -> str:
    """Get the executable launched for tasks whose command is "ffmpeg"."""
    return os.getenv("HIMAWARI_FFMPEG_BINARY", "").strip() or "ffmpeg"


def get_tool_output() -> str:
    """Get whether ffmpeg's stdout/stderr are discarded or inherited.

    Raises:
        ConfigurationError: If HIMAWARI_TOOL_OUTPUT is not discard or inherit.
    """
    mode = os.getenv("HIMAWARI_TOOL_OUTPUT", "discard").strip().lower() or "discard"
    if mode not in TOOL_OUTPUT_MODES:
        raise ConfigurationError(
            f"HIMAWARI_TOOL_OUTPUT must be one of {', '.join(TOOL_OUTPUT_MODES)}, got: {mode!r}"
        )
    return mode


def get_log_level() -> str:
    """Get the minimum log level name (default: INFO)."""
    return os.getenv("LOG_LEVEL", "INFO")


@dataclass(frozen=True)
class WorkerSettings:
    """Worker configuration resolved once at startup."""

    host: str
    work_dir: Path
    pool_size: int
    acquire_timeout: float
    upload_timeout: float
    command_timeout: float
    poll_interval: float
    poll_interval_max: float
    ffmpeg_binary: str
    tool_output: str


def load_settings(host: str, work_dir: str | None = None) -> WorkerSettings:
    """Load and validate worker configuration.

    Args:
        host: Coordinator host[:port], without scheme
        work_dir: Directory for output artifacts (default: /tmp)

    Returns:
        WorkerSettings with every value resolved.

    Raises:
        ConfigurationError: If the host is empty or malformed, the work
            directory does not exist, or an environment variable is invalid.
    """
    host = (host or "").strip()
    if not host:
        raise ConfigurationError("coordinator host is required")
    if "://" in host:
        raise ConfigurationError(f"coordinator host must not include a scheme, got: {host!r}")
    try:
        httpx.URL(f"http://{host}")
    except httpx.InvalidURL as e:
        raise ConfigurationError(
            f"coordinator host is not a valid host[:port]: {host!r} ({e})"
        ) from e

    directory = Path(work_dir or DEFAULT_WORK_DIR)
    if not directory.is_dir():
        raise ConfigurationError(f"work directory does not exist: {directory}")

    poll_interval = get_poll_interval()
    poll_interval_max = get_poll_interval_max()
    if poll_interval_max < poll_interval:
        raise ConfigurationError(
            "HIMAWARI_POLL_INTERVAL_MAX_SECONDS must not be smaller than "
            "HIMAWARI_POLL_INTERVAL_SECONDS"
        )

    return WorkerSettings(
        host=host,
        work_dir=directory,
        pool_size=get_pool_size(),
        acquire_timeout=get_acquire_timeout(),
        upload_timeout=get_upload_timeout(),
        command_timeout=get_command_timeout(),
        poll_interval=poll_interval,
        poll_interval_max=poll_interval_max,
        ffmpeg_binary=get_ffmpeg_binary(),
        tool_output=get_tool_output(),
    )
