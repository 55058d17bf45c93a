"""Filesystem path helpers for the worker's output directory.

Every task writes exactly one artifact, named after its id, directly inside the
configured working directory:

    {work_dir}/
    ├── 3f2a...c1.mp4   (in-flight task)
    └── 9b07...e4.mp4   (in-flight task)

Names are disjoint by task id, so concurrent pipelines never collide and an
operator can recognise orphaned artifacts after a crash.

Security:
    Task ids come from the network. Resolved paths are verified to stay
    within the working directory.
"""

from pathlib import Path

__all__ = [
    "ARTIFACT_EXTENSION",
    "artifact_path",
    "find_orphaned_artifacts",
    "remove_quietly",
]

# Container the coordinator expects back.
ARTIFACT_EXTENSION = ".mp4"


def _verify_path_in_work_dir(path: Path, work_dir: Path) -> None:
    """Verify that the resolved path stays inside the working directory.

    Raises:
        ValueError: If the path escapes work_dir
    """
    resolved = path.resolve()
    work_dir_resolved = work_dir.resolve()

    if resolved.parent != work_dir_resolved:
        raise ValueError(
            f"Path traversal detected: resolved path '{resolved}' "
            f"is outside work directory '{work_dir_resolved}'"
        )


def artifact_path(work_dir: Path, task_id: str) -> Path:
    """Get the deterministic output path for a task.

    Does not create the file.

    Args:
        work_dir: Configured working directory
        task_id: Coordinator-supplied task id (non-empty)

    Returns:
        {work_dir}/{task_id}.mp4

    Raises:
        ValueError: If task_id is empty or the path would leave work_dir

    Example:
        >>> artifact_path(Path("/tmp"), "abc")
        PosixPath('/tmp/abc.mp4')
    """
    if not task_id:
        raise ValueError("task_id cannot be empty")

    path = work_dir / f"{task_id}{ARTIFACT_EXTENSION}"
    _verify_path_in_work_dir(path, work_dir)
    return path


def find_orphaned_artifacts(work_dir: Path) -> list[Path]:
    """List artifacts left behind in work_dir, e.g. by a crashed worker.

    Only called at startup, before any pipeline runs, so every match is stale.
    """
    return sorted(p for p in work_dir.glob(f"*{ARTIFACT_EXTENSION}") if p.is_file())


def remove_quietly(path: Path) -> bool:
    """Delete a file if it exists.

    Returns:
        True if a file was removed, False if there was nothing to remove.

    Raises:
        OSError: If the file exists but cannot be removed
    """
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True
