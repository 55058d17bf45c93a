"""Himawari transcoding worker.

This package polls a himawari coordinator for transcoding tasks, runs each one
with ffmpeg under a bounded worker pool, and streams the result back.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
