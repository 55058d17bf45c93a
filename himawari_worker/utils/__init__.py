"""Cross-cutting utilities for the worker.

Modules:
    logging: structlog configuration.
    multipart: Streaming multipart body for artifact uploads.
    transcoder: ffmpeg execution engine.
    workdir: Output artifact paths.
"""
