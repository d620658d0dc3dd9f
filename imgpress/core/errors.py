"""Centralized custom exception hierarchy for the compression subsystem."""
from __future__ import annotations

from typing import Optional


class CompressorError(Exception):
    """Base class for all compressor related errors."""


class ConfigError(CompressorError):
    pass


class InitializationError(CompressorError):  # temp dir / spawn / handshake
    pass


class CoordinatorStateError(CompressorError):
    """Submission attempted while the worker is not accepting requests."""


class RequestTimeoutError(CompressorError):
    pass


class WorkerCrashError(CompressorError):
    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code


class ShutdownError(CompressorError):
    pass


class SerializationError(CompressorError):
    """Malformed or unexpected cross-process payload."""

    def __init__(self, message: str, correlation_id: Optional[str] = None):
        super().__init__(message)
        self.correlation_id = correlation_id


class ChannelClosedError(CompressorError):
    pass


class BackendError(CompressorError):
    pass


class CompressionFailedError(CompressorError):
    pass


__all__ = [
    "CompressorError",
    "ConfigError",
    "InitializationError",
    "CoordinatorStateError",
    "RequestTimeoutError",
    "WorkerCrashError",
    "ShutdownError",
    "SerializationError",
    "ChannelClosedError",
    "BackendError",
    "CompressionFailedError",
]
