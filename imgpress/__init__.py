"""
imgpress

Compress images with whichever tool gives the smallest result. Compression
runs in an isolated worker subprocess; results are handed out as opaque
tokens and served back only from the managed temp directory.
"""

from .core.config import Settings, load_settings
from .core.coordinator import Coordinator
from .core.file_registry import FileRegistry
from .core.models import CompressionOptions, CompressionStats, StoredArtifact, WorkerState
from .core.resource_gate import ResourceGate, GateResponse
from .core.service import CompressionService, build_service

__version__ = "0.1.0"

__all__ = [
    "Settings",
    "load_settings",
    "Coordinator",
    "FileRegistry",
    "CompressionOptions",
    "CompressionStats",
    "StoredArtifact",
    "WorkerState",
    "ResourceGate",
    "GateResponse",
    "CompressionService",
    "build_service",
]
