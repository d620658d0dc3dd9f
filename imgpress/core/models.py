"""Value types shared by the coordinator, the worker and the service layer."""
from __future__ import annotations
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ConfigError

DEFAULT_QUALITY = 0.6


class WorkerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class CompressionOptions:
    quality: float = DEFAULT_QUALITY
    max_width: Optional[int] = None
    max_height: Optional[int] = None
    preserve_exif: bool = False

    def __post_init__(self):
        if not (0 < self.quality <= 1):
            raise ConfigError(f"quality must be in (0, 1], got {self.quality}")
        for name in ("max_width", "max_height"):
            val = getattr(self, name)
            if val is not None and val <= 0:
                raise ConfigError(f"{name} must be positive, got {val}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CompressionOptions":
        data = data or {}
        quality = data.get("quality")
        return cls(
            quality=DEFAULT_QUALITY if quality is None else float(quality),
            max_width=data.get("max_width"),
            max_height=data.get("max_height"),
            preserve_exif=bool(data.get("preserve_exif", False)),
        )


@dataclass(frozen=True)
class CompressionRequest:
    correlation_id: str
    image: bytes
    filename: str
    options: CompressionOptions = field(default_factory=CompressionOptions)


@dataclass
class ToolResult:
    tool: str
    original_size: int
    compressed_size: int
    compression_ratio: float  # percent reduction
    duration_ms: float

    @classmethod
    def measure(cls, tool: str, original_size: int, compressed_size: int, duration_ms: float) -> "ToolResult":
        return cls(
            tool=tool,
            original_size=original_size,
            compressed_size=compressed_size,
            compression_ratio=reduction_percent(original_size, compressed_size),
            duration_ms=round(duration_ms, 3),
        )


@dataclass
class CompressionOutcome:
    """What a compression backend hands back for one image."""

    best_tool: str
    data: bytes
    results: List[ToolResult]
    total_duration_ms: float


@dataclass(frozen=True)
class CompressionResponse:
    correlation_id: str
    status: str  # "success" | "error"
    best_tool: Optional[str] = None
    data: Optional[bytes] = None
    results: List[ToolResult] = field(default_factory=list)
    total_duration_ms: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"


@dataclass(frozen=True)
class StoredArtifact:
    token: str
    path: str
    filename: str
    tool: str
    created_at: float
    original_size: int
    compressed_size: int

    @property
    def compression_ratio(self) -> float:
        return reduction_percent(self.original_size, self.compressed_size)


@dataclass
class CompressionStats:
    token: str
    filename: str
    best_tool: str
    original_size: int
    compressed_size: int
    compression_ratio: float
    total_duration_ms: float
    results: List[ToolResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ProgressEvent:
    filename: str
    status: str  # started | completed | error
    data: Dict[str, Any] = field(default_factory=dict)


def reduction_percent(original_size: int, compressed_size: int) -> float:
    if original_size <= 0:
        return 0.0
    return round((1 - compressed_size / original_size) * 100.0, 2)


__all__ = [
    "WorkerState",
    "CompressionOptions",
    "CompressionRequest",
    "CompressionResponse",
    "CompressionOutcome",
    "ToolResult",
    "StoredArtifact",
    "CompressionStats",
    "ProgressEvent",
    "reduction_percent",
    "DEFAULT_QUALITY",
]
