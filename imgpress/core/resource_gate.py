"""Token-addressed file access confined to the managed temp directory."""
from __future__ import annotations

import mimetypes
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from .file_registry import FileRegistry
from .logging import core_logger

TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{8,128}$")
DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class GateResponse:
    status: int
    path: Optional[Path] = None
    content_type: Optional[str] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status == 200


class ResourceGate:
    def __init__(self, registry: FileRegistry, root: Path | str):
        self.registry = registry
        self.root = Path(root)

    def _confined(self, path: Path) -> bool:
        try:
            path.resolve().relative_to(self.root.resolve())
        except ValueError:
            return False
        return True

    def resolve(self, token: Optional[str]) -> GateResponse:
        try:
            return self._resolve(token)
        except Exception as e:  # noqa: BLE001 - never take down the host on a hostile token
            core_logger.exception(f"gate error token={token!r}: {e}")
            return GateResponse(500, detail="Internal error")

    def _resolve(self, token: Optional[str]) -> GateResponse:
        if not token:
            return GateResponse(400, detail="Missing id")
        if not TOKEN_RE.match(token):
            return GateResponse(400, detail="Malformed id")
        artifact = self.registry.resolve(token)
        if artifact is None:
            return GateResponse(404, detail="File not found")
        path = Path(artifact.path)
        if not self._confined(path):
            core_logger.warning(f"Access denied to file outside temp directory: {path}")
            return GateResponse(403, detail="Access denied")
        if not path.is_file():
            core_logger.warning(f"File not found: {path}")
            return GateResponse(404, detail="File not found")
        content_type = mimetypes.guess_type(artifact.filename)[0] or mimetypes.guess_type(path.name)[0]
        return GateResponse(200, path=path, content_type=content_type or DEFAULT_CONTENT_TYPE)

    def read_bytes(self, token: Optional[str]) -> Tuple[GateResponse, Optional[bytes]]:
        resp = self.resolve(token)
        if not resp.ok:
            return resp, None
        try:
            return resp, resp.path.read_bytes()
        except OSError as e:
            core_logger.warning(f"read failed {resp.path}: {e}")
            return GateResponse(404, detail="File not found"), None


__all__ = ["ResourceGate", "GateResponse", "TOKEN_RE"]
