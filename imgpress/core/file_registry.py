"""In-memory registry mapping opaque tokens to compressed artifacts on disk."""
from __future__ import annotations

import os
import secrets
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .logging import core_logger
from .models import StoredArtifact


class FileRegistry:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._lock = threading.RLock()
        self._artifacts: Dict[str, StoredArtifact] = {}
        self._clock = clock

    def _mint(self) -> str:
        # caller holds self._lock; 144 random bits, checked only against live entries
        token = secrets.token_urlsafe(18)
        while token in self._artifacts:
            token = secrets.token_urlsafe(18)
        return token

    def register(self, path: Path | str, filename: str, tool: str, original_size: int, compressed_size: int) -> str:
        with self._lock:
            token = self._mint()
            self._artifacts[token] = StoredArtifact(
                token=token,
                path=str(path),
                filename=filename,
                tool=tool,
                created_at=self._clock(),
                original_size=original_size,
                compressed_size=compressed_size,
            )
        core_logger.debug(f"registered token={token} tool={tool} file={filename}")
        return token

    def resolve(self, token: str) -> Optional[StoredArtifact]:
        with self._lock:
            return self._artifacts.get(token)

    def list(self) -> List[StoredArtifact]:
        with self._lock:
            return list(self._artifacts.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._artifacts)

    def __contains__(self, token: object) -> bool:
        with self._lock:
            return token in self._artifacts

    def evict(self, token: str) -> bool:
        """Remove file and entry; False when the token is unknown (already evicted)."""
        with self._lock:
            artifact = self._artifacts.pop(token, None)
        if artifact is None:
            return False
        self._unlink(artifact)
        return True

    def sweep(self, max_age_hours: float) -> int:
        """Evict every entry created at or before now - max_age_hours (best effort)."""
        cutoff = self._clock() - max_age_hours * 3600.0
        with self._lock:
            stale = [a for a in self._artifacts.values() if a.created_at <= cutoff]
            for a in stale:
                self._artifacts.pop(a.token, None)
        removed = 0
        for a in stale:
            try:
                self._unlink(a, strict=True)
            except OSError as e:
                core_logger.warning(f"sweep: could not delete {a.path}: {e}")
            removed += 1
        if removed:
            core_logger.info(f"sweep removed {removed} artifact(s) older than {max_age_hours}h")
        return removed

    @staticmethod
    def _unlink(artifact: StoredArtifact, strict: bool = False):
        try:
            os.unlink(artifact.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            if strict:
                raise
            core_logger.warning(f"could not delete {artifact.path}: {e}")


__all__ = ["FileRegistry"]
