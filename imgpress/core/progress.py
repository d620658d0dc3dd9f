"""Explicit subscriber registry for fire-and-forget progress notifications."""
from __future__ import annotations

import threading
from typing import Callable, List

from .logging import core_logger
from .models import ProgressEvent

Subscriber = Callable[[ProgressEvent], None]


class ProgressBroadcaster:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def __len__(self) -> int:
        return len(self._subscribers)

    def publish(self, event: ProgressEvent):
        with self._lock:
            targets = list(self._subscribers)
        for cb in targets:
            try:
                cb(event)
            except Exception as e:  # noqa: BLE001 - best-effort broadcast
                core_logger.warning(f"progress subscriber failed ({event.status} {event.filename}): {e}")


__all__ = ["ProgressBroadcaster", "Subscriber"]
