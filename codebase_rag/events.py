"""
Minimal synchronous event channel.

Components receive an EventBus at construction instead of inheriting from an
emitter. Events are observational only: nothing in the engine depends on a
subscriber for correctness, so a failing callback is logged and skipped.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable

LOG = logging.getLogger("codebase_rag.events")

Callback = Callable[[str, Any], None]


class EventBus:
    """Callback list keyed by event name."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callback]] = defaultdict(list)

    def subscribe(self, event: str, callback: Callback) -> None:
        self._subscribers[event].append(callback)

    def unsubscribe(self, event: str, callback: Callback) -> None:
        try:
            self._subscribers[event].remove(callback)
        except ValueError:
            pass

    def emit(self, event: str, payload: Any = None) -> None:
        for callback in list(self._subscribers.get(event, ())):
            try:
                callback(event, payload)
            except Exception as exc:
                LOG.warning("Event handler for %s failed: %s", event, exc)

    def subscriber_count(self, event: str) -> int:
        return len(self._subscribers.get(event, ()))
