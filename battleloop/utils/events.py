"""
Event Bus
=========
Minimal observer registry shared by the engine and the progress monitor.

Listeners are plain callables taking one payload dict. A listener that
raises is logged and skipped so one bad subscriber cannot stall the loop.
"""
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Listener = Callable[[Dict[str, Any]], None]


class EventBus:

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> None:
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Listener) -> None:
        try:
            self._listeners[event].remove(listener)
        except ValueError:
            pass

    def emit(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        payload = payload or {}
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(payload)
            except Exception:
                logger.exception("Listener for '%s' raised", event)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def clear(self) -> None:
        self._listeners.clear()
