"""
Post-commit change notifications.

Every committed change is announced as ``{"type": kind, "id": ident}``. The
cashier screen and the waiter app refresh the matching view when they get it.
"""
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("pos.notifications")

Listener = Callable[[Dict[str, Any]], None]

UPDATES_CHANNEL = "pos:updates"


class ChangeBus:
    def __init__(self, redis=None, channel: str = UPDATES_CHANNEL):
        self.redis = redis
        self.channel = channel
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def notify(self, kind: str, ident: Optional[Any] = None) -> Dict[str, Any]:
        event = {"type": kind, "id": ident}
        logger.debug(f"Update: {kind} {ident if ident is not None else ''}")

        with self._lock:
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Change listener failed for {kind}")

        if self.redis is not None:
            self.redis.publish_event(self.channel, event)

        return event
