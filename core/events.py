"""
In-process realtime channel for the backend gateway.

Listeners subscribe to a topic and get a Subscription back; publishing calls
every live listener synchronously, in subscription order. A failing listener
is logged and skipped so one broken view never blocks the others.

Topics used by the gateway:
- "auth"            -> AuthStateChanged
- "delete:<table>"  -> RowDeleted (IdentityRevoked for the users table)
"""
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from core.config import logger

AUTH_TOPIC = "auth"

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"


def deletion_topic(table: str) -> str:
    return f"delete:{table}"


@dataclass(frozen=True)
class AuthStateChanged:
    event: str
    identity_id: Optional[str]


@dataclass(frozen=True)
class RowDeleted:
    table: str
    row_id: str


@dataclass(frozen=True)
class IdentityRevoked(RowDeleted):
    """A users row was deleted; any session bound to it must end"""


class Subscription:
    def __init__(self, bus: "EventBus", topic: str, callback: Callable[[Any], None]):
        self._bus = bus
        self.topic = topic
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._bus._remove(self)


class EventBus:
    def __init__(self):
        self._subs: Dict[str, List[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, callback: Callable[[Any], None]) -> Subscription:
        sub = Subscription(self, topic, callback)
        with self._lock:
            self._subs.setdefault(topic, []).append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subs.get(sub.topic) or []
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subs.pop(sub.topic, None)

    def listener_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subs.get(topic) or [])

    def publish(self, topic: str, payload: Any) -> int:
        with self._lock:
            subs = list(self._subs.get(topic) or [])
        delivered = 0
        for sub in subs:
            if not sub.active:
                continue
            try:
                sub.callback(payload)
                delivered += 1
            except Exception as ex:
                logger.warning(f"event listener failed on {topic}: {ex}")
        return delivered
