"""Session/event broadcaster

Turns session state transitions into typed events and fans them out to
subscribers (WebSocket connections, tests, ...).

- every event carries a per-session, monotonically increasing sequence and a
  wall-clock timestamp; device and ping events use their own global sequence
- delivery is at-most-once per subscriber, with no buffering or replay
- a subscriber whose delivery callback raises is torn down
- ``heartbeat`` pings live subscribers and tears down the ones that have not
  acknowledged within the heartbeat timeout
"""

from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from .config import HEARTBEAT_TIMEOUT_S
from .logger import get_logger, log_error

logger = get_logger("events")

# Event names
SCAN_STARTED = "scan:started"
SCAN_PROGRESS = "scan:progress"
FINGERPRINT_DETECTED = "fingerprint:detected"
SCAN_QUALITY = "scan:quality"
SCAN_COMPLETE = "scan:complete"
SCAN_ERROR = "scan:error"
SCAN_TIMEOUT = "scan:timeout"
SCAN_STOPPED = "scan:stopped"
DEVICE_CONNECTED = "device:connected"
DEVICE_DISCONNECTED = "device:disconnected"
PING = "ping"

TERMINAL_EVENTS = frozenset({SCAN_COMPLETE, SCAN_ERROR, SCAN_TIMEOUT, SCAN_STOPPED})

_GLOBAL = "__global__"


@dataclass(frozen=True)
class Event:
    type: str
    session_id: Optional[str]
    sequence: int
    timestamp: float
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS


Deliver = Callable[[Event], None]


@dataclass
class Subscription:
    """A registered consumer.

    Attributes:
        subscription_id: Registry key
        deliver: Callback invoked once per event
        session_ids: Sessions to receive, None for every session
        last_ack: Time of the last liveness acknowledgement
        on_close: Called once when the broadcaster tears the subscriber down
    """
    subscription_id: int
    deliver: Deliver
    session_ids: Optional[Set[str]] = None
    last_ack: float = 0.0
    on_close: Optional[Callable[[str], None]] = None

    def wants(self, event: Event) -> bool:
        if event.session_id is None or self.session_ids is None:
            return True
        return event.session_id in self.session_ids


class EventBroadcaster:
    """Thread-safe publish/subscribe registry."""

    def __init__(
        self,
        heartbeat_timeout_s: float = HEARTBEAT_TIMEOUT_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.heartbeat_timeout_s = heartbeat_timeout_s
        self.clock = clock
        self._lock = threading.RLock()
        self._subscribers: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._sequences: Dict[str, int] = {}
        self._ordering: Dict[str, threading.Lock] = {}

    # ------------------------------------------------------------------
    # Registry

    def subscribe(
        self,
        deliver: Deliver,
        session_id: Optional[str] = None,
        on_close: Optional[Callable[[str], None]] = None,
    ) -> Subscription:
        with self._lock:
            subscription = Subscription(
                subscription_id=next(self._ids),
                deliver=deliver,
                session_ids={session_id} if session_id else None,
                last_ack=self.clock(),
                on_close=on_close,
            )
            self._subscribers[subscription.subscription_id] = subscription
        logger.info(f"Subscriber {subscription.subscription_id} registered (session={session_id})")
        return subscription

    def follow(self, subscription_id: int, session_id: str) -> bool:
        """Restrict a subscriber to (an additional) session."""
        with self._lock:
            subscription = self._subscribers.get(subscription_id)
            if subscription is None:
                return False
            if subscription.session_ids is None:
                subscription.session_ids = set()
            subscription.session_ids.add(session_id)
            return True

    def unsubscribe(self, subscription_id: int) -> bool:
        with self._lock:
            return self._subscribers.pop(subscription_id, None) is not None

    def acknowledge(self, subscription_id: int, now: Optional[float] = None) -> bool:
        with self._lock:
            subscription = self._subscribers.get(subscription_id)
            if subscription is None:
                return False
            subscription.last_ack = self.clock() if now is None else now
            return True

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    # ------------------------------------------------------------------
    # Publishing

    def publish(self, event_type: str, session_id: Optional[str] = None,
                data: Optional[Dict[str, Any]] = None) -> Event:
        """Assign the next sequence number and deliver to matching subscribers.

        Events of one session are delivered in sequence order even when
        published from several threads.
        """
        key = session_id or _GLOBAL
        with self._lock:
            ordering = self._ordering.setdefault(key, threading.Lock())

        with ordering:
            with self._lock:
                sequence = self._sequences.get(key, 0) + 1
                self._sequences[key] = sequence
                event = Event(event_type, session_id, sequence, self.clock(), dict(data or {}))
                targets = [s for s in self._subscribers.values() if s.wants(event)]

            for subscription in targets:
                try:
                    subscription.deliver(event)
                except Exception as exc:
                    log_error(exc, context=f"deliver:{event_type}:subscriber={subscription.subscription_id}")
                    self._teardown(subscription, "delivery failed")

        return event

    def heartbeat(self, now: Optional[float] = None) -> List[int]:
        """Drop stale subscribers, then ping the rest.

        Returns:
            Subscription ids that were torn down
        """
        now = self.clock() if now is None else now
        with self._lock:
            stale = [s for s in self._subscribers.values()
                     if now - s.last_ack > self.heartbeat_timeout_s]

        for subscription in stale:
            self._teardown(subscription, "heartbeat timeout")

        self.publish("ping", None, {"serverTime": now})
        return [s.subscription_id for s in stale]

    def forget_session(self, session_id: str) -> None:
        """Drop sequence bookkeeping for an archived session."""
        with self._lock:
            self._sequences.pop(session_id, None)
            self._ordering.pop(session_id, None)

    def _teardown(self, subscription: Subscription, reason: str) -> None:
        with self._lock:
            removed = self._subscribers.pop(subscription.subscription_id, None)
        if removed is None:
            return

        logger.warning(f"Subscriber {subscription.subscription_id} torn down: {reason}")
        if subscription.on_close is not None:
            try:
                subscription.on_close(reason)
            except Exception as exc:
                log_error(exc, context=f"on_close:subscriber={subscription.subscription_id}")
