from __future__ import annotations

import copy
import itertools
import logging
import threading
from collections import deque
from typing import Any, Callable

from autoreg.models import serialize_datetime, utc_now

logger = logging.getLogger(__name__)

STATUS_UPDATE = "STATUS_UPDATE"
REGISTRATION_RESULT = "REGISTRATION_RESULT"
REGISTRATION_RESULT_UPDATE = "REGISTRATION_RESULT_UPDATE"
REGISTRATION_COMPLETE = "REGISTRATION_COMPLETE"
LOG = "LOG"

Subscriber = Callable[[dict[str, Any]], None]


class ProgressBus:
    """Fan-out of lifecycle messages to any number of progress sinks.

    Subscribers get a deep copy of every message; a failing subscriber is
    logged and skipped so it cannot stall the coordinator.
    """

    def __init__(self) -> None:
        self._subscribers: dict[int, Subscriber] = {}
        self._ids = itertools.count(1)
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            token = next(self._ids)
            self._subscribers[token] = callback

        def _unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return _unsubscribe

    def publish(self, message_type: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
        message = {
            "seq": next(self._seq),
            "type": message_type,
            "data": copy.deepcopy(data or {}),
            "sent_at": serialize_datetime(utc_now()),
        }
        with self._lock:
            subscribers = list(self._subscribers.values())
        for callback in subscribers:
            try:
                callback(copy.deepcopy(message))
            except Exception:  # noqa: BLE001
                logger.exception("progress subscriber failed on %s", message_type)
        return message

    def log(self, level: str, text: str) -> dict[str, Any]:
        return self.publish(LOG, {"level": level, "message": text})


class RecentMessages:
    """Bounded buffer sink, polled by HTTP clients with ``after=<seq>``."""

    def __init__(self, maxlen: int = 500) -> None:
        self._messages: deque[dict[str, Any]] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def __call__(self, message: dict[str, Any]) -> None:
        with self._lock:
            self._messages.append(message)

    def since(self, after: int = 0, limit: int = 200) -> list[dict[str, Any]]:
        with self._lock:
            items = [message for message in self._messages if int(message.get("seq", 0)) > after]
        return items[: max(1, limit)]

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()
