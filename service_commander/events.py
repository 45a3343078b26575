"""
Service Commander — Event Channel
═══════════════════════════════════════════════════
In-process publish/subscribe used by the deployer and the health monitor.
Delivery is synchronous on the publisher's thread; a failing subscriber is
logged and skipped, publishers never see its exception.
"""

import logging
import threading
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

DEPLOYMENT_PROGRESS = "deployment-progress"
HEALTH_UPDATE = "health-update"
METRICS_UPDATE = "metrics-update"
HEALTH_ALERT = "health-alert"

TOPICS = (DEPLOYMENT_PROGRESS, HEALTH_UPDATE, METRICS_UPDATE, HEALTH_ALERT)

Subscriber = Callable[[str, Dict[str, Any]], None]


class EventBus:

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register `callback(topic, payload)` for every topic. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(topic, payload)
            except Exception as e:
                logger.error(f"[Events] Subscriber failed on '{topic}': {e}")

