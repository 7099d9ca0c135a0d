"""
crime_notifier.py
------------------
In-process publish/subscribe for newly inserted incidents.

Create one CrimeNotifier and hand it to whoever publishes (the feed poller)
and whoever listens (the write service app, tests, ...).
"""

import logging
import threading

logger = logging.getLogger(__name__)


class CrimeNotifier:
    """Ordered registry of callbacks that receive every newly stored Crime."""

    def __init__(self):
        self._subscribers = []
        self._lock = threading.Lock()

    def subscribe(self, callback):
        """Register a callback taking one Crime. Returns the callback (usable as a decorator)."""
        with self._lock:
            self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback):
        """Remove a callback. Returns False if it was not registered."""
        with self._lock:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                return False
        return True

    @property
    def subscriber_count(self):
        with self._lock:
            return len(self._subscribers)

    def publish(self, crime):
        """
        Deliver the crime to every current subscriber, in registration order,
        on the calling thread. A failing subscriber is logged and skipped.
        """
        with self._lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(crime)
            except Exception as e:
                logger.warning(f"Subscriber {callback!r} failed for crime id={crime.id}: {e}", exc_info=True)
