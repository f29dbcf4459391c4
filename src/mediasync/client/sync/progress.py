"""Broadcast progress channel.

This module provides:
- ProgressChannel: One producer, many observers, never blocks the producer
- Subscription: A subscriber's bounded view of the channel

Each subscriber owns a bounded queue. When a subscriber falls behind, the
oldest undelivered value is dropped so the producer never waits. The
channel remembers the latest value so late subscribers start from the
current state.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Iterator
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SUBSCRIBER_BUFFER = 64


class Subscription(Generic[T]):
    """Receiving end of a ProgressChannel subscription."""

    def __init__(self, channel: ProgressChannel[T], maxsize: int) -> None:
        self._channel = channel
        self._queue: queue.Queue[T] = queue.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, value: T) -> None:
        while True:
            try:
                self._queue.put_nowait(value)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass

    def get(self, timeout: float | None = None) -> T | None:
        """Wait for the next value.

        Returns:
            The value, or None if nothing arrived within timeout.
        """
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[T]:
        """Return all values received so far without waiting."""
        values: list[T] = []
        while True:
            try:
                values.append(self._queue.get_nowait())
            except queue.Empty:
                return values

    def __iter__(self) -> Iterator[T]:
        return iter(self.drain())

    def close(self) -> None:
        """Stop receiving values."""
        self._closed = True
        self._channel.unsubscribe(self)


class ProgressChannel(Generic[T]):
    """Forward-only broadcast channel for progress values.

    Args:
        position: Optional function giving the position of a value. Values
            whose position is lower than the last published one are
            dropped, so observers only ever see progress move forward.
            reset() starts a new sequence.
    """

    def __init__(self, position: Callable[[T], Any] | None = None) -> None:
        self._position = position
        self._lock = threading.Lock()
        self._subscribers: list[Subscription[T]] = []
        self._callbacks: list[Callable[[T], None]] = []
        self._latest: T | None = None

    @property
    def latest(self) -> T | None:
        """Most recently published value in the current sequence."""
        with self._lock:
            return self._latest

    def subscribe(self, maxsize: int = DEFAULT_SUBSCRIBER_BUFFER) -> Subscription[T]:
        """Create a subscription, primed with the latest value if any."""
        subscription: Subscription[T] = Subscription(self, maxsize)
        with self._lock:
            if self._latest is not None:
                subscription._offer(self._latest)
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription[T]) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def add_callback(self, callback: Callable[[T], None]) -> None:
        """Register a callback invoked synchronously on every publish.

        Callbacks must be quick; exceptions are logged and ignored.
        """
        with self._lock:
            self._callbacks.append(callback)

    def publish(self, value: T) -> bool:
        """Publish a value to all observers.

        Returns:
            False if the value was dropped for moving backwards.
        """
        with self._lock:
            if (
                self._position is not None
                and self._latest is not None
                and self._position(value) < self._position(self._latest)
            ):
                logger.debug(f"Dropping out-of-order progress value {value!r}")
                return False
            self._latest = value
            subscribers = list(self._subscribers)
            callbacks = list(self._callbacks)

        for subscription in subscribers:
            subscription._offer(value)
        for callback in callbacks:
            try:
                callback(value)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")
        return True

    def reset(self) -> None:
        """Start a new sequence (a new pass)."""
        with self._lock:
            self._latest = None
