"""
Watch Broker for SwitchVault

Pushes switch state changes to live subscribers without polling.

Delivery guarantees per subscriber:
1. Records arrive in strictly increasing version order for a key
2. A slow subscriber is coalesced to the latest state (last-value-wins);
   intermediate versions may be skipped, the newest never is
3. Publishing never blocks on a subscriber; buffers are bounded
4. Cancelling frees the buffer and stops delivery immediately
"""

import asyncio
import logging
import threading
import uuid
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from .stores import SwitchRecord

logger = logging.getLogger(__name__)


class Subscription:
    """
    A live feed of SwitchRecords for one key.

    Consumable from threads (`for record in sub`, `sub.get(timeout)`) or from
    asyncio (`async for record in sub`, `await sub.next_async(timeout)`).
    """

    def __init__(
        self,
        key: str,
        capacity: int = 1,
        on_cancel: Optional[Callable[['Subscription'], None]] = None,
    ):
        if capacity < 1:
            raise ValueError("Subscription capacity must be >= 1")

        self.key = key
        self.subscription_id = f"SUB-{uuid.uuid4().hex[:12]}"
        self.capacity = capacity
        self._buffer: Deque[SwitchRecord] = deque(maxlen=capacity)
        self._cond = threading.Condition()
        self._last_version = -1
        self._cancelled = False
        self._on_cancel = on_cancel
        self._async_waiters: List[Tuple[asyncio.AbstractEventLoop, asyncio.Event]] = []
        self._delivered = 0
        self._coalesced = 0

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def offer(self, record: SwitchRecord) -> bool:
        """
        Offer a record to this subscriber.

        Returns True if buffered, False if dropped (cancelled, wrong key, or
        not newer than what this subscriber has already been offered).
        """
        if record.key != self.key:
            return False

        with self._cond:
            if self._cancelled or record.version <= self._last_version:
                return False

            if len(self._buffer) == self.capacity:
                self._coalesced += 1
            self._buffer.append(record)  # maxlen drops the oldest
            self._last_version = record.version
            self._wake_locked()
            return True

    def _wake_locked(self) -> None:
        self._cond.notify_all()
        for loop, event in self._async_waiters:
            try:
                loop.call_soon_threadsafe(event.set)
            except RuntimeError:
                # Loop already closed; its waiter is gone with it.
                logger.debug("Dropped wakeup for closed loop on %s", self.subscription_id)

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def _pop_locked(self) -> Optional[SwitchRecord]:
        if self._buffer:
            self._delivered += 1
            return self._buffer.popleft()
        return None

    def get(self, timeout: Optional[float] = None) -> Optional[SwitchRecord]:
        """
        Block until the next record is available.

        Returns None if the timeout elapses or the subscription is cancelled.
        """
        with self._cond:
            self._cond.wait_for(lambda: self._buffer or self._cancelled, timeout=timeout)
            if self._cancelled:
                return None
            return self._pop_locked()

    def get_nowait(self) -> Optional[SwitchRecord]:
        with self._cond:
            if self._cancelled:
                return None
            return self._pop_locked()

    async def next_async(self, timeout: Optional[float] = None) -> Optional[SwitchRecord]:
        """Await the next record. Returns None on timeout or cancellation."""
        loop = asyncio.get_running_loop()
        event = asyncio.Event()
        waiter = (loop, event)

        with self._cond:
            if self._cancelled:
                return None
            record = self._pop_locked()
            if record is not None:
                return record
            self._async_waiters.append(waiter)

        try:
            await asyncio.wait_for(event.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        finally:
            with self._cond:
                if waiter in self._async_waiters:
                    self._async_waiters.remove(waiter)

        return self.get_nowait()

    def __iter__(self):
        return self

    def __next__(self) -> SwitchRecord:
        record = self.get()
        if record is None:
            raise StopIteration
        return record

    def __aiter__(self):
        return self

    async def __anext__(self) -> SwitchRecord:
        while True:
            record = await self.next_async()
            if record is not None:
                return record
            if self.cancelled:
                raise StopAsyncIteration

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Stop deliveries, free the buffer and wake any blocked reader."""
        with self._cond:
            if self._cancelled:
                return
            self._cancelled = True
            self._buffer.clear()
            self._wake_locked()
            self._async_waiters.clear()

        if self._on_cancel is not None:
            self._on_cancel(self)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def pending(self) -> int:
        """Records buffered but not yet consumed."""
        return len(self._buffer)

    @property
    def last_version(self) -> int:
        """Highest version offered to this subscriber (-1 if none)."""
        return self._last_version

    def get_stats(self) -> dict:
        return {
            "subscription_id": self.subscription_id,
            "key": self.key,
            "pending": self.pending,
            "delivered": self._delivered,
            "coalesced": self._coalesced,
            "last_version": self._last_version,
            "cancelled": self._cancelled,
        }

    def __enter__(self) -> 'Subscription':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cancel()


class WatchBroker:
    """
    Fans out published SwitchRecords to every current subscriber of a key.

    The broker owns its subscriptions for their whole lifetime. The registry
    lock is held only to snapshot or mutate the subscriber sets, never while
    delivering.
    """

    def __init__(self, buffer_capacity: int = 1):
        self.buffer_capacity = buffer_capacity
        self._subscribers: Dict[str, Set[Subscription]] = {}
        self._lock = threading.Lock()
        self._published = 0

    def subscribe(
        self,
        key: str,
        snapshot: Optional[Callable[[], SwitchRecord]] = None,
    ) -> Subscription:
        """
        Open a subscription for key.

        `snapshot`, when given, is called after the subscription is registered
        and its result is offered as the first frame. Registering first means
        no publish can fall between the snapshot read and the subscription.
        """
        sub = Subscription(key, capacity=self.buffer_capacity, on_cancel=self._remove)

        with self._lock:
            self._subscribers.setdefault(key, set()).add(sub)

        logger.info("Subscription %s opened for key=%s", sub.subscription_id, key)

        if snapshot is not None:
            try:
                sub.offer(snapshot())
            except Exception:
                sub.cancel()
                raise

        return sub

    def publish(self, record: SwitchRecord) -> int:
        """
        Deliver record to all current subscribers of its key.

        Returns:
            Number of subscribers that buffered the record
        """
        with self._lock:
            targets = list(self._subscribers.get(record.key, ()))
            self._published += 1

        delivered = sum(1 for sub in targets if sub.offer(record))
        logger.debug(
            "Published key=%s version=%d to %d/%d subscribers",
            record.key, record.version, delivered, len(targets),
        )
        return delivered

    def unsubscribe(self, sub: Subscription) -> None:
        sub.cancel()

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.key)
            if subs is not None:
                subs.discard(sub)
                if not subs:
                    del self._subscribers[sub.key]
        logger.info("Subscription %s cancelled for key=%s", sub.subscription_id, sub.key)

    def subscriber_count(self, key: Optional[str] = None) -> int:
        with self._lock:
            if key is not None:
                return len(self._subscribers.get(key, ()))
            return sum(len(s) for s in self._subscribers.values())

    def close(self) -> None:
        """Cancel every open subscription."""
        with self._lock:
            all_subs = [s for subs in self._subscribers.values() for s in subs]
        for sub in all_subs:
            sub.cancel()

    def get_stats(self) -> dict:
        return {
            "published": self._published,
            "subscribers": self.subscriber_count(),
            "keys": len(self._subscribers),
            "buffer_capacity": self.buffer_capacity,
        }
