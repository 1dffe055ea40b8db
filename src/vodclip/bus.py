"""In-process fan-out of job snapshots to live subscribers.

Single-instance only: subscribers attached to another server process never
see these messages.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BusMessage:
    data: str
    terminal: bool = False


class Subscription:
    """One observer's bounded mailbox for a single job."""

    def __init__(self, job_id: str, maxsize: int = 100) -> None:
        self.job_id = job_id
        self.queue: "asyncio.Queue[BusMessage]" = asyncio.Queue(maxsize=max(1, maxsize))
        self.dropped = 0

    def offer(self, message: BusMessage) -> None:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            # Each message is a full snapshot, so losing the oldest is harmless.
            self.queue.get_nowait()
            self.dropped += 1
            self.queue.put_nowait(message)

    async def get(self, timeout: Optional[float] = None) -> BusMessage:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)


class ProgressBus:
    def __init__(self, queue_size: int = 100) -> None:
        self.queue_size = queue_size
        self._subs: Dict[str, Set[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, job_id: str) -> Subscription:
        sub = Subscription(job_id, self.queue_size)
        with self._lock:
            self._subs.setdefault(job_id, set()).add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> int:
        """Detach ``sub``; returns how many subscribers the job has left."""
        with self._lock:
            subs = self._subs.get(sub.job_id)
            if not subs:
                return 0
            subs.discard(sub)
            if not subs:
                del self._subs[sub.job_id]
                return 0
            return len(subs)

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subs.get(job_id, ()))

    def publish(self, job_id: str, snapshot: Dict[str, Any], *, terminal: bool = False) -> int:
        """Push ``snapshot`` to every subscriber of ``job_id``.

        A failing subscriber is logged and skipped; the rest still receive
        the message.
        """
        with self._lock:
            subs = list(self._subs.get(job_id, ()))
        if not subs:
            return 0

        message = BusMessage(json.dumps(snapshot), terminal=terminal)
        delivered = 0
        for sub in subs:
            try:
                sub.offer(message)
                delivered += 1
            except Exception as e:
                logger.warning("Dropping update for a subscriber of job %s: %s", job_id, e)
        return delivered

    def close(self) -> None:
        with self._lock:
            self._subs.clear()
