from typing import Deque, Dict
import asyncio
import itertools
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from loguru import logger
from prometheus_client import Gauge

from core.exceptions import QueueFull

ADMISSION_ACTIVE = Gauge('admission_active_slots', 'Browser slots currently held')
ADMISSION_QUEUED = Gauge('admission_queued_requests', 'Requests waiting for a browser slot')

_slot_ids = itertools.count(1)

@dataclass
class Slot:
    """Admission ticket held while a request owns browser capacity"""
    id: int = field(default_factory=lambda: next(_slot_ids))
    acquired_at: float = field(default_factory=time.monotonic)
    released: bool = False

class AdmissionController:
    """
    Bounded-concurrency gate with a bounded FIFO wait queue.

    At most ``max_concurrent`` slots are live at once. Further callers wait in
    arrival order, up to ``max_queue`` of them; anyone beyond that is rejected
    with QueueFull straight away.
    """

    def __init__(self, max_concurrent: int, max_queue: int):
        """
        Args:
            max_concurrent (int): Maximum number of simultaneously held slots
            max_queue (int): Maximum number of suspended waiters
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if max_queue < 0:
            raise ValueError("max_queue must not be negative")
        self.max_concurrent = max_concurrent
        self.max_queue = max_queue
        self._active = 0
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def active(self) -> int:
        return self._active

    @property
    def queued(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> Slot:
        """
        Acquire a slot, waiting in line if every slot is taken.

        Returns:
            Slot: the admission ticket to hand back to ``release``

        Raises:
            QueueFull: if the wait queue is already at capacity
        """
        if self._active < self.max_concurrent:
            self._active += 1
            self._publish()
            return Slot()

        if self.queued >= self.max_queue:
            logger.warning(f"Admission rejected: {self._active} active, {self.queued} queued")
            raise QueueFull(active=self._active, queued=self.queued)

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        self._publish()
        logger.debug(f"Request queued for a browser slot (position {len(self._waiters)})")

        try:
            return await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Promoted just before the caller gave up: hand the slot on
                self.release(waiter.result())
            else:
                self._discard(waiter)
            raise

    def release(self, slot: Slot) -> None:
        """Release a slot, promoting the oldest live waiter if there is one"""
        if slot.released:
            return
        slot.released = True

        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            # Transfer capacity directly so no fast-path acquire can jump the line
            waiter.set_result(Slot())
            self._publish()
            logger.debug(f"Slot {slot.id} handed to oldest waiter")
            return

        self._active -= 1
        self._publish()

    @asynccontextmanager
    async def slot(self):
        """Hold a slot for the duration of the block"""
        slot = await self.acquire()
        try:
            yield slot
        finally:
            self.release(slot)

    def _discard(self, waiter: asyncio.Future) -> None:
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass
        self._publish()

    def _publish(self) -> None:
        ADMISSION_ACTIVE.set(self._active)
        ADMISSION_QUEUED.set(self.queued)

    @property
    def stats(self) -> Dict[str, int]:
        """Get current admission statistics"""
        return {
            "active": self._active,
            "queued": self.queued,
            "maxConcurrent": self.max_concurrent,
        }
