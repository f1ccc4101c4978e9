"""
Resource ceiling for concurrently running virtual users.

The scheduler may ask for more VUs than the process should run at once.
Each VU holds a slot for the duration of its life; when none is free, the
VU waits in the Spawned state until one is released. Spawns are delayed,
never dropped.

Usage:
    slots = VUSlots(max_vus=500)

    async with slots.hold():
        await vu_loop()
"""
from __future__ import annotations

import asyncio
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional


@dataclass
class SlotStats:
    """Snapshot of slot usage."""
    max_vus: Optional[int]
    active: int
    waiting: int
    total_acquired: int
    peak_active: int


class VUSlots:
    """
    Async slot pool with stats.

    Design:
    - max_vus=None means unlimited; stats are still tracked
    - One asyncio.Semaphore, created lazily inside the run's event loop;
      an instance serves a single run
    - Stats guarded by a threading.Lock so they can be read from any thread
    """

    def __init__(self, max_vus: Optional[int] = None) -> None:
        if max_vus is not None and max_vus < 1:
            raise ValueError("max_vus must be >= 1")

        self._max_vus = max_vus
        self._semaphore: Optional[asyncio.Semaphore] = None

        self._stats_lock = threading.Lock()
        self._active = 0
        self._waiting = 0
        self._total_acquired = 0
        self._peak_active = 0

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        """Hold one slot for the body of the context. Waits while all are taken."""
        sem = self._get_semaphore()

        with self._stats_lock:
            self._waiting += 1
        try:
            if sem is not None:
                await sem.acquire()
        except BaseException:
            with self._stats_lock:
                self._waiting -= 1
            raise

        with self._stats_lock:
            self._waiting -= 1
            self._active += 1
            self._total_acquired += 1
            self._peak_active = max(self._peak_active, self._active)
        try:
            yield
        finally:
            if sem is not None:
                sem.release()
            with self._stats_lock:
                self._active -= 1

    def _get_semaphore(self) -> Optional[asyncio.Semaphore]:
        if self._max_vus is None:
            return None
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._max_vus)
        return self._semaphore

    def stats(self) -> SlotStats:
        with self._stats_lock:
            return SlotStats(
                max_vus=self._max_vus,
                active=self._active,
                waiting=self._waiting,
                total_acquired=self._total_acquired,
                peak_active=self._peak_active,
            )

    @property
    def max_vus(self) -> Optional[int]:
        return self._max_vus
