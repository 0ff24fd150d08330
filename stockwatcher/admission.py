"""Global admission control for concurrent page loads."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Deque

from .config import GlobalConfig, TargetConfig

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class _Waiter:
    target: TargetConfig
    future: asyncio.Future


class AdmissionController:
    """Bound the number of open pages across all watches.

    Requests are served strictly in arrival order. A request is admitted
    immediately only when nobody is queued and a slot is free; otherwise it
    waits until ``release`` hands it a slot.
    """

    def __init__(self, settings: GlobalConfig) -> None:
        self.max_tabs = settings.max_tabs
        self._in_use = 0
        self._waiters: Deque[_Waiter] = deque()

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def waiting(self) -> int:
        return len(self._waiters)

    def limit_for(self, target: TargetConfig) -> int:
        if target.max_tabs:
            return min(self.max_tabs, target.max_tabs)
        return self.max_tabs

    async def acquire(self, target: TargetConfig) -> None:
        if not self._waiters and self._in_use < self.limit_for(target):
            self._in_use += 1
            logger.debug(
                "Tab available to run %s, running without waiting for queue.",
                target.store,
            )
            return

        logger.debug("Max tabs already loaded. Queuing check for %s.", target.store)
        future = asyncio.get_running_loop().create_future()
        waiter = _Waiter(target=target, future=future)
        self._waiters.append(waiter)
        try:
            await future
        except asyncio.CancelledError:
            if future.done() and not future.cancelled():
                # Slot was handed over just before cancellation.
                self.release()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
                self._admit_waiters()
            raise
        logger.debug("Browser tab available, running check for %s.", target.store)

    def release(self) -> None:
        if self._in_use <= 0:
            raise RuntimeError("release() called without a matching acquire()")
        self._in_use -= 1
        self._admit_waiters()

    def _admit_waiters(self) -> None:
        while self._waiters:
            head = self._waiters[0]
            if self._in_use >= self.limit_for(head.target):
                return
            self._waiters.popleft()
            if head.future.done():
                continue
            self._in_use += 1
            head.future.set_result(None)

    @asynccontextmanager
    async def slot(self, target: TargetConfig) -> AsyncIterator[None]:
        await self.acquire(target)
        try:
            yield
        finally:
            self.release()
