"""
Process-local concurrency limiter per external resource class.

The pool caps how many calls one runner process makes at the same time to the
PDF renderer, the email provider or plain network endpoints. It is a soft,
per-instance cap only: independent runner processes each hold their own pool,
so the global ceiling is ``limit x number of runners``. Cross-invocation load
is bounded by ``job_claim_batch_size`` instead.
"""

import asyncio
from collections import deque
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager

from api.config.logging import get_logger

logger = get_logger(__name__)

PDF_GENERATION = "pdf_generation"
EMAIL_SENDING = "email_sending"
NETWORK_REQUESTS = "network_requests"


class _ResourceClass:
    """Counting semaphore with an explicit FIFO waiter queue."""

    def __init__(self, name: str, limit: int):
        if limit < 1:
            raise ValueError(f"Resource class '{name}' needs a limit >= 1, got {limit}")
        self.name = name
        self.limit = limit
        self.in_use = 0
        self.waiters: deque[asyncio.Future[None]] = deque()

    async def acquire(self) -> None:
        if self.in_use < self.limit and not self.waiters:
            self.in_use += 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self.waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was handed over just before cancellation; pass it on
                self._release_slot()
            elif waiter in self.waiters:
                self.waiters.remove(waiter)
            raise

    def release(self) -> None:
        if self.in_use <= 0:
            raise RuntimeError(f"Resource class '{self.name}' released more than acquired")
        self._release_slot()

    def _release_slot(self) -> None:
        # The slot moves directly to the next waiter, in_use stays the same
        while self.waiters:
            waiter = self.waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self.in_use -= 1


class ResourcePool:
    """Per-process limiter keyed by resource class."""

    def __init__(self, limits: Mapping[str, int]):
        self._classes = {
            name: _ResourceClass(name, limit) for name, limit in limits.items()
        }

    @classmethod
    def from_settings(cls, settings) -> "ResourcePool":
        return cls(settings.resource_limits())

    def _get(self, resource: str) -> _ResourceClass:
        try:
            return self._classes[resource]
        except KeyError:
            raise KeyError(f"Unknown resource class: {resource}") from None

    async def acquire(self, resource: str) -> None:
        """Take a slot, waiting in FIFO order when the class is at its limit."""
        resource_class = self._get(resource)
        if resource_class.in_use >= resource_class.limit:
            logger.debug(
                "resource_pool.wait",
                resource=resource,
                limit=resource_class.limit,
                waiting=len(resource_class.waiters) + 1,
            )
        await resource_class.acquire()

    def release(self, resource: str) -> None:
        """Return a slot and wake the next waiter."""
        self._get(resource).release()

    @asynccontextmanager
    async def slot(self, resource: str) -> AsyncIterator[None]:
        await self.acquire(resource)
        try:
            yield
        finally:
            self.release(resource)

    def stats(self) -> dict[str, dict[str, int]]:
        return {
            name: {
                "limit": rc.limit,
                "in_use": rc.in_use,
                "waiting": sum(1 for w in rc.waiters if not w.done()),
            }
            for name, rc in self._classes.items()
        }
