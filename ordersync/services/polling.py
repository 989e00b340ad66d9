import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from ordersync.services.store import FetchTicket, OrderStore

logger = logging.getLogger("ordersync.polling")

Fetch = Callable[[], Awaitable[Any]]
Apply = Callable[[Any, Optional[FetchTicket]], Any]


class PollingScheduler:
    """Periodic refresh that runs next to (or instead of) the realtime channel.

    Every ``interval`` seconds a tick calls ``fetch()`` and hands the result
    to ``apply`` together with a ticket taken before the request went out
    (by default ``store.apply_server_fetch``). A tick that comes due while
    the previous one (or a manual ``refresh``) is still in flight is skipped,
    not queued. Failures are logged and the next tick runs as usual.
    """

    def __init__(self, fetch: Fetch, store: Optional[OrderStore] = None, interval: float = 10,
                 apply: Optional[Apply] = None, name: str = "poller"):
        if apply is None and store is None:
            raise ValueError("PollingScheduler needs a store or an apply callback")
        self._fetch = fetch
        self._store = store
        self._apply = apply
        self.interval = interval
        self.name = name
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        # one fetch at a time, whether a tick or a manual refresh
        self._lock = asyncio.Lock()
        self.ticks = 0
        self.skipped = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def in_flight(self) -> bool:
        return self._tick_task is not None and not self._tick_task.done()

    def start(self) -> None:
        if self.running:
            return
        self._loop_task = asyncio.create_task(self._run(), name=f"{self.name}-loop")
        logger.debug(f"{self.name}: polling every {self.interval}s")

    async def _run(self) -> None:
        # the owner does its initial load itself; the first tick is one interval later
        while True:
            await asyncio.sleep(self.interval)
            self.trigger()

    def trigger(self) -> bool:
        """Start a tick now unless one is already running."""
        if self.in_flight or self._lock.locked():
            self.skipped += 1
            logger.debug(f"{self.name}: previous refresh still running, skipping tick")
            return False
        self._tick_task = asyncio.create_task(self.tick(), name=f"{self.name}-tick")
        return True

    async def tick(self) -> bool:
        self.ticks += 1
        try:
            await self.refresh()
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.warning(f"{self.name}: refresh failed: {e}")
            return False

    async def refresh(self) -> None:
        """Fetch and apply now, after any tick already in flight. Errors propagate."""
        async with self._lock:
            ticket = self._store.begin_fetch() if self._store is not None else None
            result = await self._fetch()
            if self._apply is not None:
                self._apply(result, ticket)
            else:
                self._store.apply_server_fetch(result, ticket=ticket)

    async def stop(self) -> None:
        """Cancel the loop and any in-flight tick and wait for both to finish."""
        tasks = [t for t in (self._loop_task, self._tick_task) if t is not None and not t.done()]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_task = None
        self._tick_task = None
        logger.debug(f"{self.name}: stopped")
