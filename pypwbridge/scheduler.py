"""
Fixed-interval polling loop for one observable quantity.

Each quantity owns its own PollingScheduler so it can be started, stopped and
cancelled on its own. A tick that raises is logged and the loop simply waits
for the next interval; only cancellation ends the loop.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

log = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 15  # seconds
MIN_POLL_INTERVAL = 5
MAX_POLL_INTERVAL = 300

Publisher = Callable[[str, Any], None]


class PollingScheduler:

    def __init__(self, name: str, interval: float, fetch: Callable[[], Awaitable[Any]],
                 publish: Optional[Publisher] = None, run_immediately: bool = False,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.name = name
        self.interval = interval
        self.fetch = fetch
        self.publish = publish
        self.run_immediately = run_immediately
        self.sleep = sleep
        self.last_value: Any = None
        self.last_error: Optional[BaseException] = None
        self.ticks = 0  # successful ticks
        self.failures = 0
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopped = False
        self._task = asyncio.ensure_future(self._run())
        log.debug('Polling %s every %ss' % (self.name, self.interval))

    async def _run(self) -> None:
        if self.run_immediately:
            await self.tick()
        while not self._stopped:
            await self.sleep(self.interval)
            await self.tick()

    async def tick(self, publish: bool = True) -> Any:
        """Fetch once and publish; on failure keep and return the last known value."""
        try:
            value = await self.fetch()
        except Exception as exc:
            self.failures += 1
            self.last_error = exc
            log.error('Error during %s polling update: %s' % (self.name, exc))
            return self.last_value
        self.ticks += 1
        self.last_value = value
        self.last_error = None
        if publish and self.publish is not None and not self._stopped:
            try:
                self.publish(self.name, value)
            except Exception as exc:
                log.error('Error publishing %s: %s' % (self.name, exc))
        return value

    def stop(self) -> None:
        """Cancel the loop; nothing is fetched or published afterwards."""
        self._stopped = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def aclose(self) -> None:
        self.stop()
        task, self._task = self._task, None
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                # Expected when cancelling the polling task
                pass
