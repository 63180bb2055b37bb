import asyncio
from typing import Awaitable, Callable, Optional, Set

from shared.core import get_logger

logger = get_logger(__name__)

class PollingTask:
    """Repeats ``poll`` every ``interval`` seconds until stopped or ``timeout`` elapses.

    Each poll runs as its own task, so a slow poll never delays the next one.
    ``stop()`` takes effect exactly once; later calls return False and do nothing.
    ``on_timeout`` runs only if the deadline passes before anyone stops the task.
    """

    def __init__(
        self,
        poll: Callable[[], Awaitable[None]],
        interval: float,
        timeout: float,
        on_timeout: Optional[Callable[[], None]] = None,
    ):
        if interval <= 0 or timeout <= 0:
            raise ValueError("interval and timeout must be positive")
        self.poll = poll
        self.interval = interval
        self.timeout = timeout
        self.on_timeout = on_timeout
        self._task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._stopped

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError("PollingTask already started")
        if self._stopped:
            raise RuntimeError("PollingTask already stopped")
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> bool:
        if self._stopped:
            return False
        self._stopped = True

        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        # stop() is often called from inside a poll that saw the final status
        for task in list(self._inflight):
            if task is not current:
                task.cancel()
        if self._task is not None and self._task is not current:
            self._task.cancel()
        return True

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        while not self._stopped:
            self._spawn_poll()
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.interval, remaining))
            if loop.time() >= deadline:
                break

        if self.stop() and self.on_timeout is not None:
            self.on_timeout()

    def _spawn_poll(self) -> None:
        task = asyncio.get_running_loop().create_task(self._poll_once())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _poll_once(self) -> None:
        try:
            await self.poll()
        except asyncio.CancelledError:
            raise
        except Exception:
            # No update yet is a normal state; the next tick tries again
            logger.warning("Payment status poll failed", exc_info=True)
