"""One-shot proactive refresh timer."""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from .tokens import TokenRecord

logger = logging.getLogger(__name__)


class RefreshScheduler:
    """Arms at most one timer that runs ``callback`` before tokens expire.

    Arming a new timer always cancels the previous one. A computed delay of
    zero runs the callback on the next loop iteration instead of arming.
    """

    def __init__(self, callback: Callable[[], Awaitable[None]], threshold: float):
        """Initialize the scheduler.

        Args:
            callback: Coroutine function run when the timer fires
            threshold: Seconds before expiry at which to refresh
        """
        self.callback = callback
        self.threshold = threshold
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def is_armed(self) -> bool:
        return self._timer is not None and not self._timer.cancelled()

    def seconds_until_fire(self) -> float | None:
        if not self.is_armed or self._timer is None:
            return None
        return max(0.0, self._timer.when() - asyncio.get_running_loop().time())

    def compute_delay(self, record: TokenRecord) -> float:
        return max(0.0, record.seconds_until_expiry() - self.threshold)

    def schedule(self, record: TokenRecord) -> float | None:
        """Schedule a refresh for ``record``.

        Returns:
            The delay in seconds, or None when the record has no refresh
            token and nothing was scheduled
        """
        self.stop()
        if not record.has_refresh_token():
            return None

        delay = self.compute_delay(record)
        if delay == 0:
            logger.debug("Token is inside the refresh threshold; refreshing now")
            self._spawn()
        else:
            self._arm(delay)
            logger.debug(f"Scheduled token refresh in {delay:.0f}s")
        return delay

    def schedule_in(self, delay: float) -> None:
        """Arm the timer for a fixed delay, replacing any existing one."""
        self.stop()
        self._arm(max(0.0, delay))
        logger.debug(f"Scheduled token refresh retry in {delay:.0f}s")

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def aclose(self) -> None:
        """Stop the timer and cancel callbacks that are still running."""
        self.stop()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _arm(self, delay: float) -> None:
        self._timer = asyncio.get_running_loop().call_later(delay, self._fire)

    def _fire(self) -> None:
        self._timer = None
        self._spawn()

    def _spawn(self) -> None:
        task = asyncio.get_running_loop().create_task(self.callback())
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: "asyncio.Task[None]") -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Scheduled refresh failed: {task.exception()}")
