"""Reconciler base class and the polling loop that drives it."""

import asyncio
import logging

logger = logging.getLogger(__name__)


class Reconciler:
    """
    Base for components that diff fresh external state against the store.

    Subclasses implement `_reconcile()`. `run_cycle()` wraps it so that an
    overlapping invocation is a no-op and no exception escapes.
    """

    NAME = "reconciler"

    def __init__(self):
        self._in_progress = False
        self._stopping = False

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    @property
    def stopping(self) -> bool:
        return self._stopping

    def request_stop(self):
        """Ask in-flight work to discard results before touching the store."""
        self._stopping = True

    def reset_stop(self):
        self._stopping = False

    async def run_cycle(self) -> bool | None:
        """
        Run one reconciliation pass.

        Returns:
            None if a previous pass is still running, otherwise whether the
            pass succeeded
        """
        if self._in_progress:
            logger.debug(f"{self.NAME}: previous cycle still running, skipping")
            return None

        self._in_progress = True
        try:
            return await self._reconcile()
        except Exception as e:
            logger.error(f"{self.NAME}: cycle failed: {e}", exc_info=True)
            return False
        finally:
            self._in_progress = False

    async def _reconcile(self) -> bool:
        raise NotImplementedError


class PollingLoop:
    """
    Runs a reconciler on a fixed interval with capped exponential backoff.

    After `max_consecutive_failures` failed cycles in a row the wait grows
    as interval * 2**(failures - threshold + 1), capped at `max_backoff`.
    One successful cycle returns it to the nominal interval.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        interval: float,
        max_consecutive_failures: int = 5,
        max_backoff: float = 600,
        run_immediately: bool = True,
    ):
        self.reconciler = reconciler
        self.interval = interval
        self.max_consecutive_failures = max_consecutive_failures
        self.max_backoff = max_backoff
        self.run_immediately = run_immediately

        self.consecutive_failures = 0
        self._task: asyncio.Task | None = None

    def next_delay(self) -> float:
        """Seconds to wait before the next cycle given the current failure count."""
        if self.consecutive_failures < self.max_consecutive_failures:
            return self.interval
        exponent = self.consecutive_failures - self.max_consecutive_failures + 1
        return min(self.interval * (2**exponent), self.max_backoff)

    def record_result(self, result: bool | None):
        if result is None:
            return
        if result:
            if self.consecutive_failures >= self.max_consecutive_failures:
                logger.info(f"{self.reconciler.NAME}: recovered, back to {self.interval}s interval")
            self.consecutive_failures = 0
            return

        self.consecutive_failures += 1
        if self.consecutive_failures >= self.max_consecutive_failures:
            logger.warning(
                f"{self.reconciler.NAME}: {self.consecutive_failures} consecutive failures, "
                f"backing off to {self.next_delay():.0f}s"
            )

    async def tick(self) -> bool | None:
        """Run one cycle and update the failure count."""
        result = await self.reconciler.run_cycle()
        self.record_result(result)
        return result

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self.reconciler.reset_stop()
        self._task = asyncio.create_task(self._run())
        logger.info(f"{self.reconciler.NAME}: polling every {self.interval}s")

    async def stop(self):
        self.reconciler.request_stop()
        if not self._task:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"{self.reconciler.NAME}: stopped")

    async def _run(self):
        if not self.run_immediately:
            await asyncio.sleep(self.interval)
        while True:
            await self.tick()
            await asyncio.sleep(self.next_delay())
