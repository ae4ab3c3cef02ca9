"""Tick loop that fans collection cycles out across backends."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from apscheduler.schedulers.background import BackgroundScheduler

from slowbeat.metrics import CollectorMetrics

logger = logging.getLogger(__name__)


class CollectionScheduler:
    """Fires ``tick()`` every ``period`` seconds on an APScheduler timer.

    Each tick claims every worker's in-flight gate and runs the claimed
    cycles on a thread pool, so a slow backend delays neither the timer nor
    any other backend. A backend whose previous cycle is still running is
    skipped for that tick.
    """

    def __init__(
        self,
        workers,
        period: float,
        metrics: CollectorMetrics | None = None,
        metrics_interval: float = 0,
    ):
        if period <= 0:
            raise ValueError("period must be positive")
        self._workers = tuple(workers)
        self._period = period
        self._metrics = metrics or CollectorMetrics()
        self._metrics_interval = metrics_interval
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, len(self._workers)),
            thread_name_prefix="slowbeat-worker",
        )
        self._scheduler = BackgroundScheduler()
        self._lock = threading.Lock()
        self._stopped = False
        self._ticks = 0

    @property
    def ticks(self) -> int:
        return self._ticks

    @property
    def stopped(self) -> bool:
        return self._stopped

    def tick(self) -> int:
        """Dispatch one cycle per idle backend. Returns how many were dispatched."""
        dispatched = 0
        with self._lock:
            if self._stopped:
                return 0
            self._ticks += 1
            for worker in self._workers:
                if not worker.claim():
                    logger.warning("%s: cycle skipped, backend busy", worker.address)
                    self._metrics.record_skipped(worker.address)
                    continue
                logger.debug("%s: dispatching collection cycle", worker.address)
                future = self._executor.submit(worker.run_claimed)
                future.add_done_callback(self._make_done_callback(worker.address))
                dispatched += 1
        return dispatched

    @staticmethod
    def _make_done_callback(address: str):
        def _done(future):
            exc = future.exception()
            if exc is not None:
                logger.error(
                    "%s: collection cycle crashed: %s", address, exc, exc_info=exc
                )

        return _done

    def start(self) -> None:
        self._scheduler.add_job(
            self.tick,
            "interval",
            seconds=self._period,
            id="collect",
            max_instances=1,
            coalesce=True,
        )
        if self._metrics_interval > 0:
            self._scheduler.add_job(
                self._metrics.log_snapshot,
                "interval",
                seconds=self._metrics_interval,
                id="metrics",
                max_instances=1,
                coalesce=True,
            )
        self._scheduler.start()
        logger.info(
            "Collecting from %d backend(s) every %.1fs", len(self._workers), self._period
        )

    def run(self, shutdown_event: threading.Event) -> None:
        """Tick until ``shutdown_event`` is set, then stop issuing ticks."""
        self.start()
        try:
            shutdown_event.wait()
        finally:
            self.stop()

    def stop(self) -> None:
        """Stop issuing ticks. In-flight cycles keep running."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped after %d tick(s)", self._ticks)

    def drain(self) -> None:
        """Wait for in-flight cycles to finish."""
        self.stop()
        self._executor.shutdown(wait=True)
