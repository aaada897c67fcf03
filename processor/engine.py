import logging
import signal
import threading
from typing import Callable, List, Optional

from common import config
from common.store import OrderStore
from processor.pool import WorkerPool
from processor.recovery import monitor_stuck_orders, recover_stuck_and_error_orders

logger = logging.getLogger(__name__)


class QueueEngine:
    """Boot recovery, the worker pool and its two timers, started and stopped together."""

    def __init__(
        self,
        store: Optional[OrderStore] = None,
        pool: Optional[WorkerPool] = None,
        check_interval: float = config.CHECK_INTERVAL,
        monitor_interval: float = config.MONITOR_INTERVAL,
        processing_timeout: float = config.PROCESSING_TIMEOUT,
    ) -> None:
        self.store = store or OrderStore()
        self.pool = pool or WorkerPool(self.store)
        self.check_interval = check_interval
        self.monitor_interval = monitor_interval
        self.processing_timeout = processing_timeout

        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self.running = False

    def _every(self, name: str, interval: float, fn: Callable[[], object]) -> None:
        def loop() -> None:
            while not self._stop.wait(interval):
                try:
                    fn()
                except Exception:
                    logger.exception("%s tick failed", name)

        thread = threading.Thread(target=loop, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _check_queue(self) -> None:
        self.pool.check_workers()
        self.pool.assign_work()

    def _monitor(self) -> None:
        monitor_stuck_orders(self.store, timeout=self.processing_timeout)

    def start(self) -> None:
        if self.running:
            return
        # Nothing can be in flight yet, so every PROCESSING order is orphaned
        recover_stuck_and_error_orders(self.store)

        self.pool.start()

        pump = threading.Thread(target=self.pool.run_pump, name="pool-pump", daemon=True)
        pump.start()
        self._threads.append(pump)

        self._every("check-queue", self.check_interval, self._check_queue)
        self._every("stuck-monitor", self.monitor_interval, self._monitor)
        self.running = True
        logger.info(
            "Queue processor started with %d workers (check every %ss, stuck sweep every %ss)",
            self.pool.size, self.check_interval, self.monitor_interval,
        )

    def shutdown(self, timeout: float = 5.0) -> None:
        if not self.running:
            return
        logger.info("Shutting down queue processor...")
        self._stop.set()
        self.pool.shutdown(timeout=timeout)
        for thread in self._threads:
            thread.join(timeout)
        self._threads.clear()
        self.running = False
        logger.info("Queue processor shutdown complete")


def main() -> None:
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    engine = QueueEngine()
    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    signal.signal(signal.SIGINT, lambda *_: stop.set())

    engine.start()
    try:
        while not stop.wait(1.0):
            pass
    finally:
        engine.shutdown()


if __name__ == "__main__":
    main()
