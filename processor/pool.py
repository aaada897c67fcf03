"""
Worker pool manager.

Owns a fixed number of worker slots and decides which queued order goes to
which idle worker. All pool state (slot availability, in-flight orders) lives
here and only changes inside `assign_work` or in response to a worker
message; everything else gets read-only snapshots through `status()`.

The in-flight set is a lock hint over the store, not a replacement for it:
an order whose worker crashed stays in-flight here until the stuck-order
sweep requeues it in the store, at which point the next pass picks it up.
"""
import logging
import queue
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from common.config import NUM_WORKERS
from common.messages import (
    OrderResultMessage,
    ProcessOrderMessage,
    ReadyMessage,
    StopMessage,
    WorkerErrorMessage,
)
from common.order_schema import OrderStatus, utcnow
from common.store import OrderStore
from worker.worker import OrderProcessor, Worker

logger = logging.getLogger(__name__)

IDLE = "idle"
BUSY = "busy"
UNAVAILABLE = "unavailable"


@dataclass
class InFlight:
    order_id: str
    worker_id: int
    generation: int
    dispatched_at: datetime


class WorkerPool:
    def __init__(
        self,
        store: OrderStore,
        size: int = NUM_WORKERS,
        processor_factory: Optional[Callable[[int], Callable]] = None,
        worker_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        if size < 1:
            raise ValueError("Worker pool needs at least one worker")
        self.store = store
        self.size = size
        self.outbox: "queue.Queue" = queue.Queue()
        self._processor_factory = processor_factory or (
            lambda worker_id: OrderProcessor(store, worker_id=worker_id).process
        )
        self._worker_factory = worker_factory or Worker

        self._workers: Dict[int, Any] = {}          # slot id -> current worker
        self._generations: Dict[int, int] = {}      # slot id -> generation of that worker
        self._availability: Dict[int, str] = {}     # slot id -> IDLE | BUSY; absent = unavailable
        self._in_flight: Dict[str, InFlight] = {}   # order id -> who holds it

        self._state_lock = threading.RLock()
        self._assign_guard = threading.Lock()       # single-flight, never waited on
        self._stopped = threading.Event()

    # -------------------- lifecycle --------------------

    def start(self) -> None:
        logger.info("Initializing %d worker threads for queue processing", self.size)
        for worker_id in range(self.size):
            self._spawn(worker_id)

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop every worker and the message pump. Busy workers finish their order first."""
        logger.info("Shutting down worker pool...")
        self._stopped.set()
        with self._state_lock:
            workers = list(self._workers.values())
            self._availability.clear()
        for worker in workers:
            worker.stop(join=True, timeout=timeout)
        self.outbox.put(StopMessage())
        logger.info("Worker pool shutdown complete")

    def _spawn(self, worker_id: int) -> Any:
        with self._state_lock:
            generation = self._generations.get(worker_id, -1) + 1
            self._generations[worker_id] = generation
            worker = self._worker_factory(
                worker_id, self.outbox, self._processor_factory(worker_id), generation=generation,
            )
            self._workers[worker_id] = worker
            self._availability.pop(worker_id, None)
            # started under the lock so check_workers never sees it unstarted
            worker.start()
        return worker

    def _replace(self, worker_id: int, generation: int, reason: str) -> bool:
        """
        Respawn slot `worker_id` if `generation` is still the one running there.

        A crash can be reported twice (WORKER_ERROR and check_workers); only
        the first report for a generation respawns. Returns True if it did.
        """
        with self._state_lock:
            if self._stopped.is_set() or not self._is_current(worker_id, generation):
                return False
            self._availability.pop(worker_id, None)
            orphaned = [e.order_id for e in self._in_flight.values() if e.worker_id == worker_id]
            logger.error("Worker %s %s; starting a replacement", worker_id, reason)
            if orphaned:
                logger.warning(
                    "Orders %s stay in flight until the stuck-order sweep requeues them", orphaned,
                )
            self._spawn(worker_id)
        return True

    def _is_current(self, worker_id: int, generation: int) -> bool:
        return self._generations.get(worker_id) == generation

    def _is_orphaned(self, entry: InFlight) -> bool:
        if not self._is_current(entry.worker_id, entry.generation):
            return True
        worker = self._workers.get(entry.worker_id)
        return worker is None or not worker.is_alive()

    def check_workers(self) -> List[int]:
        """Replace workers whose thread died without reporting. Returns the replaced slot ids."""
        with self._state_lock:
            dead = [
                (wid, worker.generation)
                for wid, worker in list(self._workers.items())
                if not worker.is_alive()
            ]
        return [
            wid for wid, generation in dead
            if self._replace(wid, generation, "exited unexpectedly")
        ]

    # -------------------- messages from workers --------------------

    def handle_message(self, message) -> None:
        if isinstance(message, ReadyMessage):
            with self._state_lock:
                if not self._is_current(message.worker_id, message.generation) or self._stopped.is_set():
                    return
                self._availability[message.worker_id] = IDLE
            logger.info("Worker %s is ready", message.worker_id)
            self.assign_work()

        elif isinstance(message, OrderResultMessage):
            result = message.result
            with self._state_lock:
                entry = self._in_flight.get(result.order_id)
                if entry is not None and entry.worker_id == message.worker_id \
                        and entry.generation == message.generation:
                    del self._in_flight[result.order_id]
                if self._is_current(message.worker_id, message.generation) and not self._stopped.is_set():
                    self._availability[message.worker_id] = IDLE
            if result.success:
                logger.info("Worker %s completed order %s", message.worker_id, result.order_id)
            else:
                logger.error(
                    "Worker %s failed to process order %s: %s",
                    message.worker_id, result.order_id, result.error,
                )
            self.assign_work()

        elif isinstance(message, WorkerErrorMessage):
            self._replace(message.worker_id, message.generation, f"error: {message.error}")

        else:
            logger.warning("Unknown worker message %r", message)

    def run_pump(self) -> None:
        """Consume worker messages until shutdown. Runs on the coordinator thread."""
        while True:
            message = self.outbox.get()
            if isinstance(message, StopMessage):
                break
            try:
                self.handle_message(message)
            except Exception:
                logger.exception("Error handling worker message %r", message)

    # -------------------- dispatch --------------------

    def assign_work(self) -> List[Tuple[str, int]]:
        """
        Hand queued orders to idle workers, oldest first.

        Single-flight: if another pass is running this returns [] right away;
        the next timer tick or worker event will try again. Store errors are
        logged and swallowed. Returns the (order_id, worker_id) pairs dispatched.
        """
        if not self._assign_guard.acquire(blocking=False):
            return []

        assigned: List[Tuple[str, int]] = []
        try:
            if self._stopped.is_set():
                return assigned
            with self._state_lock:
                idle = sorted(wid for wid, state in self._availability.items() if state == IDLE)
            if not idle:
                return assigned

            orders = self.store.get_orders_by_status(OrderStatus.QUEUED, limit=len(idle))

            for order in orders:
                with self._state_lock:
                    entry = self._in_flight.get(order.id)
                    if entry is not None:
                        if not self._is_orphaned(entry):
                            logger.debug("Order %s already in flight on worker %s", order.id, entry.worker_id)
                            continue
                        logger.warning(
                            "Order %s was requeued after worker %s died; dispatching again",
                            order.id, entry.worker_id,
                        )
                        del self._in_flight[order.id]

                    while idle and self._availability.get(idle[0]) != IDLE:
                        idle.pop(0)
                    if not idle:
                        break
                    worker_id = idle.pop(0)
                    worker = self._workers[worker_id]
                    self._availability[worker_id] = BUSY
                    self._in_flight[order.id] = InFlight(
                        order_id=order.id,
                        worker_id=worker_id,
                        generation=self._generations[worker_id],
                        dispatched_at=utcnow(),
                    )

                logger.info("Assigning order %s to worker %s", order.id, worker_id)
                worker.send(ProcessOrderMessage(order_id=order.id))
                assigned.append((order.id, worker_id))
        except Exception:
            logger.exception("Error checking queue")
        finally:
            self._assign_guard.release()
        return assigned

    # -------------------- read-only views --------------------

    def in_flight(self) -> List[str]:
        with self._state_lock:
            return list(self._in_flight)

    def status(self) -> Dict[str, Any]:
        with self._state_lock:
            workers = [
                {
                    "worker_id": wid,
                    "generation": self._generations.get(wid),
                    "state": self._availability.get(wid, UNAVAILABLE),
                    "current_order_id": next(
                        (e.order_id for e in self._in_flight.values()
                         if e.worker_id == wid and e.generation == self._generations.get(wid)),
                        None,
                    ),
                }
                for wid in sorted(self._workers)
            ]
            in_flight = [
                {
                    "order_id": e.order_id,
                    "worker_id": e.worker_id,
                    "dispatched_at": e.dispatched_at.isoformat(),
                    "orphaned": self._is_orphaned(e),
                }
                for e in self._in_flight.values()
            ]
        return {"size": self.size, "workers": workers, "in_flight": in_flight}
