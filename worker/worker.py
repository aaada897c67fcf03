import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from common.errors import MirrorSyncError, StaleAttempt
from common.messages import (
    OrderResult,
    OrderResultMessage,
    PhotoOutcome,
    ProcessOrderMessage,
    ReadyMessage,
    StopMessage,
    WorkerErrorMessage,
)
from common.mirror import sync_order
from common.order_schema import OrderStatus, Photo
from common.storage import UploadResult, make_object_key, upload_bytes
from common.store import OrderStore

logger = logging.getLogger(__name__)


class OrderProcessor:
    """Drives one order to COMPLETED or FAILED.

    Never raises: whatever happens, a terminal OrderResult comes back, since
    the pool only frees the slot when it gets one.
    """

    def __init__(
        self,
        store: OrderStore,
        upload: Callable[[bytes, str], UploadResult] = upload_bytes,
        mirror: Callable[[str, List[str], bool], Any] = sync_order,
        worker_id: int = 0,
    ) -> None:
        self.store = store
        self.upload = upload
        self.mirror = mirror
        self.worker_id = worker_id

    def _log(self, level: int, msg: str, *args, **kwargs) -> None:
        logger.log(level, f"[Worker {self.worker_id}] {msg}", *args, **kwargs)

    def _upload_photo(self, photo: Photo) -> PhotoOutcome:
        if photo.public_url:
            return PhotoOutcome(
                id=photo.id, success=True, file_path=photo.file_path,
                public_url=photo.public_url, skipped=True,
            )
        try:
            self._log(logging.INFO, "Uploading image: %s", photo.file_path)
            content = Path(photo.file_path).read_bytes()
            uploaded = self.upload(content, make_object_key(photo.file_path))
            self.store.update_photo(photo.id, uploaded.object_key, uploaded.public_url)
            return PhotoOutcome(
                id=photo.id, success=True,
                file_path=uploaded.object_key, public_url=uploaded.public_url,
            )
        except Exception as e:
            self._log(logging.ERROR, "Error processing photo %s: %s", photo.id, e)
            return PhotoOutcome(id=photo.id, success=False, error=str(e))

    def _upload_photos(self, photos: List[Photo]) -> List[PhotoOutcome]:
        pending = [p for p in photos if not p.public_url]
        if not pending:
            return [self._upload_photo(p) for p in photos]
        with ThreadPoolExecutor(max_workers=len(pending), thread_name_prefix=f"upload-{self.worker_id}") as pool:
            return list(pool.map(self._upload_photo, photos))

    def process(self, order_id: str) -> OrderResult:
        attempt: Optional[int] = None
        try:
            order = self.store.get_order(order_id)
            if order is None:
                self._log(logging.ERROR, "Order %s not found", order_id)
                return OrderResult(success=False, order_id=order_id, error=f"Order {order_id} not found")

            order = self.store.update_order_status(order_id, OrderStatus.PROCESSING)
            attempt = order.retry_count
            self._log(
                logging.INFO, "Processing order %s with %d photos (attempt %d)",
                order_id, len(order.photos), attempt,
            )

            processed = self._upload_photos(order.photos)
            successful = [p for p in processed if p.success]
            public_urls = [p.public_url for p in successful if p.public_url]
            all_uploaded = len(successful) == len(processed)

            error = None
            if not all_uploaded:
                error = (
                    f"{len(processed) - len(successful)} photos failed to process. "
                    f"{len(successful)} photos were processed successfully."
                )
                self._log(logging.WARNING, "Order %s partially completed: %s", order_id, error)

            # A reclaimed attempt must not touch the remote record either
            self.store.ensure_attempt(order_id, attempt)
            synced = True
            try:
                self.mirror(order_id, public_urls, all_uploaded)
            except MirrorSyncError as e:
                self._log(logging.ERROR, "Error syncing order %s with record mirror: %s", order_id, e)
                synced = False
                error = str(e)

            success = all_uploaded and synced
            self.store.update_order_status(
                order_id,
                OrderStatus.COMPLETED if success else OrderStatus.FAILED,
                error=error,
                attempt=attempt,
            )

            if success:
                self._log(logging.INFO, "Order %s completed successfully", order_id)
            else:
                self._log(
                    logging.INFO, "Order %s failed (%d/%d photos)",
                    order_id, len(successful), len(processed),
                )
            return OrderResult(
                success=success,
                order_id=order_id,
                error=error,
                partial=not all_uploaded,
                processed_photos=processed,
                public_urls=public_urls,
            )

        except StaleAttempt as e:
            # The order was reclaimed while we worked on it; whoever owns it now decides
            self._log(logging.WARNING, "Dropping result for order %s: %s", order_id, e)
            return OrderResult(success=False, order_id=order_id, error=str(e))

        except Exception as e:
            self._log(logging.ERROR, "Failed to process order %s: %s", order_id, e, exc_info=True)
            if attempt is not None:
                try:
                    self.store.update_order_status(order_id, OrderStatus.FAILED, error=str(e), attempt=attempt)
                except Exception as mark_error:
                    self._log(logging.ERROR, "Could not mark order %s FAILED: %s", order_id, mark_error)
            return OrderResult(success=False, order_id=order_id, error=str(e))


class Worker:
    """One pool slot: a daemon thread fed through its inbox.

    Reports READY when started, an ORDER_RESULT for every PROCESS_ORDER, and
    WORKER_ERROR if anything escapes the loop, after which the thread is gone.
    """

    def __init__(
        self,
        worker_id: int,
        outbox: "queue.Queue",
        process: Callable[[str], OrderResult],
        generation: int = 0,
    ) -> None:
        self.worker_id = worker_id
        self.generation = generation
        self.outbox = outbox
        self.process = process
        self.inbox: "queue.Queue" = queue.Queue()

        self._state: str = "STARTING"  # 'STARTING' | 'IDLE' | 'BUSY' | 'STOPPED' | 'CRASHED'
        self._current_order_id: Optional[str] = None
        self._lock = threading.RLock()
        self._thread = threading.Thread(target=self._run, name=f"Worker-{worker_id}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def send(self, message) -> None:
        self.inbox.put(message)

    def stop(self, join: bool = True, timeout: Optional[float] = None) -> None:
        """Ask the thread to exit after its current order. There is no mid-order cancellation."""
        self.inbox.put(StopMessage())
        if join and self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "worker_id": self.worker_id,
                "generation": self.generation,
                "state": self._state,
                "current_order_id": self._current_order_id,
            }

    # -------------------- thread body --------------------

    def _run(self) -> None:
        try:
            with self._lock:
                self._state = "IDLE"
            self.outbox.put(ReadyMessage(worker_id=self.worker_id, generation=self.generation))
            while True:
                message = self.inbox.get()
                if isinstance(message, StopMessage):
                    break
                if not isinstance(message, ProcessOrderMessage):
                    logger.warning("[Worker %s] Ignoring unknown message %r", self.worker_id, message)
                    continue

                with self._lock:
                    self._state = "BUSY"
                    self._current_order_id = message.order_id
                result = self.process(message.order_id)
                with self._lock:
                    self._state = "IDLE"
                    self._current_order_id = None
                self.outbox.put(OrderResultMessage(
                    worker_id=self.worker_id, generation=self.generation, result=result,
                ))
        except Exception as e:
            logger.exception("[Worker %s] crashed: %s", self.worker_id, e)
            with self._lock:
                self._state = "CRASHED"
            self.outbox.put(WorkerErrorMessage(
                worker_id=self.worker_id, generation=self.generation, error=str(e),
            ))
        finally:
            with self._lock:
                if self._state != "CRASHED":
                    self._state = "STOPPED"
            logger.info("[Worker %s] Terminating", self.worker_id)
