"""
Order store backed by a local JSON document (data/orders.json).

Every operation reads the whole document, changes it and writes it back
under a process-wide lock, so the API and all worker threads can share it.
The status field here is the durable source of truth; the worker pool only
keeps a process-local hint on top of it.
"""
import json
import os
import tempfile
import threading
from pathlib import Path
from typing import List, Optional, Sequence

from common.config import LOCAL_ORDERS_FILE
from common.errors import DuplicateOrder, InvalidTransition, OrderNotFound, PhotoNotFound, StaleAttempt
from common.order_schema import Order, OrderStatus, Photo, utcnow, validate_status_transition

# One lock for every OrderStore in the process; they may point at the same file
_FILE_LOCK = threading.RLock()


class OrderStore:
    def __init__(self, path: Path = LOCAL_ORDERS_FILE) -> None:
        self.path = Path(path)

    # ------------------------------------------------------------------
    # FILE HELPERS
    # ------------------------------------------------------------------

    def _read(self) -> List[Order]:
        # If empty or missing, default to "[]"
        content = self.path.read_text() if self.path.exists() else "[]"
        if not content.strip():
            content = "[]"
        return [Order.model_validate(x) for x in json.loads(content)]

    def _write(self, orders: List[Order]) -> None:
        """Write the document atomically so a reader never sees half a file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(dir=self.path.parent, suffix=".json.tmp")
        os.close(temp_fd)
        try:
            Path(temp_path).write_text(
                json.dumps([o.model_dump(mode="json") for o in orders], indent=2)
            )
            os.replace(temp_path, str(self.path))
        except Exception:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise

    @staticmethod
    def _check_attempt(order: Order, attempt: int) -> None:
        if order.status != OrderStatus.PROCESSING or order.retry_count != attempt:
            raise StaleAttempt(
                f"Order {order.id} attempt {attempt} is stale "
                f"(now {order.status.value}, attempt {order.retry_count})"
            )

    @staticmethod
    def _find(orders: List[Order], order_id: str) -> Order:
        for order in orders:
            if order.id == order_id:
                return order
        raise OrderNotFound(f"Order {order_id} not found")

    # ------------------------------------------------------------------
    # ORDERS
    # ------------------------------------------------------------------

    def create_order(self, order_id: Optional[str] = None, file_paths: Sequence[str] = ()) -> Order:
        """
        Create an order in QUEUED status. A uuid is generated when no id is given.

        Photos passed as `file_paths` are attached in the same write, so the
        order never becomes visible to the dispatcher without them.
        """
        with _FILE_LOCK:
            orders = self._read()
            order = Order(id=order_id) if order_id else Order()
            if any(o.id == order.id for o in orders):
                raise DuplicateOrder(f"Order {order.id} already exists")
            order.photos = [Photo(order_id=order.id, file_path=str(p)) for p in file_paths]
            orders.append(order)
            self._write(orders)
            return order

    def get_order(self, order_id: str) -> Optional[Order]:
        with _FILE_LOCK:
            return next((o for o in self._read() if o.id == order_id), None)

    def get_orders_by_status(self, status: OrderStatus, limit: Optional[int] = None) -> List[Order]:
        """Orders in `status`, oldest first. Ties keep insertion order."""
        with _FILE_LOCK:
            matches = [o for o in self._read() if o.status == status]
        matches.sort(key=lambda o: o.created_at)
        return matches if limit is None else matches[:limit]

    def get_next_order_from_queue(self) -> Optional[Order]:
        queued = self.get_orders_by_status(OrderStatus.QUEUED, limit=1)
        return queued[0] if queued else None

    def get_orders(self, status: Optional[OrderStatus] = None, skip: int = 0, limit: int = 10) -> List[Order]:
        """Newest first page of orders, optionally filtered by status."""
        with _FILE_LOCK:
            orders = self._read()
        if status is not None:
            orders = [o for o in orders if o.status == status]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders[skip:skip + limit]

    def get_orders_count(self, status: Optional[OrderStatus] = None) -> int:
        with _FILE_LOCK:
            orders = self._read()
        if status is None:
            return len(orders)
        return sum(1 for o in orders if o.status == status)

    def update_order_status(
        self,
        order_id: str,
        status: OrderStatus,
        error: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> Order:
        """
        Move an order to `status`.

        - PROCESSING increments retry_count; the new value is the attempt token.
        - COMPLETED clears error, FAILED stores it.
        - With `attempt`, the write only lands while the order is still
          PROCESSING under that same retry_count. Otherwise StaleAttempt.
        """
        status = OrderStatus(status)
        with _FILE_LOCK:
            orders = self._read()
            order = self._find(orders, order_id)

            if attempt is not None:
                self._check_attempt(order, attempt)
            validate_status_transition(order.status, status)

            order.status = status
            if status == OrderStatus.PROCESSING:
                order.retry_count += 1
            if status == OrderStatus.FAILED:
                order.error = error
            elif status in (OrderStatus.COMPLETED, OrderStatus.QUEUED):
                order.error = None
            order.updated_at = utcnow()
            self._write(orders)
            return order

    def ensure_attempt(self, order_id: str, attempt: int) -> Order:
        """Raise StaleAttempt unless `attempt` still owns the order."""
        with _FILE_LOCK:
            order = self._find(self._read(), order_id)
            self._check_attempt(order, attempt)
            return order

    def retry_order(self, order_id: str, expected_status: Optional[OrderStatus] = None) -> Order:
        """
        Put an order back to QUEUED and clear its error.

        `expected_status` turns this into a compare-and-set: the requeue is
        refused with InvalidTransition if the order is no longer in that status.
        """
        with _FILE_LOCK:
            orders = self._read()
            order = self._find(orders, order_id)
            if expected_status is not None and order.status != expected_status:
                raise InvalidTransition(
                    f"Order {order_id} is {order.status.value}, expected {OrderStatus(expected_status).value}"
                )
            validate_status_transition(order.status, OrderStatus.QUEUED)
            order.status = OrderStatus.QUEUED
            order.error = None
            order.updated_at = utcnow()
            self._write(orders)
            return order

    # ------------------------------------------------------------------
    # PHOTOS
    # ------------------------------------------------------------------

    def add_photo(self, order_id: str, file_path: str, public_url: Optional[str] = None) -> Photo:
        with _FILE_LOCK:
            orders = self._read()
            order = self._find(orders, order_id)
            photo = Photo(order_id=order_id, file_path=file_path, public_url=public_url)
            order.photos.append(photo)
            self._write(orders)
            return photo

    def update_photo(self, photo_id: str, file_path: str, public_url: Optional[str]) -> Photo:
        with _FILE_LOCK:
            orders = self._read()
            for order in orders:
                for photo in order.photos:
                    if photo.id == photo_id:
                        photo.file_path = file_path
                        photo.public_url = public_url
                        self._write(orders)
                        return photo
        raise PhotoNotFound(f"Photo {photo_id} not found")
