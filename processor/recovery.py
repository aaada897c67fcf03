"""
Recovery of orders nobody is working on any more.

- At boot every PROCESSING order is orphaned (no thread in this process holds
  it) and every FAILED order is swept back in for another try.
- While running, PROCESSING orders whose updated_at is older than the
  processing timeout are presumed orphaned and requeued.

Both only touch the store, so they are safe to run next to dispatch. A
requeued order keeps its created_at and so keeps its place in the queue.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from common.config import PROCESSING_TIMEOUT
from common.errors import InvalidTransition, OrderNotFound
from common.order_schema import OrderStatus, utcnow
from common.store import OrderStore

logger = logging.getLogger(__name__)


def recover_stuck_and_error_orders(store: OrderStore) -> List[str]:
    """Reset PROCESSING and FAILED orders to QUEUED. Returns the requeued ids."""
    requeued: List[str] = []
    try:
        logger.info("Looking for stuck orders in PROCESSING status...")
        processing = store.get_orders_by_status(OrderStatus.PROCESSING)
        failed = store.get_orders_by_status(OrderStatus.FAILED)

        if not processing and not failed:
            logger.info("No stuck orders found")
            return requeued

        logger.warning(
            "Found %d stuck PROCESSING and %d FAILED orders. Resetting to QUEUED...",
            len(processing), len(failed),
        )
        for order in processing + failed:
            try:
                store.retry_order(order.id, expected_status=order.status)
            except (InvalidTransition, OrderNotFound) as e:
                logger.info("Order %s changed before it could be reset: %s", order.id, e)
                continue
            logger.info("Reset order %s from %s to QUEUED", order.id, order.status.value)
            requeued.append(order.id)

        logger.info("All stuck and error orders have been reset to QUEUED status")
    except Exception:
        logger.exception("Error recovering stuck orders")
    return requeued


def monitor_stuck_orders(
    store: OrderStore,
    timeout: float = PROCESSING_TIMEOUT,
    now: Optional[datetime] = None,
) -> List[str]:
    """Requeue PROCESSING orders not updated for more than `timeout` seconds."""
    requeued: List[str] = []
    try:
        now = now or utcnow()
        limit = timedelta(seconds=timeout)
        for order in store.get_orders_by_status(OrderStatus.PROCESSING):
            processing_time = now - order.updated_at
            if processing_time <= limit:
                continue
            logger.warning(
                "Order %s has been PROCESSING for %.1f minutes. Resetting to QUEUED.",
                order.id, processing_time.total_seconds() / 60,
            )
            try:
                store.retry_order(order.id, expected_status=OrderStatus.PROCESSING)
            except (InvalidTransition, OrderNotFound) as e:
                logger.info("Order %s finished before it could be reset: %s", order.id, e)
                continue
            requeued.append(order.id)
    except Exception:
        logger.exception("Error monitoring stuck orders")
    return requeued
