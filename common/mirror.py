"""
Secondary record system sync.

After an order is processed its image list and completion flag are mirrored
into an external `orders` table exposed over a PostgREST style API. The sync
is best effort in the sense that a missing remote row is not an error, but a
remote that cannot be reached is: the worker then fails the order.
"""
import logging
from typing import List, Optional

import httpx

from common import config
from common.errors import MirrorSyncError

logger = logging.getLogger(__name__)


def _headers() -> dict:
    headers = {"Content-Type": "application/json"}
    if config.MIRROR_API_KEY:
        headers["apikey"] = config.MIRROR_API_KEY
        headers["Authorization"] = f"Bearer {config.MIRROR_API_KEY}"
    return headers


def sync_order(
    order_id: str,
    public_urls: List[str],
    completed: bool,
    client: Optional[httpx.Client] = None,
) -> bool:
    """
    Mirror `public_urls` and the completion flag onto the remote order row.

    Returns True when a remote row was updated, False when there was nothing
    to update (mirror not configured, or no matching row).
    """
    if not config.MIRROR_URL:
        logger.debug("MIRROR_URL not set; skipping record sync for order %s", order_id)
        return False

    url = f"{config.MIRROR_URL.rstrip('/')}/rest/v1/orders"
    owns_client = client is None
    client = client or httpx.Client(timeout=config.MIRROR_TIMEOUT)
    try:
        try:
            response = client.get(
                url,
                params={"id": f"eq.{order_id}", "select": "id,status,image_urls"},
                headers=_headers(),
            )
            response.raise_for_status()
            rows = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Error checking mirrored order %s: %s", order_id, e)
            raise MirrorSyncError("Failed check order. Cant connect to record mirror") from e

        if not rows:
            logger.info("No matching order found in record mirror with ID: %s", order_id)
            return False

        try:
            response = client.patch(
                url,
                params={"id": f"eq.{order_id}"},
                json={"image_urls": public_urls, "is_upload_completed": completed},
                headers=_headers(),
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Error updating mirrored order %s: %s", order_id, e)
            raise MirrorSyncError("Failed update order. Cant connect to record mirror") from e
    finally:
        if owns_client:
            client.close()

    logger.info("Updated order %s in record mirror: images=%d", order_id, len(public_urls))
    return True
