import logging
import math
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel

from api.images import InvalidImage, save_base64_image
from common import config
from common.errors import DuplicateOrder, InvalidTransition, OrderNotFound
from common.order_schema import Order, OrderStatus
from common.store import OrderStore
from processor.engine import QueueEngine

logger = logging.getLogger(__name__)

store = OrderStore()


def get_store() -> OrderStore:
    return store


def get_engine(request: Request) -> Optional[QueueEngine]:
    return getattr(request.app.state, "engine", None)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = None
    if config.ENGINE_ENABLED:
        engine = QueueEngine(store=store)
        engine.start()
    app.state.engine = engine
    try:
        yield
    finally:
        if engine is not None:
            engine.shutdown()


app = FastAPI(title="Photo Order Queue", lifespan=lifespan)
router = APIRouter(prefix="/api/photo-queue")


def _discard(paths: List[Path]) -> None:
    for path in paths:
        path.unlink(missing_ok=True)


def _parse_status(value: Optional[str]) -> Optional[OrderStatus]:
    if value is None:
        return None
    try:
        return OrderStatus(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid status")


# ---------- request bodies ----------

class AddOrderRequest(BaseModel):
    imagesStr: Optional[List[str]] = None
    orderId: Optional[str] = None


class RetryOrderRequest(BaseModel):
    orderId: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: Optional[str] = None
    error: Optional[str] = None


# ---------- API endpoints ----------

@router.get("/orders")
def list_orders(
    page: int = 1,
    limit: int = 10,
    status: Optional[str] = None,
    store: OrderStore = Depends(get_store),
):
    page, limit = max(page, 1), max(limit, 1)
    status_filter = _parse_status(status)
    orders = store.get_orders(status=status_filter, skip=(page - 1) * limit, limit=limit)
    total = store.get_orders_count(status_filter)
    return {
        "data": orders,
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit),
        },
    }


@router.get("/orders/status/{status}", response_model=List[Order])
def orders_by_status(status: str, limit: int = 10, store: OrderStore = Depends(get_store)):
    return store.get_orders_by_status(_parse_status(status), limit=max(limit, 1))


@router.get("/orders/{order_id}", response_model=Order)
def read_order(order_id: str, store: OrderStore = Depends(get_store)):
    order = store.get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@router.post("/add-order-to-queue", status_code=201)
def add_order_to_queue(body: AddOrderRequest, store: OrderStore = Depends(get_store)):
    if not body.imagesStr:
        raise HTTPException(status_code=400, detail="At least one base64 image is required")

    order_id = body.orderId or str(uuid.uuid4())
    if store.get_order(order_id):
        raise HTTPException(status_code=409, detail="Order already exists")

    saved = []
    try:
        for image in body.imagesStr:
            saved.append(save_base64_image(image, order_id))
    except InvalidImage as e:
        _discard(saved)
        raise HTTPException(status_code=400, detail=str(e))

    # Photos go in with the order; it is QUEUED from the start
    try:
        order = store.create_order(order_id, file_paths=[str(p) for p in saved])
    except DuplicateOrder:
        # another request created the same id while the images were being saved
        _discard(saved)
        raise HTTPException(status_code=409, detail="Order already exists")
    logger.info("Order %s added to queue with %d photos", order.id, len(saved))
    return {"message": "Order successfully added to queue", "orderId": order.id}


@router.post("/retry-order")
def retry_order(body: RetryOrderRequest, store: OrderStore = Depends(get_store)):
    if not body.orderId:
        raise HTTPException(status_code=400, detail="Order ID is required")

    order = store.get_order(body.orderId)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if order.status != OrderStatus.FAILED:
        raise HTTPException(
            status_code=400,
            detail={"error": "Only FAILED orders can be retried", "orderStatus": order.status.value},
        )

    try:
        store.retry_order(order.id, expected_status=OrderStatus.FAILED)
    except InvalidTransition as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"message": "Order successfully added back to queue", "orderId": order.id}


@router.get("/next-order", response_model=Order)
def next_order(store: OrderStore = Depends(get_store)):
    order = store.get_next_order_from_queue()
    if not order:
        raise HTTPException(status_code=404, detail="No orders in queue")
    return order


@router.put("/orders/{order_id}/status")
def update_status(order_id: str, body: StatusUpdateRequest, store: OrderStore = Depends(get_store)):
    if not body.status:
        raise HTTPException(status_code=400, detail="Invalid status")
    status = _parse_status(body.status)
    try:
        order = store.update_order_status(order_id, status, error=body.error)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")
    except InvalidTransition as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"message": f"Order status updated to {status.value}", "orderId": order.id}


@router.get("/workers")
def workers(engine: Optional[QueueEngine] = Depends(get_engine)):
    if engine is None or not engine.running:
        raise HTTPException(status_code=503, detail="Queue processor is not running")
    return engine.pool.status()


app.include_router(router)


@app.get("/health")
def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=config.API_HOST, port=config.API_PORT)
