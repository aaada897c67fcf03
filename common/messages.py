"""Messages exchanged between the pool coordinator and worker threads."""
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field


class PhotoOutcome(BaseModel):
    id: str
    success: bool
    file_path: Optional[str] = None
    public_url: Optional[str] = None
    skipped: bool = False       # already had a public URL
    error: Optional[str] = None


class OrderResult(BaseModel):
    success: bool
    order_id: str
    error: Optional[str] = None
    partial: bool = False
    processed_photos: List[PhotoOutcome] = Field(default_factory=list)
    public_urls: List[str] = Field(default_factory=list)


class ReadyMessage(BaseModel):
    type: Literal["READY"] = "READY"
    worker_id: int
    generation: int = 0


class ProcessOrderMessage(BaseModel):
    type: Literal["PROCESS_ORDER"] = "PROCESS_ORDER"
    order_id: str


class OrderResultMessage(BaseModel):
    type: Literal["ORDER_RESULT"] = "ORDER_RESULT"
    worker_id: int
    generation: int = 0
    result: OrderResult


class WorkerErrorMessage(BaseModel):
    type: Literal["WORKER_ERROR"] = "WORKER_ERROR"
    worker_id: int
    generation: int = 0
    error: str


class StopMessage(BaseModel):
    type: Literal["STOP"] = "STOP"


WorkerMessage = Union[ReadyMessage, OrderResultMessage, WorkerErrorMessage]
